#!/usr/bin/env python3
"""Integrity checks for the tool checkout database.

Reports over-booked models, tag ids outside their namespace, units whose
type disagrees with their model, and units whose current room disagrees
with their last scan event.
"""

from __future__ import annotations

import argparse
import os
import sys
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


EXPECTED_TABLES = [
    "EquipmentTypes",
    "EquipmentModels",
    "EquipmentUnits",
    "EquipmentHomes",
    "Rooms",
    "Antennas",
    "CheckoutUsers",
    "Reservations",
    "ReservationLines",
    "ScanEvents",
    "AuditLogs",
]

EQUIPMENT_TAG_RANGE = range(0x0000, 0x1000)
STUDENT_TAG_RANGE = range(0x1000, 0x2000)


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _existing_tables(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _count_result(name: str, count) -> CheckResult:
    count = int(count or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _tag_value(raw) -> int | None:
    try:
        return int(str(raw).strip(), 16)
    except (TypeError, ValueError):
        return None


def _run_existence_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing")
        for table in EXPECTED_TABLES
    ]


def find_overbooked_models(engine: Engine) -> list[tuple[int, str, int, int]]:
    """Return ``(model_id, day, reserved, ready)`` for every over-booked day.

    Only the start date of each active reservation is checked: the reserved
    total can only rise on a day some reservation begins.
    """
    ready_by_model = {
        int(model_id): int(count)
        for model_id, count in _rows(
            engine,
            """
            SELECT ModelID, COUNT(*)
            FROM EquipmentUnits
            WHERE MaintenanceStatus = 'Ready'
            GROUP BY ModelID
            """,
        )
    }
    windows_by_model: dict[int, list[tuple]] = defaultdict(list)
    for model_id, start_date, end_date, quantity in _rows(
        engine,
        """
        SELECT rl.ModelID, r.StartDate, r.EndDate, rl.Quantity
        FROM ReservationLines rl
        JOIN Reservations r ON r.ReservationID = rl.ReservationID
        WHERE r.Status IN ('Requested', 'Approved')
        """,
    ):
        windows_by_model[int(model_id)].append((start_date, end_date, int(quantity or 0)))

    findings = []
    for model_id, windows in sorted(windows_by_model.items()):
        ready = ready_by_model.get(model_id, 0)
        for day in sorted({start for start, _, _ in windows}):
            reserved = sum(quantity for start, end, quantity in windows if start <= day <= end)
            if reserved > ready:
                findings.append((model_id, str(day), reserved, ready))
    return findings


def _run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if {"Reservations", "ReservationLines", "EquipmentUnits"} <= tables:
        overbooked = find_overbooked_models(engine)
        detail = "none" if not overbooked else "; ".join(
            f"model={model_id} day={day} reserved={reserved} ready={ready}"
            for model_id, day, reserved, ready in overbooked
        )
        checks.append(CheckResult("reservations:overbooked_models", not overbooked, detail))

        checks.append(
            _count_result(
                "reservations:inverted_window",
                _scalar(engine, "SELECT COUNT(*) FROM Reservations WHERE StartDate > EndDate"),
            )
        )

    for table in ("EquipmentUnits", "CheckoutUsers"):
        if table not in tables:
            continue
        duplicate_tags = _scalar(
            engine,
            f"""
            SELECT COUNT(*)
            FROM (
                SELECT TagID
                FROM {table}
                WHERE TagID IS NOT NULL
                GROUP BY TagID
                HAVING COUNT(*) > 1
            ) d
            """,
        )
        checks.append(_count_result(f"{table.lower()}:duplicate_tag", duplicate_tags))

    if "EquipmentUnits" in tables:
        bad_equipment_tags = [
            serial_id
            for serial_id, tag_id in _rows(engine, "SELECT SerialID, TagID FROM EquipmentUnits WHERE TagID IS NOT NULL")
            if _tag_value(tag_id) not in EQUIPMENT_TAG_RANGE
        ]
        checks.append(
            CheckResult(
                "equipmentunits:tag_outside_namespace",
                not bad_equipment_tags,
                f"count={len(bad_equipment_tags)}" + (f" serials={','.join(bad_equipment_tags)}" if bad_equipment_tags else ""),
            )
        )

    if "CheckoutUsers" in tables:
        bad_user_tags = [
            school_id
            for school_id, tag_id in _rows(engine, "SELECT SchoolID, TagID FROM CheckoutUsers WHERE TagID IS NOT NULL")
            if _tag_value(tag_id) not in STUDENT_TAG_RANGE
        ]
        checks.append(
            CheckResult(
                "checkoutusers:tag_outside_namespace",
                not bad_user_tags,
                f"count={len(bad_user_tags)}" + (f" users={','.join(bad_user_tags)}" if bad_user_tags else ""),
            )
        )

    if {"EquipmentUnits", "EquipmentModels"} <= tables:
        checks.append(
            _count_result(
                "equipmentunits:type_model_mismatch",
                _scalar(
                    engine,
                    """
                    SELECT COUNT(*)
                    FROM EquipmentUnits u
                    JOIN EquipmentModels m ON m.ModelID = u.ModelID
                    WHERE u.TypeID <> m.TypeID
                    """,
                ),
            )
        )

    if {"EquipmentUnits", "ScanEvents"} <= tables:
        last_events = {}
        for tag_id, reader_id, is_walk_in in _rows(
            engine,
            "SELECT EquipmentTagID, ReaderID, IsWalkIn FROM ScanEvents ORDER BY ScanTime, ScanEventID",
        ):
            last_events[tag_id] = (reader_id, bool(is_walk_in))
        drifted = []
        for serial_id, tag_id, current_reader in _rows(
            engine,
            "SELECT SerialID, TagID, CurrentRoomReaderID FROM EquipmentUnits WHERE TagID IS NOT NULL",
        ):
            if tag_id not in last_events:
                continue
            reader_id, is_walk_in = last_events[tag_id]
            expected = reader_id if is_walk_in else None
            if current_reader != expected:
                drifted.append(serial_id)
        checks.append(
            CheckResult(
                "equipmentunits:location_drift",
                not drifted,
                f"count={len(drifted)}" + (f" serials={','.join(drifted)}" if drifted else ""),
            )
        )

    return checks


def run_checks(engine: Engine) -> list[CheckResult]:
    tables = _existing_tables(engine)
    return _run_existence_checks(engine, tables) + _run_integrity_checks(engine, tables)


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "Reservations" in tables:
        rows = _rows(
            engine,
            """
            SELECT ReservationID, RequesterID, StartDate, EndDate, Status
            FROM Reservations
            ORDER BY ReservationID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("Reservations (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "AuditLogs" in tables:
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, Action, UserID, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Tool checkout inventory audit")
    parser.add_argument("--db-url", default=os.environ.get("TOOL_CHECKOUT_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("TOOL_CHECKOUT_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    tables = _existing_tables(engine)
    integrity = _run_integrity_checks(engine, tables)
    _print_results("Table Existence", _run_existence_checks(engine, tables))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine, tables)
    _print_samples(engine, tables, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
