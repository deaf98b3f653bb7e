"""Walk-in / walk-out inference from raw RFID antenna pings.

An antenna cannot tell entering from leaving on a single read. The previous
event for the tag (by scan time, ties broken by ingest order) decides: a ping
at the same antenna right after a walk-in there is a walk-out; anything else
(first sighting, after a walk-out, or a different antenna) is a walk-in at
the pinging antenna. A unit is therefore never inside two rooms at once, and
a missed walk-out heals on the next room change.

A buffered ping that arrives with a scan time older than the newest stored
event is classified against its predecessor in time. It is appended like any
other event but leaves the unit's current location alone.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.transaction import run_in_transaction
from models.inventory_models import Antenna, EquipmentModel, EquipmentType, EquipmentUnit, Room, ScanEvent
from services.errors import NotFoundError, ValidationError
from services.tag_service import TAG_NAMESPACES, decode_tag, normalize_tag
from services.user_service import get_user_or_404

SCAN_LOGGER = logging.getLogger("tool_checkout.scans")

USAGE_WINDOW_DAYS = 7


def classify_walk_in(last_event: ScanEvent | None, reader_id: str) -> bool:
    if last_event is not None and last_event.ReaderID == reader_id and last_event.IsWalkIn:
        return False
    return True


def last_scan_event(db: Session, equipment_tag_id: str, before: datetime | None = None) -> ScanEvent | None:
    stmt = select(ScanEvent).where(ScanEvent.EquipmentTagID == equipment_tag_id)
    if before is not None:
        stmt = stmt.where(ScanEvent.ScanTime <= before)
    return db.execute(
        stmt.order_by(ScanEvent.ScanTime.desc(), ScanEvent.ScanEventID.desc()).limit(1)
    ).scalars().first()


def ingest_scan(
    db: Session,
    equipment_tag_id: str,
    reader_id: str,
    scan_time: datetime | None = None,
    user_tag_id: str | None = None,
) -> ScanEvent:
    tag_id = normalize_tag(equipment_tag_id)
    if decode_tag(tag_id) not in TAG_NAMESPACES["Equipment"]:
        raise ValidationError(f"Tag {tag_id} is not an equipment tag.")
    user_tag = normalize_tag(user_tag_id) if user_tag_id else None
    reader = (reader_id or "").strip()
    if not reader:
        raise ValidationError("Reader id is required.")

    def _work(session: Session) -> ScanEvent:
        unit = session.execute(
            select(EquipmentUnit).where(EquipmentUnit.TagID == tag_id).with_for_update()
        ).scalars().first()
        if not unit:
            raise NotFoundError("Equipment tag", tag_id)
        if not session.get(Antenna, reader):
            raise NotFoundError("Antenna", reader)

        when = scan_time or datetime.now()
        newest = last_scan_event(session, tag_id)
        is_latest = newest is None or newest.ScanTime <= when
        predecessor = newest if is_latest else last_scan_event(session, tag_id, before=when)

        is_walk_in = classify_walk_in(predecessor, reader)
        event = ScanEvent(
            EquipmentTagID=tag_id,
            UserTagID=user_tag,
            ReaderID=reader,
            ScanTime=when,
            IsWalkIn=is_walk_in,
        )
        session.add(event)
        if is_latest:
            unit.CurrentRoomReaderID = reader if is_walk_in else None
            unit.UpdatedDate = datetime.now()
        session.flush()
        return event

    event = run_in_transaction(db, _work, label="scan ingest")
    SCAN_LOGGER.info(
        "Scan tag=%s reader=%s classified=%s",
        event.EquipmentTagID,
        event.ReaderID,
        "walk-in" if event.IsWalkIn else "walk-out",
    )
    return event


def list_scan_history(db: Session, serial_id: str, limit: int = 100) -> list[ScanEvent]:
    unit = db.get(EquipmentUnit, serial_id.strip())
    if not unit:
        raise NotFoundError("Equipment", serial_id)
    if not unit.TagID:
        return []
    return list(
        db.execute(
            select(ScanEvent)
            .where(ScanEvent.EquipmentTagID == unit.TagID)
            .order_by(ScanEvent.ScanTime.desc(), ScanEvent.ScanEventID.desc())
            .limit(max(1, limit))
        ).scalars().all()
    )


def _usage_rows(db: Session, *conditions):
    return db.execute(
        select(ScanEvent, EquipmentUnit, EquipmentModel, EquipmentType.TypeName, Room.RoomNumber)
        .join(EquipmentUnit, EquipmentUnit.TagID == ScanEvent.EquipmentTagID)
        .join(EquipmentModel, EquipmentModel.ModelID == EquipmentUnit.ModelID)
        .join(EquipmentType, EquipmentType.TypeID == EquipmentModel.TypeID)
        .join(Antenna, Antenna.ReaderID == ScanEvent.ReaderID)
        .join(Room, Room.RoomID == Antenna.RoomID)
        .where(*conditions)
        .order_by(ScanEvent.ScanTime.desc(), ScanEvent.ScanEventID.desc())
    ).all()


def _usage_entry(event: ScanEvent, unit: EquipmentUnit, model: EquipmentModel, type_name: str, room_number: str) -> dict:
    return {
        "scanEventID": event.ScanEventID,
        "serialID": unit.SerialID,
        "modelName": model.ModelName,
        "modelPhoto": model.PhotoRef,
        "typeName": type_name,
        "roomNumber": room_number,
        "readerID": event.ReaderID,
        "scanTime": event.ScanTime,
    }


def user_usage(
    db: Session,
    school_id: str | int,
    *,
    now: datetime | None = None,
    window_days: int = USAGE_WINDOW_DAYS,
) -> dict:
    """Equipment a user carried, from walk-ins that recorded their tag.

    ``currentlyUsed`` holds units whose newest event is a walk-in carrying the
    user's tag. ``recentlyUsed`` holds one entry per unit, the latest such
    walk-in within ``window_days`` of ``now``.
    """
    user = get_user_or_404(db, school_id)
    if not user.TagID:
        return {"schoolID": user.SchoolID, "currentlyUsed": [], "recentlyUsed": []}

    since = (now or datetime.now()) - timedelta(days=window_days)
    carried = _usage_rows(db, ScanEvent.UserTagID == user.TagID, ScanEvent.IsWalkIn.is_(True))

    recently_used: dict[str, dict] = {}
    currently_used: list[dict] = []
    seen: set[str] = set()
    for event, unit, model, type_name, room_number in carried:
        if unit.SerialID in seen:
            continue
        seen.add(unit.SerialID)
        entry = _usage_entry(event, unit, model, type_name, room_number)
        if event.ScanTime >= since:
            recently_used[unit.SerialID] = entry
        newest = last_scan_event(db, unit.TagID)
        if newest is not None and newest.ScanEventID == event.ScanEventID:
            currently_used.append(entry)

    return {
        "schoolID": user.SchoolID,
        "currentlyUsed": currently_used,
        "recentlyUsed": list(recently_used.values()),
    }


def serialize_scan_event(event: ScanEvent) -> dict:
    return {
        "scanEventID": event.ScanEventID,
        "equipmentTagID": event.EquipmentTagID,
        "userTagID": event.UserTagID,
        "readerID": event.ReaderID,
        "scanTime": event.ScanTime,
        "isWalkIn": bool(event.IsWalkIn),
    }
