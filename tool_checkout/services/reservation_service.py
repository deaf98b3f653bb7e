"""Reservation creation and the approve / reject / cancel lifecycle.

Validation and insert run inside one transaction. The affected model rows,
their Ready unit rows and the requester row are locked first
(``SELECT ... FOR UPDATE``; on SQLite the session already holds the writer
lock), so two concurrent requests for the last unit cannot both commit.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from db.transaction import run_in_transaction
from models.inventory_models import (
    ACTIVE_RESERVATION_STATUSES,
    EquipmentModel,
    EquipmentUnit,
    Reservation,
    ReservationLine,
)
from services.audit_service import log_audit
from services.availability_service import available_count, get_model_or_404, validate_window
from services.errors import NotFoundError, ValidationError
from services.user_service import format_display_name, get_user_or_404, is_staff

RESERVATION_LOGGER = logging.getLogger("tool_checkout.reservations")

STUDENT_RESERVATION_CAP = 2
COMMIT_ATTEMPTS = 3
AUTO_APPROVED_ROLES = {"Faculty"}


def _line_value(line: Any, key: str) -> Any:
    if isinstance(line, dict):
        return line.get(key)
    return getattr(line, key, None)


def _normalize_lines(lines: Iterable[Any] | None) -> list[tuple[int, int, int]]:
    normalized: list[tuple[int, int, int]] = []
    for line in lines or []:
        model_id = _line_value(line, "modelID")
        type_id = _line_value(line, "typeID")
        quantity = _line_value(line, "quantity")
        if model_id is None or type_id is None or quantity is None:
            raise ValidationError("One of the equipment's information is missing.")
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("Quantity must be a whole number.")
        if quantity < 1:
            raise ValidationError("You cannot reserve an equipment with 0 quantity.")
        normalized.append((int(model_id), int(type_id), quantity))
    if not normalized:
        raise ValidationError("You have not chosen any equipment for reservation yet.")
    return normalized


def _lock_models(db: Session, model_ids: Iterable[int]) -> None:
    ordered = sorted(set(model_ids))
    db.execute(
        select(EquipmentModel.ModelID)
        .where(EquipmentModel.ModelID.in_(ordered))
        .order_by(EquipmentModel.ModelID)
        .with_for_update()
    ).all()
    db.execute(
        select(EquipmentUnit.SerialID)
        .where(EquipmentUnit.ModelID.in_(ordered))
        .where(EquipmentUnit.MaintenanceStatus == "Ready")
        .order_by(EquipmentUnit.SerialID)
        .with_for_update()
    ).all()


def _lock_reservation(db: Session, reservation_id: int) -> Reservation:
    reservation = db.execute(
        select(Reservation)
        .options(selectinload(Reservation.Lines))
        .where(Reservation.ReservationID == reservation_id)
        .with_for_update()
    ).scalars().first()
    if not reservation:
        raise NotFoundError("Reservation", reservation_id)
    return reservation


def requester_reserved_quantity(db: Session, requester_id: str, start_date: date, end_date: date) -> int:
    stmt = (
        select(func.coalesce(func.sum(ReservationLine.Quantity), 0))
        .join(Reservation, Reservation.ReservationID == ReservationLine.ReservationID)
        .where(Reservation.RequesterID == requester_id)
        .where(Reservation.Status.in_(ACTIVE_RESERVATION_STATUSES))
        .where(Reservation.StartDate <= end_date)
        .where(Reservation.EndDate >= start_date)
    )
    return int(db.execute(stmt).scalar() or 0)


def create_reservation(
    db: Session,
    requester_id: str | int,
    start_date: date,
    end_date: date,
    lines: Iterable[Any],
    *,
    student_cap: int = STUDENT_RESERVATION_CAP,
    attempts: int = COMMIT_ATTEMPTS,
) -> Reservation:
    requested_lines = _normalize_lines(lines)

    def _work(session: Session) -> Reservation:
        validate_window(start_date, end_date)
        user = get_user_or_404(session, requester_id, for_update=True)
        _lock_models(session, [model_id for model_id, _, _ in requested_lines])

        capped = user.UserRole not in AUTO_APPROVED_ROLES
        running_total = requester_reserved_quantity(session, user.SchoolID, start_date, end_date) if capped else 0
        requested_by_model: dict[int, int] = defaultdict(int)

        for model_id, type_id, quantity in requested_lines:
            try:
                model = get_model_or_404(session, model_id, type_id)
            except NotFoundError as exc:
                raise ValidationError(f"Model {model_id} does not exist.") from exc
            free = available_count(session, model_id, type_id, start_date, end_date)
            if requested_by_model[model_id] + quantity > free:
                raise ValidationError(
                    f"The quantity you choose for {model.ModelName} exceeds the available quantity. Please make adjustment."
                )
            requested_by_model[model_id] += quantity

            if capped:
                running_total += quantity
                if running_total > student_cap:
                    raise ValidationError(
                        f"You can only reserve a maximum of {student_cap} equipments. "
                        "You might have reserved another equipment around this period."
                    )

        status = "Approved" if user.UserRole in AUTO_APPROVED_ROLES else "Requested"
        now = datetime.now()
        reservation = Reservation(
            RequesterID=user.SchoolID,
            StartDate=start_date,
            EndDate=end_date,
            Status=status,
            CreatedDate=now,
            UpdatedDate=now,
        )
        for model_id, type_id, quantity in requested_lines:
            reservation.Lines.append(ReservationLine(ModelID=model_id, TypeID=type_id, Quantity=quantity))
        session.add(reservation)
        session.flush()
        log_audit(
            session,
            "Reservation",
            reservation.ReservationID,
            "CreateReservation",
            f"Created with status {status}; units={sum(q for _, _, q in requested_lines)}",
            user_id=user.SchoolID,
        )
        return reservation

    try:
        reservation = run_in_transaction(db, _work, attempts=attempts, label="reservation create")
    except ValidationError as exc:
        RESERVATION_LOGGER.warning("Reservation rejected requester=%s reason=%s", requester_id, exc.message)
        raise
    RESERVATION_LOGGER.info(
        "Reservation created id=%s requester=%s status=%s window=%s..%s",
        reservation.ReservationID,
        reservation.RequesterID,
        reservation.Status,
        start_date,
        end_date,
    )
    return reservation


def approve_reservation(db: Session, reservation_id: int, responder_id: str | int) -> Reservation:
    def _work(session: Session) -> Reservation:
        reservation = _lock_reservation(session, reservation_id)
        responder = get_user_or_404(session, responder_id)
        if not is_staff(responder):
            raise ValidationError("You do not have permission to perform this action.")
        if reservation.Status == "Approved":
            if reservation.Responder:
                raise ValidationError(f"This reservation has been approved by {reservation.Responder}.")
            raise ValidationError("This reservation has already been approved.")
        if reservation.Status != "Requested":
            raise ValidationError(f"This reservation is already {reservation.Status.lower()}.")

        reservation.Status = "Approved"
        reservation.Responder = format_display_name(responder)
        reservation.UpdatedDate = datetime.now()
        log_audit(session, "Reservation", reservation.ReservationID, "ApproveReservation", f"Approved by {reservation.Responder}", user_id=responder.SchoolID)
        return reservation

    reservation = run_in_transaction(db, _work, attempts=COMMIT_ATTEMPTS, label="reservation approve")
    RESERVATION_LOGGER.info("Reservation approved id=%s responder=%s", reservation_id, responder_id)
    return reservation


def cancel_or_reject_reservation(
    db: Session,
    reservation_id: int,
    acting_user_id: str | int,
    reason: str | None = None,
    *,
    purge: bool = False,
) -> dict:
    def _work(session: Session) -> dict:
        reservation = _lock_reservation(session, reservation_id)
        actor = get_user_or_404(session, acting_user_id)
        if reservation.Status not in ACTIVE_RESERVATION_STATUSES:
            raise ValidationError(f"This reservation is already {reservation.Status.lower()}.")

        if actor.SchoolID == reservation.RequesterID:
            action, target = "CancelReservation", "Cancelled"
        elif is_staff(actor):
            action, target = "RejectReservation", "Rejected"
        else:
            raise ValidationError("Only the person who reserved this reservation can cancel it.")

        note = (reason or "").strip() or None
        log_audit(
            session,
            "Reservation",
            reservation.ReservationID,
            action,
            f"{target} by {format_display_name(actor)}" + (f": {note}" if note else ""),
            user_id=actor.SchoolID,
        )
        if purge:
            session.delete(reservation)
        else:
            reservation.Status = target
            reservation.ClosedReason = note
            if target == "Rejected":
                reservation.Responder = format_display_name(actor)
            reservation.UpdatedDate = datetime.now()
        return {"reservationID": reservation_id, "status": target, "removed": True}

    result = run_in_transaction(db, _work, attempts=COMMIT_ATTEMPTS, label="reservation close")
    RESERVATION_LOGGER.info("Reservation closed id=%s status=%s actor=%s purge=%s", reservation_id, result["status"], acting_user_id, purge)
    return result


def get_reservation_or_404(db: Session, reservation_id: int) -> Reservation:
    reservation = db.execute(
        select(Reservation)
        .options(selectinload(Reservation.Lines).selectinload(ReservationLine.Model))
        .where(Reservation.ReservationID == reservation_id)
    ).scalars().first()
    if not reservation:
        raise NotFoundError("Reservation", reservation_id)
    return reservation


def list_user_reservations(db: Session, school_id: str | int, status: str | None = None) -> list[Reservation]:
    user = get_user_or_404(db, school_id)
    stmt = (
        select(Reservation)
        .options(selectinload(Reservation.Lines).selectinload(ReservationLine.Model))
        .order_by(Reservation.ReservationID)
    )
    if not is_staff(user):
        stmt = stmt.where(Reservation.RequesterID == user.SchoolID)
    if status:
        stmt = stmt.where(Reservation.Status == status)
    return list(db.execute(stmt).scalars().all())


def serialize_reservation(reservation: Reservation) -> dict:
    lines = []
    for line in reservation.Lines:
        lines.append(
            {
                "reservationLineID": line.ReservationLineID,
                "modelID": line.ModelID,
                "typeID": line.TypeID,
                "quantity": line.Quantity,
                "modelName": line.Model.ModelName if line.Model else None,
            }
        )
    return {
        "reservationID": reservation.ReservationID,
        "requesterID": reservation.RequesterID,
        "startDate": reservation.StartDate,
        "endDate": reservation.EndDate,
        "status": reservation.Status,
        "responder": reservation.Responder,
        "closedReason": reservation.ClosedReason,
        "totalQuantity": sum(int(line.Quantity or 0) for line in reservation.Lines),
        "lines": lines,
    }
