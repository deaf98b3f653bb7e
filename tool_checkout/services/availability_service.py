"""Free-unit arithmetic for equipment models over a date window.

Two windows overlap when ``existing.start <= end and existing.end >= start``:
both end dates count as reserved days. Every query here re-reads the store;
nothing is cached between calls.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.inventory_models import (
    ACTIVE_RESERVATION_STATUSES,
    EquipmentModel,
    EquipmentType,
    EquipmentUnit,
    Reservation,
    ReservationLine,
)
from services.errors import NotFoundError, ValidationError


def validate_window(start_date: date, end_date: date) -> None:
    if start_date is None or end_date is None:
        raise ValidationError("Start date or end date is invalid.")
    if start_date > end_date:
        raise ValidationError("The start date must be on or before the end date.")


def ready_unit_count(db: Session, model_id: int) -> int:
    stmt = (
        select(func.count(EquipmentUnit.SerialID))
        .where(EquipmentUnit.ModelID == model_id)
        .where(EquipmentUnit.MaintenanceStatus == "Ready")
    )
    return int(db.execute(stmt).scalar() or 0)


def reserved_quantity(db: Session, model_id: int, start_date: date, end_date: date) -> int:
    stmt = (
        select(func.coalesce(func.sum(ReservationLine.Quantity), 0))
        .join(Reservation, Reservation.ReservationID == ReservationLine.ReservationID)
        .where(ReservationLine.ModelID == model_id)
        .where(Reservation.Status.in_(ACTIVE_RESERVATION_STATUSES))
        .where(Reservation.StartDate <= end_date)
        .where(Reservation.EndDate >= start_date)
    )
    return int(db.execute(stmt).scalar() or 0)


def get_model_or_404(db: Session, model_id: int, type_id: int | None = None) -> EquipmentModel:
    model = db.get(EquipmentModel, model_id)
    if not model:
        raise NotFoundError("Model", model_id)
    if type_id is not None and int(model.TypeID) != int(type_id):
        raise ValidationError("The type doesn't have this model.")
    return model


def available_count(db: Session, model_id: int, type_id: int | None, start_date: date, end_date: date) -> int:
    validate_window(start_date, end_date)
    get_model_or_404(db, model_id, type_id)

    ready = ready_unit_count(db, model_id)
    if ready == 0:
        return 0
    return max(0, ready - reserved_quantity(db, model_id, start_date, end_date))


def list_available_models(db: Session, start_date: date, end_date: date) -> list[dict]:
    validate_window(start_date, end_date)

    rows = db.execute(
        select(EquipmentModel, EquipmentType.TypeName)
        .join(EquipmentType, EquipmentType.TypeID == EquipmentModel.TypeID)
        .order_by(EquipmentType.TypeName, EquipmentModel.ModelName)
    ).all()

    available: list[dict] = []
    for model, type_name in rows:
        count = available_count(db, model.ModelID, model.TypeID, start_date, end_date)
        if count <= 0:
            continue
        available.append(
            {
                "modelID": model.ModelID,
                "typeID": model.TypeID,
                "modelName": model.ModelName,
                "modelPhoto": model.PhotoRef,
                "typeName": type_name,
                "availableCount": count,
            }
        )
    return available


def peak_reserved_quantity(db: Session, model_id: int, as_of: date | None = None) -> int:
    """Largest number of units booked for ``model_id`` on any day from ``as_of`` on.

    The booked total only rises on a day some reservation begins, so checking
    each start day (clamped to ``as_of``) finds the peak.
    """
    as_of = as_of or date.today()
    windows = db.execute(
        select(Reservation.StartDate, Reservation.EndDate, ReservationLine.Quantity)
        .join(ReservationLine, ReservationLine.ReservationID == Reservation.ReservationID)
        .where(ReservationLine.ModelID == model_id)
        .where(Reservation.Status.in_(ACTIVE_RESERVATION_STATUSES))
        .where(Reservation.EndDate >= as_of)
    ).all()

    peak = 0
    for day in {max(start, as_of) for start, _, _ in windows}:
        booked = sum(int(quantity or 0) for start, end, quantity in windows if start <= day <= end)
        peak = max(peak, booked)
    return peak
