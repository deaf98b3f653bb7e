from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from db.transaction import run_in_transaction
from models.inventory_models import (
    MAINTENANCE_STATUSES,
    USAGE_CONDITIONS,
    Antenna,
    EquipmentHome,
    EquipmentModel,
    EquipmentType,
    EquipmentUnit,
    ReservationLine,
    Room,
    ScanEvent,
)
from services.audit_service import log_audit
from services.availability_service import get_model_or_404, peak_reserved_quantity, ready_unit_count
from services.errors import NotFoundError, ValidationError
from services.tag_service import next_available_tag

INVENTORY_LOGGER = logging.getLogger("tool_checkout.inventory")


def _clean_name(raw: str | None, label: str) -> str:
    value = (raw or "").strip()
    if not value:
        raise ValidationError(f"{label} is required.")
    return value


def _check_choice(value: str | None, allowed: tuple[str, ...], label: str) -> None:
    if value is not None and value not in allowed:
        raise ValidationError(f"{label} must be one of: {', '.join(allowed)}.")


def _resolve_rooms(db: Session, room_ids: Iterable[int]) -> list[Room]:
    rooms = []
    for room_id in sorted(set(int(value) for value in room_ids)):
        room = db.get(Room, room_id)
        if not room:
            raise NotFoundError("Room", room_id)
        rooms.append(room)
    return rooms


def get_unit_or_404(db: Session, serial_id: str, *, for_update: bool = False) -> EquipmentUnit:
    stmt = select(EquipmentUnit).where(EquipmentUnit.SerialID == (serial_id or "").strip())
    if for_update:
        stmt = stmt.with_for_update()
    unit = db.execute(stmt).scalars().first()
    if not unit:
        raise NotFoundError("Equipment", serial_id)
    return unit


def _lock_unit_under_model(session: Session, serial_id: str) -> EquipmentUnit:
    """Lock the unit's model row, then the unit row.

    Reservation commits lock models before units; Ready-count changes take
    the locks in the same order.
    """
    model_id = session.execute(
        select(EquipmentUnit.ModelID).where(EquipmentUnit.SerialID == (serial_id or "").strip())
    ).scalar()
    if model_id is None:
        raise NotFoundError("Equipment", serial_id)
    session.execute(select(EquipmentModel.ModelID).where(EquipmentModel.ModelID == model_id).with_for_update()).all()
    return get_unit_or_404(session, serial_id, for_update=True)


def _ensure_ready_units_cover_bookings(session: Session, model_id: int, serial_id: str, action: str) -> None:
    ready_after = ready_unit_count(session, model_id) - 1
    peak = peak_reserved_quantity(session, model_id)
    if peak > ready_after:
        raise ValidationError(
            f"Equipment {serial_id} cannot be {action}: {peak} unit(s) of this model are reserved "
            f"but only {max(ready_after, 0)} would remain ready."
        )


def add_type(db: Session, type_name: str) -> EquipmentType:
    name = _clean_name(type_name, "Type name")

    def _work(session: Session) -> EquipmentType:
        existing = session.execute(
            select(EquipmentType).where(func.lower(EquipmentType.TypeName) == name.lower())
        ).scalars().first()
        if existing:
            raise ValidationError("This type already exists.")
        equipment_type = EquipmentType(TypeName=name, CreatedDate=datetime.now())
        session.add(equipment_type)
        session.flush()
        log_audit(session, "EquipmentType", equipment_type.TypeID, "AddType", name)
        return equipment_type

    equipment_type = run_in_transaction(db, _work, label="type addition")
    INVENTORY_LOGGER.info("Added type id=%s name=%s", equipment_type.TypeID, name)
    return equipment_type


def add_model(db: Session, type_id: int, model_name: str, photo_ref: str | None = None) -> EquipmentModel:
    name = _clean_name(model_name, "Model name")

    def _work(session: Session) -> EquipmentModel:
        if not session.get(EquipmentType, type_id):
            raise NotFoundError("Type", type_id)
        existing = session.execute(
            select(EquipmentModel)
            .where(EquipmentModel.TypeID == type_id)
            .where(func.lower(EquipmentModel.ModelName) == name.lower())
        ).scalars().first()
        if existing:
            raise ValidationError("This model already exists in this type.")
        now = datetime.now()
        model = EquipmentModel(TypeID=type_id, ModelName=name, PhotoRef=photo_ref, CreatedDate=now, UpdatedDate=now)
        session.add(model)
        session.flush()
        log_audit(session, "EquipmentModel", model.ModelID, "AddModel", f"{name} (type {type_id})")
        return model

    model = run_in_transaction(db, _work, label="model addition")
    INVENTORY_LOGGER.info("Added model id=%s type=%s name=%s", model.ModelID, type_id, name)
    return model


def remove_model(db: Session, model_id: int) -> None:
    def _work(session: Session) -> None:
        model = get_model_or_404(session, model_id)
        unit_count = session.execute(
            select(func.count(EquipmentUnit.SerialID)).where(EquipmentUnit.ModelID == model_id)
        ).scalar()
        if unit_count:
            raise ValidationError("This model still has equipment units and cannot be removed.")
        line_count = session.execute(
            select(func.count(ReservationLine.ReservationLineID)).where(ReservationLine.ModelID == model_id)
        ).scalar()
        if line_count:
            raise ValidationError("This model is referenced by reservations and cannot be removed.")
        log_audit(session, "EquipmentModel", model_id, "RemoveModel", model.ModelName)
        session.delete(model)

    run_in_transaction(db, _work, label="model removal")
    INVENTORY_LOGGER.info("Removed model id=%s", model_id)


def update_type(db: Session, type_id: int, type_name: str) -> EquipmentType:
    name = _clean_name(type_name, "Type name")

    def _work(session: Session) -> EquipmentType:
        equipment_type = session.get(EquipmentType, type_id)
        if not equipment_type:
            raise NotFoundError("Type", type_id)
        clash = session.execute(
            select(EquipmentType)
            .where(func.lower(EquipmentType.TypeName) == name.lower())
            .where(EquipmentType.TypeID != type_id)
        ).scalars().first()
        if clash:
            raise ValidationError("This type already exists.")
        if equipment_type.TypeName != name:
            log_audit(session, "EquipmentType", type_id, "UpdateType", f"{equipment_type.TypeName}->{name}")
            equipment_type.TypeName = name
        return equipment_type

    equipment_type = run_in_transaction(db, _work, label="type update")
    INVENTORY_LOGGER.info("Updated type id=%s name=%s", type_id, name)
    return equipment_type


def remove_type(db: Session, type_id: int) -> None:
    def _work(session: Session) -> None:
        equipment_type = session.get(EquipmentType, type_id)
        if not equipment_type:
            raise NotFoundError("Type", type_id)
        model_count = session.execute(
            select(func.count(EquipmentModel.ModelID)).where(EquipmentModel.TypeID == type_id)
        ).scalar()
        if model_count:
            raise ValidationError("This type still has models and cannot be removed.")
        log_audit(session, "EquipmentType", type_id, "RemoveType", equipment_type.TypeName)
        session.delete(equipment_type)

    run_in_transaction(db, _work, label="type removal")
    INVENTORY_LOGGER.info("Removed type id=%s", type_id)


_UNCHANGED = object()


def update_model(db: Session, model_id: int, *, model_name: str | None = None, photo_ref=_UNCHANGED) -> EquipmentModel:
    """Rename a model or swap its photo reference.

    ``photo_ref=None`` clears the photo; leaving it out keeps the current one.
    """
    name = _clean_name(model_name, "Model name") if model_name is not None else None

    def _work(session: Session) -> EquipmentModel:
        model = get_model_or_404(session, model_id)
        changes = []
        if name is not None and name != model.ModelName:
            clash = session.execute(
                select(EquipmentModel)
                .where(EquipmentModel.TypeID == model.TypeID)
                .where(func.lower(EquipmentModel.ModelName) == name.lower())
                .where(EquipmentModel.ModelID != model_id)
            ).scalars().first()
            if clash:
                raise ValidationError("This model already exists in this type.")
            changes.append(f"ModelName {model.ModelName}->{name}")
            model.ModelName = name
        if photo_ref is not _UNCHANGED and photo_ref != model.PhotoRef:
            changes.append("PhotoRef replaced" if photo_ref else "PhotoRef cleared")
            model.PhotoRef = photo_ref
        if changes:
            model.UpdatedDate = datetime.now()
            log_audit(session, "EquipmentModel", model_id, "UpdateModel", "; ".join(changes))
        return model

    model = run_in_transaction(db, _work, label="model update")
    INVENTORY_LOGGER.info("Updated model id=%s", model_id)
    return model


def add_room(db: Session, room_number: str, description: str | None = None) -> Room:
    number = _clean_name(room_number, "Room number")

    def _work(session: Session) -> Room:
        if session.execute(select(Room).where(Room.RoomNumber == number)).scalars().first():
            raise ValidationError(f"Room {number} already exists.")
        room = Room(RoomNumber=number, Description=description)
        session.add(room)
        session.flush()
        log_audit(session, "Room", room.RoomID, "AddRoom", number)
        return room

    return run_in_transaction(db, _work, label="room addition")


def add_antenna(db: Session, reader_id: str, room_id: int) -> Antenna:
    reader = _clean_name(reader_id, "Reader id")

    def _work(session: Session) -> Antenna:
        if not session.get(Room, room_id):
            raise NotFoundError("Room", room_id)
        if session.get(Antenna, reader):
            raise ValidationError(f"Antenna {reader} already exists.")
        antenna = Antenna(ReaderID=reader, RoomID=room_id, CreatedDate=datetime.now())
        session.add(antenna)
        session.flush()
        log_audit(session, "Antenna", reader, "AddAntenna", f"Room {room_id}")
        return antenna

    antenna = run_in_transaction(db, _work, label="antenna addition")
    INVENTORY_LOGGER.info("Added antenna reader=%s room=%s", reader, room_id)
    return antenna


def update_room(db: Session, room_id: int, *, room_number: str | None = None, description=_UNCHANGED) -> Room:
    number = _clean_name(room_number, "Room number") if room_number is not None else None

    def _work(session: Session) -> Room:
        room = session.get(Room, room_id)
        if not room:
            raise NotFoundError("Room", room_id)
        changes = []
        if number is not None and number != room.RoomNumber:
            clash = session.execute(
                select(Room).where(Room.RoomNumber == number).where(Room.RoomID != room_id)
            ).scalars().first()
            if clash:
                raise ValidationError(f"Room {number} already exists.")
            changes.append(f"RoomNumber {room.RoomNumber}->{number}")
            room.RoomNumber = number
        if description is not _UNCHANGED and description != room.Description:
            changes.append("Description updated")
            room.Description = description
        if changes:
            log_audit(session, "Room", room_id, "UpdateRoom", "; ".join(changes))
        return room

    return run_in_transaction(db, _work, label="room update")


def remove_room(db: Session, room_id: int) -> None:
    """Delete a room that no antenna points at; it stops being a home room for any unit."""

    def _work(session: Session) -> None:
        room = session.get(Room, room_id)
        if not room:
            raise NotFoundError("Room", room_id)
        antenna_count = session.execute(select(func.count(Antenna.ReaderID)).where(Antenna.RoomID == room_id)).scalar()
        if antenna_count:
            raise ValidationError(f"Room {room.RoomNumber} still has antennas and cannot be removed.")
        session.execute(delete(EquipmentHome).where(EquipmentHome.RoomID == room_id))
        log_audit(session, "Room", room_id, "RemoveRoom", room.RoomNumber)
        session.delete(room)

    run_in_transaction(db, _work, label="room removal")
    INVENTORY_LOGGER.info("Removed room id=%s", room_id)


def _antenna_in_use(session: Session, reader_id: str) -> bool:
    scans = session.execute(select(func.count(ScanEvent.ScanEventID)).where(ScanEvent.ReaderID == reader_id)).scalar()
    located = session.execute(
        select(func.count(EquipmentUnit.SerialID)).where(EquipmentUnit.CurrentRoomReaderID == reader_id)
    ).scalar()
    return bool(scans or located)


def update_antenna(
    db: Session,
    reader_id: str,
    *,
    new_reader_id: str | None = None,
    room_id: int | None = None,
) -> Antenna:
    """Move an antenna to another room, or rename it.

    Scan history names readers by id, so an antenna that has recorded scans
    can be moved but not renamed.
    """
    reader = _clean_name(reader_id, "Reader id")
    new_reader = _clean_name(new_reader_id, "Reader id") if new_reader_id is not None else None

    def _work(session: Session) -> Antenna:
        antenna = session.get(Antenna, reader)
        if not antenna:
            raise NotFoundError("Antenna", reader)
        target_room = antenna.RoomID if room_id is None else room_id
        if not session.get(Room, target_room):
            raise NotFoundError("Room", target_room)

        changes = []
        if new_reader is not None and new_reader != reader:
            if session.get(Antenna, new_reader):
                raise ValidationError(f"Antenna {new_reader} already exists.")
            if _antenna_in_use(session, reader):
                raise ValidationError(f"Antenna {reader} has scan history and cannot be renamed.")
            created = antenna.CreatedDate
            session.delete(antenna)
            session.flush()
            antenna = Antenna(ReaderID=new_reader, RoomID=target_room, CreatedDate=created)
            session.add(antenna)
            changes.append(f"ReaderID {reader}->{new_reader}")
        if antenna.RoomID != target_room:
            changes.append(f"Room {antenna.RoomID}->{target_room}")
            antenna.RoomID = target_room
        session.flush()
        if changes:
            log_audit(session, "Antenna", antenna.ReaderID, "UpdateAntenna", "; ".join(changes))
        return antenna

    antenna = run_in_transaction(db, _work, label="antenna update")
    INVENTORY_LOGGER.info("Updated antenna reader=%s room=%s", antenna.ReaderID, antenna.RoomID)
    return antenna


def remove_antenna(db: Session, reader_id: str) -> None:
    reader = _clean_name(reader_id, "Reader id")

    def _work(session: Session) -> None:
        antenna = session.get(Antenna, reader)
        if not antenna:
            raise NotFoundError("Antenna", reader)
        if _antenna_in_use(session, reader):
            raise ValidationError(f"Antenna {reader} has scan history and cannot be removed.")
        log_audit(session, "Antenna", reader, "RemoveAntenna", f"Room {antenna.RoomID}")
        session.delete(antenna)

    run_in_transaction(db, _work, label="antenna removal")
    INVENTORY_LOGGER.info("Removed antenna reader=%s", reader)


def add_equipment_unit(
    db: Session,
    serial_id: str,
    model_id: int,
    type_id: int,
    *,
    maintenance_status: str = "Ready",
    usage_condition: str = "New",
    home_room_ids: Iterable[int] = (),
    purchase_cost: float | None = None,
    purchase_date: date | None = None,
    assign_tag: bool = False,
) -> EquipmentUnit:
    serial = _clean_name(serial_id, "Serial id")
    _check_choice(maintenance_status, MAINTENANCE_STATUSES, "Maintenance status")
    _check_choice(usage_condition, USAGE_CONDITIONS, "Usage condition")
    home_ids = list(home_room_ids or [])

    def _work(session: Session) -> EquipmentUnit:
        model = get_model_or_404(session, model_id, type_id)
        if session.get(EquipmentUnit, serial):
            raise ValidationError(f"Equipment {serial} already exists.")
        now = datetime.now()
        unit = EquipmentUnit(
            SerialID=serial,
            ModelID=model.ModelID,
            TypeID=model.TypeID,
            MaintenanceStatus=maintenance_status,
            UsageCondition=usage_condition,
            PurchaseCost=purchase_cost,
            PurchaseDate=purchase_date,
            CreatedDate=now,
            UpdatedDate=now,
        )
        for room in _resolve_rooms(session, home_ids):
            unit.Homes.append(EquipmentHome(RoomID=room.RoomID))
        if assign_tag:
            unit.TagID = next_available_tag(session, "Equipment")
        session.add(unit)
        session.flush()
        log_audit(session, "EquipmentUnit", serial, "AddEquipment", f"Model {model.ModelID}; tag {unit.TagID or '-'}")
        return unit

    unit = run_in_transaction(db, _work, label="equipment addition")
    INVENTORY_LOGGER.info("Added equipment serial=%s model=%s tag=%s", serial, model_id, unit.TagID)
    return unit


def update_equipment_unit(
    db: Session,
    serial_id: str,
    *,
    maintenance_status: str | None = None,
    usage_condition: str | None = None,
    home_room_ids: Iterable[int] | None = None,
) -> EquipmentUnit:
    _check_choice(maintenance_status, MAINTENANCE_STATUSES, "Maintenance status")
    _check_choice(usage_condition, USAGE_CONDITIONS, "Usage condition")

    def _work(session: Session) -> EquipmentUnit:
        unit = _lock_unit_under_model(session, serial_id)
        changes = []
        if maintenance_status is not None and maintenance_status != unit.MaintenanceStatus:
            if unit.MaintenanceStatus == "Ready":
                _ensure_ready_units_cover_bookings(session, unit.ModelID, unit.SerialID, "taken out of service")
            changes.append(f"MaintenanceStatus {unit.MaintenanceStatus}->{maintenance_status}")
            unit.MaintenanceStatus = maintenance_status
        if usage_condition is not None and usage_condition != unit.UsageCondition:
            changes.append(f"UsageCondition {unit.UsageCondition}->{usage_condition}")
            unit.UsageCondition = usage_condition
        if home_room_ids is not None:
            rooms = _resolve_rooms(session, home_room_ids)
            unit.Homes.clear()
            session.flush()
            for room in rooms:
                unit.Homes.append(EquipmentHome(RoomID=room.RoomID))
            changes.append(f"Homes={[room.RoomNumber for room in rooms]}")
        unit.UpdatedDate = datetime.now()
        if changes:
            log_audit(session, "EquipmentUnit", unit.SerialID, "UpdateEquipment", "; ".join(changes))
        return unit

    unit = run_in_transaction(db, _work, label="equipment update")
    INVENTORY_LOGGER.info("Updated equipment serial=%s", serial_id)
    return unit


def remove_equipment_unit(db: Session, serial_id: str) -> None:
    """Delete a unit and free its tag id.

    A Ready unit may only go when the remaining Ready units still cover every
    booking of its model that has not ended yet.
    """

    def _work(session: Session) -> None:
        unit = _lock_unit_under_model(session, serial_id)
        if unit.MaintenanceStatus == "Ready":
            _ensure_ready_units_cover_bookings(session, unit.ModelID, unit.SerialID, "removed")
        log_audit(session, "EquipmentUnit", unit.SerialID, "RemoveEquipment", f"Model {unit.ModelID}; tag {unit.TagID or '-'}")
        session.delete(unit)

    run_in_transaction(db, _work, label="equipment removal")
    INVENTORY_LOGGER.info("Removed equipment serial=%s", serial_id)


def serialize_type(equipment_type: EquipmentType) -> dict:
    return {
        "typeID": equipment_type.TypeID,
        "typeName": equipment_type.TypeName,
    }


def serialize_model(model: EquipmentModel) -> dict:
    return {
        "modelID": model.ModelID,
        "typeID": model.TypeID,
        "modelName": model.ModelName,
        "photoRef": model.PhotoRef,
    }


def serialize_unit(unit: EquipmentUnit) -> dict:
    current_room = None
    if unit.CurrentAntenna and unit.CurrentAntenna.Room:
        current_room = unit.CurrentAntenna.Room.RoomNumber
    return {
        "serialID": unit.SerialID,
        "modelID": unit.ModelID,
        "typeID": unit.TypeID,
        "maintenanceStatus": unit.MaintenanceStatus,
        "usageCondition": unit.UsageCondition,
        "purchaseCost": unit.PurchaseCost,
        "purchaseDate": unit.PurchaseDate,
        "tagID": unit.TagID,
        "currentReaderID": unit.CurrentRoomReaderID,
        "currentRoom": current_room,
        "homeRooms": sorted(home.Room.RoomNumber for home in unit.Homes if home.Room),
    }


def serialize_antenna(antenna: Antenna) -> dict:
    return {
        "readerID": antenna.ReaderID,
        "roomID": antenna.RoomID,
    }


def serialize_room(room: Room) -> dict:
    return {
        "roomID": room.RoomID,
        "roomNumber": room.RoomNumber,
        "description": room.Description,
    }
