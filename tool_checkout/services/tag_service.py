"""RFID tag id allocation over two disjoint 12-bit namespaces.

Ids are stored as 4 uppercase hex characters. ``next_available_tag`` scans
every assigned id in the namespace on each call, so it is O(n) in the
namespace size (4096). The scan is advisory: the UNIQUE constraint on the
TagID columns is what rejects a second concurrent writer, and the
assignment is then re-run with a fresh scan.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.transaction import run_in_transaction
from models.inventory_models import CheckoutUser, EquipmentModel, EquipmentType, EquipmentUnit
from services.audit_service import log_audit
from services.errors import NotFoundError, TagNamespaceExhausted, ValidationError
from services.user_service import format_display_name, get_user_or_404

TAG_LOGGER = logging.getLogger("tool_checkout.tags")

TAG_NAMESPACES = {
    "Equipment": range(0, 4096),
    "Student": range(4096, 8192),
}
NAMESPACE_ALIASES = {
    "equipment": "Equipment",
    "student": "Student",
    "user": "Student",
}
TAG_ASSIGN_ATTEMPTS = 3


def normalize_namespace(raw: str | None) -> str:
    namespace = NAMESPACE_ALIASES.get((raw or "").strip().lower())
    if not namespace:
        raise ValidationError("Tag namespace must be Equipment or Student.")
    return namespace


def encode_tag(value: int) -> str:
    return f"{value:04X}"


def decode_tag(tag_id: str | None) -> int | None:
    value = (tag_id or "").strip()
    if not value:
        return None
    try:
        return int(value, 16)
    except ValueError:
        return None


def normalize_tag(raw: str | None) -> str:
    value = decode_tag(raw)
    if value is None or value < 0 or value > 0xFFFF:
        raise ValidationError("Invalid tag id.")
    return encode_tag(value)


def _assigned_column(namespace: str):
    return EquipmentUnit.TagID if namespace == "Equipment" else CheckoutUser.TagID


def next_available_tag(db: Session, namespace: str) -> str:
    namespace = normalize_namespace(namespace)
    id_range = TAG_NAMESPACES[namespace]
    column = _assigned_column(namespace)

    assigned: set[int] = set()
    for raw in db.execute(select(column).where(column.is_not(None))).scalars().all():
        value = decode_tag(raw)
        if value is not None and value in id_range:
            assigned.add(value)

    for candidate in id_range:
        if candidate not in assigned:
            return encode_tag(candidate)
    raise TagNamespaceExhausted(namespace)


def assign_equipment_tag(db: Session, serial_id: str, *, attempts: int = TAG_ASSIGN_ATTEMPTS) -> str:
    def _work(session: Session) -> str:
        unit = session.execute(
            select(EquipmentUnit).where(EquipmentUnit.SerialID == serial_id.strip()).with_for_update()
        ).scalars().first()
        if not unit:
            raise NotFoundError("Equipment", serial_id)
        if unit.TagID:
            raise ValidationError(f"Equipment {unit.SerialID} already has tag {unit.TagID}.")
        unit.TagID = next_available_tag(session, "Equipment")
        unit.UpdatedDate = datetime.now()
        session.flush()
        log_audit(session, "EquipmentUnit", unit.SerialID, "AssignTag", f"Tag {unit.TagID}")
        return unit.TagID

    tag_id = run_in_transaction(db, _work, attempts=attempts, label="equipment tag assignment")
    TAG_LOGGER.info("Assigned equipment tag serial=%s tag=%s", serial_id, tag_id)
    return tag_id


def assign_user_tag(db: Session, school_id: str, *, attempts: int = TAG_ASSIGN_ATTEMPTS) -> str:
    def _work(session: Session) -> str:
        user = get_user_or_404(session, school_id, for_update=True)
        if user.TagID:
            raise ValidationError(f"User {user.SchoolID} already has tag {user.TagID}.")
        user.TagID = next_available_tag(session, "Student")
        session.flush()
        log_audit(session, "CheckoutUser", user.SchoolID, "AssignTag", f"Tag {user.TagID}", user_id=user.SchoolID)
        return user.TagID

    tag_id = run_in_transaction(db, _work, attempts=attempts, label="user tag assignment")
    TAG_LOGGER.info("Assigned user tag school_id=%s tag=%s", school_id, tag_id)
    return tag_id


def _next_or_none(db: Session, namespace: str) -> str | None:
    try:
        return next_available_tag(db, namespace)
    except TagNamespaceExhausted:
        return None


def tag_overview(db: Session) -> dict:
    equipment_rows = db.execute(
        select(EquipmentType.TypeName, EquipmentModel.ModelName, EquipmentUnit.SerialID, EquipmentUnit.TagID)
        .join(EquipmentModel, EquipmentModel.ModelID == EquipmentUnit.ModelID)
        .join(EquipmentType, EquipmentType.TypeID == EquipmentModel.TypeID)
        .where(EquipmentUnit.TagID.is_not(None))
        .order_by(EquipmentType.TypeName, EquipmentModel.ModelName, EquipmentUnit.SerialID)
    ).all()
    users = db.execute(
        select(CheckoutUser)
        .where(CheckoutUser.TagID.is_not(None))
        .order_by(CheckoutUser.LastName, CheckoutUser.FirstName)
    ).scalars().all()

    return {
        "availableEquipmentTagID": _next_or_none(db, "Equipment"),
        "availableUserTagID": _next_or_none(db, "Student"),
        "equipment": [
            {"typeName": type_name, "modelName": model_name, "serialID": serial_id, "tagID": tag_id}
            for type_name, model_name, serial_id, tag_id in equipment_rows
        ],
        "users": [
            {"schoolID": user.SchoolID, "displayName": format_display_name(user), "tagID": user.TagID}
            for user in users
        ],
    }
