from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.inventory_models import USER_ROLES, CheckoutUser
from services.errors import NotFoundError, ValidationError

DEFAULT_ROLE = "Student"
STAFF_ROLES = {"Faculty", "Admin"}


def _normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip()
    if role in USER_ROLES:
        return role
    return DEFAULT_ROLE


def _normalize_school_id(raw: str | int | None) -> str:
    value = str(raw if raw is not None else "").strip()
    if not value or not value.isdigit():
        raise ValidationError("Invalid school id.")
    return value


def get_user_or_404(db: Session, school_id: str | int, *, for_update: bool = False) -> CheckoutUser:
    normalized = _normalize_school_id(school_id)
    stmt = select(CheckoutUser).where(CheckoutUser.SchoolID == normalized)
    if for_update:
        stmt = stmt.with_for_update()
    user = db.execute(stmt).scalars().first()
    if not user:
        raise NotFoundError("User", normalized)
    return user


def is_staff(user: CheckoutUser) -> bool:
    return _normalize_role(user.UserRole) in STAFF_ROLES


def format_display_name(user: CheckoutUser) -> str:
    name = f"{user.LastName}, {user.FirstName}"
    if user.MiddleName:
        name = f"{name} {user.MiddleName}"
    return name


def register_user(
    db: Session,
    school_id: str | int,
    first_name: str,
    last_name: str,
    middle_name: str | None = None,
    email_address: str | None = None,
    role: str | None = None,
) -> CheckoutUser:
    normalized = _normalize_school_id(school_id)
    if db.get(CheckoutUser, normalized):
        raise ValidationError(f"User {normalized} already exists.")
    if role is not None and role not in USER_ROLES:
        raise ValidationError(f"Role must be one of: {', '.join(USER_ROLES)}.")
    user = CheckoutUser(
        SchoolID=normalized,
        FirstName=(first_name or "").strip(),
        MiddleName=(middle_name or "").strip() or None,
        LastName=(last_name or "").strip(),
        EmailAddress=(email_address or "").strip() or None,
        UserRole=_normalize_role(role),
    )
    if not user.FirstName or not user.LastName:
        raise ValidationError("First name and last name are required.")
    db.add(user)
    return user


def serialize_user(user: CheckoutUser) -> dict:
    return {
        "schoolID": user.SchoolID,
        "firstName": user.FirstName,
        "middleName": user.MiddleName,
        "lastName": user.LastName,
        "displayName": format_display_name(user),
        "emailAddress": user.EmailAddress,
        "role": user.UserRole,
        "tagID": user.TagID,
    }
