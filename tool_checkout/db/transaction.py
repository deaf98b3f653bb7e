from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from services.errors import ConflictError, InventoryError, StorageError

DB_LOGGER = logging.getLogger("tool_checkout.db")

T = TypeVar("T")

# serialization_failure, deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}
# unique_violation
_UNIQUE_VIOLATION_SQLSTATE = "23505"
_UNIQUE_VIOLATION_MARKERS = ("unique constraint failed", "duplicate entry", "duplicate key value")


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def is_unique_violation(exc: IntegrityError) -> bool:
    if _sqlstate(exc) == _UNIQUE_VIOLATION_SQLSTATE:
        return True
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in _UNIQUE_VIOLATION_MARKERS)


def is_conflict(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, IntegrityError):
        return is_unique_violation(exc)
    if isinstance(exc, DBAPIError) and _sqlstate(exc) in _RETRYABLE_SQLSTATES:
        return True
    if isinstance(exc, OperationalError) and "database is locked" in str(exc.orig).lower():
        return True
    return False


def run_in_transaction(
    db: Session,
    work: Callable[[Session], T],
    *,
    attempts: int = 3,
    label: str = "transaction",
) -> T:
    """Run ``work`` and commit, retrying when a concurrent writer conflicts.

    Validation failures roll back and propagate on the first attempt. Lock,
    serialization and unique-constraint failures (a racing insert of the same
    key) roll back and re-run
    ``work`` from scratch, so it must re-read everything it validates.
    """
    attempts = max(1, int(attempts))
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            result = work(db)
            db.commit()
            return result
        except ConflictError as exc:
            db.rollback()
            last_error = exc
        except InventoryError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            if not is_conflict(exc):
                DB_LOGGER.exception("Storage failure during %s", label)
                raise StorageError(f"Storage failure during {label}.") from exc
            last_error = exc
        DB_LOGGER.warning("Conflict during %s attempt=%s/%s: %s", label, attempt, attempts, last_error)

    raise ConflictError(f"Could not complete {label} because of concurrent updates. Please try again.") from last_error
