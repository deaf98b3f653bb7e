from collections.abc import Generator

from .session import SessionLocalCheckout


def get_db() -> Generator:
    db = SessionLocalCheckout()
    try:
        yield db
    finally:
        db.close()
