import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _install_sqlite_write_lock(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, so a read-then-insert
    # sequence would not be serialized. Take the writer lock up front.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(db_url: str) -> Engine:
    if db_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 15}}
        if ":memory:" in db_url or db_url.rstrip("/") in {"sqlite:", "sqlite+pysqlite:"}:
            kwargs["poolclass"] = StaticPool
        engine = create_engine(db_url, future=True, **kwargs)
        _install_sqlite_write_lock(engine)
        return engine

    return create_engine(
        db_url,
        pool_pre_ping=True,
        future=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


TOOL_CHECKOUT_DB_URL = _require_env("TOOL_CHECKOUT_DB_URL")

engine_checkout = build_engine(TOOL_CHECKOUT_DB_URL)

SessionLocalCheckout = build_session_factory(engine_checkout)
