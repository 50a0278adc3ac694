"""Common helpers for storage repositories."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import Table, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

# Timestamps are bound as naive UTC, so the session must read them as UTC.
POSTGRES_CONNECT_ARGS = {"options": "-c timezone=UTC"}


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Normalize to naive UTC, the representation stored in every timestamp column."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def optional_utc_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware(value) if value is not None else None


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def build_engine(
    database_url: str,
    *,
    busy_timeout_ms: int = 5000,
    pool_size: int = 5,
    pool_timeout_seconds: float = 30.0,
) -> Engine:
    """Build the shared SQLAlchemy engine; its pool backs every repository."""

    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        return build_sqlite_engine(db_url=database_url, busy_timeout_ms=busy_timeout_ms)
    return create_engine(
        database_url,
        connect_args=POSTGRES_CONNECT_ARGS,
        pool_size=pool_size,
        pool_timeout=pool_timeout_seconds,
        pool_pre_ping=True,
    )


def build_sqlite_engine(*, db_url: str, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""

    engine = create_engine(
        db_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def upsert_statement(dialect_name: str, table: Table) -> postgresql.Insert | sqlite.Insert:
    """Dialect insert supporting ``on_conflict_do_update``."""

    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise ValueError(f"Unsupported database dialect for upserts: {dialect_name}")
