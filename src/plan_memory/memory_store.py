"""Namespaced key-value memory persisted in the ``memory_store`` table."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import or_
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from plan_memory.errors import translate_store_errors
from plan_memory.models import MemoryItem
from plan_memory.storage.common import (
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    upsert_statement,
    utc_now,
)
from plan_memory.storage.sqlmodel_models import MemoryStoreEntry

logger = logging.getLogger(__name__)

_TABLE = MemoryStoreEntry.__table__  # type: ignore[attr-defined]


class NamespacedStore:
    """Durable key-value store keyed by ``(namespace path, key)`` with optional TTL.

    Writes are upserts and the last committed write wins; there is no
    version token. Expired items read as missing and are removed lazily by
    ``delete_expired``.
    """

    durable = True

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def put(
        self,
        namespace: Sequence[str],
        key: str,
        value: Any,
        *,
        expires_in: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Insert or overwrite one item."""

        with translate_store_errors("memory_store.put"), Session(self.engine) as session:
            session.exec(self._upsert(session, namespace, key, value, expires_in, metadata))
            session.commit()
        logger.debug("memory_store put ns=%s key=%s", list(namespace), key)

    def put_many(
        self,
        namespace: Sequence[str],
        items: Iterable[tuple[str, Any]],
        *,
        expires_in: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Write several items of one namespace in a single transaction."""

        written = 0
        with translate_store_errors("memory_store.put_many"), Session(self.engine) as session:
            try:
                for key, value in items:
                    session.exec(
                        self._upsert(session, namespace, key, value, expires_in, metadata),
                    )
                    written += 1
                session.commit()
            except Exception:
                session.rollback()
                raise
        return written

    def get(self, namespace: Sequence[str], key: str) -> MemoryItem | None:
        """Return the live item or ``None`` when missing or expired."""

        now = to_db_datetime(self._clock())
        with translate_store_errors("memory_store.get"), Session(self.engine) as session:
            row = session.exec(
                select(MemoryStoreEntry).where(
                    MemoryStoreEntry.namespace_path == _encode_namespace(namespace),
                    MemoryStoreEntry.key == key,
                    _not_expired(now),
                ),
            ).one_or_none()
        return _to_item(row) if row is not None else None

    def get_value(self, namespace: Sequence[str], key: str, default: Any = None) -> Any:
        item = self.get(namespace, key)
        return item.value if item is not None else default

    def list(
        self,
        namespace: Sequence[str],
        *,
        prefix: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[MemoryItem]:
        """List live items, most recently updated first."""

        now = to_db_datetime(self._clock())
        statement = (
            select(MemoryStoreEntry)
            .where(
                MemoryStoreEntry.namespace_path == _encode_namespace(namespace),
                _not_expired(now),
            )
            .order_by(col(MemoryStoreEntry.updated_at).desc(), col(MemoryStoreEntry.id).desc())
        )
        if prefix:
            statement = statement.where(col(MemoryStoreEntry.key).startswith(prefix, autoescape=True))
        if limit is not None:
            statement = statement.limit(limit)
        if offset is not None:
            statement = statement.offset(offset)
        with translate_store_errors("memory_store.list"), Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_item(row) for row in rows]

    def delete(self, namespace: Sequence[str], key: str) -> bool:
        with translate_store_errors("memory_store.delete"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(MemoryStoreEntry).where(
                    col(MemoryStoreEntry.namespace_path) == _encode_namespace(namespace),
                    col(MemoryStoreEntry.key) == key,
                ),
            )
            session.commit()
        return result.rowcount > 0

    def delete_expired(self) -> int:
        """Physically remove expired items, returning how many were dropped."""

        now = to_db_datetime(self._clock())
        with translate_store_errors("memory_store.delete_expired"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(MemoryStoreEntry).where(
                    col(MemoryStoreEntry.expires_at).is_not(None),
                    col(MemoryStoreEntry.expires_at) <= now,
                ),
            )
            session.commit()
        if result.rowcount:
            logger.info("Removed %d expired memory item(s)", result.rowcount)
        return result.rowcount

    def _upsert(
        self,
        session: Session,
        namespace: Sequence[str],
        key: str,
        value: Any,
        expires_in: float | None,
        metadata: dict[str, Any] | None,
    ):
        now = self._clock()
        expires_at = None
        if expires_in is not None:
            expires_at = to_db_datetime(now + timedelta(seconds=expires_in))
        statement = upsert_statement(session.get_bind().dialect.name, _TABLE).values(
            {
                "namespace_path": _encode_namespace(namespace),
                "key": key,
                "value": value,
                "metadata": metadata or {},
                "expires_at": expires_at,
                "updated_at": to_db_datetime(now),
                "created_at": to_db_datetime(now),
            },
        )
        return statement.on_conflict_do_update(
            index_elements=["namespace_path", "key"],
            set_={
                "value": statement.excluded["value"],
                "metadata": statement.excluded["metadata"],
                "expires_at": statement.excluded["expires_at"],
                "updated_at": statement.excluded["updated_at"],
            },
        )


def _encode_namespace(namespace: Sequence[str]) -> str:
    if isinstance(namespace, str) or not namespace:
        raise ValueError(f"Namespace must be a non-empty sequence of strings, got {namespace!r}")
    parts = [str(part) for part in namespace]
    return json.dumps(parts, ensure_ascii=False, separators=(",", ":"))


def _not_expired(now: datetime):
    return or_(
        col(MemoryStoreEntry.expires_at).is_(None),
        col(MemoryStoreEntry.expires_at) > now,
    )


def _to_item(row: MemoryStoreEntry) -> MemoryItem:
    metadata = row.item_metadata if isinstance(row.item_metadata, dict) else {}
    return MemoryItem(
        key=row.key,
        value=row.value,
        metadata=metadata,
        expires_at=optional_utc_aware(row.expires_at),
        updated_at=to_utc_aware(row.updated_at),
    )
