"""Choosing between a caller-supplied memory store and the durable one."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any, Protocol

from plan_memory.models import MemoryItem
from plan_memory.storage.common import utc_now

logger = logging.getLogger(__name__)


class MemoryStoreHandle(Protocol):
    """Key-value store contract shared by the durable and process-local stores."""

    durable: bool

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

    def get(self, namespace: Sequence[str], key: str) -> MemoryItem | None:
        """Return the live item or ``None``."""

    def list(
        self,
        namespace: Sequence[str],
        *,
        prefix: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[MemoryItem]:
        """List live items, most recently updated first."""

    def delete(self, namespace: Sequence[str], key: str) -> bool:
        """Remove one item; ``False`` when nothing was stored."""


class InMemoryStore:
    """Process-local store; never visible to other workers."""

    durable = False

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._items: dict[tuple[tuple[str, ...], str], MemoryItem] = {}
        self._lock = threading.Lock()

    def put(
        self,
        namespace: Sequence[str],
        key: str,
        value: Any,
        *,
        expires_in: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        now = self._clock()
        item = MemoryItem(
            key=key,
            value=value,
            metadata=dict(metadata or {}),
            expires_at=now + timedelta(seconds=expires_in) if expires_in is not None else None,
            updated_at=now,
        )
        with self._lock:
            self._items[(tuple(namespace), key)] = item

    def get(self, namespace: Sequence[str], key: str) -> MemoryItem | None:
        with self._lock:
            item = self._items.get((tuple(namespace), key))
        if item is None or self._expired(item):
            return None
        return item

    def list(
        self,
        namespace: Sequence[str],
        *,
        prefix: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[MemoryItem]:
        scope = tuple(namespace)
        with self._lock:
            items = [
                item
                for (item_scope, key), item in self._items.items()
                if item_scope == scope
                and (not prefix or key.startswith(prefix))
                and not self._expired(item)
            ]
        items.sort(key=lambda item: item.updated_at or self._clock(), reverse=True)
        start = offset or 0
        return items[start : start + limit] if limit is not None else items[start:]

    def delete(self, namespace: Sequence[str], key: str) -> bool:
        with self._lock:
            return self._items.pop((tuple(namespace), key), None) is not None

    def delete_expired(self) -> int:
        with self._lock:
            expired = [slot for slot, item in self._items.items() if self._expired(item)]
            for slot in expired:
                del self._items[slot]
        return len(expired)

    def _expired(self, item: MemoryItem) -> bool:
        return item.expires_at is not None and item.expires_at <= self._clock()


class StoreResolver:
    """Route memory reads and writes to one authoritative store.

    The caller-supplied store wins unless it declares itself non-durable or
    ``force_durable`` is set. The choice is made once here. Reads only hit
    the authoritative store; writes marked ``shared`` are copied to the
    durable store as well whenever the authoritative one is not durable, so
    other workers can see them.
    """

    def __init__(
        self,
        durable_store: MemoryStoreHandle,
        supplied_store: MemoryStoreHandle | None = None,
        *,
        force_durable: bool = False,
    ) -> None:
        if not durable_store.durable:
            raise ValueError("durable_store must declare durable = True")
        self.durable_store = durable_store
        if supplied_store is None or force_durable or not supplied_store.durable:
            self.authoritative: MemoryStoreHandle = durable_store
        else:
            self.authoritative = supplied_store
        self.mirror_target: MemoryStoreHandle | None = (
            durable_store if self.authoritative is not durable_store else None
        )
        if supplied_store is not None and self.authoritative is durable_store:
            logger.debug(
                "Using durable memory store instead of supplied %s",
                type(supplied_store).__name__,
            )

    @property
    def uses_durable_store(self) -> bool:
        return self.authoritative is self.durable_store

    def get(self, namespace: Sequence[str], key: str) -> MemoryItem | None:
        return self.authoritative.get(namespace, key)

    def get_value(self, namespace: Sequence[str], key: str, default: Any = None) -> Any:
        item = self.authoritative.get(namespace, key)
        return item.value if item is not None else default

    def list(
        self,
        namespace: Sequence[str],
        *,
        prefix: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[MemoryItem]:
        return self.authoritative.list(namespace, prefix=prefix, limit=limit, offset=offset)

    def put(
        self,
        namespace: Sequence[str],
        key: str,
        value: Any,
        *,
        expires_in: float | None = None,
        metadata: dict[str, Any] | None = None,
        shared: bool = False,
    ) -> None:
        self.authoritative.put(namespace, key, value, expires_in=expires_in, metadata=metadata)
        if shared and self.mirror_target is not None:
            self.mirror_target.put(namespace, key, value, expires_in=expires_in, metadata=metadata)

    def delete(self, namespace: Sequence[str], key: str, *, shared: bool = False) -> bool:
        deleted = self.authoritative.delete(namespace, key)
        if shared and self.mirror_target is not None:
            deleted = self.mirror_target.delete(namespace, key) or deleted
        return deleted
