from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

import duckdb

from idsync.core.errors import StorageUnavailable
from idsync.core.types import ensure_utc
from idsync.features.persistence.duckdb_adapter import DuckDBAdapter

SHADOW_SUFFIX = "_pre_migration"


class SlotStore(Protocol):
    """
    Key/value backend behind one or more durable slots.
    Every failure surfaces as StorageUnavailable.
    """

    name: str

    def get(self, key: str, *, now: datetime) -> str | None: ...

    def set(self, key: str, value: str, *, expires_at: datetime | None) -> None: ...

    def delete(self, key: str) -> None: ...


@dataclass
class MemorySlotStore:
    """
    In-process store. `available=False` behaves like a browser with
    persistent storage blocked (every call raises).
    """

    name: str
    available: bool = True
    _items: dict[str, tuple[str, datetime | None]] = field(default_factory=dict, repr=False)

    def _check(self) -> None:
        if not self.available:
            raise StorageUnavailable(f"slot store {self.name!r} is unavailable")

    def get(self, key: str, *, now: datetime) -> str | None:
        self._check()
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= ensure_utc(now):
            del self._items[key]
            return None
        return value

    def set(self, key: str, value: str, *, expires_at: datetime | None) -> None:
        self._check()
        self._items[key] = (value, ensure_utc(expires_at) if expires_at is not None else None)

    def delete(self, key: str) -> None:
        self._check()
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()

    def keys(self) -> list[str]:
        return sorted(self._items)


class DuckDBSlotStore:
    """
    Slot store persisted in the identity_slots table, namespaced by store name.
    """

    def __init__(self, adapter: DuckDBAdapter, name: str) -> None:
        self.adapter = adapter
        self.name = name

    def get(self, key: str, *, now: datetime) -> str | None:
        try:
            row = self.adapter.get_slot(self.name, key)
        except (duckdb.Error, RuntimeError) as e:
            raise StorageUnavailable(f"slot store {self.name!r} read failed") from e
        if row is None:
            return None
        value, expires_at = row
        if expires_at is not None and expires_at <= ensure_utc(now):
            return None
        return value

    def set(self, key: str, value: str, *, expires_at: datetime | None) -> None:
        try:
            self.adapter.put_slot(self.name, key, value, expires_at)
        except (duckdb.Error, RuntimeError) as e:
            raise StorageUnavailable(f"slot store {self.name!r} write failed") from e

    def delete(self, key: str) -> None:
        try:
            self.adapter.delete_slot(self.name, key)
        except (duckdb.Error, RuntimeError) as e:
            raise StorageUnavailable(f"slot store {self.name!r} delete failed") from e


@dataclass(frozen=True)
class DurableSlot:
    store: SlotStore
    key: str
    ttl: timedelta | None = None

    @property
    def label(self) -> str:
        return f"{self.store.name}/{self.key}"

    def read(self, now: datetime) -> str | None:
        value = self.store.get(self.key, now=now)
        return value or None

    def write(self, value: str, now: datetime) -> None:
        expires_at = ensure_utc(now) + self.ttl if self.ttl is not None else None
        self.store.set(self.key, value, expires_at=expires_at)

    def clear(self) -> None:
        self.store.delete(self.key)

    def shadow(self) -> DurableSlot:
        """Rollback copy of this slot: `<key>_pre_migration` on the same store."""
        return DurableSlot(store=self.store, key=self.key + SHADOW_SUFFIX, ttl=self.ttl)


def ttl_from_days(days: float | None) -> timedelta | None:
    return timedelta(days=days) if days is not None else None


def build_slot(
    stores: dict[str, SlotStore],
    *,
    store: str,
    key: str,
    ttl_days: float | None,
) -> DurableSlot:
    if store not in stores:
        raise ValueError(f"Unknown slot store {store!r}; known={sorted(stores)}")
    return DurableSlot(store=stores[store], key=key, ttl=ttl_from_days(ttl_days))
