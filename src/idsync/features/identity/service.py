from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from idsync.core.errors import StorageUnavailable
from idsync.core.ids import TokenFactory
from idsync.core.logging import get_logger, short_id
from idsync.core.types import Clock, SystemClock
from idsync.features.slots.service import DurableSlot


class IdentityProvider:
    """
    Canonical anonymous visitor id over an ordered list of durable slots
    (primary first, then backups).

    - The first slot holding a value wins and is copied into every other slot.
    - A new id is minted only when no slot holds one.
    - Storage failures never raise: if nothing can be persisted the id is
      ephemeral for that call.
    """

    def __init__(
        self,
        *,
        slots: Sequence[DurableSlot],
        tokens: TokenFactory | None = None,
        clock: Clock | None = None,
    ) -> None:
        if not slots:
            raise ValueError("IdentityProvider needs at least one slot")
        self.slots = tuple(slots)
        self.tokens = tokens or TokenFactory()
        self.clock = clock or SystemClock()
        self._logger = get_logger(__name__)

    @property
    def primary(self) -> DurableSlot:
        return self.slots[0]

    # ----------------------------
    # Public API
    # ----------------------------
    def get_id(self) -> str:
        existing = self.find_existing()
        if existing is not None:
            return existing

        new_id = self.tokens.next_id()
        written = self.persist(new_id)
        if written == 0:
            self._logger.warning(
                "identity_ephemeral",
                extra={"feature": "identity", "reason": "storage_unavailable"},
            )
        else:
            self._logger.info(
                "identity_created",
                extra={"feature": "identity", "profile_id": short_id(new_id)},
            )
        return new_id

    def has_id(self) -> bool:
        return self._lookup()[0] is not None

    def find_existing(self) -> str | None:
        """
        Lookup in priority order; on a hit, sync the value into every other slot.
        """
        value, found_at = self._lookup()
        if value is None:
            return None

        now = self.clock.now()
        for i, slot in enumerate(self.slots):
            if i == found_at:
                continue
            self._try_write(slot, value, now)

        if found_at > 0:
            self._logger.info(
                "identity_restored",
                extra={
                    "feature": "identity",
                    "slot": self.slots[found_at].label,
                    "profile_id": short_id(value),
                },
            )
        return value

    def persist(self, value: str) -> int:
        """Write `value` into every slot. Returns how many writes succeeded."""
        now = self.clock.now()
        return sum(1 for slot in self.slots if self._try_write(slot, value, now))

    # ----------------------------
    # Internal helpers
    # ----------------------------
    def _lookup(self) -> tuple[str | None, int]:
        now = self.clock.now()
        for i, slot in enumerate(self.slots):
            try:
                value = slot.read(now)
            except StorageUnavailable:
                self._logger.debug(
                    "slot_unreadable", extra={"feature": "identity", "slot": slot.label}
                )
                continue
            if value:
                return value, i
        return None, -1

    def _try_write(self, slot: DurableSlot, value: str, now: datetime) -> bool:
        try:
            slot.write(value, now)
        except StorageUnavailable:
            self._logger.warning(
                "slot_write_failed", extra={"feature": "identity", "slot": slot.label}
            )
            return False
        return True
