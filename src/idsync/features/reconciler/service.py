from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from idsync.core.errors import StorageUnavailable
from idsync.core.logging import get_logger, short_id
from idsync.features.identity.service import IdentityProvider
from idsync.features.slots.service import DurableSlot


@dataclass(frozen=True)
class LegacySlot:
    slot: DurableSlot
    adopt: bool = True

    @property
    def label(self) -> str:
        return self.slot.label


@dataclass
class ReconcilerContext:
    """
    Per-process reconciliation state.

    Lifecycle: created once at process start, filled by the first
    `reconcile()`, read by every later call. `reset()` is for tests only.
    """

    resolved_id: str | None = None
    source: str | None = None  # slot label the id was adopted from, or "generated"

    @property
    def is_resolved(self) -> bool:
        return self.resolved_id is not None

    def reset(self) -> None:
        self.resolved_id = None
        self.source = None


class IdentityReconciler:
    """
    Collapses every visitor-scoped identifier source into the canonical id.

    Adoption order (first non-empty wins):
      1. canonical primary slot
      2. canonical backup slot (copied into primary)
      3. adoptable legacy slots, in the given order
      4. a freshly minted id from the provider

    The resolved id is then written into the canonical slots and every legacy
    slot. A legacy value about to be overwritten is first stashed under
    `<key>_pre_migration`, once.

    Two legacy slots holding different values: the earlier one wins, no warning.
    """

    def __init__(
        self,
        *,
        provider: IdentityProvider,
        legacy: Sequence[LegacySlot],
        context: ReconcilerContext | None = None,
    ) -> None:
        self.provider = provider
        self.legacy = tuple(legacy)
        self.context = context or ReconcilerContext()
        self._logger = get_logger(__name__)

    # ----------------------------
    # Public API
    # ----------------------------
    def reconcile(self) -> str:
        if self.context.resolved_id is not None:
            return self.context.resolved_id

        try:
            canonical, source = self._adopt()
            self._write_back(canonical)
        except Exception:
            self._logger.warning(
                "reconcile_failed",
                extra={"feature": "reconciler", "reason": "fallback_generate"},
                exc_info=True,
            )
            canonical, source = self.provider.get_id(), "fallback"

        # Concurrent startup path may have resolved meanwhile; first one wins.
        if self.context.resolved_id is not None:
            return self.context.resolved_id

        self.context.resolved_id = canonical
        self.context.source = source
        self._logger.info(
            "identity_reconciled",
            extra={"feature": "reconciler", "slot": source, "profile_id": short_id(canonical)},
        )
        return canonical

    def rollback(self) -> list[str]:
        """
        Emergency only: restore legacy slots from their shadows.
        Canonical slots are left alone.
        """
        now = self._now()
        restored: list[str] = []
        for legacy in self.legacy:
            try:
                previous = legacy.slot.shadow().read(now)
                if previous:
                    legacy.slot.write(previous, now)
                    restored.append(legacy.label)
            except StorageUnavailable:
                self._logger.warning(
                    "rollback_failed", extra={"feature": "reconciler", "slot": legacy.label}
                )
        self._logger.info(
            "identity_rolled_back", extra={"feature": "reconciler", "slot": ",".join(restored)}
        )
        return restored

    def pre_migration_values(self) -> dict[str, str | None]:
        now = self._now()
        result: dict[str, str | None] = {}
        for legacy in self.legacy:
            try:
                result[legacy.label] = legacy.slot.shadow().read(now)
            except StorageUnavailable:
                result[legacy.label] = None
        return result

    # ----------------------------
    # Internal helpers
    # ----------------------------
    def _now(self) -> datetime:
        return self.provider.clock.now()

    def _adopt(self) -> tuple[str, str]:
        existing = self.provider.find_existing()
        if existing is not None:
            return existing, "canonical"

        now = self._now()
        for legacy in self.legacy:
            if not legacy.adopt:
                continue
            try:
                value = legacy.slot.read(now)
            except StorageUnavailable:
                continue
            if value:
                return value, legacy.label

        return self.provider.get_id(), "generated"

    def _write_back(self, canonical: str) -> None:
        self.provider.persist(canonical)

        now = self._now()
        for legacy in self.legacy:
            try:
                current = legacy.slot.read(now)
                if current and current != canonical:
                    shadow = legacy.slot.shadow()
                    if shadow.read(now) is None:
                        shadow.write(current, now)
                        self._logger.info(
                            "legacy_stashed",
                            extra={"feature": "reconciler", "slot": legacy.label},
                        )
                legacy.slot.write(canonical, now)
            except StorageUnavailable:
                self._logger.warning(
                    "legacy_write_failed", extra={"feature": "reconciler", "slot": legacy.label}
                )
