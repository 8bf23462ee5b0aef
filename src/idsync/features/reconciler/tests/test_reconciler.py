from __future__ import annotations

from datetime import UTC, datetime, timedelta

from idsync.core.config import IdentityConfig
from idsync.core.ids import TokenFactory
from idsync.core.types import ManualClock
from idsync.features.bootstrap.service import build_identity
from idsync.features.reconciler.service import ReconcilerContext
from idsync.features.slots.service import MemorySlotStore

T0 = datetime(2026, 1, 1, tzinfo=UTC)


class SeqTokens:
    def __init__(self) -> None:
        self._n = 0

    def __call__(self) -> str:
        self._n += 1
        return f"new_{self._n:06d}"


def _setup(stores=None, context=None):
    stores = stores or {"local": MemorySlotStore("local"), "cookie": MemorySlotStore("cookie")}
    clock = ManualClock(T0)
    provider, reconciler = build_identity(
        IdentityConfig(),
        stores,
        clock=clock,
        tokens=TokenFactory(SeqTokens()),
        context=context,
    )
    return provider, reconciler, stores["local"], stores["cookie"]


def _get(store, key):
    return store.get(key, now=T0)


def test_first_visit_generates_and_writes_everywhere():
    provider, reconciler, local, cookie = _setup()

    vid = reconciler.reconcile()

    assert vid == "new_000001"
    assert _get(local, "wte-anon-id") == vid
    assert _get(cookie, "wte_anon_id") == vid
    assert _get(local, "wm_client_id") == vid
    assert _get(local, "wm_vid") == vid
    assert _get(cookie, "wm_vid") == vid
    # nothing to stash on a fresh browser
    assert reconciler.pre_migration_values() == {
        "local/wm_client_id": None,
        "local/wm_vid": None,
        "cookie/wm_vid": None,
    }


def test_adopts_single_legacy_value():
    provider, reconciler, local, cookie = _setup()
    local.set("wm_vid", "legacy-vid", expires_at=None)

    vid = reconciler.reconcile()

    assert vid == "legacy-vid"
    assert provider.get_id() == "legacy-vid"
    assert reconciler.context.source == "local/wm_vid"
    assert provider.tokens.issued == 0


def test_legacy_priority_order_wins_silently():
    provider, reconciler, local, cookie = _setup()
    local.set("wm_client_id", "client-id", expires_at=None)
    local.set("wm_vid", "vid-id", expires_at=None)

    vid = reconciler.reconcile()

    assert vid == "client-id"
    assert _get(local, "wm_vid") == "client-id"
    assert _get(local, "wm_vid_pre_migration") == "vid-id"


def test_non_adoptable_legacy_slot_is_overwritten_but_not_adopted():
    provider, reconciler, local, cookie = _setup()
    cookie.set("wm_vid", "old-cookie", expires_at=None)

    vid = reconciler.reconcile()

    assert vid == "new_000001"
    assert _get(cookie, "wm_vid") == vid
    assert _get(cookie, "wm_vid_pre_migration") == "old-cookie"


def test_canonical_beats_legacy():
    provider, reconciler, local, cookie = _setup()
    local.set("wte-anon-id", "canonical", expires_at=None)
    local.set("wm_client_id", "legacy", expires_at=None)

    assert reconciler.reconcile() == "canonical"
    assert _get(local, "wm_client_id") == "canonical"
    assert _get(local, "wm_client_id_pre_migration") == "legacy"


def test_backup_is_copied_into_primary():
    provider, reconciler, local, cookie = _setup()
    cookie.set("wte_anon_id", "from-backup", expires_at=T0 + timedelta(days=10))

    assert reconciler.reconcile() == "from-backup"
    assert _get(local, "wte-anon-id") == "from-backup"


def test_shadow_written_at_most_once():
    ctx = ReconcilerContext()
    stores = {"local": MemorySlotStore("local"), "cookie": MemorySlotStore("cookie")}
    _, reconciler, local, _ = _setup(stores=stores, context=ctx)
    local.set("wte-anon-id", "canonical", expires_at=None)
    local.set("wm_vid", "first-legacy", expires_at=None)

    reconciler.reconcile()

    # a later scheme writes a new value into the legacy key
    local.set("wm_vid", "second-legacy", expires_at=None)
    ctx.reset()
    reconciler.reconcile()

    assert _get(local, "wm_vid") == "canonical"
    assert _get(local, "wm_vid_pre_migration") == "first-legacy"


def test_rollback_restores_legacy_only():
    provider, reconciler, local, cookie = _setup()
    local.set("wte-anon-id", "canonical", expires_at=None)
    local.set("wm_client_id", "old-client", expires_at=None)

    reconciler.reconcile()
    restored = reconciler.rollback()

    assert restored == ["local/wm_client_id"]
    assert _get(local, "wm_client_id") == "old-client"
    assert _get(local, "wte-anon-id") == "canonical"
    assert _get(cookie, "wte_anon_id") == "canonical"


def test_second_call_short_circuits():
    provider, reconciler, local, cookie = _setup()

    first = reconciler.reconcile()
    local.clear()
    cookie.clear()
    second = reconciler.reconcile()

    assert first == second
    assert local.keys() == []  # no second pass over storage
    assert reconciler.context.is_resolved


def test_context_reset_allows_fresh_run():
    ctx = ReconcilerContext()
    _, reconciler, local, cookie = _setup(context=ctx)

    first = reconciler.reconcile()
    local.clear()
    cookie.clear()
    ctx.reset()

    assert ctx.resolved_id is None
    assert reconciler.reconcile() != first


def test_storage_outage_falls_back_to_ephemeral_id():
    stores = {
        "local": MemorySlotStore("local", available=False),
        "cookie": MemorySlotStore("cookie", available=False),
    }
    provider, reconciler, _, _ = _setup(stores=stores)

    vid = reconciler.reconcile()

    assert vid == "new_000001"
    assert reconciler.pre_migration_values() == {
        "local/wm_client_id": None,
        "local/wm_vid": None,
        "cookie/wm_vid": None,
    }


def test_unexpected_error_falls_back_to_provider(monkeypatch):
    provider, reconciler, local, cookie = _setup()

    def boom():
        raise KeyError("corrupt state")

    monkeypatch.setattr(reconciler, "_adopt", boom)

    vid = reconciler.reconcile()

    assert vid == "new_000001"
    assert reconciler.context.source == "fallback"
    assert _get(local, "wte-anon-id") == vid
