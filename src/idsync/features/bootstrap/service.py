from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from idsync.core.config import IdentityConfig, IdsyncConfig
from idsync.core.ids import TokenFactory
from idsync.core.logging import get_logger
from idsync.core.types import Clock, SystemClock
from idsync.features.identity.service import IdentityProvider
from idsync.features.merge.service import SessionMergeEngine
from idsync.features.persistence.duckdb_adapter import DuckDBAdapter
from idsync.features.persistence.service import SessionRecordService
from idsync.features.reconciler.service import IdentityReconciler, LegacySlot, ReconcilerContext
from idsync.features.session_sync.service import JwtAuthenticator, SessionSyncService
from idsync.features.slots.service import DuckDBSlotStore, SlotStore, build_slot


@dataclass
class AppServices:
    cfg: IdsyncConfig
    adapter: DuckDBAdapter
    sessions: SessionRecordService
    engine: SessionMergeEngine
    authenticator: JwtAuthenticator
    sync: SessionSyncService
    slot_stores: dict[str, SlotStore]
    provider: IdentityProvider
    reconciler: IdentityReconciler

    def close(self) -> None:
        self.adapter.close()


def store_names(cfg: IdentityConfig) -> list[str]:
    names = [cfg.primary.store, cfg.backup.store] + [s.store for s in cfg.legacy]
    return sorted(set(names))


def build_identity(
    cfg: IdentityConfig,
    stores: Mapping[str, SlotStore],
    *,
    clock: Clock | None = None,
    tokens: TokenFactory | None = None,
    context: ReconcilerContext | None = None,
) -> tuple[IdentityProvider, IdentityReconciler]:
    """
    Wire provider + reconciler over already-built slot stores.
    Primary before backup; legacy slots keep their configured order.
    """
    stores = dict(stores)
    provider = IdentityProvider(
        slots=[
            build_slot(stores, store=c.store, key=c.key, ttl_days=c.ttl_days)
            for c in (cfg.primary, cfg.backup)
        ],
        tokens=tokens,
        clock=clock,
    )
    legacy = [
        LegacySlot(
            slot=build_slot(stores, store=c.store, key=c.key, ttl_days=c.ttl_days),
            adopt=c.adopt,
        )
        for c in cfg.legacy
    ]
    reconciler = IdentityReconciler(provider=provider, legacy=legacy, context=context)
    return provider, reconciler


def bootstrap_services(
    cfg: IdsyncConfig,
    *,
    clock: Clock | None = None,
    tokens: TokenFactory | None = None,
    context: ReconcilerContext | None = None,
) -> AppServices:
    logger = get_logger("idsync", cfg.logging.level)
    clock = clock or SystemClock()

    # ----- cold storage -----
    adapter = DuckDBAdapter(path=cfg.storage.duckdb_path, clean_slate=cfg.storage.clean_slate)
    adapter.open()
    sessions = SessionRecordService(adapter=adapter)

    # ----- identity -----
    slot_stores: dict[str, SlotStore] = {
        name: DuckDBSlotStore(adapter, name) for name in store_names(cfg.identity)
    }
    provider, reconciler = build_identity(
        cfg.identity, slot_stores, clock=clock, tokens=tokens, context=context
    )

    # ----- session sync -----
    engine = SessionMergeEngine(cfg.merge)
    authenticator = JwtAuthenticator(cfg.auth)
    sync = SessionSyncService(
        store=sessions,
        engine=engine,
        authenticator=authenticator,
        cfg=cfg.sync,
        clock=clock,
    )

    if not cfg.auth.jwt_secret:
        logger.warning("auth.jwt_secret not set; every sync request will be rejected")
    logger.info("services ready", extra={"feature": "bootstrap", "slot": ",".join(slot_stores)})

    return AppServices(
        cfg=cfg,
        adapter=adapter,
        sessions=sessions,
        engine=engine,
        authenticator=authenticator,
        sync=sync,
        slot_stores=slot_stores,
        provider=provider,
        reconciler=reconciler,
    )
