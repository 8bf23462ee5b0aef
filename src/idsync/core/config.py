from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

JWT_SECRET_ENV = "IDSYNC_JWT_SECRET"


@dataclass(frozen=True)
class SlotConfig:
    store: str
    key: str
    ttl_days: float | None = None


@dataclass(frozen=True)
class LegacySlotConfig:
    store: str
    key: str
    ttl_days: float | None = None
    adopt: bool = True  # False: written + shadowed, never adopted from


@dataclass(frozen=True)
class IdentityConfig:
    primary: SlotConfig = SlotConfig(store="local", key="wte-anon-id")
    backup: SlotConfig = SlotConfig(store="cookie", key="wte_anon_id", ttl_days=400.0)
    legacy: tuple[LegacySlotConfig, ...] = (
        LegacySlotConfig(store="local", key="wm_client_id"),
        LegacySlotConfig(store="local", key="wm_vid"),
        LegacySlotConfig(store="cookie", key="wm_vid", ttl_days=400.0, adopt=False),
    )
    # Never reconciled into the visitor id.
    session_scoped_keys: tuple[str, ...] = ("wm-session-id",)


@dataclass(frozen=True)
class MergeConfig:
    freshness_fields: frozenset[str] = frozenset({"lastVisit", "lastSeen"})
    max_depth: int = 16
    # incoming values nested deeper than this are dropped before merging
    max_value_depth: int = 64


@dataclass(frozen=True)
class SyncConfig:
    max_conflict_retries: int = 3


@dataclass(frozen=True)
class AuthConfig:
    jwt_secret: str | None = None
    algorithms: tuple[str, ...] = ("HS256",)
    audience: str | None = None


@dataclass(frozen=True)
class StorageConfig:
    duckdb_path: str
    clean_slate: bool = False


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class IdsyncConfig:
    storage: StorageConfig
    logging: LoggingConfig
    identity: IdentityConfig = IdentityConfig()
    merge: MergeConfig = MergeConfig()
    sync: SyncConfig = SyncConfig()
    auth: AuthConfig = AuthConfig()
    raw: dict[str, Any] = field(default_factory=dict)  # original parsed YAML (for debugging)


def load_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    data = yaml.safe_load(p.read_text())
    if not isinstance(data, dict):
        raise ValueError("Config YAML must parse to a dict at the top level.")
    return data


def _ttl(value: Any) -> float | None:
    if value is None:
        return None
    ttl = float(value)
    if ttl <= 0:
        raise ValueError(f"ttl_days must be positive, got {value!r}")
    return ttl


def _slot(raw: dict[str, Any], default: SlotConfig) -> SlotConfig:
    return SlotConfig(
        store=str(raw.get("store", default.store)),
        key=str(raw.get("key", default.key)),
        ttl_days=_ttl(raw.get("ttl_days", default.ttl_days)),
    )


def _parse_identity(data: dict[str, Any]) -> IdentityConfig:
    defaults = IdentityConfig()
    primary = _slot(data.get("primary") or {}, defaults.primary)
    backup = _slot(data.get("backup") or {}, defaults.backup)

    session_scoped = tuple(
        str(k) for k in data.get("session_scoped_keys", defaults.session_scoped_keys)
    )

    if "legacy" in data:
        legacy = tuple(
            LegacySlotConfig(
                store=str(item["store"]),
                key=str(item["key"]),
                ttl_days=_ttl(item.get("ttl_days")),
                adopt=bool(item.get("adopt", True)),
            )
            for item in (data.get("legacy") or [])
        )
    else:
        legacy = defaults.legacy

    canonical = {(primary.store, primary.key), (backup.store, backup.key)}
    if len(canonical) != 2:
        raise ValueError("identity.primary and identity.backup must be distinct slots")

    for item in legacy:
        if item.key in session_scoped:
            raise ValueError(
                f"Legacy slot key {item.key!r} is session-scoped and cannot be reconciled"
            )
        if (item.store, item.key) in canonical:
            raise ValueError(f"Legacy slot {item.store}/{item.key} collides with a canonical slot")
        if item.key.endswith("_pre_migration"):
            raise ValueError(f"Legacy slot key {item.key!r} is reserved for rollback shadows")

    return IdentityConfig(
        primary=primary,
        backup=backup,
        legacy=legacy,
        session_scoped_keys=session_scoped,
    )


def parse_config(data: dict[str, Any]) -> IdsyncConfig:
    for key in ["storage", "logging"]:
        if key not in data:
            raise ValueError(f"Missing required top-level config section: '{key}'")

    storage = data.get("storage") or {}
    logging_cfg = data.get("logging") or {}
    merge = data.get("merge") or {}
    sync = data.get("sync") or {}
    auth = data.get("auth") or {}

    storage_cfg = StorageConfig(
        duckdb_path=str(storage["duckdb_path"]),
        clean_slate=bool(storage.get("clean_slate", False)),
    )

    log_cfg = LoggingConfig(level=str(logging_cfg.get("level", "INFO")).upper())

    merge_defaults = MergeConfig()
    merge_cfg = MergeConfig(
        freshness_fields=frozenset(
            str(f) for f in merge.get("freshness_fields", merge_defaults.freshness_fields)
        ),
        max_depth=int(merge.get("max_depth", merge_defaults.max_depth)),
        max_value_depth=int(merge.get("max_value_depth", merge_defaults.max_value_depth)),
    )
    if merge_cfg.max_depth < 1:
        raise ValueError("merge.max_depth must be >= 1")
    if merge_cfg.max_value_depth < merge_cfg.max_depth:
        raise ValueError("merge.max_value_depth must be >= merge.max_depth")

    sync_cfg = SyncConfig(max_conflict_retries=int(sync.get("max_conflict_retries", 3)))
    if sync_cfg.max_conflict_retries < 0:
        raise ValueError("sync.max_conflict_retries must be >= 0")

    secret = os.environ.get(JWT_SECRET_ENV) or auth.get("jwt_secret")
    auth_cfg = AuthConfig(
        jwt_secret=str(secret) if secret else None,
        algorithms=tuple(str(a) for a in auth.get("algorithms", ("HS256",))),
        audience=str(auth["audience"]) if auth.get("audience") else None,
    )

    return IdsyncConfig(
        storage=storage_cfg,
        logging=log_cfg,
        identity=_parse_identity(data.get("identity") or {}),
        merge=merge_cfg,
        sync=sync_cfg,
        auth=auth_cfg,
        raw=data,
    )


def load_config(path: str | Path) -> IdsyncConfig:
    data = load_yaml(path)
    return parse_config(data)
