from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import jwt

from idsync.core.config import AuthConfig, SyncConfig
from idsync.core.errors import AuthenticationError, PersistenceFailure, VersionConflict
from idsync.core.logging import get_logger, short_id
from idsync.core.types import Clock, Record, SystemClock
from idsync.features.merge.service import SessionMergeEngine, has_changes, is_empty
from idsync.features.persistence.service import StoredSession

UNAUTHORIZED = "Unauthorized"
FETCH_FAILED = "Failed to fetch profile"
UPDATE_FAILED = "Failed to update profile"
INTERNAL_ERROR = "Internal server error"


class SessionStore(Protocol):
    """
    Matches idsync.features.persistence.service.SessionRecordService.
    """

    def load(self, profile_id: str) -> StoredSession: ...

    def save(
        self,
        profile_id: str,
        data: Record,
        *,
        synced_at: datetime,
        expected_version: int,
    ) -> int: ...


class Authenticator(Protocol):
    def authenticate(self, authorization: str | None) -> str: ...


class JwtAuthenticator:
    """
    `Authorization: Bearer <jwt>`; the `sub` claim is the profile id.
    """

    def __init__(self, cfg: AuthConfig) -> None:
        self.cfg = cfg

    def authenticate(self, authorization: str | None) -> str:
        if not self.cfg.jwt_secret:
            raise AuthenticationError("no JWT secret configured")
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("missing bearer token")

        token = authorization.split(" ", 1)[1].strip()
        try:
            payload = jwt.decode(
                token,
                self.cfg.jwt_secret,
                algorithms=list(self.cfg.algorithms),
                audience=self.cfg.audience,
                options={"verify_aud": self.cfg.audience is not None},
            )
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(str(e)) from e

        subject = payload.get("sub")
        if not subject:
            raise AuthenticationError("token has no subject")
        return str(subject)

    def issue(self, profile_id: str, *, ttl: timedelta = timedelta(hours=1)) -> str:
        """Mint a token for local tooling and tests."""
        if not self.cfg.jwt_secret:
            raise ValueError("auth.jwt_secret is not configured")
        now = datetime.now(UTC)
        claims: dict[str, Any] = {"sub": profile_id, "iat": now, "exp": now + ttl}
        if self.cfg.audience:
            claims["aud"] = self.cfg.audience
        return jwt.encode(claims, self.cfg.jwt_secret, algorithm=self.cfg.algorithms[0])


@dataclass(frozen=True)
class SyncResponse:
    status_code: int
    body: dict[str, Any]


def has_meaningful_data(fragment: Mapping[str, Any] | None, ignore: Iterable[str] = ()) -> bool:
    """
    True if the fragment carries anything beyond freshness bookkeeping.
    Clients use this to skip pointless sync calls.
    """
    if not fragment:
        return False
    skip = set(ignore)
    return any(k not in skip and not is_empty(v) for k, v in fragment.items())


class SessionSyncService:
    """
    Authenticated read -> merge -> conditional write of a profile's session record.

    Writes are guarded by the version read; a lost race re-reads and re-merges
    (merge is idempotent) up to `max_conflict_retries` times.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        engine: SessionMergeEngine,
        authenticator: Authenticator,
        cfg: SyncConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.authenticator = authenticator
        self.cfg = cfg or SyncConfig()
        self.clock = clock or SystemClock()
        self._logger = get_logger(__name__)

    # ----------------------------
    # Request handlers
    # ----------------------------
    def handle_sync(self, *, authorization: str | None, body: Any) -> SyncResponse:
        try:
            profile_id = self.authenticator.authenticate(authorization)
        except AuthenticationError as e:
            self._logger.warning(
                "sync_unauthorized", extra={"feature": "session_sync", "reason": str(e)}
            )
            return _failure(401, UNAUTHORIZED)

        try:
            if not isinstance(body, Mapping):
                raise ValueError("request body must be a JSON object")
            fragment = body.get("sessionData")
            if fragment is not None and not isinstance(fragment, Mapping):
                raise ValueError("sessionData must be a JSON object")
            reason = str(body.get("syncReason") or "unspecified")
            return self.sync(profile_id, dict(fragment or {}), sync_reason=reason)
        except PersistenceFailure:
            self._logger.error(
                "sync_persistence_failed",
                extra={"feature": "session_sync", "profile_id": short_id(profile_id)},
                exc_info=True,
            )
            return _failure(500, UPDATE_FAILED)
        except Exception:
            self._logger.error(
                "sync_unexpected_error",
                extra={"feature": "session_sync", "profile_id": short_id(profile_id)},
                exc_info=True,
            )
            return _failure(500, INTERNAL_ERROR)

    def handle_fetch(self, *, authorization: str | None) -> SyncResponse:
        try:
            profile_id = self.authenticator.authenticate(authorization)
        except AuthenticationError:
            return _failure(401, UNAUTHORIZED)

        try:
            stored = self.store.load(profile_id)
        except PersistenceFailure:
            self._logger.error(
                "fetch_failed",
                extra={"feature": "session_sync", "profile_id": short_id(profile_id)},
                exc_info=True,
            )
            return _failure(500, FETCH_FAILED)
        return SyncResponse(200, {"success": True, "sessionData": stored.data})

    # ----------------------------
    # Core path (already authenticated)
    # ----------------------------
    def sync(self, profile_id: str, fragment: Record, *, sync_reason: str) -> SyncResponse:
        log_ctx = {
            "feature": "session_sync",
            "profile_id": short_id(profile_id),
            "sync_reason": sync_reason,
        }

        if not fragment:
            self._logger.info("sync_noop", extra={**log_ctx, "reason": "incoming_empty"})
            return SyncResponse(200, {"success": True, "merged": False, "reason": "incoming_empty"})

        attempts = self.cfg.max_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                stored = self.store.load(profile_id)
            except PersistenceFailure:
                self._logger.error("sync_fetch_failed", extra=log_ctx, exc_info=True)
                return _failure(500, FETCH_FAILED)

            result = self.engine.merge_with_report(stored.data, fragment)
            if not has_changes(stored.data, result.record):
                self._logger.info("sync_noop", extra={**log_ctx, "reason": "no_changes"})
                return SyncResponse(200, {"success": True, "merged": False, "reason": "no_changes"})

            synced_at = self.clock.now()
            try:
                version = self.store.save(
                    profile_id,
                    result.record,
                    synced_at=synced_at,
                    expected_version=stored.version,
                )
            except VersionConflict:
                self._logger.warning("sync_conflict", extra={**log_ctx, "attempt": attempt})
                continue

            self._logger.info(
                "sync_merged",
                extra={
                    **log_ctx,
                    "fields_updated": list(result.fields_updated),
                    "version": version,
                },
            )
            return SyncResponse(
                200,
                {"success": True, "merged": True, "syncedAt": synced_at.isoformat()},
            )

        raise PersistenceFailure(
            f"gave up after {attempts} conflicting writes for {short_id(profile_id)!r}"
        )


def _failure(status_code: int, error: str) -> SyncResponse:
    return SyncResponse(status_code, {"success": False, "error": error})
