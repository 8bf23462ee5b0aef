from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

import duckdb

from idsync.core.errors import PersistenceFailure, VersionConflict
from idsync.core.ids import canonical_json
from idsync.core.logging import get_logger, short_id
from idsync.core.types import Record

from .duckdb_adapter import DuckDBAdapter


@dataclass(frozen=True)
class StoredSession:
    profile_id: str
    data: Record
    synced_at: datetime | None
    version: int  # 0 = no row yet


class SessionRecordService:
    """
    Persisted session records, one per profile.
    - Reads return version 0 for unknown profiles.
    - Writes are conditional on the version that was read.
    """

    def __init__(self, *, adapter: DuckDBAdapter) -> None:
        self.adapter = adapter
        self._logger = get_logger(__name__)

    def load(self, profile_id: str) -> StoredSession:
        try:
            row = self.adapter.fetch_profile(profile_id)
        except duckdb.Error as e:
            raise PersistenceFailure(f"failed to fetch profile {short_id(profile_id)!r}") from e

        if row is None:
            return StoredSession(profile_id=profile_id, data={}, synced_at=None, version=0)

        session_json, synced_at, version = row
        try:
            data = json.loads(session_json)
        except ValueError as e:
            raise PersistenceFailure(
                f"corrupt session_data for profile {short_id(profile_id)!r}"
            ) from e
        if not isinstance(data, dict):
            data = {}
        return StoredSession(profile_id=profile_id, data=data, synced_at=synced_at, version=version)

    def save(
        self,
        profile_id: str,
        data: Record,
        *,
        synced_at: datetime,
        expected_version: int,
    ) -> int:
        """
        Returns the new version. Raises VersionConflict if another writer got there first.
        """
        session_json = canonical_json(data)
        try:
            if expected_version == 0:
                try:
                    new_version = self.adapter.insert_profile(profile_id, session_json, synced_at)
                except duckdb.ConstraintException as e:
                    raise VersionConflict(profile_id, expected_version) from e
            else:
                new_version = self.adapter.update_profile(
                    profile_id,
                    session_json,
                    synced_at,
                    expected_version=expected_version,
                )
                if new_version is None:
                    raise VersionConflict(profile_id, expected_version)
        except duckdb.Error as e:
            raise PersistenceFailure(f"failed to update profile {short_id(profile_id)!r}") from e

        self._logger.debug(
            "session_saved",
            extra={
                "feature": "persistence",
                "profile_id": short_id(profile_id),
                "version": new_version,
            },
        )
        return new_version
