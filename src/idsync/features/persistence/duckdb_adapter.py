from __future__ import annotations

import os
from datetime import UTC, datetime

import duckdb

from .schema import PROFILES_TABLE_NAME, SLOTS_TABLE_NAME, create_schema


def _to_db_ts(dt: datetime | None) -> datetime | None:
    # TIMESTAMP columns hold naive UTC
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC).replace(tzinfo=None)
    return dt


def _from_db_ts(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return dt.replace(tzinfo=UTC)


class DuckDBAdapter:
    """
    DuckDB persistence adapter. Owns the connection and schema.
    Raw SQL only; callers translate duckdb.Error into domain errors.
    """

    def __init__(self, path: str, *, clean_slate: bool = False) -> None:
        self.path = path
        self.clean_slate = clean_slate
        self._conn: duckdb.DuckDBPyConnection | None = None

    def open(self) -> None:
        if self._conn is not None:
            return

        if self.clean_slate and self.path != ":memory:" and os.path.exists(self.path):
            os.remove(self.path)

        # Ensure parent dir exists
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        self._conn = duckdb.connect(self.path)
        create_schema(self._conn)

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise RuntimeError("DuckDBAdapter not opened. Call open() first.")
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ----------------------------
    # profiles
    # ----------------------------
    def fetch_profile(self, profile_id: str) -> tuple[str, datetime | None, int] | None:
        """
        Returns (session_data_json, session_sync_at, version) or None.
        """
        row = self.conn.execute(
            f"""
            SELECT session_data, session_sync_at, version
            FROM {PROFILES_TABLE_NAME}
            WHERE profile_id = ?
            """,
            [profile_id],
        ).fetchone()
        if row is None:
            return None
        return str(row[0]), _from_db_ts(row[1]), int(row[2])

    def insert_profile(self, profile_id: str, session_json: str, synced_at: datetime) -> int:
        """
        First write for a profile. Raises duckdb.ConstraintException if the row exists.
        """
        self.conn.execute(
            f"""
            INSERT INTO {PROFILES_TABLE_NAME} (profile_id, session_data, session_sync_at, version)
            VALUES (?, ?, ?, 1)
            """,
            [profile_id, session_json, _to_db_ts(synced_at)],
        )
        return 1

    def update_profile(
        self,
        profile_id: str,
        session_json: str,
        synced_at: datetime,
        *,
        expected_version: int,
    ) -> int | None:
        """
        Conditional write. Returns the new version, or None if the stored
        version no longer matches `expected_version`.
        """
        row = self.conn.execute(
            f"""
            UPDATE {PROFILES_TABLE_NAME}
            SET session_data = ?, session_sync_at = ?, version = version + 1
            WHERE profile_id = ? AND version = ?
            RETURNING version
            """,
            [session_json, _to_db_ts(synced_at), profile_id, expected_version],
        ).fetchone()
        return int(row[0]) if row else None

    def count_profiles(self) -> int:
        """
        Convenience method for sanity checks/tests.
        """
        res = self.conn.execute(f"SELECT COUNT(*) FROM {PROFILES_TABLE_NAME}").fetchone()
        return int(res[0]) if res else 0

    # ----------------------------
    # identity slots
    # ----------------------------
    def get_slot(self, store: str, key: str) -> tuple[str, datetime | None] | None:
        row = self.conn.execute(
            f"SELECT value, expires_at FROM {SLOTS_TABLE_NAME} WHERE store = ? AND slot_key = ?",
            [store, key],
        ).fetchone()
        if row is None:
            return None
        return str(row[0]), _from_db_ts(row[1])

    def put_slot(self, store: str, key: str, value: str, expires_at: datetime | None) -> None:
        self.conn.execute(
            f"""
            INSERT OR REPLACE INTO {SLOTS_TABLE_NAME} (store, slot_key, value, expires_at)
            VALUES (?, ?, ?, ?)
            """,
            [store, key, value, _to_db_ts(expires_at)],
        )

    def delete_slot(self, store: str, key: str) -> None:
        self.conn.execute(
            f"DELETE FROM {SLOTS_TABLE_NAME} WHERE store = ? AND slot_key = ?",
            [store, key],
        )
