from __future__ import annotations

PROFILES_TABLE_NAME = "profiles"
SLOTS_TABLE_NAME = "identity_slots"

PROFILES_DDL = f"""
CREATE TABLE IF NOT EXISTS {PROFILES_TABLE_NAME} (
    profile_id TEXT PRIMARY KEY,

    session_data TEXT NOT NULL,
    session_sync_at TIMESTAMP,

    version BIGINT NOT NULL
);
"""

SLOTS_DDL = f"""
CREATE TABLE IF NOT EXISTS {SLOTS_TABLE_NAME} (
    store TEXT NOT NULL,
    slot_key TEXT NOT NULL,

    value TEXT NOT NULL,
    expires_at TIMESTAMP,

    PRIMARY KEY (store, slot_key)
);
"""


def create_schema(conn) -> None:
    """
    Create tables. No migrations. Safe to call on every open.
    """
    conn.execute(PROFILES_DDL)
    conn.execute(SLOTS_DDL)
