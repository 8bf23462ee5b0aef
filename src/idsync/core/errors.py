from __future__ import annotations

from idsync.core.logging import short_id


class StorageUnavailable(Exception):
    """A durable slot backend cannot be read or written (quota, privacy mode, I/O)."""


class AuthenticationError(Exception):
    """Caller is missing credentials or presented invalid ones."""


class PersistenceFailure(Exception):
    """Reading or writing the persisted session record failed."""


class VersionConflict(PersistenceFailure):
    """Conditional write lost against a concurrent writer."""

    def __init__(self, profile_id: str, expected_version: int) -> None:
        super().__init__(
            f"version conflict for profile {short_id(profile_id)!r} at v{expected_version}"
        )
        self.profile_id = profile_id
        self.expected_version = expected_version
