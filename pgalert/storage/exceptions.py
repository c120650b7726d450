"""Exception hierarchy for alert storage backends."""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all storage errors (backend unavailable, etc.)."""


class NotFoundError(StorageError):
    """The requested entity does not exist."""


class VersionConflictError(StorageError):
    """A compare-and-set update lost to a concurrent writer."""

    def __init__(self, entity_id: int | None, expected: int, actual: int | None) -> None:
        super().__init__(
            f"version conflict on {entity_id}: expected {expected}, found {actual}"
        )
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class DuplicateAlertError(StorageError):
    """An unresolved alert with the same correlation key already exists."""

    def __init__(self, alert_id: str) -> None:
        super().__init__(f"unresolved alert already exists for {alert_id!r}")
        self.alert_id = alert_id
