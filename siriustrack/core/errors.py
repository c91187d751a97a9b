"""Error taxonomy shared by the database layer and the engines."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for every failure surfaced to the command layer."""


class NotFoundError(TrackerError):
    """Raised when a referenced segment/todo/milestone/habit does not exist."""

    def __init__(self, entity: str, entity_id: int) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} {entity_id} not found")


class ValidationError(TrackerError):
    """Raised for bad input, before any store access is attempted."""


class StorageUnavailableError(TrackerError):
    """Raised when the SQLite store cannot be opened or written. Never retried."""
