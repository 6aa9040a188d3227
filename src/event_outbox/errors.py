"""
This module defines the exception taxonomy of the library.

Absence of an aggregate or a snapshot is never an error: lookups return `None`.
"""


class EventSourcingError(Exception):
    """Root of every error raised by event_outbox."""


class ValidationError(EventSourcingError, ValueError):
    """Malformed input, rejected before any I/O."""


class ConcurrencyConflict(EventSourcingError):
    """Another writer advanced the aggregate past the expected version."""

    def __init__(self, aggregate_id: str, expected_version: int, actual_version: int | None = None):
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        if actual_version is None:
            message = f"Concurrency conflict on {aggregate_id}: version {expected_version + 1} already written"
        else:
            message = (
                f"Concurrency conflict on {aggregate_id}: expected version "
                f"{expected_version}, but aggregate is at {actual_version}"
            )
        super().__init__(message)


class DuplicateUniqueValue(EventSourcingError):
    """A uniqueness claim is already held by a different aggregate."""

    def __init__(self, scope: str, value: str, owner: str | None = None):
        self.scope = scope
        self.value = value
        self.owner = owner
        super().__init__(f"Value {value!r} in scope {scope!r} is already claimed by {owner!r}")


class TransientStorageError(EventSourcingError):
    """The storage driver failed in a way that may succeed on retry."""


class PublishFailure(EventSourcingError):
    """Pending events could not be delivered; they stay staged for a later attempt."""


class SerializationError(EventSourcingError):
    """A payload could not be serialized, deserialized or decrypted."""
