"""
This module defines the core data models for the event sourcing system using Pydantic.
These models serve as the data transfer objects (DTOs) between the aggregates,
the storage adaptors and the message bus, and ensure that all event, pending
and snapshot data is well-structured and validated.
"""
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from typing import Any, List, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    """An immutable fact raised by an aggregate. `data` holds the deserialized payload."""
    model_config = ConfigDict(frozen=True)

    aggregate_id: str
    aggregate_type: str
    version: int = Field(ge=1)
    type: str  # Dispatch tag
    data: Any = None
    raised_at: datetime = Field(default_factory=utcnow)


class PendingEvent(BaseModel):
    """Staged copy of a persisted event, waiting for a confirmed publish."""
    aggregate_type: str
    aggregate_id: str
    version: int
    type: str
    payload: bytes  # Serialized event data
    raised_at: datetime


class Memento(BaseModel):
    aggregate_type: str
    aggregate_id: str
    version: int
    state: bytes  # Serialized state
    timestamp: datetime


class UniqueClaim(BaseModel):
    """Records that `value` within `scope` belongs to `aggregate_id`."""
    model_config = ConfigDict(frozen=True)

    scope: str
    value: str
    aggregate_id: str


class CorrectionReport(BaseModel):
    pending_restored: int = 0
    claims_removed: int = 0
    mementos_removed: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.pending_restored or self.claims_removed or self.mementos_removed)


class Aggregate(BaseModel):
    """
    The in-memory representation of an event-sourced aggregate.

    `version` is the version of the last applied event, including events still
    buffered in `pending_events`. The uniqueness buffers are written atomically
    with the pending events on the next save.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    aggregate_type: str
    version: int = 0
    state: Any = None
    pending_events: List[DomainEvent] = Field(default_factory=list)
    pending_claims: List[Tuple[str, str]] = Field(default_factory=list)
    pending_releases: List[Tuple[str, str]] = Field(default_factory=list)

    @property
    def persisted_version(self) -> int:
        return self.version - len(self.pending_events)

    def claim(self, scope: str, value: str):
        """Reserve `value` within `scope` for this aggregate on the next save."""
        if (scope, value) in self.pending_releases:
            self.pending_releases.remove((scope, value))
        if (scope, value) not in self.pending_claims:
            self.pending_claims.append((scope, value))

    def release(self, scope: str, value: str):
        """Give `value` within `scope` back on the next save."""
        if (scope, value) in self.pending_claims:
            self.pending_claims.remove((scope, value))
        if (scope, value) not in self.pending_releases:
            self.pending_releases.append((scope, value))

    def has_pending_changes(self) -> bool:
        return bool(self.pending_events or self.pending_claims or self.pending_releases)

    def clear_pending(self):
        self.pending_events.clear()
        self.pending_claims.clear()
        self.pending_releases.clear()
