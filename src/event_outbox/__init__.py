"""
This module exports the public API: the models, the aggregate definition, the
repository and the SQLite backend factory.
"""
from .aggregate import AggregateType, SnapshotCapability
from .bus import InMemoryMessageBus
from .errors import (
    ConcurrencyConflict,
    DuplicateUniqueValue,
    EventSourcingError,
    PublishFailure,
    SerializationError,
    TransientStorageError,
    ValidationError,
)
from .models import Aggregate, CorrectionReport, DomainEvent, Memento, PendingEvent, UniqueClaim
from .relay import OutboxRelay
from .repository import EventSourcedRepository
from .serializers import FernetSerializer, JsonSerializer
from .adaptors.sqlite import sqlite_backend

__all__ = [
    "Aggregate",
    "AggregateType",
    "ConcurrencyConflict",
    "CorrectionReport",
    "DomainEvent",
    "DuplicateUniqueValue",
    "EventSourcedRepository",
    "EventSourcingError",
    "FernetSerializer",
    "InMemoryMessageBus",
    "JsonSerializer",
    "Memento",
    "OutboxRelay",
    "PendingEvent",
    "PublishFailure",
    "SerializationError",
    "SnapshotCapability",
    "TransientStorageError",
    "UniqueClaim",
    "ValidationError",
    "sqlite_backend",
]
