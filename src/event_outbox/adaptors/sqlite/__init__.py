from .corrector import SQLiteEventCorrector
from .event_store import SQLiteEventStore
from .factory import SQLiteBackend, sqlite_backend
from .handle import SQLiteHandle
from .memento import SQLiteMementoStore
from .publisher import SQLiteEventPublisher

__all__ = [
    "SQLiteBackend",
    "SQLiteEventCorrector",
    "SQLiteEventPublisher",
    "SQLiteEventStore",
    "SQLiteHandle",
    "SQLiteMementoStore",
    "sqlite_backend",
]
