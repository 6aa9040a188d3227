"""
This module implements the factory that opens a SQLite database and hands out
the stores, publishers and repositories bound to it.

`sqlite_backend` is an async context manager: it captures the shared
connections for one database and releases them on exit, which keeps resource
management explicit and avoids global singletons.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator
import asyncio
import logging

import aiosqlite

from ...aggregate import AggregateType
from ...relay import OutboxRelay
from ...repository import EventSourcedRepository
from ...serializers import JsonSerializer
from .corrector import SQLiteEventCorrector
from .event_store import SQLiteEventStore
from .handle import SQLiteHandle
from .memento import SQLiteMementoStore
from .publisher import SQLiteEventPublisher
from .schema import create_schema


class SQLiteBackend:
    """The components bound to one SQLite database."""

    def __init__(self, handle: SQLiteHandle, serializer):
        self.handle = handle
        self.serializer = serializer
        self.event_store = SQLiteEventStore(handle, serializer)
        self.memento_store = SQLiteMementoStore(handle)
        self.corrector = SQLiteEventCorrector(handle)

    def publisher(self, message_bus) -> SQLiteEventPublisher:
        return SQLiteEventPublisher(self.handle, self.serializer, message_bus)

    def repository(self, aggregate_type: AggregateType, message_bus, *, snapshots: bool = True) -> EventSourcedRepository:
        return EventSourcedRepository(
            aggregate_type,
            event_store=self.event_store,
            publisher=self.publisher(message_bus),
            corrector=self.corrector,
            serializer=self.serializer,
            memento_store=self.memento_store if snapshots else None,
        )

    def relay(self, message_bus, polling_interval: float = 1.0, batch_size: int = 100) -> OutboxRelay:
        return OutboxRelay(self.publisher(message_bus), polling_interval=polling_interval, batch_size=batch_size)


async def _connect(connect_string: str, *, uri: bool, cache_size_kib: int, busy_timeout_ms: int, write: bool):
    conn = await aiosqlite.connect(connect_string, uri=uri)
    if write:
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA synchronous = NORMAL;")
    await conn.execute(f"PRAGMA cache_size = {cache_size_kib};")
    await conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms};")
    return conn


@asynccontextmanager
async def sqlite_backend(
    db_path: str,
    *,
    serializer=None,
    cache_size_kib: int = -16384,
    busy_timeout_ms: int = 5000,
    pool_size: int = 5,
) -> AsyncIterator[SQLiteBackend]:
    """
    Opens `db_path` (or a private in-memory database for ":memory:") and
    yields a `SQLiteBackend`. All connections are closed when the context exits.
    """
    if not db_path:
        raise ValueError("`db_path` must be provided.")

    is_memory_db = db_path == ":memory:"
    write_conn = await _connect(
        db_path, uri=False, cache_size_kib=cache_size_kib, busy_timeout_ms=busy_timeout_ms, write=not is_memory_db
    )
    read_pool: asyncio.Queue | None = None
    try:
        await create_schema(write_conn)
        if not is_memory_db:
            read_pool = asyncio.Queue(maxsize=pool_size)
            for _ in range(pool_size):
                conn = await _connect(
                    f"file:{db_path}?mode=ro",
                    uri=True,
                    cache_size_kib=cache_size_kib,
                    busy_timeout_ms=busy_timeout_ms,
                    write=False,
                )
                await read_pool.put(conn)
    except BaseException:
        await SQLiteHandle(write_conn, read_pool).close()
        raise

    handle = SQLiteHandle(write_conn, read_pool)
    logging.info(f"Opened event store at {db_path}")
    try:
        yield SQLiteBackend(handle, serializer if serializer is not None else JsonSerializer())
    finally:
        await handle.close()
        logging.info(f"Closed event store at {db_path}")
