"""
This module owns the SQLite connections shared by the stores of one database.

All writes go through a single dedicated write connection. Each write runs
inside a `SAVEPOINT`, which gives atomicity on the shared connection, and the
write lock keeps two coroutines from interleaving statements of different
transactions on it. File databases additionally get a pool of read-only
connections so reads never wait on writes.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator
import asyncio
import logging

import aiosqlite

from ...errors import TransientStorageError


class SQLiteHandle:
    def __init__(
        self,
        write_conn: aiosqlite.Connection,
        read_pool: asyncio.Queue | None = None,
    ):
        self.write_conn = write_conn
        self.write_lock = asyncio.Lock()
        self.read_pool = read_pool

    @asynccontextmanager
    async def writer(self, name: str = "event_outbox") -> AsyncIterator[aiosqlite.Connection]:
        """
        Yields the write connection inside a transaction that commits on exit.

        Any exception, cancellation included, rolls the transaction back before
        it propagates, so a failed write never leaves a partial effect behind.
        """
        async with self.write_lock:
            conn = self.write_conn
            try:
                await conn.execute(f"SAVEPOINT {name}")
            except aiosqlite.OperationalError as e:
                raise TransientStorageError(f"Could not begin transaction: {e}") from e
            try:
                yield conn
            except BaseException as e:
                await conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                await conn.execute(f"RELEASE SAVEPOINT {name}")
                logging.error(f"Rolled back SQLite transaction {name}: {e!r}")
                if isinstance(e, aiosqlite.OperationalError):
                    raise TransientStorageError(str(e)) from e
                raise
            try:
                await conn.execute(f"RELEASE SAVEPOINT {name}")
                await conn.commit()
            except aiosqlite.OperationalError as e:
                await conn.rollback()
                raise TransientStorageError(f"Could not commit transaction: {e}") from e

    @asynccontextmanager
    async def reader(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yields a connection for read-only queries."""
        if self.read_pool is None:
            # In-memory databases are private to their connection.
            async with self.write_lock:
                try:
                    yield self.write_conn
                except aiosqlite.OperationalError as e:
                    raise TransientStorageError(str(e)) from e
            return

        conn = await self.read_pool.get()
        try:
            yield conn
        except aiosqlite.OperationalError as e:
            raise TransientStorageError(str(e)) from e
        finally:
            await self.read_pool.put(conn)

    async def close(self):
        connections = [self.write_conn]
        if self.read_pool is not None:
            while not self.read_pool.empty():
                connections.append(await self.read_pool.get())
        await asyncio.gather(*(conn.close() for conn in connections))
