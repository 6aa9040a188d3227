"""
Snapshot storage. One row per aggregate, overwritten on every save; the state
is compressed at rest.
"""
from datetime import datetime
import zlib

from ...aggregate import require_id
from ...errors import ValidationError
from ...models import Memento, utcnow
from .handle import SQLiteHandle


class SQLiteMementoStore:
    def __init__(self, handle: SQLiteHandle):
        self.handle = handle

    async def save(self, aggregate_type: str, aggregate_id: str, version: int, state: bytes):
        """Saves a snapshot, replacing any earlier one for the same aggregate."""
        require_id(aggregate_type, "aggregate_type")
        require_id(aggregate_id)
        if version < 1:
            raise ValidationError(f"Cannot snapshot {aggregate_id} at version {version}")
        async with self.handle.writer("memento_save") as conn:
            await conn.execute(
                """
                INSERT INTO mementos (aggregate_type, aggregate_id, version, state, timestamp)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (aggregate_type, aggregate_id)
                DO UPDATE SET version = excluded.version, state = excluded.state, timestamp = excluded.timestamp
                """,
                (aggregate_type, aggregate_id, version, zlib.compress(state), utcnow().isoformat()),
            )

    async def find(self, aggregate_type: str, aggregate_id: str) -> Memento | None:
        """Loads the snapshot of an aggregate, or None if no snapshot exists."""
        require_id(aggregate_type, "aggregate_type")
        require_id(aggregate_id)
        async with self.handle.reader() as conn:
            async with conn.execute(
                "SELECT version, state, timestamp FROM mementos WHERE aggregate_type = ? AND aggregate_id = ?",
                (aggregate_type, aggregate_id),
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            return None
        version, state, timestamp = row
        try:
            state = zlib.decompress(state)
        except zlib.error:
            pass  # stored uncompressed
        return Memento(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            version=version,
            state=state,
            timestamp=datetime.fromisoformat(timestamp),
        )

    async def delete(self, aggregate_type: str, aggregate_id: str):
        require_id(aggregate_type, "aggregate_type")
        require_id(aggregate_id)
        async with self.handle.writer("memento_delete") as conn:
            await conn.execute(
                "DELETE FROM mementos WHERE aggregate_type = ? AND aggregate_id = ?",
                (aggregate_type, aggregate_id),
            )
