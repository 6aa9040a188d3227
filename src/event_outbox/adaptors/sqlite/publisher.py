"""
This module implements the outbox side of the SQLite adaptor.

Every appended event has a row in `pending_events`. Publishing reads those
rows, sends them to the message bus as one ordered batch and only then deletes
them, advancing the aggregate's publish cursor in the same transaction. If the
process dies anywhere before that transaction commits, the rows are still
there and the next attempt sends them again: delivery is at-least-once, and
consumers must tolerate duplicates.
"""
from datetime import datetime
from typing import List
import logging

from ...aggregate import require_id
from ...errors import PublishFailure
from ...models import DomainEvent, PendingEvent
from .handle import SQLiteHandle


class SQLiteEventPublisher:
    def __init__(self, handle: SQLiteHandle, serializer, message_bus):
        self.handle = handle
        self.serializer = serializer
        self.message_bus = message_bus

    async def get_pending(self, aggregate_type: str, aggregate_id: str) -> List[PendingEvent]:
        async with self.handle.reader() as conn:
            async with conn.execute(
                "SELECT version, event_type, payload, raised_at FROM pending_events WHERE aggregate_type = ? AND aggregate_id = ? ORDER BY version",
                (aggregate_type, aggregate_id),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            PendingEvent(
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                version=version,
                type=event_type,
                payload=payload,
                raised_at=datetime.fromisoformat(raised_at),
            )
            for version, event_type, payload, raised_at in rows
        ]

    def _restore(self, pending: PendingEvent) -> DomainEvent:
        return DomainEvent(
            aggregate_id=pending.aggregate_id,
            aggregate_type=pending.aggregate_type,
            version=pending.version,
            type=pending.type,
            data=self.serializer.deserialize(pending.payload),
            raised_at=pending.raised_at,
        )

    async def _confirm(self, pending: List[PendingEvent]) -> int:
        """
        Deletes exactly the rows that were sent and records the delivered version.

        The cursor only moves across versions that follow it without a gap, so
        an event missing from the outbox stays above the cursor and the
        corrector can restore it. Returns the recorded version.
        """
        first = pending[0]
        key = (first.aggregate_type, first.aggregate_id)
        async with self.handle.writer("publish_confirm") as conn:
            await conn.executemany(
                "DELETE FROM pending_events WHERE aggregate_type = ? AND aggregate_id = ? AND version = ?",
                [(p.aggregate_type, p.aggregate_id, p.version) for p in pending],
            )
            async with conn.execute(
                "SELECT published_version FROM publish_cursors WHERE aggregate_type = ? AND aggregate_id = ?", key
            ) as cursor:
                row = await cursor.fetchone()
            delivered = row[0] if row else 0
            for p in pending:
                if p.version == delivered + 1:
                    delivered = p.version
                elif p.version > delivered:
                    logging.warning(
                        f"Outbox of {key[0]}/{key[1]} is missing version {delivered + 1}; "
                        f"publish cursor held at {delivered}"
                    )
                    break
            await conn.execute(
                """
                INSERT INTO publish_cursors (aggregate_type, aggregate_id, published_version)
                VALUES (?, ?, ?)
                ON CONFLICT (aggregate_type, aggregate_id)
                DO UPDATE SET published_version = MAX(published_version, excluded.published_version)
                """,
                (*key, delivered),
            )
        return delivered

    async def publish_pending(self, aggregate_type: str, aggregate_id: str) -> int:
        """
        Sends the pending events of one aggregate and returns how many were sent.
        A call with nothing pending sends nothing and returns 0.
        """
        require_id(aggregate_type, "aggregate_type")
        require_id(aggregate_id)

        try:
            pending = await self.get_pending(aggregate_type, aggregate_id)
            if not pending:
                return 0
            events = [self._restore(p) for p in pending]
        except Exception as e:
            raise PublishFailure(f"Could not read pending events of {aggregate_type}/{aggregate_id}: {e}") from e

        try:
            await self.message_bus.send_batch(events)
        except Exception as e:
            raise PublishFailure(f"Message bus rejected {len(events)} events of {aggregate_type}/{aggregate_id}: {e}") from e

        try:
            delivered = await self._confirm(pending)
        except Exception as e:
            raise PublishFailure(
                f"Sent {len(events)} events of {aggregate_type}/{aggregate_id} but could not clear them; they will be sent again: {e}"
            ) from e

        logging.debug(f"Published {len(events)} events of {aggregate_type}/{aggregate_id}, delivered up to version {delivered}")
        return len(events)

    async def publish_all_pending(self, limit: int = 100) -> int:
        """
        Publishes every aggregate that has pending events, oldest first.
        A failing aggregate is logged and skipped so it cannot block the others.
        """
        async with self.handle.reader() as conn:
            async with conn.execute(
                """
                SELECT aggregate_type, aggregate_id FROM pending_events
                GROUP BY aggregate_type, aggregate_id
                ORDER BY MIN(raised_at)
                LIMIT ?
                """,
                (limit,),
            ) as cursor:
                targets = await cursor.fetchall()

        sent = 0
        for aggregate_type, aggregate_id in targets:
            try:
                sent += await self.publish_pending(aggregate_type, aggregate_id)
            except PublishFailure as e:
                logging.warning(f"Skipping {aggregate_type}/{aggregate_id} in outbox sweep: {e}")
        return sent
