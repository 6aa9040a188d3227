"""
This module provides the SQLite implementation of the `EventStore` protocol.

An append writes the event rows, their pending mirrors and the uniqueness
changes in one transaction. The version check and the primary key on
`(aggregate_type, aggregate_id, version)` together act as a compare-and-swap
on the aggregate's version; the primary key on `(scope, value)` does the same
for uniqueness claims.
"""
from datetime import datetime
from typing import Iterable, List, Sequence, Tuple

import aiosqlite

from ...aggregate import require_id
from ...errors import ConcurrencyConflict, DuplicateUniqueValue, ValidationError
from ...models import DomainEvent
from .handle import SQLiteHandle
from .schema import fetch_current_version


class SQLiteEventStore:
    def __init__(self, handle: SQLiteHandle, serializer):
        self.handle = handle
        self.serializer = serializer

    def _validate(
        self,
        aggregate_type: str,
        aggregate_id: str,
        expected_version: int,
        events: Sequence[DomainEvent],
        changes: Sequence[Tuple[str, str]],
    ):
        require_id(aggregate_type, "aggregate_type")
        require_id(aggregate_id)
        if expected_version < 0:
            raise ValidationError(f"`expected_version` must be >= 0, got {expected_version}")
        for offset, event in enumerate(events, start=1):
            if not isinstance(event, DomainEvent):
                raise ValidationError("All items in events must be DomainEvent objects")
            if event.aggregate_type != aggregate_type or event.aggregate_id != aggregate_id:
                raise ValidationError(
                    f"Event {event.aggregate_type}/{event.aggregate_id} cannot be appended to {aggregate_type}/{aggregate_id}"
                )
            if event.version != expected_version + offset:
                raise ValidationError(
                    f"Event version {event.version} does not follow expected version {expected_version}"
                )
        for scope, value in changes:
            require_id(scope, "scope")
            require_id(value, "value")
        if changes and not events:
            raise ValidationError("Uniqueness changes must be appended together with at least one event")

    async def append(
        self,
        aggregate_type: str,
        aggregate_id: str,
        expected_version: int,
        events: Sequence[DomainEvent],
        claims: Iterable[Tuple[str, str]] = (),
        releases: Iterable[Tuple[str, str]] = (),
    ) -> int:
        events = list(events)
        claims = list(claims)
        releases = list(releases)
        self._validate(aggregate_type, aggregate_id, expected_version, events, claims + releases)

        rows = [
            (
                aggregate_type,
                aggregate_id,
                event.version,
                event.type,
                self.serializer.serialize(event.data),
                event.raised_at.isoformat(),
            )
            for event in events
        ]
        new_version = expected_version + len(events)

        async with self.handle.writer("event_append") as conn:
            current_version = await fetch_current_version(conn, aggregate_type, aggregate_id)
            if current_version != expected_version:
                raise ConcurrencyConflict(aggregate_id, expected_version, current_version)

            if rows:
                try:
                    await conn.executemany(
                        "INSERT INTO events (aggregate_type, aggregate_id, version, event_type, payload, raised_at) VALUES (?, ?, ?, ?, ?, ?)",
                        rows,
                    )
                except aiosqlite.IntegrityError as e:
                    raise ConcurrencyConflict(aggregate_id, expected_version) from e
                await conn.executemany(
                    "INSERT INTO pending_events (aggregate_type, aggregate_id, version, event_type, payload, raised_at) VALUES (?, ?, ?, ?, ?, ?)",
                    rows,
                )

            for scope, value in releases:
                await conn.execute(
                    "DELETE FROM unique_claims WHERE scope = ? AND value = ? AND aggregate_type = ? AND aggregate_id = ?",
                    (scope, value, aggregate_type, aggregate_id),
                )
            for scope, value in claims:
                await self._claim(conn, scope, value, aggregate_type, aggregate_id, new_version)

        return new_version

    async def _claim(
        self,
        conn: aiosqlite.Connection,
        scope: str,
        value: str,
        aggregate_type: str,
        aggregate_id: str,
        version: int,
    ):
        # Re-claiming a value this aggregate already owns only moves the claim
        # to the new version; a foreign owner leaves the row untouched.
        cursor = await conn.execute(
            """
            INSERT INTO unique_claims (scope, value, aggregate_type, aggregate_id, version)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (scope, value) DO UPDATE SET version = excluded.version
            WHERE unique_claims.aggregate_type = excluded.aggregate_type
              AND unique_claims.aggregate_id = excluded.aggregate_id
            """,
            (scope, value, aggregate_type, aggregate_id, version),
        )
        if cursor.rowcount == 0:
            async with conn.execute(
                "SELECT aggregate_id FROM unique_claims WHERE scope = ? AND value = ?", (scope, value)
            ) as owner_cursor:
                row = await owner_cursor.fetchone()
            raise DuplicateUniqueValue(scope, value, row[0] if row else None)

    async def load(self, aggregate_type: str, aggregate_id: str, after_version: int = 0) -> List[DomainEvent]:
        """Returns the events with a version strictly greater than `after_version`, ascending."""
        require_id(aggregate_type, "aggregate_type")
        require_id(aggregate_id)
        async with self.handle.reader() as conn:
            async with conn.execute(
                "SELECT version, event_type, payload, raised_at FROM events WHERE aggregate_type = ? AND aggregate_id = ? AND version > ? ORDER BY version",
                (aggregate_type, aggregate_id, after_version),
            ) as cursor:
                rows = await cursor.fetchall()

        return [
            DomainEvent(
                aggregate_id=aggregate_id,
                aggregate_type=aggregate_type,
                version=version,
                type=event_type,
                data=self.serializer.deserialize(payload),
                raised_at=datetime.fromisoformat(raised_at),
            )
            for version, event_type, payload, raised_at in rows
        ]

    async def current_version(self, aggregate_type: str, aggregate_id: str) -> int:
        require_id(aggregate_type, "aggregate_type")
        require_id(aggregate_id)
        async with self.handle.reader() as conn:
            return await fetch_current_version(conn, aggregate_type, aggregate_id)

    async def release(self, scope: str, value: str, aggregate_type: str, aggregate_id: str) -> bool:
        """Drops the claim on `value` if, and only if, `aggregate_type/aggregate_id` still owns it."""
        require_id(scope, "scope")
        require_id(value, "value")
        require_id(aggregate_type, "aggregate_type")
        require_id(aggregate_id)
        async with self.handle.writer("claim_release") as conn:
            cursor = await conn.execute(
                "DELETE FROM unique_claims WHERE scope = ? AND value = ? AND aggregate_type = ? AND aggregate_id = ?",
                (scope, value, aggregate_type, aggregate_id),
            )
            return cursor.rowcount > 0

    async def find_owner(self, scope: str, value: str) -> str | None:
        require_id(scope, "scope")
        require_id(value, "value")
        async with self.handle.reader() as conn:
            async with conn.execute(
                "SELECT aggregate_id FROM unique_claims WHERE scope = ? AND value = ?", (scope, value)
            ) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else None
