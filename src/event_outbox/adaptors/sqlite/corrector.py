"""
Reconciles storage left inconsistent by a crash or a lost race.

Every statement here is conditioned on the state it repairs (the publish
cursor, the persisted version), so running the corrector again, or running two
correctors at once, converges on the same rows.
"""
import logging

from ...aggregate import require_id
from ...models import CorrectionReport
from .handle import SQLiteHandle
from .schema import fetch_current_version


class SQLiteEventCorrector:
    def __init__(self, handle: SQLiteHandle):
        self.handle = handle

    async def correct(self, aggregate_type: str, aggregate_id: str) -> CorrectionReport:
        require_id(aggregate_type, "aggregate_type")
        require_id(aggregate_id)
        key = (aggregate_type, aggregate_id)

        async with self.handle.writer("event_correct") as conn:
            # Undelivered events that lost their pending row get it back.
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO pending_events (aggregate_type, aggregate_id, version, event_type, payload, raised_at)
                SELECT e.aggregate_type, e.aggregate_id, e.version, e.event_type, e.payload, e.raised_at
                FROM events e
                LEFT JOIN publish_cursors c
                  ON c.aggregate_type = e.aggregate_type AND c.aggregate_id = e.aggregate_id
                WHERE e.aggregate_type = ? AND e.aggregate_id = ?
                  AND e.version > COALESCE(c.published_version, 0)
                """,
                key,
            )
            pending_restored = cursor.rowcount

            current_version = await fetch_current_version(conn, aggregate_type, aggregate_id)

            # Claims written for a version that never committed.
            cursor = await conn.execute(
                "DELETE FROM unique_claims WHERE aggregate_type = ? AND aggregate_id = ? AND version > ?",
                (*key, current_version),
            )
            claims_removed = cursor.rowcount

            cursor = await conn.execute(
                "DELETE FROM mementos WHERE aggregate_type = ? AND aggregate_id = ? AND version > ?",
                (*key, current_version),
            )
            mementos_removed = cursor.rowcount

        report = CorrectionReport(
            pending_restored=pending_restored,
            claims_removed=claims_removed,
            mementos_removed=mementos_removed,
        )
        if report.changed:
            logging.warning(f"Corrected {aggregate_type}/{aggregate_id} at version {current_version}: {report!r}")
        return report
