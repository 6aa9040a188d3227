import aiosqlite

SCHEMA = [
    # The primary key is the compare-and-swap for appends: a second writer
    # racing for the same version is rejected by the database itself.
    """
    CREATE TABLE IF NOT EXISTS events (
        aggregate_type TEXT NOT NULL,
        aggregate_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        event_type TEXT NOT NULL,
        payload BLOB NOT NULL,
        raised_at TEXT NOT NULL,
        PRIMARY KEY (aggregate_type, aggregate_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_events (
        aggregate_type TEXT NOT NULL,
        aggregate_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        event_type TEXT NOT NULL,
        payload BLOB NOT NULL,
        raised_at TEXT NOT NULL,
        PRIMARY KEY (aggregate_type, aggregate_id, version)
    )
    """,
    # Highest version whose delivery the message bus confirmed.
    """
    CREATE TABLE IF NOT EXISTS publish_cursors (
        aggregate_type TEXT NOT NULL,
        aggregate_id TEXT NOT NULL,
        published_version INTEGER NOT NULL,
        PRIMARY KEY (aggregate_type, aggregate_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS unique_claims (
        scope TEXT NOT NULL,
        value TEXT NOT NULL,
        aggregate_type TEXT NOT NULL,
        aggregate_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        PRIMARY KEY (scope, value)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_unique_claims_owner
    ON unique_claims (aggregate_type, aggregate_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS mementos (
        aggregate_type TEXT NOT NULL,
        aggregate_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        state BLOB NOT NULL,
        timestamp TEXT NOT NULL,
        PRIMARY KEY (aggregate_type, aggregate_id)
    )
    """,
]


async def create_schema(conn: aiosqlite.Connection):
    """Creates every table and index. Idempotent."""
    for statement in SCHEMA:
        await conn.execute(statement)
    await conn.commit()


async def fetch_current_version(conn: aiosqlite.Connection, aggregate_type: str, aggregate_id: str) -> int:
    async with conn.execute(
        "SELECT MAX(version) FROM events WHERE aggregate_type = ? AND aggregate_id = ?",
        (aggregate_type, aggregate_id),
    ) as cursor:
        row = await cursor.fetchone()
        return row[0] if row and row[0] is not None else 0
