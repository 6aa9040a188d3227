import pytest
from pytest_asyncio import fixture
import asyncio
import os
import tempfile

import aiosqlite

from event_outbox import (
    ConcurrencyConflict,
    DomainEvent,
    DuplicateUniqueValue,
    InMemoryMessageBus,
    PublishFailure,
    TransientStorageError,
    ValidationError,
    sqlite_backend,
)


def make_events(aggregate_id: str, after_version: int, count: int, aggregate_type: str = "Counter"):
    return [
        DomainEvent(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            version=after_version + i,
            type="Incremented",
            data={"by": after_version + i, "note": f"event {after_version + i}"},
        )
        for i in range(1, count + 1)
    ]


async def dump(backend):
    """Every row of every table, for before/after comparisons."""
    tables = {}
    async with backend.handle.reader() as conn:
        for table in ("events", "pending_events", "publish_cursors", "unique_claims", "mementos"):
            async with conn.execute(f"SELECT * FROM {table} ORDER BY 1, 2, 3") as cursor:
                tables[table] = await cursor.fetchall()
    return tables


@fixture
async def backend():
    with tempfile.TemporaryDirectory() as tmpdir:
        async with sqlite_backend(os.path.join(tmpdir, "test.db")) as backend:
            yield backend


@fixture
def bus():
    return InMemoryMessageBus()


@fixture
def publisher(backend, bus):
    return backend.publisher(bus)


# Event store

@pytest.mark.asyncio
async def test_append_and_load_round_trip(backend):
    events = make_events("c-1", 0, 3)
    new_version = await backend.event_store.append("Counter", "c-1", 0, events)
    assert new_version == 3

    loaded = await backend.event_store.load("Counter", "c-1")
    assert loaded == events


@pytest.mark.asyncio
async def test_load_after_version(backend):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 3))
    loaded = await backend.event_store.load("Counter", "c-1", after_version=1)
    assert [e.version for e in loaded] == [2, 3]
    assert await backend.event_store.load("Counter", "c-1", after_version=3) == []


@pytest.mark.asyncio
async def test_load_unknown_aggregate(backend):
    assert await backend.event_store.load("Counter", "missing") == []
    assert await backend.event_store.current_version("Counter", "missing") == 0


@pytest.mark.asyncio
async def test_aggregate_types_are_separate(backend):
    await backend.event_store.append("Counter", "same-id", 0, make_events("same-id", 0, 2))
    await backend.event_store.append("Other", "same-id", 0, make_events("same-id", 0, 1, aggregate_type="Other"))
    assert await backend.event_store.current_version("Counter", "same-id") == 2
    assert await backend.event_store.current_version("Other", "same-id") == 1


@pytest.mark.asyncio
async def test_versions_stay_contiguous(backend):
    version = 0
    for count in (1, 3, 2, 5):
        version = await backend.event_store.append("Counter", "c-1", version, make_events("c-1", version, count))
    loaded = await backend.event_store.load("Counter", "c-1")
    assert [e.version for e in loaded] == list(range(1, 12))


@pytest.mark.asyncio
async def test_stale_expected_version_conflicts(backend):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 2))
    before = await dump(backend)

    with pytest.raises(ConcurrencyConflict) as excinfo:
        await backend.event_store.append("Counter", "c-1", 1, make_events("c-1", 1, 1))
    assert excinfo.value.expected_version == 1
    assert excinfo.value.actual_version == 2
    assert await dump(backend) == before


@pytest.mark.asyncio
async def test_concurrent_appends_exactly_one_succeeds(backend):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 1))

    results = await asyncio.gather(
        backend.event_store.append("Counter", "c-1", 1, make_events("c-1", 1, 2)),
        backend.event_store.append("Counter", "c-1", 1, make_events("c-1", 1, 2)),
        return_exceptions=True,
    )
    assert sorted(type(r).__name__ for r in results) == ["ConcurrencyConflict", "int"]
    assert await backend.event_store.current_version("Counter", "c-1") == 3


@pytest.mark.asyncio
async def test_append_rejects_misnumbered_events(backend):
    with pytest.raises(ValidationError):
        await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 1, 1))
    with pytest.raises(ValidationError):
        await backend.event_store.append("Counter", "c-2", 0, make_events("c-1", 0, 1))
    with pytest.raises(ValidationError):
        await backend.event_store.append("Counter", "", 0, [])
    with pytest.raises(ValidationError):
        await backend.event_store.append("Counter", "c-1", -1, [])
    assert await backend.event_store.current_version("Counter", "c-1") == 0


@pytest.mark.asyncio
async def test_append_nothing_checks_version(backend):
    assert await backend.event_store.append("Counter", "c-1", 0, []) == 0
    with pytest.raises(ConcurrencyConflict):
        await backend.event_store.append("Counter", "c-1", 4, [])


@pytest.mark.asyncio
async def test_cancelled_append_writes_nothing(backend, monkeypatch):
    store = backend.event_store
    reached = asyncio.Event()

    async def stall(*args):
        reached.set()
        await asyncio.Event().wait()

    # Events and pending rows are already written when the claim step stalls.
    monkeypatch.setattr(store, "_claim", stall)
    task = asyncio.create_task(
        store.append("User", "a", 0, make_events("a", 0, 2, "User"), claims=[("username", "alice")])
    )
    await reached.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    monkeypatch.undo()

    tables = await dump(backend)
    assert all(rows == [] for rows in tables.values())
    assert await store.append("User", "a", 0, make_events("a", 0, 1, "User"), claims=[("username", "alice")]) == 1


@pytest.mark.asyncio
async def test_locked_database_raises_transient_error():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "test.db")
        async with sqlite_backend(db_path, busy_timeout_ms=50) as backend:
            store = backend.event_store
            blocker = await aiosqlite.connect(db_path)
            try:
                await blocker.execute("BEGIN IMMEDIATE")
                with pytest.raises(TransientStorageError):
                    await store.append("Counter", "c-1", 0, make_events("c-1", 0, 1))
            finally:
                await blocker.rollback()
                await blocker.close()

            assert await store.current_version("Counter", "c-1") == 0
            assert await store.append("Counter", "c-1", 0, make_events("c-1", 0, 1)) == 1


# Uniqueness

@pytest.mark.asyncio
async def test_unique_claims(backend):
    store = backend.event_store
    await store.append("User", "a", 0, make_events("a", 0, 1, "User"), claims=[("username", "alice")])

    with pytest.raises(DuplicateUniqueValue) as excinfo:
        await store.append("User", "b", 0, make_events("b", 0, 1, "User"), claims=[("username", "alice")])
    assert excinfo.value.scope == "username"
    assert excinfo.value.owner == "a"
    # The whole append rolled back, events and pending rows included.
    assert await store.current_version("User", "b") == 0
    assert await backend.publisher(InMemoryMessageBus()).get_pending("User", "b") == []

    assert await store.release("username", "alice", "User", "b") is False
    # Same id under another aggregate type does not own the claim.
    assert await store.release("username", "alice", "Counter", "a") is False
    assert await store.find_owner("username", "alice") == "a"
    assert await store.release("username", "alice", "User", "a") is True
    assert await store.find_owner("username", "alice") is None

    await store.append("User", "b", 0, make_events("b", 0, 1, "User"), claims=[("username", "alice")])
    assert await store.find_owner("username", "alice") == "b"


@pytest.mark.asyncio
async def test_same_owner_can_claim_again(backend):
    store = backend.event_store
    await store.append("User", "a", 0, make_events("a", 0, 1, "User"), claims=[("username", "alice")])
    await store.append("User", "a", 1, make_events("a", 1, 1, "User"), claims=[("username", "alice")])
    assert await store.find_owner("username", "alice") == "a"


@pytest.mark.asyncio
async def test_scopes_are_independent(backend):
    store = backend.event_store
    await store.append("User", "a", 0, make_events("a", 0, 1, "User"), claims=[("username", "alice")])
    await store.append("User", "b", 0, make_events("b", 0, 1, "User"), claims=[("email", "alice")])
    assert await store.find_owner("username", "alice") == "a"
    assert await store.find_owner("email", "alice") == "b"


@pytest.mark.asyncio
async def test_release_with_append(backend):
    store = backend.event_store
    await store.append("User", "a", 0, make_events("a", 0, 1, "User"), claims=[("username", "alice")])
    await store.append(
        "User", "a", 1, make_events("a", 1, 1, "User"),
        claims=[("username", "alicia")], releases=[("username", "alice")],
    )
    assert await store.find_owner("username", "alice") is None
    assert await store.find_owner("username", "alicia") == "a"


@pytest.mark.asyncio
async def test_claims_need_an_event(backend):
    with pytest.raises(ValidationError):
        await backend.event_store.append("User", "a", 0, [], claims=[("username", "alice")])


# Outbox publisher

@pytest.mark.asyncio
async def test_append_stages_pending_rows(backend, publisher):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 2))
    pending = await publisher.get_pending("Counter", "c-1")
    assert [p.version for p in pending] == [1, 2]


@pytest.mark.asyncio
async def test_publish_sends_one_ordered_batch(backend, bus, publisher):
    events = make_events("c-1", 0, 3)
    await backend.event_store.append("Counter", "c-1", 0, events)

    assert await publisher.publish_pending("Counter", "c-1") == 3
    assert bus.sent == [events]
    assert await publisher.get_pending("Counter", "c-1") == []

    assert await publisher.publish_pending("Counter", "c-1") == 0
    assert len(bus.sent) == 1


@pytest.mark.asyncio
async def test_publish_does_not_touch_events(backend, publisher):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 2))
    before = (await dump(backend))["events"]
    await publisher.publish_pending("Counter", "c-1")
    assert (await dump(backend))["events"] == before


@pytest.mark.asyncio
async def test_failed_send_keeps_rows(backend, bus, publisher):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 1))
    bus.fail_next()
    with pytest.raises(PublishFailure):
        await publisher.publish_pending("Counter", "c-1")
    assert len(await publisher.get_pending("Counter", "c-1")) == 1

    assert await publisher.publish_pending("Counter", "c-1") == 1
    assert len(bus.messages) == 1


@pytest.mark.asyncio
async def test_failed_confirm_resends(backend, bus, publisher, monkeypatch):
    """Delivered but not cleared: the next attempt delivers the same batch again."""
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 2))

    async def broken_confirm(pending):
        raise ConnectionError("disk unplugged")

    monkeypatch.setattr(publisher, "_confirm", broken_confirm)
    with pytest.raises(PublishFailure, match="sent again"):
        await publisher.publish_pending("Counter", "c-1")
    monkeypatch.undo()

    assert await publisher.publish_pending("Counter", "c-1") == 2
    assert len(bus.sent) == 2
    assert bus.sent[0] == bus.sent[1]
    assert await publisher.get_pending("Counter", "c-1") == []


@pytest.mark.asyncio
async def test_publish_all_pending(backend, bus, publisher):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 2))
    await backend.event_store.append("Counter", "c-2", 0, make_events("c-2", 0, 1))

    assert await publisher.publish_all_pending() == 3
    assert len(bus.sent) == 2
    assert await publisher.publish_all_pending() == 0


@pytest.mark.asyncio
async def test_publish_all_pending_skips_failures(backend, bus, publisher):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 1))
    await backend.event_store.append("Counter", "c-2", 0, make_events("c-2", 0, 1))
    bus.fail_next()

    assert await publisher.publish_all_pending() == 1
    assert await publisher.publish_all_pending() == 1
    assert len(bus.messages) == 2


# Corrector

@pytest.mark.asyncio
async def test_correct_consistent_state_is_noop(backend):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 2))
    before = await dump(backend)
    report = await backend.corrector.correct("Counter", "c-1")
    assert not report.changed
    assert await dump(backend) == before


@pytest.mark.asyncio
async def test_correct_restores_missing_pending_rows(backend, publisher):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 3))
    async with backend.handle.writer() as conn:
        await conn.execute("DELETE FROM pending_events WHERE version > 1")

    report = await backend.corrector.correct("Counter", "c-1")
    assert report.pending_restored == 2
    assert [p.version for p in await publisher.get_pending("Counter", "c-1")] == [1, 2, 3]

    state = await dump(backend)
    report = await backend.corrector.correct("Counter", "c-1")
    assert not report.changed
    assert await dump(backend) == state


@pytest.mark.asyncio
async def test_correct_does_not_restore_delivered_events(backend, bus, publisher):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 2))
    await publisher.publish_pending("Counter", "c-1")
    await backend.event_store.append("Counter", "c-1", 2, make_events("c-1", 2, 1))
    async with backend.handle.writer() as conn:
        await conn.execute("DELETE FROM pending_events")

    report = await backend.corrector.correct("Counter", "c-1")
    assert report.pending_restored == 1
    assert [p.version for p in await publisher.get_pending("Counter", "c-1")] == [3]


@pytest.mark.asyncio
async def test_sweep_past_missing_pending_row_keeps_it_recoverable(backend, bus, publisher):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 3))
    async with backend.handle.writer() as conn:
        await conn.execute("DELETE FROM pending_events WHERE version = 1")

    assert await publisher.publish_all_pending() == 2
    assert [m.version for m in bus.messages] == [2, 3]

    # Version 1 was never delivered, so the cursor must not have passed it.
    report = await backend.corrector.correct("Counter", "c-1")
    assert report.pending_restored == 3
    assert await publisher.publish_pending("Counter", "c-1") == 3
    assert [m.version for m in bus.sent[-1]] == [1, 2, 3]

    assert not (await backend.corrector.correct("Counter", "c-1")).changed
    assert await publisher.get_pending("Counter", "c-1") == []


@pytest.mark.asyncio
async def test_correct_removes_orphaned_claims(backend):
    store = backend.event_store
    await store.append("User", "a", 0, make_events("a", 0, 1, "User"), claims=[("username", "alice")])
    async with backend.handle.writer() as conn:
        await conn.execute(
            "INSERT INTO unique_claims (scope, value, aggregate_type, aggregate_id, version) VALUES (?, ?, ?, ?, ?)",
            ("username", "ghost", "User", "a", 2),
        )

    report = await backend.corrector.correct("User", "a")
    assert report.claims_removed == 1
    assert await store.find_owner("username", "ghost") is None
    assert await store.find_owner("username", "alice") == "a"

    await store.append("User", "b", 0, make_events("b", 0, 1, "User"), claims=[("username", "ghost")])
    assert await store.find_owner("username", "ghost") == "b"


@pytest.mark.asyncio
async def test_correct_removes_memento_ahead_of_history(backend):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 1))
    await backend.memento_store.save("Counter", "c-1", 5, b"future")

    report = await backend.corrector.correct("Counter", "c-1")
    assert report.mementos_removed == 1
    assert await backend.memento_store.find("Counter", "c-1") is None


@pytest.mark.asyncio
async def test_concurrent_correctors_converge(backend):
    await backend.event_store.append("Counter", "c-1", 0, make_events("c-1", 0, 2))
    async with backend.handle.writer() as conn:
        await conn.execute("DELETE FROM pending_events")

    reports = await asyncio.gather(*(backend.corrector.correct("Counter", "c-1") for _ in range(3)))
    assert sum(r.pending_restored for r in reports) == 2
    assert len((await dump(backend))["pending_events"]) == 2


# Memento store

@pytest.mark.asyncio
async def test_memento_store(backend):
    mementos = backend.memento_store
    assert await mementos.find("User", "u-1") is None

    await mementos.save("User", "u-1", 1, b"first state")
    await mementos.save("User", "u-1", 4, b"second state")
    memento = await mementos.find("User", "u-1")
    assert memento.version == 4
    assert memento.state == b"second state"

    async with backend.handle.reader() as conn:
        async with conn.execute("SELECT COUNT(*), state FROM mementos") as cursor:
            count, stored = await cursor.fetchone()
    assert count == 1
    assert stored != b"second state"

    await mementos.delete("User", "u-1")
    assert await mementos.find("User", "u-1") is None
    await mementos.delete("User", "u-1")


@pytest.mark.asyncio
async def test_memento_store_validates(backend):
    with pytest.raises(ValidationError):
        await backend.memento_store.find("User", "")
    with pytest.raises(ValidationError):
        await backend.memento_store.save("User", "u-1", 0, b"state")
