import argparse
import asyncio
import os
import tempfile
import time

from event_outbox import DomainEvent, InMemoryMessageBus, sqlite_backend


def make_batch(aggregate_id: str, after_version: int, batch_size: int):
    return [
        DomainEvent(
            aggregate_id=aggregate_id,
            aggregate_type="Bench",
            version=after_version + i,
            type="MyEvent",
            data={"n": after_version + i},
        )
        for i in range(1, batch_size + 1)
    ]


async def run_benchmark(db_path: str, num_events: int, batch_size: int):
    async with sqlite_backend(db_path) as backend:
        publisher = backend.publisher(InMemoryMessageBus())
        store = backend.event_store

        version = 0
        start_append = time.perf_counter()
        while version < num_events:
            version = await store.append("Bench", "bench-1", version, make_batch("bench-1", version, batch_size))
        append_time = time.perf_counter() - start_append

        start_publish = time.perf_counter()
        published = await publisher.publish_pending("Bench", "bench-1")
        publish_time = time.perf_counter() - start_publish

        start_load = time.perf_counter()
        events = await store.load("Bench", "bench-1")
        load_time = time.perf_counter() - start_load

        assert len(events) == version == published

    print(f"\n--- Results for {version} events in batches of {batch_size} ---")
    print(f"Append:  {append_time:.4f}s ({version / append_time:,.0f} events/s)")
    print(f"Publish: {publish_time:.4f}s ({published / publish_time:,.0f} events/s)")
    print(f"Load:    {load_time:.4f}s ({version / load_time:,.0f} events/s)")


async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--num-events", type=int, default=10_000)
    parser.add_argument("--batch-size", type=int, default=100)
    args = parser.parse_args()
    with tempfile.TemporaryDirectory() as tmpdir:
        await run_benchmark(os.path.join(tmpdir, "bench.db"), args.num_events, args.batch_size)


if __name__ == "__main__":
    asyncio.run(main())
