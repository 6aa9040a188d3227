import argparse
import asyncio
import logging
import os
import tempfile

from cryptography.fernet import Fernet
from event_outbox import (
    AggregateType,
    DuplicateUniqueValue,
    FernetSerializer,
    InMemoryMessageBus,
    SnapshotCapability,
    sqlite_backend,
)

USER = AggregateType(
    "User",
    initial_state=dict,
    handlers={
        "Registered": lambda state, event: {"username": event.data["username"], "logins": 0},
        "LoggedIn": lambda state, event: {**state, "logins": state["logins"] + 1},
    },
    snapshot=SnapshotCapability(),
)


async def demo(db_path: str, logins: int):
    key = Fernet.generate_key()
    bus = InMemoryMessageBus()

    async with sqlite_backend(db_path, serializer=FernetSerializer(key)) as backend:
        users = backend.repository(USER, bus)

        alice = USER.new("user-1")
        USER.raise_event(alice, "Registered", {"username": "alice"})
        alice.claim("username", "alice")
        for _ in range(logins):
            USER.raise_event(alice, "LoggedIn")

        # The bus is down while saving: the events are durable but not delivered yet.
        bus.fail_next()
        version = await users.save(alice)
        print(f"Saved user-1 at version {version}, delivered so far: {len(bus.messages)}")

        impostor = USER.new("user-2")
        USER.raise_event(impostor, "Registered", {"username": "alice"})
        impostor.claim("username", "alice")
        try:
            await users.save(impostor)
        except DuplicateUniqueValue as e:
            print(f"Rejected user-2: {e}")

        # Reading the aggregate publishes whatever is still pending.
        found = await users.find("user-1")
        print(f"Found user-1 at version {found.version}: {found.state}")
        print(f"Delivered after find: {[(m.type, m.version) for m in bus.messages]}")


async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--logins", type=int, default=3)
    parser.add_argument("--db-path", default=None, help="SQLite file, a temporary one by default")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    if args.db_path:
        await demo(args.db_path, args.logins)
    else:
        with tempfile.TemporaryDirectory() as tmpdir:
            await demo(os.path.join(tmpdir, "demo.db"), args.logins)


if __name__ == "__main__":
    asyncio.run(main())
