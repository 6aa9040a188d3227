"""
This module implements the repository that ties the stores together.

`save` appends, publishes and snapshots; `find` corrects, publishes leftovers,
loads the snapshot plus newer events and replays them. Appending is the only
step whose failure fails a save: once events are durable, publishing and
snapshotting are best effort and recovered by later calls.
"""
import logging

from .aggregate import AggregateType, require_id
from .errors import PublishFailure, ValidationError
from .models import Aggregate
from .protocols import EventCorrector, EventPublisher, EventStore, MementoStore, Serializer


class EventSourcedRepository:
    def __init__(
        self,
        aggregate_type: AggregateType,
        event_store: EventStore,
        publisher: EventPublisher,
        corrector: EventCorrector,
        serializer: Serializer,
        memento_store: MementoStore | None = None,
    ):
        self.aggregate_type = aggregate_type
        self.event_store = event_store
        self._publisher = publisher
        self.corrector = corrector
        self.serializer = serializer
        # Snapshots are used only if both sides support them; decided once here.
        self.memento_store = memento_store if aggregate_type.snapshot is not None else None

    @property
    def event_publisher(self) -> EventPublisher:
        return self._publisher

    @property
    def snapshots_enabled(self) -> bool:
        return self.memento_store is not None

    async def save(self, aggregate: Aggregate) -> int:
        """
        Persists the aggregate's pending events and returns the new version.

        Raises `ConcurrencyConflict` if another writer got there first; the
        caller should `find` the aggregate again and retry its command.
        """
        if aggregate.aggregate_type != self.aggregate_type.name:
            raise ValidationError(f"Repository for {self.aggregate_type.name} cannot save a {aggregate.aggregate_type}")
        require_id(aggregate.id)
        if not aggregate.has_pending_changes():
            return aggregate.version

        new_version = await self.event_store.append(
            self.aggregate_type.name,
            aggregate.id,
            aggregate.persisted_version,
            aggregate.pending_events,
            claims=aggregate.pending_claims,
            releases=aggregate.pending_releases,
        )
        aggregate.clear_pending()

        await self._try_publish(aggregate.id)

        if self.memento_store is not None:
            try:
                state = self.serializer.serialize(self.aggregate_type.snapshot.to_memento(aggregate.state))
                await self.memento_store.save(self.aggregate_type.name, aggregate.id, new_version, state)
            except Exception as e:
                logging.warning(f"Snapshot of {self.aggregate_type.name}/{aggregate.id} at version {new_version} skipped: {e}")

        return new_version

    async def find(self, aggregate_id: str) -> Aggregate | None:
        """Rebuilds an aggregate from its snapshot and history, or returns None if it has neither."""
        require_id(aggregate_id)
        name = self.aggregate_type.name

        await self.corrector.correct(name, aggregate_id)
        await self._try_publish(aggregate_id)

        memento = None
        if self.memento_store is not None:
            memento = await self.memento_store.find(name, aggregate_id)

        events = await self.event_store.load(name, aggregate_id, after_version=memento.version if memento else 0)

        if memento is None:
            if not events:
                return None
            return self.aggregate_type.restore(aggregate_id, events)

        state = self.serializer.deserialize(memento.state)
        return self.aggregate_type.restore(aggregate_id, events, memento_state=state, memento_version=memento.version)

    async def _try_publish(self, aggregate_id: str):
        try:
            await self._publisher.publish_pending(self.aggregate_type.name, aggregate_id)
        except PublishFailure as e:
            logging.warning(f"Publishing {self.aggregate_type.name}/{aggregate_id} deferred: {e}")
