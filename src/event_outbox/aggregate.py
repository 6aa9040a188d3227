"""
This module defines how an aggregate variant is described and how events are
applied to it.

An `AggregateType` is built once, with an explicit dispatch table mapping each
event-type tag to a pure handler `(state, event) -> new_state`. There is no
aggregate base class and no runtime type inspection: the `Aggregate` record is
plain data, and everything behavioural lives in the `AggregateType`.
"""
from typing import Any, Callable, Dict, Iterable, Mapping

from .errors import ValidationError
from .models import Aggregate, DomainEvent, utcnow

Handler = Callable[[Any, DomainEvent], Any]


def require_id(value: str, name: str = "aggregate_id") -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"`{name}` cannot be empty.")
    return value


class SnapshotCapability:
    """
    Optional handle that lets an aggregate type be snapshotted.

    `to_memento` turns state into something the serializer accepts, and
    `from_memento` rebuilds state from the deserialized value.
    """

    def __init__(
        self,
        to_memento: Callable[[Any], Any] | None = None,
        from_memento: Callable[[Any], Any] | None = None,
    ):
        self.to_memento = to_memento or (lambda state: state)
        self.from_memento = from_memento or (lambda data: data)


class AggregateType:
    def __init__(
        self,
        name: str,
        initial_state: Callable[[], Any],
        handlers: Mapping[str, Handler],
        snapshot: SnapshotCapability | None = None,
    ):
        self.name = require_id(name, "name")
        self.initial_state = initial_state
        self.handlers: Dict[str, Handler] = dict(handlers)
        self.snapshot = snapshot

    def __repr__(self):
        return f"AggregateType({self.name!r})"

    def new(self, aggregate_id: str) -> Aggregate:
        return Aggregate(id=require_id(aggregate_id), aggregate_type=self.name, state=self.initial_state())

    def apply(self, state: Any, event: DomainEvent) -> Any:
        handler = self.handlers.get(event.type)
        if handler is None:
            raise ValidationError(f"{self.name} has no handler for event type {event.type!r}")
        return handler(state, event)

    def replay(self, aggregate: Aggregate, events: Iterable[DomainEvent]) -> Aggregate:
        """Applies persisted events in version order. A gap in the history is rejected."""
        for event in events:
            if event.version != aggregate.version + 1:
                raise ValidationError(
                    f"Cannot apply version {event.version} of {aggregate.id}: aggregate is at {aggregate.version}"
                )
            aggregate.state = self.apply(aggregate.state, event)
            aggregate.version = event.version
        return aggregate

    def restore(
        self,
        aggregate_id: str,
        events: Iterable[DomainEvent],
        memento_state: Any = None,
        memento_version: int = 0,
    ) -> Aggregate:
        aggregate = self.new(aggregate_id)
        if memento_version:
            if self.snapshot is None:
                raise ValidationError(f"{self.name} does not support snapshots")
            aggregate.state = self.snapshot.from_memento(memento_state)
            aggregate.version = memento_version
        return self.replay(aggregate, events)

    def raise_event(self, aggregate: Aggregate, event_type: str, data: Any = None) -> DomainEvent:
        """Builds the next event, applies it and buffers it until the next save."""
        if aggregate.aggregate_type != self.name:
            raise ValidationError(f"{aggregate.id} is a {aggregate.aggregate_type}, not a {self.name}")
        event = DomainEvent(
            aggregate_id=aggregate.id,
            aggregate_type=self.name,
            version=aggregate.version + 1,
            type=event_type,
            data=data,
            raised_at=utcnow(),
        )
        aggregate.state = self.apply(aggregate.state, event)
        aggregate.version = event.version
        aggregate.pending_events.append(event)
        return event
