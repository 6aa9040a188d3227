"""
This module defines the abstract protocols for storage, delivery and serialization.

By using `Protocol`-based interfaces, the repository is decoupled from the
concrete implementation details of the backend. The SQLite adaptor is one
implementation; another database or message broker only needs to satisfy
these contracts, without changing `EventSourcedRepository`.
"""
from typing import Any, Iterable, List, Protocol, Sequence, Tuple

from .models import CorrectionReport, DomainEvent, Memento


class Serializer(Protocol):
    """Turns payloads into bytes and back. The core treats the bytes opaquely."""

    def serialize(self, obj: Any) -> bytes:
        ...

    def deserialize(self, data: bytes, type: Any = None) -> Any:
        ...


class MessageBus(Protocol):
    """
    The transport pending events are delivered to.
    It must itself be at-least-once; no transaction spans it and the storage.
    """

    async def send(self, message: Any):
        ...

    async def send_batch(self, messages: Sequence[Any]):
        ...


class EventStore(Protocol):
    async def append(
        self,
        aggregate_type: str,
        aggregate_id: str,
        expected_version: int,
        events: Sequence[DomainEvent],
        claims: Iterable[Tuple[str, str]] = (),
        releases: Iterable[Tuple[str, str]] = (),
    ) -> int:
        ...

    async def load(self, aggregate_type: str, aggregate_id: str, after_version: int = 0) -> List[DomainEvent]:
        ...

    async def current_version(self, aggregate_type: str, aggregate_id: str) -> int:
        ...

    async def release(self, scope: str, value: str, aggregate_type: str, aggregate_id: str) -> bool:
        ...

    async def find_owner(self, scope: str, value: str) -> str | None:
        ...


class EventPublisher(Protocol):
    async def publish_pending(self, aggregate_type: str, aggregate_id: str) -> int:
        ...

    async def publish_all_pending(self, limit: int = 100) -> int:
        ...


class EventCorrector(Protocol):
    async def correct(self, aggregate_type: str, aggregate_id: str) -> CorrectionReport:
        ...


class MementoStore(Protocol):
    async def save(self, aggregate_type: str, aggregate_id: str, version: int, state: bytes):
        ...

    async def find(self, aggregate_type: str, aggregate_id: str) -> Memento | None:
        ...

    async def delete(self, aggregate_type: str, aggregate_id: str):
        ...
