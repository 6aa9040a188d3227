"""
An in-process `MessageBus`, used by tests and local runs.

It keeps every delivery, so at-least-once behaviour (and the duplicates it
implies) can be observed directly.
"""
from typing import Any, List, Sequence


class InMemoryMessageBus:
    def __init__(self):
        self.sent: List[List[Any]] = []  # One entry per send / send_batch call
        self._failures_left = 0

    @property
    def messages(self) -> List[Any]:
        return [message for batch in self.sent for message in batch]

    def fail_next(self, times: int = 1):
        """Makes the next `times` sends raise `ConnectionError`."""
        self._failures_left = times

    def _check_failure(self):
        if self._failures_left > 0:
            self._failures_left -= 1
            raise ConnectionError("Message bus unavailable")

    async def send(self, message: Any):
        self._check_failure()
        self.sent.append([message])

    async def send_batch(self, messages: Sequence[Any]):
        self._check_failure()
        self.sent.append(list(messages))

    def clear(self):
        self.sent.clear()
