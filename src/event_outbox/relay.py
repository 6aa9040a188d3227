import asyncio
import logging

from .protocols import EventPublisher


class OutboxRelay:
    """
    A background task that periodically sweeps the outbox and publishes every
    aggregate with pending events.

    Repositories publish right after each save and before each find, so the
    relay only matters for aggregates whose publish failed and which are not
    touched again soon, e.g. after a crash between append and publish.
    """

    def __init__(self, publisher: EventPublisher, polling_interval: float = 1.0, batch_size: int = 100):
        self.publisher = publisher
        self._polling_interval = polling_interval
        self._batch_size = batch_size
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Starts the polling task."""
        if self._task:
            return
        self._task = asyncio.create_task(self._poll_for_pending())
        logging.info(f"Outbox relay started, polling every {self._polling_interval}s")

    async def stop(self):
        """Stops the polling task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logging.info("Outbox relay stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def _poll_for_pending(self):
        while True:
            try:
                sent = await self.publisher.publish_all_pending(self._batch_size)
                if sent:
                    logging.debug(f"Outbox relay published {sent} events")
            except Exception as e:
                logging.error(f"Outbox relay poll loop error: {e}")
            await asyncio.sleep(self._polling_interval)
