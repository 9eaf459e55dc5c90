from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from scrapeprep.api.event_bus import RunEventBus
from scrapeprep.api.run_store import SqlRunStore
from scrapeprep.models.events import EventType, RunEvent

logger = logging.getLogger(__name__)


class SubscriptionGateway:
    """Feeds one observer a snapshot of a run followed by its live events."""

    def __init__(self, store: SqlRunStore, bus: RunEventBus) -> None:
        self.store = store
        self.bus = bus

    async def stream(
        self,
        run_id: str,
        heartbeat_seconds: float | None = None,
    ) -> AsyncIterator[RunEvent | None]:
        """Yield ``run.snapshot`` then every later bus event for ``run_id``.

        The listener is registered before the snapshot is read so nothing
        published in between is lost; log events already covered by the
        snapshot are dropped. ``None`` is yielded after ``heartbeat_seconds``
        of silence. Raises NotFound before yielding for an unknown run.
        """

        queue: asyncio.Queue[RunEvent] = asyncio.Queue()
        unsubscribe = self.bus.subscribe(run_id, queue.put_nowait)
        try:
            snapshot = await self.store.get_snapshot(run_id)
            last_sequence = snapshot.last_sequence
            yield RunEvent.snapshot(snapshot)
            while True:
                try:
                    if heartbeat_seconds:
                        event = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
                    else:
                        event = await queue.get()
                except TimeoutError:
                    yield None
                    continue
                if event.type == EventType.log_appended:
                    sequence = event.sequence or 0
                    if sequence <= last_sequence:
                        continue
                    last_sequence = sequence
                yield event
        finally:
            unsubscribe()
            logger.debug("Subscription to run %s closed", run_id)
