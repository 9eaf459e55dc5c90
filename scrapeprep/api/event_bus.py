from __future__ import annotations

import logging
from collections.abc import Callable

from scrapeprep.models.events import RunEvent

logger = logging.getLogger(__name__)

RunEventListener = Callable[[RunEvent], None]


class RunEventBus:
    """In-process publish/subscribe keyed by run id.

    Delivery is synchronous, in publish order, to the listeners registered
    at publish time. Nothing is retained for late subscribers.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[RunEventListener]] = {}

    def subscribe(self, run_id: str, listener: RunEventListener) -> Callable[[], None]:
        self._listeners.setdefault(run_id, []).append(listener)
        removed = False

        def unsubscribe() -> None:
            nonlocal removed
            if removed:
                return
            removed = True
            listeners = self._listeners.get(run_id)
            if listeners is None:
                return
            try:
                listeners.remove(listener)
            except ValueError:
                return
            if not listeners:
                del self._listeners[run_id]

        return unsubscribe

    def publish(self, run_id: str, event: RunEvent) -> None:
        for listener in list(self._listeners.get(run_id, ())):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed for %s on run %s", event.type.value, run_id)

    def listener_count(self, run_id: str) -> int:
        return len(self._listeners.get(run_id, ()))

    def close(self) -> None:
        self._listeners.clear()
