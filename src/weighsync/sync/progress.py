"""Progress channel: typed sync progress events for UI subscribers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from weighsync.sync.protocol import SyncProgress

logger = logging.getLogger(__name__)

ProgressHandler = Callable[[SyncProgress], Any]


class ProgressChannel:
    """Fan-out of :class:`SyncProgress` events to subscribed handlers.

    Handlers may be plain callables or coroutine functions. A failing handler
    is logged and never interrupts the sync run that published the event.
    """

    def __init__(self) -> None:
        self._handlers: list[ProgressHandler] = []
        self._last: SyncProgress | None = None

    @property
    def last_event(self) -> SyncProgress | None:
        return self._last

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: ProgressHandler) -> Callable[[], None]:
        """Register ``handler``; returns a callable that unsubscribes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            self._handlers = [h for h in self._handlers if h is not handler]

        return unsubscribe

    async def publish(self, event: SyncProgress) -> None:
        self._last = event
        # Copy so handlers may unsubscribe while being called
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Progress handler error for stage '%s': %s", event.stage, e)
