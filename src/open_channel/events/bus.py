"""Retry progress fan-out.

Every subscription owns a bounded queue and a delivery task.  ``emit`` only
enqueues, so the retry loop never waits on a listener; a listener that falls
behind loses its oldest undelivered events.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from open_channel.types import RetryEventType, RetryStatus

_logger = logging.getLogger(__name__)

_WILDCARD = "*"

Handler = Callable[[RetryStatus], Any]


def _key(event_type: RetryEventType | str) -> str:
    if isinstance(event_type, RetryEventType):
        return event_type.value
    return str(event_type)


class Subscription:
    """One listener: a bounded queue drained into *handler* by its own task."""

    def __init__(self, bus: EventBus, event_type: str, handler: Handler, maxsize: int) -> None:
        self._bus = bus
        self.event_type = event_type
        self._handler = handler
        self._queue: asyncio.Queue[RetryStatus] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task[None] | None = None
        self.dropped = 0

    def matches(self, event: RetryStatus) -> bool:
        return self.event_type in (_WILDCARD, event.type.value)

    def offer(self, event: RetryStatus) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            _logger.warning(
                "Retry listener %s is behind, dropped its oldest event",
                getattr(self._handler, "__name__", self._handler),
            )
            self._queue.put_nowait(event)
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._deliver())

    async def join(self) -> None:
        await self._queue.join()

    def close(self) -> None:
        """Stop delivery; events still queued are discarded."""
        self._bus._remove(self)
        if self._task is not None:
            self._task.cancel()

    async def _deliver(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                result = self._handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _logger.exception(
                    "Retry listener %s raised for event %s",
                    getattr(self._handler, "__name__", self._handler),
                    event.type.value,
                )
            finally:
                self._queue.task_done()


class EventBus:
    """Publishes ``RetryStatus`` to any number of independent listeners.

    Listeners subscribe to one ``RetryEventType`` or to ``"*"``.  Sync
    handlers are called directly and async handlers are awaited, always from
    the listener's delivery task; a failing handler is logged without
    affecting other listeners or the request that emitted the event.
    """

    def __init__(self, maxsize: int = 32) -> None:
        self._subscriptions: list[Subscription] = []
        self._maxsize = maxsize

    def subscribe(self, event_type: RetryEventType | str, handler: Handler) -> Subscription:
        """Register *handler* for *event_type* (or ``"*"`` for all)."""
        subscription = Subscription(self, _key(event_type), handler, self._maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def emit(self, event: RetryStatus) -> None:
        """Queue *event* for every matching listener without waiting."""
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.offer(event)

    async def drain(self) -> None:
        """Wait until every listener has handled the events queued so far."""
        await asyncio.gather(*(s.join() for s in list(self._subscriptions)))

    async def close(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        tasks = [s._task for s in subscriptions if s._task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
