"""In-process event bus for lifecycle events.

publish() fans an event out to every matching subscriber and returns
without waiting on any of them. Plain callables run inline; coroutine
handlers are queued per subscriber and drained by a background task, one
event at a time, so each subscriber sees events in publish order. A
failing or slow subscriber is logged and skipped; it never fails or
delays the publisher or the state transition that caused the event.
"""

import asyncio
import inspect
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import structlog

from core.constants import EventType
from core.utils import generate_id, isoformat, utc_now

logger = structlog.get_logger(__name__)

EventHandler = Callable[["Event"], Union[None, Awaitable[None]]]

ALL_EVENTS = "*"


@dataclass(frozen=True)
class Event:
    type: EventType
    automation_id: Optional[str] = None
    execution_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: generate_id("evt"))
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "automation_id": self.automation_id,
            "execution_id": self.execution_id,
            "payload": self.payload,
            "timestamp": isoformat(self.timestamp),
        }


def _is_coroutine_handler(handler: EventHandler) -> bool:
    return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    )


class _Subscription:
    __slots__ = ("handler", "event_types", "name", "is_async", "queue", "worker")

    def __init__(self, handler: EventHandler, event_types: Optional[frozenset]):
        self.handler = handler
        self.event_types = event_types
        self.name = getattr(handler, "__qualname__", repr(handler))
        self.is_async = _is_coroutine_handler(handler)
        self.queue: Optional[asyncio.Queue] = None
        self.worker: Optional[asyncio.Task] = None

    def matches(self, event: Event) -> bool:
        return self.event_types is None or event.type in self.event_types


class EventBus:
    """Publish-only fan-out to registered subscribers."""

    def __init__(self, handler_timeout: float = 5.0, buffer_size: int = 500):
        self.handler_timeout = handler_timeout
        self._subscriptions: List[_Subscription] = []
        self._lock = threading.Lock()
        self._recent: deque[Event] = deque(maxlen=buffer_size)

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Optional[Union[str, EventType, Iterable[Union[str, EventType]]]] = None,
    ) -> Callable[[], None]:
        """
        Register a handler. Sync and async handlers are both accepted.

        Args:
            handler: Callable receiving an Event
            event_types: One type, several types, or None / "*" for all

        Returns:
            Callable that removes the subscription
        """
        if event_types is None or event_types == ALL_EVENTS:
            types = None
        elif isinstance(event_types, (str, EventType)):
            types = frozenset({EventType(event_types)})
        else:
            types = frozenset(EventType(t) for t in event_types)

        subscription = _Subscription(handler, types)
        with self._lock:
            self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)
            if subscription.worker is not None:
                subscription.worker.cancel()

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    async def publish(self, event: Event) -> int:
        """
        Hand an event to every matching subscriber.

        Returns:
            Number of subscribers that accepted the event: plain handlers
            that ran without error plus coroutine handlers it was queued for
        """
        with self._lock:
            self._recent.append(event)
            targets = [s for s in self._subscriptions if s.matches(event)]

        delivered = 0
        for subscription in targets:
            if subscription.is_async:
                self._enqueue(subscription, event)
                delivered += 1
            elif self._call(subscription, event):
                delivered += 1
        return delivered

    def _call(self, subscription: _Subscription, event: Event) -> bool:
        try:
            outcome = subscription.handler(event)
        except Exception as e:
            self._log_failure(subscription, event, e)
            return False
        if inspect.isawaitable(outcome):
            # A plain callable that returned an awaitable; finish it off the publish path
            self._enqueue(subscription, outcome)
        return True

    def _enqueue(self, subscription: _Subscription, item: Union[Event, Awaitable[None]]) -> None:
        loop = asyncio.get_running_loop()
        worker = subscription.worker
        if worker is None or worker.done() or worker.get_loop() is not loop:
            subscription.queue = asyncio.Queue()
            subscription.worker = loop.create_task(self._drain_subscription(subscription, subscription.queue))
        subscription.queue.put_nowait(item)

    async def _drain_subscription(self, subscription: _Subscription, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                await self._deliver(subscription, item)
            finally:
                queue.task_done()

    async def _deliver(self, subscription: _Subscription, item: Union[Event, Awaitable[None]]) -> None:
        if isinstance(item, Event):
            event, outcome = item, None
        else:
            event, outcome = None, item
        try:
            if outcome is None:
                outcome = subscription.handler(event)
            if inspect.isawaitable(outcome):
                await asyncio.wait_for(outcome, timeout=self.handler_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Event handler timed out",
                handler=subscription.name,
                event_type=event.type.value if event else None,
                timeout=self.handler_timeout,
            )
        except Exception as e:
            self._log_failure(subscription, event, e)

    @staticmethod
    def _log_failure(subscription: _Subscription, event: Optional[Event], error: Exception) -> None:
        logger.error(
            "Event handler failed",
            handler=subscription.name,
            event_type=event.type.value if event else None,
            error=str(error),
        )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every queued event has been handled."""
        with self._lock:
            queues = [s.queue for s in self._subscriptions if s.queue is not None]
        if queues:
            await asyncio.wait_for(asyncio.gather(*(q.join() for q in queues)), timeout=timeout)

    async def close(self) -> None:
        """Flush queued events, then stop every delivery task."""
        try:
            await self.drain(timeout=self.handler_timeout)
        except asyncio.TimeoutError:
            logger.warning("Event bus closed with undelivered events")
        with self._lock:
            workers = [s.worker for s in self._subscriptions if s.worker is not None]
            for subscription in self._subscriptions:
                subscription.worker = None
                subscription.queue = None
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    def recent(
        self,
        limit: int = 50,
        event_type: Optional[EventType] = None,
        automation_id: Optional[str] = None,
    ) -> List[Event]:
        """Most recent buffered events, newest first."""
        with self._lock:
            events = list(self._recent)
        events.reverse()
        if event_type is not None:
            events = [e for e in events if e.type == EventType(event_type)]
        if automation_id is not None:
            events = [e for e in events if e.automation_id == automation_id]
        return events[:limit]

    def clear(self) -> None:
        with self._lock:
            self._recent.clear()
