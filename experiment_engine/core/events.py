"""
In-process event stream.

Subscribers (dashboards, alerting, the persistence writer) register a
handler and receive events through their own bounded queue, drained by a
dedicated worker task. Publishing never blocks and never fails the caller:

- publish() is safe to call from any thread once the bus is started
- a full subscriber queue drops the event and logs a warning
- a handler that raises is logged and keeps receiving later events

Usage:
    bus = EventBus(max_queue_size=1000)
    await bus.start()

    bus.subscribe(handle_event, event_types={EventType.EXPERIMENT_STOPPED})
    bus.publish(Event(EventType.EXPERIMENT_STOPPED, experiment_id, snapshot))

    await bus.close()
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Collection, Mapping, Optional, Union

import structlog

from experiment_engine.models.experiment import EventType, utcnow


@dataclass(frozen=True)
class Event:
    """An immutable event carrying a snapshot of the affected entity."""

    event_type: EventType
    experiment_id: str
    payload: Mapping[str, Any]
    occurred_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))


Handler = Callable[[Event], Union[None, Awaitable[None]]]


class Subscription:
    def __init__(
        self,
        bus: "EventBus",
        handler: Handler,
        event_types: Optional[Collection[EventType]],
        max_queue_size: int,
    ):
        self.bus = bus
        self.handler = handler
        self.event_types = frozenset(event_types) if event_types else None
        self.max_queue_size = max_queue_size
        self.queue: Optional[asyncio.Queue] = None
        self.task: Optional[asyncio.Task] = None
        self.dropped = 0

    def wants(self, event: Event) -> bool:
        return self.event_types is None or event.event_type in self.event_types

    def offer(self, event: Event) -> None:
        if self.queue is None:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            self.bus.logger.warning(
                "event_dropped",
                event_type=event.event_type,
                experiment_id=event.experiment_id,
                dropped=self.dropped,
            )

    def unsubscribe(self) -> None:
        self.bus.unsubscribe(self)


class EventBus:
    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self.logger = structlog.get_logger("events")
        self._subscriptions: list[Subscription] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def started(self) -> bool:
        return self._loop is not None

    async def start(self) -> None:
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions):
            self._start_worker(subscription)

    def subscribe(
        self, handler: Handler, event_types: Optional[Collection[EventType]] = None
    ) -> Subscription:
        subscription = Subscription(self, handler, event_types, self.max_queue_size)
        self._subscriptions.append(subscription)
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._start_worker, subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        if subscription.task is not None:
            if self._loop is not None:
                self._loop.call_soon_threadsafe(subscription.task.cancel)
            else:
                subscription.task.cancel()

    def publish(self, event: Event) -> None:
        """Hand the event to every interested subscriber without waiting."""
        if self._loop is None or self._loop.is_closed():
            self.logger.debug("event_not_dispatched", event_type=event.event_type)
            return
        for subscription in list(self._subscriptions):
            if subscription.wants(event):
                self._loop.call_soon_threadsafe(subscription.offer, event)

    def _start_worker(self, subscription: Subscription) -> None:
        if subscription.task is not None or subscription not in self._subscriptions:
            return
        subscription.queue = asyncio.Queue(maxsize=subscription.max_queue_size)
        subscription.task = asyncio.get_running_loop().create_task(self._worker(subscription))

    async def _worker(self, subscription: Subscription) -> None:
        queue = subscription.queue
        while True:
            event = await queue.get()
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(
                    "event_handler_failed",
                    event_type=event.event_type,
                    experiment_id=event.experiment_id,
                    error=str(e),
                )
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        # Let call_soon_threadsafe offers scheduled before this call land first
        await asyncio.sleep(0)
        for subscription in list(self._subscriptions):
            if subscription.queue is not None and subscription.task is not None:
                await subscription.queue.join()

    async def close(self, timeout: float = 5.0) -> None:
        """Deliver what is already queued, then stop all workers."""
        if self._loop is None:
            return
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning("event_drain_timeout", timeout_seconds=timeout)
        tasks = [s.task for s in self._subscriptions if s.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for subscription in self._subscriptions:
            subscription.task = None
            subscription.queue = None
        self._loop = None
