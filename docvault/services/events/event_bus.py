"""In-process publish/subscribe with an optional reconnecting network transport."""

import asyncio
import inspect
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Union

from docvault.core.exceptions import EventTransportError
from docvault.schemas.events import WILDCARD, PubSubEvent, PubSubEventType
from docvault.services.events.event_cache import EventCache
from docvault.services.events.transport import EventTransport
from docvault.utils.clock import Clock, SystemClock
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)

EventHandler = Callable[[PubSubEvent], Union[None, Awaitable[None]]]


class Subscription:
    """One handler with its own bounded queue and worker task.

    A full queue drops its oldest event, so a slow handler only ever loses
    its own backlog.
    """

    def __init__(
        self,
        key: str,
        handler: EventHandler,
        queue_size: int,
        handler_timeout: float,
        dedupe_window: int,
    ):
        self.key = key
        self.handler = handler
        self.handler_timeout = handler_timeout
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0
        self._seen_ids: Set[str] = set()
        self._seen_order: Deque[str] = deque()
        self._dedupe_window = dedupe_window
        self._worker: Optional[asyncio.Task] = None

    def offer(self, event: PubSubEvent) -> None:
        if event.id in self._seen_ids:
            return
        self._remember(event.id)

        if self.queue.full():
            self.queue.get_nowait()
            self.queue.task_done()
            self.dropped += 1
            LOGGER.warning(
                "Subscriber queue full, dropped oldest event",
                extra={"subscription": self.key, "dropped": self.dropped},
            )
        self.queue.put_nowait(event)

        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def _remember(self, event_id: str) -> None:
        self._seen_ids.add(event_id)
        self._seen_order.append(event_id)
        if len(self._seen_order) > self._dedupe_window:
            self._seen_ids.discard(self._seen_order.popleft())

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                result = self.handler(event)
                if inspect.isawaitable(result):
                    await asyncio.wait_for(result, timeout=self.handler_timeout)
            except asyncio.TimeoutError:
                LOGGER.warning(
                    f"Event handler timed out after {self.handler_timeout}s",
                    extra={"subscription": self.key, "event_id": event.id},
                )
            except Exception as e:
                LOGGER.error(
                    f"Event handler failed: {str(e)}",
                    exc_info=True,
                    extra={"subscription": self.key, "event_id": event.id},
                )
            finally:
                self.queue.task_done()

    def cancel(self) -> None:
        if self._worker is not None:
            self._worker.cancel()

    async def close(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass


class EventBus:
    """Typed pub/sub channel feeding a short-TTL event cache.

    Local subscribers and the cache are updated as soon as an event is
    published. When a transport is configured, events are also sent to it;
    while it is down they are buffered and flushed after the next reconnect,
    so delivery is at-least-once and subscribers dedupe by event id.
    """

    def __init__(
        self,
        transport: Optional[EventTransport] = None,
        clock: Optional[Clock] = None,
        cache_ttl_seconds: float = 3600.0,
        cache_max_entries: int = 10000,
        queue_size: int = 100,
        handler_timeout: float = 5.0,
        reconnect_delay: float = 5.0,
        dedupe_window: int = 1000,
        outbound_buffer_size: int = 1000,
    ):
        self.transport = transport
        self.clock = clock or SystemClock()
        self.cache = EventCache(cache_ttl_seconds, self.clock, max_entries=cache_max_entries)
        self.queue_size = queue_size
        self.handler_timeout = handler_timeout
        self.reconnect_delay = reconnect_delay
        self.dedupe_window = dedupe_window
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._outbound: Deque[PubSubEvent] = deque(maxlen=outbound_buffer_size)
        self._send_lock = asyncio.Lock()
        self._transport_task: Optional[asyncio.Task] = None
        self._stopping = False
        self.reconnect_attempts = 0

    @property
    def is_connected(self) -> bool:
        return self.transport is not None and self.transport.connected

    @property
    def buffered_count(self) -> int:
        return len(self._outbound)

    def on_event(
        self,
        event_type: Union[PubSubEventType, str],
        handler: EventHandler,
    ) -> Callable[[], None]:
        """Subscribe a handler to one event type or ``"*"`` for all.

        Returns:
            A callable that removes the subscription
        """
        key = event_type.value if isinstance(event_type, PubSubEventType) else event_type
        if key != WILDCARD:
            PubSubEventType(key)

        subscription = Subscription(
            key, handler, self.queue_size, self.handler_timeout, self.dedupe_window
        )
        self._subscriptions.setdefault(key, []).append(subscription)

        def unsubscribe() -> None:
            subscriptions = self._subscriptions.get(key, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)
                subscription.cancel()

        return unsubscribe

    def get_cached(self, event_type: PubSubEventType, target: Optional[str] = None) -> Optional[PubSubEvent]:
        return self.cache.get(f"{event_type.value}:{target or 'global'}")

    async def emit(
        self,
        event_type: PubSubEventType,
        payload: Dict[str, Any],
        source_component: str,
        target: Optional[str] = None,
    ) -> PubSubEvent:
        event = PubSubEvent(
            type=event_type,
            timestamp=self.clock.now(),
            payload=payload,
            source_component=source_component,
            target=target,
        )
        await self.publish(event)
        return event

    async def publish(self, event: PubSubEvent) -> None:
        """Publish an event. Subscribers are fed through their own queues and never block this call."""
        self._deliver_locally(event)

        if self.transport is None:
            return
        self._outbound.append(event)
        if self.transport.connected:
            await self._flush_outbound()

    def _deliver_locally(self, event: PubSubEvent) -> None:
        self.cache.put(event)
        for key in (event.type.value, WILDCARD):
            for subscription in list(self._subscriptions.get(key, [])):
                subscription.offer(event)

    async def _flush_outbound(self) -> None:
        async with self._send_lock:
            while self._outbound and self.transport.connected:
                event = self._outbound[0]
                try:
                    await self.transport.send(event)
                except EventTransportError as e:
                    LOGGER.warning(
                        f"Event send failed, keeping {len(self._outbound)} buffered: {str(e)}"
                    )
                    return
                self._outbound.popleft()

    async def start(self) -> None:
        if self.transport is None or self._transport_task is not None:
            return
        self._stopping = False
        self._transport_task = asyncio.create_task(self._run_transport())

    async def _run_transport(self) -> None:
        while not self._stopping:
            try:
                await self.transport.connect()
                LOGGER.info("Event transport connected")
                await self._flush_outbound()
                while True:
                    event = await self.transport.receive()
                    self._deliver_locally(event)
            except EventTransportError as e:
                self.reconnect_attempts += 1
                LOGGER.warning(
                    f"Event transport disconnected, reconnecting in {self.reconnect_delay}s: {str(e)}",
                    extra={"attempt": self.reconnect_attempts},
                )
                await self.clock.sleep(self.reconnect_delay)

    async def drain(self) -> None:
        """Wait until every subscriber has processed its queued events."""
        for subscriptions in list(self._subscriptions.values()):
            for subscription in subscriptions:
                await subscription.queue.join()

    async def stop(self) -> None:
        self._stopping = True
        if self._transport_task is not None:
            self._transport_task.cancel()
            try:
                await self._transport_task
            except asyncio.CancelledError:
                pass
            self._transport_task = None
        if self.transport is not None:
            await self.transport.close()
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                await subscription.close()
