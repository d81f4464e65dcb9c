"""Async event bus for live run event delivery.

This module provides an EventBus class that fans run events out to live
consumers (WebSocket clients) as they are recorded. The durable copy of every
event lives in the event log table; the bus only carries the live tail, so a
consumer that connects late first replays from the store and then follows the
bus.

The event bus supports:
- Multiple subscribers per run
- Async event delivery via asyncio.Queue
- Run lifecycle management (closing a run terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import TreeEvent

logger = structlog.get_logger(__name__)


class EventBus:
    """Async pub/sub event bus for run events.

    Subscribers receive ``TreeEvent`` objects followed by a ``None`` sentinel
    once the run is closed.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("run_123")
        >>> await bus.publish(event)
        >>> event = await queue.get()
        >>> bus.unsubscribe("run_123", queue)
        >>> await bus.close_run("run_123")

    Attributes:
        _subscribers: Dict mapping run_id to list of subscriber queues
        _lock: Lock guarding the subscription registry
    """

    # Seconds a publish waits on a stalled subscriber before dropping the event.
    DELIVERY_TIMEOUT = 5.0

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[TreeEvent | None]]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, run_id: str) -> asyncio.Queue[TreeEvent | None]:
        """Subscribe to live events for a run.

        Args:
            run_id: The run to subscribe to

        Returns:
            An asyncio.Queue that receives TreeEvent objects, then None on close
        """
        queue: asyncio.Queue[TreeEvent | None] = asyncio.Queue()
        with self._lock:
            self._subscribers[run_id].append(queue)
            subscriber_count = len(self._subscribers[run_id])

        logger.info("subscriber_added", run_id=run_id, subscriber_count=subscriber_count)
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[TreeEvent | None]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored.

        Args:
            run_id: The run to unsubscribe from
            queue: The queue to remove
        """
        with self._lock:
            queues = self._subscribers.get(run_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", run_id=run_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[run_id]
            subscriber_count = len(queues)

        logger.info("subscriber_removed", run_id=run_id, subscriber_count=subscriber_count)

    async def publish(self, event: TreeEvent) -> None:
        """Deliver an event to every subscriber of its run.

        Events for runs without subscribers are dropped; the event log table
        holds the durable copy.

        Args:
            event: The TreeEvent to publish
        """
        with self._lock:
            subscribers = list(self._subscribers.get(event.run_id, []))

        if not subscribers:
            return

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=self.DELIVERY_TIMEOUT)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    run_id=event.run_id,
                    event_type=event.event_type.value,
                )
            except Exception as e:
                logger.error(
                    "event_delivery_error",
                    run_id=event.run_id,
                    event_type=event.event_type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            run_id=event.run_id,
            seq=event.seq,
            event_type=event.event_type.value,
            subscriber_count=len(subscribers),
        )

    async def close_run(self, run_id: str) -> None:
        """Signal every subscriber that the run is over and drop them.

        Args:
            run_id: The run to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(run_id, [])

        for queue in queues_to_signal:
            queue.put_nowait(None)

        if queues_to_signal:
            logger.info("run_closed", run_id=run_id, subscribers_removed=len(queues_to_signal))

    def get_subscriber_count(self, run_id: str) -> int:
        """Get the number of subscribers for a run."""
        with self._lock:
            return len(self._subscribers.get(run_id, []))


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first call."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
