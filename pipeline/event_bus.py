"""
In-memory event bus for completion events.

This module provides the pub/sub relay between the order processor and the
notifier. On a managed platform this would be an event bus with a rule
matching on source and detail-type; here the rule becomes an explicit
subscription registry.

Design decisions:
- Pattern-based subscriptions: exact match on source and detail_type, a
  field left as None matches anything
- Synchronous delivery by default; start() moves delivery to a background
  dispatcher with a bounded buffer
- Each subscriber gets its own retry budget with exponential backoff, and a
  failing subscriber never blocks the others
- publish() only raises PublishError for transport failures (bus closed,
  buffer full), never because a subscriber failed
- Delivery is at-least-once and unordered across events

Key insight:
- The processor doesn't know who is listening
- The notifier doesn't know who is publishing
"""

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import uuid4

from shared.exceptions import PublishError
from shared.models import utcnow

logger = logging.getLogger("event_bus")


@dataclass
class Event:
    """
    An event relayed by the bus.

    Attributes:
        source: Which component published the event (routing classifier)
        detail_type: What happened (routing classifier)
        detail: The event-specific data
        event_id: Unique identifier for this event instance
        published_at: When the event was created
    """
    source: str
    detail_type: str
    detail: dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid4()))
    published_at: datetime = field(default_factory=utcnow)

    def __str__(self) -> str:
        return f"Event({self.detail_type}, id={self.event_id[:8]}, source={self.source})"


# Type alias for event handler functions
EventHandler = Callable[[Event], None]


@dataclass(frozen=True)
class EventPattern:
    """Filter deciding which events a subscription receives."""
    source: Optional[str] = None
    detail_type: Optional[str] = None

    def matches(self, event: Event) -> bool:
        if self.source is not None and event.source != self.source:
            return False
        if self.detail_type is not None and event.detail_type != self.detail_type:
            return False
        return True

    def __str__(self) -> str:
        return f"{{source={self.source or '*'}, detail_type={self.detail_type or '*'}}}"


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe(), needed to unsubscribe."""
    pattern: EventPattern
    handler: EventHandler = field(compare=False)
    subscription_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass
class FailedDelivery:
    """A subscriber that exhausted its retry budget for one event."""
    event: Event
    subscription_id: str
    attempts: int
    error: str
    failed_at: datetime = field(default_factory=utcnow)


class EventBus:
    """
    Simple in-memory event bus implementing pattern-matched pub/sub.

    Example usage:
        bus = EventBus()

        def handle_executed(event):
            print(f"Order executed: {event.detail['order_id']}")

        bus.subscribe(EventPattern("orders.executeOrder", "OrderExecuted"), handle_executed)

        bus.publish(Event(
            source="orders.executeOrder",
            detail_type="OrderExecuted",
            detail={"order_id": "ord-001", "result": {"status": "EXECUTED"}},
        ))
    """

    def __init__(
        self,
        max_delivery_attempts: int = 3,
        retry_backoff: float = 0.5,
        buffer_size: int = 1000,
        history_size: int = 1000,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the event bus with no subscribers.

        Args:
            max_delivery_attempts: Attempts per subscriber per event
            retry_backoff: Delay before the first retry, doubled after each failure
            buffer_size: Events the background dispatcher may hold before
                publish() starts failing
            history_size: Events and failed deliveries kept for inspection;
                older entries are dropped
            sleep: Used between retries (injectable for tests)
        """
        if max_delivery_attempts < 1:
            raise ValueError("max_delivery_attempts must be >= 1")

        self.max_delivery_attempts = max_delivery_attempts
        self.retry_backoff = retry_backoff
        self.buffer_size = buffer_size
        self._sleep = sleep

        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

        # Recent events for debugging/replay
        self._event_log: deque[Event] = deque(maxlen=history_size)
        self._log_events: bool = True
        self._failed_deliveries: deque[FailedDelivery] = deque(maxlen=history_size)

        self._closed = False
        self._queue: Optional[queue.Queue] = None
        self._dispatcher: Optional[threading.Thread] = None

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, pattern: EventPattern, handler: EventHandler) -> Subscription:
        """
        Subscribe a handler to events matching a pattern.

        Note: The same handler can be subscribed multiple times (will be called multiple times).
        """
        subscription = Subscription(pattern=pattern, handler=handler)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug(f"Subscribed handler to {pattern} events")
        return subscription

    def subscribe_all(self, handler: EventHandler) -> Subscription:
        """Subscribe to ALL events (useful for logging, debugging, or audit)."""
        return self.subscribe(EventPattern(), handler)

    def unsubscribe(self, subscription: Subscription) -> bool:
        """
        Remove a subscription.

        Returns:
            True if it was found and removed, False otherwise
        """
        with self._lock:
            for i, existing in enumerate(self._subscriptions):
                if existing.subscription_id == subscription.subscription_id:
                    del self._subscriptions[i]
                    logger.debug(f"Unsubscribed handler from {subscription.pattern} events")
                    return True
        return False

    def get_subscriber_count(self, pattern: EventPattern) -> int:
        """Get the number of subscriptions registered with exactly this pattern."""
        with self._lock:
            return sum(1 for s in self._subscriptions if s.pattern == pattern)

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(self, event: Event) -> int:
        """
        Relay an event to every matching subscriber.

        Returns:
            Number of subscriptions the event was routed to

        Raises:
            PublishError: The bus is closed or its delivery buffer is full
        """
        # The closed check and the enqueue share the lock with close(), so
        # nothing is buffered behind the dispatcher's stop sentinel
        with self._lock:
            if self._closed:
                raise PublishError(f"Event bus is closed; cannot publish {event}", event.event_id)

            matching = [s for s in self._subscriptions if s.pattern.matches(event)]
            dispatch_queue = self._queue
            if dispatch_queue is not None:
                try:
                    dispatch_queue.put_nowait((event, matching))
                except queue.Full:
                    raise PublishError(
                        f"Delivery buffer full ({self.buffer_size} events); cannot publish {event}",
                        event.event_id,
                    ) from None

        logger.info(f"Publishing: {event}")
        if not matching:
            logger.warning(f"No subscribers for {event.source}/{event.detail_type}")

        if dispatch_queue is None:
            self._deliver(event, matching)

        if self._log_events:
            with self._lock:
                self._event_log.append(event)
        return len(matching)

    def _deliver(self, event: Event, subscriptions: list[Subscription]) -> None:
        for subscription in subscriptions:
            self._deliver_one(event, subscription)

    def _deliver_one(self, event: Event, subscription: Subscription) -> bool:
        delay = self.retry_backoff
        for attempt in range(1, self.max_delivery_attempts + 1):
            try:
                subscription.handler(event)
                return True
            except Exception as e:
                if attempt < self.max_delivery_attempts:
                    logger.warning(
                        f"Handler failed for {event} (attempt {attempt}/{self.max_delivery_attempts}): "
                        f"{e}; retrying in {delay:g}s"
                    )
                    self._sleep(delay)
                    delay *= 2
                    continue

                logger.error(
                    f"Handler gave up on {event} after {attempt} attempts: {e}"
                )
                with self._lock:
                    self._failed_deliveries.append(FailedDelivery(
                        event=event,
                        subscription_id=subscription.subscription_id,
                        attempts=attempt,
                        error=str(e),
                    ))
        return False

    # =========================================================================
    # Background dispatch
    # =========================================================================

    def start(self) -> None:
        """Deliver on a background thread instead of inside publish()."""
        if self._dispatcher and self._dispatcher.is_alive():
            return
        dispatch_queue: queue.Queue = queue.Queue(maxsize=self.buffer_size)
        dispatcher = threading.Thread(
            target=self._dispatch_loop,
            args=(dispatch_queue,),
            name="event-bus-dispatcher",
            daemon=True,
        )
        dispatcher.start()
        with self._lock:
            self._closed = False
            self._queue = dispatch_queue
            self._dispatcher = dispatcher
        logger.info("EventBus dispatcher started")

    def _dispatch_loop(self, dispatch_queue: queue.Queue) -> None:
        while True:
            item = dispatch_queue.get()
            try:
                if item is None:
                    return
                event, subscriptions = item
                self._deliver(event, subscriptions)
            except Exception:
                logger.exception("Dispatcher failed to deliver an event")
            finally:
                dispatch_queue.task_done()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every buffered event has been delivered.

        Returns:
            True if the buffer drained, False on timeout
        """
        dispatch_queue = self._queue
        if dispatch_queue is None:
            return True

        deadline = None if timeout is None else time.monotonic() + timeout
        with dispatch_queue.all_tasks_done:
            while dispatch_queue.unfinished_tasks:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                dispatch_queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        """
        Stop accepting events and drain the dispatcher.

        Events already buffered are still delivered.
        """
        with self._lock:
            self._closed = True
            dispatch_queue, dispatcher = self._queue, self._dispatcher
            self._queue = None
            self._dispatcher = None
        if dispatch_queue is not None and dispatcher is not None:
            dispatch_queue.put(None)
            dispatcher.join(timeout=timeout)
        logger.info("EventBus closed")

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Inspection
    # =========================================================================

    def get_event_log(self) -> list[Event]:
        """
        Get the most recent published events, oldest first.

        Useful for debugging and testing.
        """
        with self._lock:
            return list(self._event_log)

    def get_failed_deliveries(self) -> list[FailedDelivery]:
        with self._lock:
            return list(self._failed_deliveries)

    def clear_event_log(self) -> None:
        """Clear the event log."""
        with self._lock:
            self._event_log.clear()

    def clear_subscribers(self) -> None:
        """Remove all subscribers (useful for testing)."""
        with self._lock:
            self._subscriptions.clear()

    def set_logging(self, enabled: bool) -> None:
        """Enable or disable event logging."""
        self._log_events = enabled


# Module-level singleton for convenience
# In production, you'd likely use dependency injection instead
_default_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the default event bus singleton."""
    global _default_bus
    if _default_bus is None:
        _default_bus = EventBus()
    return _default_bus


def reset_event_bus() -> EventBus:
    """Reset the default event bus (useful for testing)."""
    global _default_bus
    _default_bus = EventBus()
    return _default_bus
