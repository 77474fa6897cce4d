"""
Notifier: emails the customer when an order has been executed.

The notifier subscribes to OrderExecuted events and dispatches one templated
email per completed order through the notification sink. It never talks to
the processor or the store; the event is all it needs.

Design decisions:
- Subscribes to events, doesn't poll or get called directly
- A failed send raises NotificationFailure so the bus retries the delivery
- Bus delivery is at-least-once, so the notifier is idempotent itself: an
  order that was already notified is skipped, and attempts per order are
  capped so a flood of duplicates cannot turn into a flood of emails
- Failures here never touch the order's acknowledgement, which has already
  been committed by the time the event is delivered
"""

import logging
import threading
from typing import Optional

from pipeline.event_bus import Event, EventBus, EventPattern, Subscription, get_event_bus
from pipeline.events import order_executed_pattern
from shared.channels import EmailChannel
from shared.exceptions import NotificationFailure
from shared.settings import PipelineSettings
from shared.templates import format_result_summary

logger = logging.getLogger("notifier")


class Notifier:
    """
    Event-driven notification sender.

    Example:
        notifier = Notifier(event_bus=bus, channel=EmailChannel())
        notifier.start()

        # Now when OrderExecuted events are published, emails are sent automatically
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        channel: Optional[EmailChannel] = None,
        pattern: Optional[EventPattern] = None,
        template_name: str = "orderExecuted",
        sender: str = "orders@ecommerce-demo.com",
        recipient: str = "customer@ecommerce-demo.com",
        max_attempts_per_order: int = 3,
    ):
        """
        Initialize the notifier.

        Args:
            event_bus: Event bus to subscribe to (defaults to singleton)
            channel: Notification sink (defaults to a new EmailChannel)
            pattern: Which events to react to (defaults to OrderExecuted)
            template_name: Provider-side template used for every email
            sender: From address
            recipient: Address every notification goes to
            max_attempts_per_order: Sends tried per order across all deliveries
        """
        self.event_bus = event_bus or get_event_bus()
        self.channel = channel or EmailChannel(default_sender=sender)
        self.pattern = pattern or order_executed_pattern()
        self.template_name = template_name
        self.sender = sender
        self.recipient = recipient
        self.max_attempts_per_order = max_attempts_per_order

        self._lock = threading.Lock()
        self._attempts: dict[str, int] = {}
        self._notified: set[str] = set()
        self._subscription: Optional[Subscription] = None

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        event_bus: EventBus,
        channel: Optional[EmailChannel] = None,
    ) -> "Notifier":
        return cls(
            event_bus=event_bus,
            channel=channel or EmailChannel(
                fail_rate=settings.email_fail_rate,
                default_sender=settings.sender_email,
                history_size=settings.history_size,
            ),
            pattern=order_executed_pattern(settings.event_source, settings.event_detail_type),
            template_name=settings.notification_template,
            sender=settings.sender_email,
            recipient=settings.recipient_email,
            max_attempts_per_order=settings.notifier_max_attempts_per_order,
        )

    def start(self) -> None:
        """Start the notifier by subscribing to completion events."""
        if self._subscription is not None:
            logger.warning("Notifier already started")
            return
        self._subscription = self.event_bus.subscribe(self.pattern, self.on_event)
        logger.info(f"Notifier started - subscribed to {self.pattern}")

    def stop(self) -> None:
        """Stop the notifier by unsubscribing from events."""
        if self._subscription is None:
            return
        self.event_bus.unsubscribe(self._subscription)
        self._subscription = None
        logger.info("Notifier stopped")

    # =========================================================================
    # Event Handler
    # =========================================================================

    def on_event(self, event: Event) -> None:
        """
        Handle an OrderExecuted event.

        Raises:
            NotificationFailure: The sink rejected the email; the bus retries
        """
        detail = event.detail
        order_id = detail.get("order_id")
        if not order_id:
            logger.error(f"Ignoring {event}: detail has no order_id")
            return

        with self._lock:
            if order_id in self._notified:
                logger.info(f"Order {order_id} already notified; ignoring duplicate {event}")
                return
            attempts = self._attempts.get(order_id, 0)
            if attempts >= self.max_attempts_per_order:
                logger.error(
                    f"Order {order_id} reached {attempts} notification attempts; dropping {event}"
                )
                return
            self._attempts[order_id] = attempts + 1

        result = detail.get("result") or {}
        recipient = self.recipient
        template_data = {
            "order_id": order_id,
            "result_summary": format_result_summary(result),
        }

        logger.info(f"Notifying {recipient} about order {order_id} (attempt {attempts + 1})")
        sent = self.channel.send_templated(
            to=recipient,
            template_name=self.template_name,
            template_data=template_data,
            from_addr=self.sender,
        )
        if not sent.success:
            raise NotificationFailure(order_id, recipient, sent.error)

        with self._lock:
            self._notified.add(order_id)

    # =========================================================================
    # Inspection
    # =========================================================================

    def was_notified(self, order_id: str) -> bool:
        return order_id in self._notified

    def attempts_for(self, order_id: str) -> int:
        return self._attempts.get(order_id, 0)
