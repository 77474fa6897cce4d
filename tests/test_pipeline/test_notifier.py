"""
Tests for the notifier.

These tests verify that each executed order produces exactly one email to
the configured recipient, even when the bus delivers an event repeatedly.
"""

import pytest

from pipeline.event_bus import Event, EventBus
from pipeline.events import order_executed
from pipeline.notifier import Notifier
from shared.channels import EmailChannel
from shared.exceptions import NotificationFailure


@pytest.fixture
def notifier(bus: EventBus, email_channel: EmailChannel):
    notifier = Notifier(
        event_bus=bus,
        channel=email_channel,
        recipient="customer@example.com",
        sender="orders@example.com",
    )
    notifier.start()
    yield notifier
    notifier.stop()


class TestNotifier:
    """Tests for the OrderExecuted subscriber."""

    def test_sends_one_email_per_order(self, notifier: Notifier, bus: EventBus, email_channel):
        bus.publish(order_executed("ord-001", {"status": "EXECUTED"}))

        (sent,) = email_channel.sent_messages
        assert sent.success is True
        assert sent.recipient == "customer@example.com"
        assert sent.template_name == "orderExecuted"
        assert sent.subject == "Your order ord-001 has been executed"
        assert "status: EXECUTED" in sent.body
        assert notifier.was_notified("ord-001")

    def test_duplicate_events_send_once(self, notifier: Notifier, bus: EventBus, email_channel):
        event = order_executed("ord-001", {"status": "EXECUTED"})

        bus.publish(event)
        bus.publish(event)
        bus.publish(order_executed("ord-001", {"status": "EXECUTED"}))

        assert email_channel.get_sent_count() == 1

    def test_recipient_comes_from_configuration(self, notifier: Notifier, bus: EventBus, email_channel):
        bus.publish(order_executed("ord-001", {"email": "someone-else@example.com"}))

        assert email_channel.sent_messages[0].recipient == "customer@example.com"

    def test_ignores_other_events(self, notifier: Notifier, bus: EventBus, email_channel):
        bus.publish(Event(source="orders.executeOrder", detail_type="OrderCancelled", detail={"order_id": "x"}))
        bus.publish(Event(source="billing", detail_type="OrderExecuted", detail={"order_id": "x"}))

        assert email_channel.get_sent_count() == 0

    def test_ignores_event_without_order_id(self, notifier: Notifier, bus: EventBus, email_channel):
        bus.publish(Event(source="orders.executeOrder", detail_type="OrderExecuted", detail={}))

        assert email_channel.get_sent_count() == 0

    def test_empty_result(self, notifier: Notifier, bus: EventBus, email_channel):
        bus.publish(order_executed("ord-001", {}))

        assert "No further details were reported." in email_channel.sent_messages[0].body

    def test_stop_unsubscribes(self, notifier: Notifier, bus: EventBus, email_channel):
        notifier.stop()

        bus.publish(order_executed("ord-001", {}))

        assert email_channel.get_sent_count() == 0

    def test_start_twice_subscribes_once(self, notifier: Notifier, bus: EventBus, email_channel):
        notifier.start()

        assert bus.get_subscriber_count(notifier.pattern) == 1


class TestNotificationFailures:
    """Tests for failed sends and their retry by the bus."""

    def test_failed_send_raises(self, bus: EventBus):
        notifier = Notifier(event_bus=bus, channel=EmailChannel(fail_rate=1.0))

        with pytest.raises(NotificationFailure) as exc_info:
            notifier.on_event(order_executed("ord-001", {}))

        assert exc_info.value.order_id == "ord-001"
        assert not notifier.was_notified("ord-001")

    def test_bus_retries_failed_send(self, bus: EventBus):
        channel = EmailChannel(fail_first=2)
        notifier = Notifier(event_bus=bus, channel=channel)
        notifier.start()

        bus.publish(order_executed("ord-001", {}))

        assert [m.success for m in channel.sent_messages] == [False, False, True]
        assert notifier.was_notified("ord-001")
        assert notifier.attempts_for("ord-001") == 3
        assert bus.get_failed_deliveries() == []

    def test_attempts_per_order_are_capped(self):
        bus = EventBus(max_delivery_attempts=5, retry_backoff=0.0, sleep=lambda _: None)
        channel = EmailChannel(fail_rate=1.0)
        notifier = Notifier(event_bus=bus, channel=channel, max_attempts_per_order=2)
        notifier.start()

        bus.publish(order_executed("ord-001", {}))
        bus.publish(order_executed("ord-001", {}))

        assert channel.get_sent_count() == 2
        assert notifier.attempts_for("ord-001") == 2
        assert not notifier.was_notified("ord-001")

    def test_exhausted_retries_recorded_by_bus(self, bus: EventBus):
        notifier = Notifier(event_bus=bus, channel=EmailChannel(fail_rate=1.0), max_attempts_per_order=10)
        notifier.start()

        bus.publish(order_executed("ord-001", {}))

        (failed,) = bus.get_failed_deliveries()
        assert failed.attempts == bus.max_delivery_attempts
        assert "ord-001" in failed.error


class TestFromSettings:
    """Tests for settings-driven construction."""

    def test_uses_configured_addresses(self, settings, bus: EventBus):
        notifier = Notifier.from_settings(settings, bus)

        assert notifier.recipient == settings.recipient_email
        assert notifier.sender == settings.sender_email
        assert notifier.template_name == "orderExecuted"
        assert notifier.pattern.source == "orders.executeOrder"
