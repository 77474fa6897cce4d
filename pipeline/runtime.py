"""
Wiring for a complete in-process pipeline.

Builds the store, bus, processor, coordinator and notifier from one
PipelineSettings and manages their background threads together. The
components still only talk through the store and the bus; this module just
owns their lifetimes.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from pipeline.coordinator import ExecutionCoordinator
from pipeline.event_bus import EventBus
from pipeline.intake import OrderIntake
from pipeline.message_store import Clock, MessageStore
from pipeline.notifier import Notifier
from pipeline.processor import OrderProcessor, OrderWork, OutcomeLedger
from shared.channels import EmailChannel
from shared.settings import PipelineSettings, get_settings

logger = logging.getLogger("pipeline")


@dataclass
class OrderPipeline:
    """All components of one pipeline instance."""
    settings: PipelineSettings
    store: MessageStore
    event_bus: EventBus
    processor: OrderProcessor
    coordinator: ExecutionCoordinator
    notifier: Notifier
    channel: EmailChannel
    intake: OrderIntake
    background_delivery: bool = False

    def start(self) -> None:
        """Start the sweeper, the coordinator loops and (optionally) bus dispatch."""
        self.store.start()
        if self.background_delivery:
            self.event_bus.start()
        self.coordinator.start()
        logger.info("Order pipeline started")

    def stop(self) -> None:
        """Stop all background threads. The bus is closed, so this is final."""
        self.coordinator.stop()
        self.event_bus.close()
        self.store.stop()
        self.notifier.stop()
        logger.info("Order pipeline stopped")

    def wait_until_drained(self, timeout: float = 10.0, poll: float = 0.05) -> bool:
        """
        Wait until no job is pending or in flight and all events are delivered.

        Dead-lettered jobs do not count as pending.

        Returns:
            True if the pipeline drained within the timeout
        """
        deadline = time.monotonic() + timeout
        while len(self.store) or self.coordinator.active_invocations:
            if time.monotonic() >= deadline:
                return False
            time.sleep(poll)
        return self.event_bus.flush(timeout=max(0.0, deadline - time.monotonic()))


def build_pipeline(
    settings: Optional[PipelineSettings] = None,
    channel: Optional[EmailChannel] = None,
    work: Optional[OrderWork] = None,
    clock: Clock = time.monotonic,
    background_delivery: Optional[bool] = None,
) -> OrderPipeline:
    """
    Create a wired pipeline. The notifier is subscribed immediately; nothing
    else runs until start() is called.

    background_delivery defaults to settings.bus_background_delivery. With it
    on, subscribers run on the bus dispatcher once the pipeline is started,
    outside the processing timeout of the invocation that published.
    """
    settings = settings or get_settings()
    if background_delivery is None:
        background_delivery = settings.bus_background_delivery

    store = MessageStore.from_settings(settings, clock=clock)
    event_bus = EventBus(
        max_delivery_attempts=settings.bus_max_delivery_attempts,
        retry_backoff=settings.bus_retry_backoff_seconds,
        buffer_size=settings.bus_buffer_size,
        history_size=settings.history_size,
    )
    processor = OrderProcessor.from_settings(settings, event_bus, ledger=OutcomeLedger(), work=work)
    coordinator = ExecutionCoordinator.from_settings(settings, store, processor)
    notifier = Notifier.from_settings(settings, event_bus, channel=channel)
    notifier.start()

    return OrderPipeline(
        settings=settings,
        store=store,
        event_bus=event_bus,
        processor=processor,
        coordinator=coordinator,
        notifier=notifier,
        channel=notifier.channel,
        intake=OrderIntake(store),
        background_delivery=background_delivery,
    )


# Module-level singleton used by the HTTP adapter
_default_pipeline: Optional[OrderPipeline] = None


def get_pipeline() -> OrderPipeline:
    """Get the default pipeline singleton."""
    global _default_pipeline
    if _default_pipeline is None:
        _default_pipeline = build_pipeline()
    return _default_pipeline


def reset_pipeline(pipeline: Optional[OrderPipeline] = None) -> Optional[OrderPipeline]:
    """Replace the default pipeline (useful for testing)."""
    global _default_pipeline
    _default_pipeline = pipeline
    return _default_pipeline
