"""
Reliable, ordered, single-flight order-processing pipeline.

This package implements the runtime of the order workflow:
- MessageStore holds jobs with per-group FIFO and visibility timeouts
- ExecutionCoordinator runs the processor under a global concurrency cap
- OrderProcessor executes an order and publishes its completion once
- EventBus routes completion events to subscribers by pattern
- Notifier emails the customer when an order has been executed
"""

from pipeline.coordinator import ExecutionCoordinator, RunReport, RunStatus
from pipeline.event_bus import Event, EventBus, EventPattern, get_event_bus, reset_event_bus
from pipeline.intake import OrderIntake
from pipeline.message_store import DeadLetterSink, MessageStore
from pipeline.notifier import Notifier
from pipeline.processor import OrderProcessor, OutcomeLedger
from pipeline.runtime import OrderPipeline, build_pipeline

__all__ = [
    "ExecutionCoordinator",
    "RunReport",
    "RunStatus",
    "Event",
    "EventBus",
    "EventPattern",
    "get_event_bus",
    "reset_event_bus",
    "OrderIntake",
    "DeadLetterSink",
    "MessageStore",
    "Notifier",
    "OrderProcessor",
    "OutcomeLedger",
    "OrderPipeline",
    "build_pipeline",
]
