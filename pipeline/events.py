"""
Event definitions for the order pipeline.

Events represent facts about things that have happened. The pipeline has one:
an order finished executing. Its source and detail-type are what the notifier's
subscription pattern matches on, so both are configurable and default to the
values of the managed event rule.

Design decisions:
- Events are named in past tense (OrderExecuted, not ExecuteOrder)
- Events contain all data needed by subscribers (no need to query back)
- Helper functions create properly structured Event objects
"""

from typing import Any

from pipeline.event_bus import Event, EventPattern


class EventTypes:
    """Constants for detail-type names."""
    ORDER_EXECUTED = "OrderExecuted"


class EventSources:
    """Constants for event sources."""
    EXECUTE_ORDER = "orders.executeOrder"


def order_executed(
    order_id: str,
    result: dict[str, Any],
    source: str = EventSources.EXECUTE_ORDER,
    detail_type: str = EventTypes.ORDER_EXECUTED,
) -> Event:
    """
    Create an OrderExecuted event.

    Published by the processor once per order, after the work succeeded.
    """
    return Event(
        source=source,
        detail_type=detail_type,
        detail={
            "order_id": order_id,
            "result": result,
        },
    )


def order_executed_pattern(
    source: str = EventSources.EXECUTE_ORDER,
    detail_type: str = EventTypes.ORDER_EXECUTED,
) -> EventPattern:
    """The rule notifiers use to receive OrderExecuted events."""
    return EventPattern(source=source, detail_type=detail_type)
