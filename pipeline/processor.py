"""
Order processor: executes one order and announces its completion.

The processor is invoked by the execution coordinator with a job that may be
a redelivery: the previous attempt might have failed, timed out while still
running, or succeeded but failed to publish. To keep external side effects
single, every order's outcome is recorded in an OutcomeLedger keyed by
order_id together with whether its completion event went out:

- executed and published -> return the recorded result, do nothing else
- executed, publish failed -> skip the work, publish again
- not executed -> do the work, record it, publish, mark published

The event is published before process() returns, so the coordinator only
acknowledges a job whose completion event has been relayed.
"""

import logging
import random
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from pipeline.event_bus import EventBus, get_event_bus
from pipeline.events import EventSources, EventTypes, order_executed
from shared.exceptions import ProcessingFailure
from shared.models import ExecutionOutcome, OrderJob, OrderResult, utcnow
from shared.settings import PipelineSettings

logger = logging.getLogger("order_processor")

# The business step: takes a job, returns a flat result mapping
OrderWork = Callable[[OrderJob], dict[str, Any]]


@dataclass
class OutcomeRecord:
    """What happened to one order, keyed by its order_id."""
    order_id: str
    result: dict[str, Any]
    executed_at: datetime = field(default_factory=utcnow)
    published: bool = False
    event_id: Optional[str] = None


class OutcomeLedger:
    """
    Idempotency records for executed orders.

    In-memory here; a durable deployment would keep this next to the order
    data so that it survives worker restarts.
    """

    def __init__(self):
        self._records: dict[str, OutcomeRecord] = {}
        # order_id -> [lock, number of holders and waiters]
        self._order_locks: dict[str, list] = {}
        self._lock = threading.Lock()

    @contextmanager
    def order_lock(self, order_id: str) -> Iterator[None]:
        """
        Serialise every execution of one order.

        The lock is dropped once no delivery holds or waits for it, so the
        map only ever holds orders that are being processed right now.
        """
        with self._lock:
            entry = self._order_locks.setdefault(order_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._order_locks[order_id]

    def active_locks(self) -> int:
        with self._lock:
            return len(self._order_locks)

    def get(self, order_id: str) -> Optional[OutcomeRecord]:
        with self._lock:
            return self._records.get(order_id)

    def record_execution(self, order_id: str, result: dict[str, Any]) -> OutcomeRecord:
        record = OutcomeRecord(order_id=order_id, result=dict(result))
        with self._lock:
            self._records[order_id] = record
        return record

    def mark_published(self, order_id: str, event_id: str) -> None:
        with self._lock:
            record = self._records[order_id]
            record.published = True
            record.event_id = event_id

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._records


class SimulatedExecution:
    """
    Default business step: pretend an order takes a while to execute.

    Can simulate failures for testing error handling.
    """

    def __init__(
        self,
        delay: float = 0.0,
        fail_rate: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.delay = delay
        self.fail_rate = fail_rate
        self._sleep = sleep

    def __call__(self, job: OrderJob) -> dict[str, Any]:
        if self.delay:
            self._sleep(self.delay)
        if random.random() < self.fail_rate:
            raise RuntimeError("Simulated execution failure")
        return {
            "status": "EXECUTED",
            "attempt": job.delivery_count + 1,
        }


class OrderProcessor:
    """
    Executes orders and publishes exactly one completion event per order.

    Example:
        processor = OrderProcessor(event_bus=bus)
        result = processor.process(job)   # publishes OrderExecuted
        result = processor.process(job)   # redelivery: outcome == DUPLICATE
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        ledger: Optional[OutcomeLedger] = None,
        work: Optional[OrderWork] = None,
        source: str = EventSources.EXECUTE_ORDER,
        detail_type: str = EventTypes.ORDER_EXECUTED,
    ):
        """
        Initialize the processor.

        Args:
            event_bus: Where completion events are published (defaults to singleton)
            ledger: Idempotency records (defaults to a new in-memory ledger)
            work: The business step (defaults to SimulatedExecution())
            source: Source of published completion events
            detail_type: Detail-type of published completion events
        """
        self.event_bus = event_bus or get_event_bus()
        self.ledger = ledger if ledger is not None else OutcomeLedger()
        self.work = work or SimulatedExecution()
        self.source = source
        self.detail_type = detail_type

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        event_bus: EventBus,
        ledger: Optional[OutcomeLedger] = None,
        work: Optional[OrderWork] = None,
    ) -> "OrderProcessor":
        return cls(
            event_bus=event_bus,
            ledger=ledger,
            work=work or SimulatedExecution(
                delay=settings.execution_delay_seconds,
                fail_rate=settings.execution_fail_rate,
            ),
            source=settings.event_source,
            detail_type=settings.event_detail_type,
        )

    def process(self, job: OrderJob) -> OrderResult:
        """
        Execute one delivery of a job.

        Raises:
            ProcessingFailure: The business step raised
            PublishError: The completion event could not be relayed
        """
        order_id = job.order_id

        with self.ledger.order_lock(order_id):
            record = self.ledger.get(order_id)

            if record is not None and record.published:
                logger.warning(
                    f"Order {order_id} already executed and announced "
                    f"(delivery_count={job.delivery_count}); skipping"
                )
                return OrderResult(
                    order_id=order_id,
                    outcome=ExecutionOutcome.DUPLICATE,
                    result=record.result,
                )

            if record is None:
                logger.info(f"Executing order {order_id} (job {job.job_id})")
                try:
                    result = self.work(job) or {}
                except Exception as e:
                    logger.error(f"Order {order_id} failed: {e}")
                    raise ProcessingFailure(order_id, str(e)) from e
                record = self.ledger.record_execution(order_id, result)
                outcome = ExecutionOutcome.EXECUTED
            else:
                logger.info(f"Order {order_id} already executed; retrying completion event")
                outcome = ExecutionOutcome.REPUBLISHED

            event = order_executed(
                order_id,
                record.result,
                source=self.source,
                detail_type=self.detail_type,
            )
            # PublishError propagates so the job is not acknowledged
            self.event_bus.publish(event)
            self.ledger.mark_published(order_id, event.event_id)

        logger.info(f"Order {order_id} {outcome.value}; published {event}")
        return OrderResult(order_id=order_id, outcome=outcome, result=record.result)
