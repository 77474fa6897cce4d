"""
Tests for the order processor.

These tests verify that an order is executed and announced once, no matter
how many times its job is delivered, and that the completion event is
published before process() returns.
"""

import threading

import pytest

from pipeline.event_bus import EventBus
from pipeline.events import order_executed_pattern
from pipeline.processor import OrderProcessor, OutcomeLedger, SimulatedExecution
from shared.exceptions import ProcessingFailure, PublishError
from shared.models import ExecutionOutcome, OrderJob


def make_job(order_id: str = "ord-001", delivery_count: int = 0) -> OrderJob:
    return OrderJob(
        order_id=order_id,
        group_key="orders",
        payload={"sku": "SKU-1"},
        delivery_count=delivery_count,
    )


class CountingWork:
    """Business step that records every call."""

    def __init__(self, fail_times: int = 0):
        self.calls = 0
        self.fail_times = fail_times

    def __call__(self, job: OrderJob) -> dict:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise RuntimeError("downstream unavailable")
        return {"status": "EXECUTED", "sku": job.payload["sku"]}


@pytest.fixture
def work() -> CountingWork:
    return CountingWork()


@pytest.fixture
def processor(bus: EventBus, work: CountingWork) -> OrderProcessor:
    return OrderProcessor(event_bus=bus, ledger=OutcomeLedger(), work=work)


class TestOrderProcessor:
    """Tests for a single execution."""

    def test_executes_and_publishes(self, processor: OrderProcessor, bus: EventBus, work):
        received = []
        bus.subscribe(order_executed_pattern(), received.append)

        result = processor.process(make_job())

        assert result.outcome == ExecutionOutcome.EXECUTED
        assert result.result == {"status": "EXECUTED", "sku": "SKU-1"}
        assert work.calls == 1
        assert len(received) == 1
        assert received[0].detail == {
            "order_id": "ord-001",
            "result": {"status": "EXECUTED", "sku": "SKU-1"},
        }

    def test_records_outcome(self, processor: OrderProcessor, bus: EventBus):
        processor.process(make_job())

        record = processor.ledger.get("ord-001")
        assert record is not None
        assert record.published is True
        assert record.event_id == bus.get_event_log()[0].event_id

    def test_failure_raises_processing_failure(self, bus: EventBus):
        processor = OrderProcessor(event_bus=bus, work=CountingWork(fail_times=1))

        with pytest.raises(ProcessingFailure) as exc_info:
            processor.process(make_job())

        assert exc_info.value.order_id == "ord-001"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "ord-001" not in processor.ledger
        assert bus.get_event_log() == []

    def test_failed_order_runs_again_on_redelivery(self, bus: EventBus):
        work = CountingWork(fail_times=1)
        processor = OrderProcessor(event_bus=bus, work=work)

        with pytest.raises(ProcessingFailure):
            processor.process(make_job())
        result = processor.process(make_job(delivery_count=1))

        assert result.outcome == ExecutionOutcome.EXECUTED
        assert work.calls == 2
        assert len(bus.get_event_log()) == 1

    def test_custom_source_and_detail_type(self, bus: EventBus, work):
        processor = OrderProcessor(event_bus=bus, work=work, source="shop", detail_type="Done")

        processor.process(make_job())

        (event,) = bus.get_event_log()
        assert (event.source, event.detail_type) == ("shop", "Done")


class TestIdempotence:
    """Redeliveries never repeat side effects."""

    def test_duplicate_delivery_is_skipped(self, processor: OrderProcessor, bus: EventBus, work):
        processor.process(make_job())

        result = processor.process(make_job(delivery_count=1))

        assert result.outcome == ExecutionOutcome.DUPLICATE
        assert result.result == {"status": "EXECUTED", "sku": "SKU-1"}
        assert work.calls == 1
        assert len(bus.get_event_log()) == 1

    def test_publish_failure_is_retried_without_reexecuting(self, bus: EventBus, work):
        processor = OrderProcessor(event_bus=bus, work=work)
        bus.close()

        with pytest.raises(PublishError):
            processor.process(make_job())

        record = processor.ledger.get("ord-001")
        assert record is not None
        assert record.published is False

        # The bus comes back (a fresh one, as after a restart of the relay)
        processor.event_bus = EventBus(retry_backoff=0.0)
        result = processor.process(make_job(delivery_count=1))

        assert result.outcome == ExecutionOutcome.REPUBLISHED
        assert work.calls == 1
        assert len(processor.event_bus.get_event_log()) == 1
        assert processor.ledger.get("ord-001").published is True

    def test_different_orders_are_independent(self, processor: OrderProcessor, work):
        processor.process(make_job("ord-001"))
        processor.process(make_job("ord-002"))

        assert work.calls == 2
        assert len(processor.ledger) == 2


class TestOrderLocks:
    """Tests for the per-order locks in the ledger."""

    def test_lock_is_dropped_after_processing(self, processor: OrderProcessor):
        for i in range(5):
            processor.process(make_job(f"ord-{i}"))

        assert processor.ledger.active_locks() == 0
        assert len(processor.ledger) == 5

    def test_lock_is_dropped_after_failure(self, bus: EventBus):
        processor = OrderProcessor(event_bus=bus, work=CountingWork(fail_times=1))

        with pytest.raises(ProcessingFailure):
            processor.process(make_job())

        assert processor.ledger.active_locks() == 0

    def test_waiting_delivery_keeps_the_lock(self):
        ledger = OutcomeLedger()
        entered = threading.Event()
        finished = threading.Event()

        def second_delivery():
            with ledger.order_lock("ord-001"):
                entered.set()
            finished.set()

        with ledger.order_lock("ord-001"):
            waiter = threading.Thread(target=second_delivery)
            waiter.start()
            assert entered.wait(0.1) is False
            assert ledger.active_locks() == 1

        assert finished.wait(5.0) is True
        waiter.join(5.0)
        assert ledger.active_locks() == 0


class TestSimulatedExecution:
    """Tests for the default business step."""

    def test_success(self):
        result = SimulatedExecution()(make_job(delivery_count=2))

        assert result == {"status": "EXECUTED", "attempt": 3}

    def test_delay_uses_sleep(self):
        slept = []
        SimulatedExecution(delay=0.25, sleep=slept.append)(make_job())

        assert slept == [0.25]

    def test_always_fails(self):
        with pytest.raises(RuntimeError):
            SimulatedExecution(fail_rate=1.0)(make_job())
