"""
Demonstration script for the order pipeline.

Runs a complete in-process pipeline: orders are queued in several groups,
processed one at a time, announced on the bus and emailed to the customer.
With a failure rate, some executions fail and come back after their
visibility timeout.
"""

import logging

from pipeline.runtime import build_pipeline
from shared.settings import PipelineSettings

# Configure logging to see what's happening
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)


def demo_settings(fail_rate: float = 0.0, max_concurrency: int = 1) -> PipelineSettings:
    """Settings with short timeouts so redeliveries happen within seconds."""
    return PipelineSettings(
        visibility_timeout_seconds=3.0,
        processing_timeout_seconds=0.5,
        max_concurrency=max_concurrency,
        execution_delay_seconds=0.2,
        execution_fail_rate=fail_rate,
        poll_interval_seconds=0.05,
        max_poll_interval_seconds=0.2,
        sweep_interval_seconds=0.1,
        bus_retry_backoff_seconds=0.1,
    )


def run_pipeline_demo(
    orders: int = 6,
    groups: int = 2,
    fail_rate: float = 0.0,
    max_concurrency: int = 1,
    timeout: float = 60.0,
):
    """
    Queue orders in round-robin groups and let the pipeline drain them.

    This shows:
    1. Intake only validates and queues; it returns before processing
    2. The coordinator runs one invocation at a time (by default)
    3. Each executed order publishes OrderExecuted before it is acknowledged
    4. The notifier emails the customer once per order
    """
    print("\n" + "=" * 70)
    print(f"ORDER PIPELINE DEMO: {orders} orders in {groups} group(s), fail rate {fail_rate:.0%}")
    print("=" * 70 + "\n")

    pipeline = build_pipeline(demo_settings(fail_rate=fail_rate, max_concurrency=max_concurrency))

    print("-" * 70)
    print("ACTION: Submitting orders")
    print("-" * 70 + "\n")

    accepted = []
    for i in range(orders):
        accepted.append(
            pipeline.intake.request_order_from_dict({
                "order_id": f"ord-{i + 1:03d}",
                "group_key": f"customer-{i % groups + 1}",
                "payload": {"sku": f"SKU-{100 + i}", "quantity": i % 3 + 1},
            })
        )

    pipeline.start()
    try:
        drained = pipeline.wait_until_drained(timeout=timeout)
    finally:
        pipeline.stop()

    print("\n" + "-" * 70)
    print(f"RESULT: {'drained' if drained else 'timed out before draining'}")
    print(f"  Peak concurrent invocations: {pipeline.coordinator.peak_concurrency}")
    print(f"  Events published: {len(pipeline.event_bus.get_event_log())}")
    print(f"  Dead-lettered jobs: {len(pipeline.store.list_dead_letters())}")
    print("-" * 70)

    print("\nNotifications sent:")
    for sent in pipeline.channel.get_successful_sends():
        print(f"  {sent}")

    for job in pipeline.store.list_dead_letters():
        print(f"  DEAD-LETTERED: {job.order_id} (delivery_count={job.delivery_count})")

    return accepted, pipeline


if __name__ == "__main__":
    run_pipeline_demo()
