"""
Shared pytest fixtures for the order pipeline tests.

These fixtures provide fresh components for every test and a fake clock so
visibility timeouts can be exercised without sleeping.
"""

import pytest

from pipeline.event_bus import EventBus
from pipeline.message_store import MessageStore
from shared.channels import EmailChannel
from shared.settings import PipelineSettings


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock starting at an arbitrary point in time."""
    return FakeClock()


@pytest.fixture
def settings() -> PipelineSettings:
    """
    Settings with the production defaults, except that nothing sleeps,
    events are delivered inline and workers are not started with the API.
    """
    return PipelineSettings(
        _env_file=None,
        execution_delay_seconds=0.0,
        bus_retry_backoff_seconds=0.0,
        bus_background_delivery=False,
        run_workers=False,
    )


@pytest.fixture
def store(clock: FakeClock) -> MessageStore:
    """Fresh store: 180s visibility, 3 redeliveries, driven by the fake clock."""
    return MessageStore(visibility_timeout=180.0, max_deliveries=3, clock=clock)


@pytest.fixture
def bus() -> EventBus:
    """Fresh synchronous event bus that retries without sleeping."""
    return EventBus(max_delivery_attempts=3, retry_backoff=0.0, sleep=lambda _: None)


@pytest.fixture
def email_channel() -> EmailChannel:
    """Fresh EmailChannel that never fails."""
    return EmailChannel(fail_rate=0.0)
