"""
Pipeline configuration.

All tunables are supplied from outside the core: environment variables with
the ORDERS_ prefix (e.g. ORDERS_VISIBILITY_TIMEOUT_SECONDS=180), an optional
.env file, or keyword arguments in tests. Nothing here is computed by the
pipeline itself.

The defaults follow a managed FIFO queue setup: a 180 second
visibility timeout, a single reserved worker, a 30 second processing timeout
and one message per invocation.
"""

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    """Settings for the store, coordinator, bus and notifier."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ORDERS_",
        case_sensitive=False,
        extra="ignore",
    )

    # Message store
    visibility_timeout_seconds: float = Field(default=180.0, gt=0)
    max_deliveries: int = Field(
        default=3,
        ge=0,
        description="Redeliveries allowed before a job is dead-lettered",
    )
    max_payload_bytes: int = Field(default=256 * 1024, gt=0)
    max_group_backlog: int = Field(default=10_000, gt=0)
    dedupe_window_seconds: float = Field(default=300.0, ge=0)
    default_group_key: str = Field(default="orders", min_length=1)
    sweep_interval_seconds: float = Field(default=1.0, gt=0)
    dead_letter_destination: str = Field(default="orders-dlq")

    # Execution coordinator
    processing_timeout_seconds: float = Field(default=30.0, gt=0)
    visibility_safety_margin: float = Field(default=6.0, ge=1)
    max_concurrency: int = Field(default=1, ge=1)
    poll_interval_seconds: float = Field(default=0.5, gt=0)
    max_poll_interval_seconds: float = Field(default=5.0, gt=0)

    # Order processor
    execution_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Simulated duration of the order execution",
    )
    execution_fail_rate: float = Field(default=0.0, ge=0, le=1)

    # Event bus
    event_source: str = Field(default="orders.executeOrder")
    event_detail_type: str = Field(default="OrderExecuted")
    bus_max_delivery_attempts: int = Field(default=3, ge=1)
    bus_retry_backoff_seconds: float = Field(default=0.5, ge=0)
    bus_buffer_size: int = Field(default=1000, gt=0)
    bus_background_delivery: bool = Field(
        default=True,
        description="Deliver events on the dispatcher thread instead of inside publish()",
    )
    history_size: int = Field(
        default=1000,
        gt=0,
        description="Events, failed deliveries and sent emails kept for inspection",
    )

    # Notifier
    notification_template: str = Field(default="orderExecuted")
    sender_email: str = Field(default="orders@ecommerce-demo.com")
    recipient_email: str = Field(default="customer@ecommerce-demo.com")
    notifier_max_attempts_per_order: int = Field(default=3, ge=1)
    email_fail_rate: float = Field(default=0.0, ge=0, le=1)

    # Runtime
    run_workers: bool = Field(
        default=True,
        description="Start coordinator loops and the store sweeper with the API",
    )

    @model_validator(mode="after")
    def _check_visibility_covers_processing(self) -> "PipelineSettings":
        required = self.visibility_safety_margin * self.processing_timeout_seconds
        if self.visibility_timeout_seconds < required:
            raise ValueError(
                f"visibility_timeout_seconds ({self.visibility_timeout_seconds:g}) must be at least "
                f"{self.visibility_safety_margin:g} x processing_timeout_seconds ({required:g})"
            )
        if self.max_poll_interval_seconds < self.poll_interval_seconds:
            raise ValueError("max_poll_interval_seconds must be >= poll_interval_seconds")
        return self


@lru_cache(maxsize=1)
def get_settings() -> PipelineSettings:
    """Get the process-wide settings, loaded once from the environment."""
    return PipelineSettings()
