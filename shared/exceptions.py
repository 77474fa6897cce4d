"""
Error taxonomy for the order pipeline.

Only ingress-time errors (validation, capacity) are ever seen by the client
that submitted an order. Everything raised after enqueue is recovered through
redelivery (processing, publish) or isolated per subscriber (notification).

Design decisions:
- One root class so adapters can catch everything the pipeline raises
- Errors carry the identifiers needed to log them without extra lookups
- Processing-side errors keep the original exception as ``__cause__``
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all errors raised by the order pipeline."""


class ConfigurationError(PipelineError):
    """Settings violate a constraint the pipeline depends on."""


# =============================================================================
# Ingress errors (surfaced synchronously to the caller)
# =============================================================================

class OrderValidationError(PipelineError):
    """
    Malformed or oversized order payload.

    Rejected before enqueue, no job is created.
    """

    def __init__(self, message: str, oversized: bool = False):
        super().__init__(message)
        self.oversized = oversized


class CapacityExceeded(PipelineError):
    """The group's backlog bound was hit, no job is created."""

    def __init__(self, group_key: str, limit: int):
        super().__init__(f"Backlog for group '{group_key}' is full ({limit} jobs)")
        self.group_key = group_key
        self.limit = limit


# =============================================================================
# Store errors
# =============================================================================

class JobNotFound(PipelineError):
    """The job is unknown, or not in the state the operation requires."""

    def __init__(self, job_id: str, reason: str = "not found"):
        super().__init__(f"Job {job_id}: {reason}")
        self.job_id = job_id


class DeadLettered(PipelineError):
    """
    Job exceeded the maximum number of deliveries.

    It is moved out of the active queue and never retried automatically;
    an operator has to redrive it.
    """

    def __init__(self, job_id: str, delivery_count: int):
        super().__init__(f"Job {job_id} dead-lettered after {delivery_count} deliveries")
        self.job_id = job_id
        self.delivery_count = delivery_count


# =============================================================================
# Processing errors (recovered via redelivery)
# =============================================================================

class ProcessingFailure(PipelineError):
    """The processor raised while executing an order."""

    def __init__(self, order_id: str, reason: str):
        super().__init__(f"Processing failed for order {order_id}: {reason}")
        self.order_id = order_id
        self.reason = reason


class ProcessingTimeout(ProcessingFailure):
    """The processor exceeded its time budget. Handled like a failure."""

    def __init__(self, order_id: str, timeout: float):
        super().__init__(order_id, f"timed out after {timeout:g}s")
        self.timeout = timeout


class PublishError(PipelineError):
    """The event bus could not relay an event (transport-level failure)."""

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(message)
        self.event_id = event_id


# =============================================================================
# Notification errors (isolated per subscriber)
# =============================================================================

class NotificationFailure(PipelineError):
    """The notification sink reported a failed delivery."""

    def __init__(self, order_id: str, recipient: str, reason: Optional[str] = None):
        super().__init__(
            f"Notification for order {order_id} to {recipient} failed: {reason or 'unknown error'}"
        )
        self.order_id = order_id
        self.recipient = recipient
        self.reason = reason
