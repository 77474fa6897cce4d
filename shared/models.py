"""
Domain models for the order pipeline.

These models describe the data that crosses component boundaries: the order
request accepted at ingress, the job held by the message store, the result
produced by the processor and the read models exposed to operators.

Design decisions:
- Using Pydantic for validation and serialization
- The store hands out copies of jobs, never its own instances
- Timestamps are timezone-aware UTC
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


# =============================================================================
# Enums
# =============================================================================

class JobStatus(str, Enum):
    """Where a job currently sits inside the message store."""
    PENDING = "PENDING"                 # Visible, waiting to be received
    IN_FLIGHT = "IN_FLIGHT"             # Handed to a worker, hidden until ack or expiry
    DEAD_LETTERED = "DEAD_LETTERED"     # Exceeded max deliveries, parked for an operator


class ExecutionOutcome(str, Enum):
    """How the processor handled one delivery of a job."""
    EXECUTED = "executed"               # Work ran and the completion event was published
    REPUBLISHED = "republished"         # Work had already run, only the publish was retried
    DUPLICATE = "duplicate"             # Already executed and published, nothing to do


# =============================================================================
# Ingress
# =============================================================================

class OrderRequest(BaseModel):
    """
    An order submitted by a client.

    Only ``payload`` is required. The order id is generated when omitted and
    the group key falls back to the configured default group, which makes
    processing strictly serial across all orders.
    """
    model_config = ConfigDict(extra="forbid")

    payload: dict[str, Any] = Field(..., description="Opaque order data")
    order_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    group_key: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=128,
        description="Orders sharing a group key are processed in submission order",
    )
    dedupe_token: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=128,
        description="Repeated submissions with the same token are admitted once",
    )


class OrderAccepted(BaseModel):
    """Acknowledgement returned to the client once the order is queued."""
    job_id: str
    order_id: str
    group_key: str
    status: str = "QUEUED"
    duplicate: bool = Field(
        default=False,
        description="True when the dedupe token matched an earlier submission",
    )


# =============================================================================
# Queue
# =============================================================================

class OrderJob(BaseModel):
    """
    A unit of work in the message store.

    ``delivery_count`` is 0 on the first delivery and grows by one every time
    the job's visibility window expires without an acknowledgement.
    """
    job_id: str = Field(default_factory=new_id)
    order_id: str = Field(default_factory=new_id)
    group_key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    dedupe_token: Optional[str] = None
    enqueued_at: datetime = Field(default_factory=utcnow)
    delivery_count: int = Field(default=0, ge=0)
    status: JobStatus = JobStatus.PENDING
    dead_lettered_at: Optional[datetime] = None


class QueueStats(BaseModel):
    """Approximate counts for operators, taken under the store lock."""
    pending: int = 0
    in_flight: int = 0
    dead_lettered: int = 0
    groups: int = 0


# =============================================================================
# Processing
# =============================================================================

class OrderResult(BaseModel):
    """What the processor reports back to the coordinator."""
    order_id: str
    outcome: ExecutionOutcome
    result: dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime = Field(default_factory=utcnow)
