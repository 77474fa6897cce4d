"""
Shared infrastructure for the order pipeline.

This package contains code used by every pipeline component and adapter:
- Domain models (OrderRequest, OrderJob, OrderResult, etc.)
- Error taxonomy
- Settings loaded from the environment
- Mock email channel and the email templates it renders
"""

from shared.models import (
    ExecutionOutcome,
    JobStatus,
    OrderAccepted,
    OrderJob,
    OrderRequest,
    OrderResult,
    QueueStats,
)
from shared.channels import EmailChannel, NotificationResult
from shared.settings import PipelineSettings, get_settings

__all__ = [
    "ExecutionOutcome",
    "JobStatus",
    "OrderAccepted",
    "OrderJob",
    "OrderRequest",
    "OrderResult",
    "QueueStats",
    "EmailChannel",
    "NotificationResult",
    "PipelineSettings",
    "get_settings",
]
