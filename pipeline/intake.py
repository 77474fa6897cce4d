"""
Order intake: the request-submission side of the pipeline.

Validates an incoming order and puts it in the message store. This is all the
ingress does; processing happens later and its failures never come back to
the client. Only validation and capacity errors are reported synchronously.
"""

import logging
from typing import Any

from pydantic import ValidationError

from pipeline.message_store import MessageStore
from shared.exceptions import OrderValidationError
from shared.models import OrderAccepted, OrderRequest

logger = logging.getLogger("order_intake")


class OrderIntake:
    """Accepts orders on behalf of clients."""

    def __init__(self, store: MessageStore):
        self.store = store

    def request_order(self, request: OrderRequest) -> OrderAccepted:
        """
        Queue a validated order.

        Raises:
            OrderValidationError: Payload too large or not serializable
            CapacityExceeded: The order's group is full
        """
        job, created = self.store.admit(
            request.payload,
            order_id=request.order_id,
            group_key=request.group_key,
            dedupe_token=request.dedupe_token,
        )
        if created:
            logger.info(f"Accepted order {job.order_id} as job {job.job_id}")
        return OrderAccepted(
            job_id=job.job_id,
            order_id=job.order_id,
            group_key=job.group_key,
            duplicate=not created,
        )

    def request_order_from_dict(self, data: Any) -> OrderAccepted:
        """
        Validate raw request data and queue it.

        Raises:
            OrderValidationError: The data does not describe a valid order
        """
        try:
            request = OrderRequest.model_validate(data)
        except ValidationError as e:
            raise OrderValidationError(f"Malformed order request: {e.error_count()} error(s): {e}") from e
        return self.request_order(request)
