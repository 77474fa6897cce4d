"""
Mock email channel used as the notification sink.

The real deployment sends a templated email through a managed provider
(SES-style ``SendTemplatedEmail``): the caller supplies only the recipient,
the template name and the template data, the provider owns the template.
This mock keeps that contract, renders from the static templates in
``shared.templates`` and logs the result instead of sending anything.

Design decisions:
- All sends are logged to console for visibility
- Channel tracks recent sent messages for test assertions
- Failures can be simulated with a fail rate or an explicit fail count
"""

import logging
import random
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from shared.models import utcnow
from shared.templates import TemplateNotFound, render_template

# Configure logging for notification channels
logger = logging.getLogger("notifications")
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter(
    "%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%H:%M:%S"
))
logger.addHandler(handler)
logger.setLevel(logging.INFO)


@dataclass
class NotificationResult:
    """
    Result of a notification send attempt.

    Captures success/failure and metadata for debugging and testing.
    """
    success: bool
    recipient: str
    template_name: str
    subject: Optional[str]
    body: str
    template_data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        return f"{status} EMAIL to {self.recipient}: {self.subject}"


class EmailChannel:
    """
    Mock templated email channel.

    Logs email sends to console and tracks them for test assertions.
    Safe to call from bus delivery threads.
    """

    def __init__(
        self,
        fail_rate: float = 0.0,
        fail_first: int = 0,
        default_sender: str = "orders@ecommerce-demo.com",
        history_size: int = 1000,
    ):
        """
        Initialize the email channel.

        Args:
            fail_rate: Probability of send failure (0.0 to 1.0), for testing.
            fail_first: Number of initial sends that fail deterministically.
            default_sender: From address used when the caller passes none.
            history_size: Number of recent send attempts kept in sent_messages.
        """
        self.fail_rate = fail_rate
        self.default_sender = default_sender
        self._fail_remaining = fail_first
        self._lock = threading.Lock()
        self.sent_messages: deque[NotificationResult] = deque(maxlen=history_size)

    def send_templated(
        self,
        to: str,
        template_name: str,
        template_data: dict[str, Any],
        from_addr: Optional[str] = None,
    ) -> NotificationResult:
        """
        Send a templated email (mock implementation).

        Args:
            to: Recipient email address
            template_name: Name of a template known to the provider
            template_data: Values substituted into the template
            from_addr: Sender identity (for logging)

        Returns:
            NotificationResult indicating success/failure. Unknown templates
            and bad template data are reported as failures, not raised.
        """
        sender = from_addr or self.default_sender
        subject: Optional[str] = None
        body = ""
        error: Optional[str] = None

        try:
            subject, body = render_template(template_name, template_data)
        except TemplateNotFound as e:
            error = str(e)
        except KeyError as e:
            error = f"Template '{template_name}' is missing data for {e}"

        with self._lock:
            if error is None and self._should_fail():
                error = "Simulated email delivery failure"

            result = NotificationResult(
                success=error is None,
                recipient=to,
                template_name=template_name,
                subject=subject,
                body=body,
                template_data=dict(template_data),
                error=error,
            )
            self.sent_messages.append(result)

        if result.success:
            logger.info(f"[EMAIL] From: {sender} | To: {to} | Subject: {subject}")
            logger.debug(f"[EMAIL BODY] {body}")
        else:
            logger.error(f"[EMAIL FAILED] To: {to} | Template: {template_name} | Error: {error}")
        return result

    def _should_fail(self) -> bool:
        if self._fail_remaining > 0:
            self._fail_remaining -= 1
            return True
        return random.random() < self.fail_rate

    def get_sent_count(self) -> int:
        """Get the number of send attempts (for testing)."""
        return len(self.sent_messages)

    def get_successful_sends(self) -> list[NotificationResult]:
        """Get all successful sends."""
        with self._lock:
            return [m for m in self.sent_messages if m.success]

    def clear_history(self):
        """Clear sent message history (useful between tests)."""
        with self._lock:
            self.sent_messages.clear()

    def find_message_to(self, recipient: str) -> Optional[NotificationResult]:
        """Find a message sent to a specific recipient."""
        with self._lock:
            messages = list(self.sent_messages)
        for msg in messages:
            if msg.recipient == recipient:
                return msg
        return None
