"""Payment confirmation notifications.

The dispatcher hands a PaymentConfirmation to PaymentNotifier.submit, which
enqueues a Celery task from a detached executor job and returns at once.
Delivery (SMTP) happens in the worker with retry and backoff; failures are
logged and never reach the callback response.
"""

import asyncio
import contextvars
import html
import logging
import smtplib
from dataclasses import asdict, dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Optional

from app.core.config import Settings, settings as default_settings
from app.core.logging import log_error, log_info
from app.modules.payment_gateway.errors import NotificationFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentConfirmation:
    """Everything the confirmation email needs. JSON-serializable."""
    order_id: str
    external_order_id: str
    email: Optional[str]
    amount: str
    currency: str
    plan_name: str
    end_date: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def render_confirmation(confirmation: PaymentConfirmation) -> tuple[str, str]:
    """Build the subject and HTML body of a confirmation email."""
    subject = f"Payment received for {confirmation.plan_name}"
    body = f"""
    <html>
    <body>
        <h2>Thank you for your payment</h2>
        <p>Order: {html.escape(confirmation.external_order_id)}</p>
        <p>Amount: {html.escape(confirmation.amount)} {html.escape(confirmation.currency)}</p>
        <p>Plan: {html.escape(confirmation.plan_name)}</p>
        <p>Active until: {html.escape(confirmation.end_date)}</p>
    </body>
    </html>
    """
    return subject, body


class EmailSender:
    """Sends HTML email over SMTP (blocking)."""

    def __init__(self, config: Settings = default_settings):
        self.config = config

    def send(self, to: str, subject: str, html_body: str) -> None:
        """Send one message.

        Raises:
            NotificationFailure: SMTP is not configured or delivery failed
        """
        if not self.config.SMTP_HOST or not self.config.SMTP_FROM_EMAIL:
            raise NotificationFailure("SMTP not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.config.SMTP_FROM_EMAIL
        msg["To"] = to
        msg.attach(MIMEText(html_body, "html"))

        try:
            with smtplib.SMTP(
                self.config.SMTP_HOST,
                self.config.SMTP_PORT,
                timeout=self.config.SMTP_TIMEOUT_SECONDS,
            ) as server:
                if self.config.SMTP_TLS:
                    server.starttls()
                if self.config.SMTP_USER and self.config.SMTP_PASSWORD:
                    server.login(self.config.SMTP_USER, self.config.SMTP_PASSWORD)
                server.sendmail(self.config.SMTP_FROM_EMAIL, to, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationFailure(f"SMTP delivery to {to} failed: {e}") from e


def enqueue_confirmation(payload: dict[str, Any]) -> None:
    """Queue the Celery delivery task."""
    from app.modules.payment_gateway.tasks import send_payment_confirmation

    send_payment_confirmation.apply_async(kwargs={"confirmation": payload})


class PaymentNotifier:
    """Best-effort, non-blocking hand-off of confirmations."""

    def __init__(self, enqueue: Callable[[dict[str, Any]], Any] = enqueue_confirmation):
        self._enqueue = enqueue
        self._pending: set = set()

    def submit(self, confirmation: PaymentConfirmation) -> None:
        """Schedule delivery and return immediately."""
        if not confirmation.email:
            log_info(
                logger,
                "No recipient for payment confirmation",
                order_id=confirmation.order_id,
            )
            return

        payload = confirmation.to_dict()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._hand_off(payload)
            return

        # Broker I/O stays off the event loop; keep the correlation id
        ctx = contextvars.copy_context()
        future = loop.run_in_executor(None, ctx.run, self._hand_off, payload)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    def _hand_off(self, payload: dict[str, Any]) -> None:
        try:
            self._enqueue(payload)
        except Exception as e:
            log_error(
                logger,
                "Failed to enqueue payment confirmation",
                NotificationFailure(str(e)),
                order_id=payload.get("order_id"),
            )

    async def drain(self) -> None:
        """Wait for in-flight hand-offs. Used on shutdown."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
