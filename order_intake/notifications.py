"""Post-commit order confirmation: invoice PDF plus e-mail.

Runs after the order transaction has committed and holds no database
connection. Every failure is logged and counted, never raised: the order is
already stored and the caller already has its answer. There is no retry and
no durable queue.
"""

import html
import os
import smtplib
from abc import ABC, abstractmethod
from datetime import date
from email.message import EmailMessage
from enum import Enum
from typing import Optional, Protocol
from uuid import uuid4

from .invoice import SHOP_NAME, PdfInvoiceRenderer, money
from .logging_config import get_logger
from .metrics import NOTIFICATIONS
from .schemas import OrderOut

log = get_logger(__name__)

EMAIL_HOST = os.getenv("EMAIL_HOST")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_USER = os.getenv("EMAIL_USER")
EMAIL_PASS = os.getenv("EMAIL_PASS")
EMAIL_FROM = os.getenv("EMAIL_FROM", "no-reply@classyshop.pe")
EMAIL_TIMEOUT = float(os.getenv("EMAIL_TIMEOUT", "10"))


class NotifyState(str, Enum):
    PENDING = "NOTIFY_PENDING"
    NOTIFIED = "NOTIFIED"
    FAILED = "NOTIFY_FAILED"
    SKIPPED = "SKIPPED"


class InvoiceRenderer(Protocol):
    def render(self, order: OrderOut) -> bytes: ...


class MessageSender(ABC):
    """Abstract interface for confirmation e-mail delivery."""

    @abstractmethod
    def send(self, to: str, order: OrderOut, attachment: bytes) -> dict:
        """Send the confirmation for ``order`` with the invoice attached.

        Returns:
            dict with keys: message_id, status ("sent" or "failed"), error (optional)
        """
        ...


def confirmation_subject(order: OrderOut) -> str:
    return f"Confirmación de tu pedido #{order.id}"


def confirmation_html(order: OrderOut) -> str:
    name = html.escape(str((order.customer_details or {}).get("name", "")))
    return f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: auto; border: 1px solid #ddd; padding: 20px; border-radius: 8px;">
  <h1 style="color: #333; text-align: center;">¡Gracias por tu compra!</h1>
  <p style="color: #555;">Hola {name},</p>
  <p style="color: #555;">Hemos recibido tu pedido #{order.id}. Adjuntamos la confirmación detallada en PDF.</p>
  <p style="font-size: 18px; font-weight: bold; text-align: center; background: #f4f4f4; padding: 10px; border-radius: 4px;">Total Pagado: {money(order.total)}</p>
  <hr style="border: 0; border-top: 1px solid #eee; margin: 20px 0;" />
  <p style="font-size: 12px; color: #999; text-align: center;">&copy; {date.today().year} {SHOP_NAME}. Todos los derechos reservados.</p>
</div>
"""


class SmtpMessageSender(MessageSender):
    def __init__(
        self,
        host: str,
        port: int = EMAIL_PORT,
        user: Optional[str] = EMAIL_USER,
        password: Optional[str] = EMAIL_PASS,
        sender: str = EMAIL_FROM,
        timeout: float = EMAIL_TIMEOUT,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def build_message(self, to: str, order: OrderOut, attachment: bytes) -> EmailMessage:
        message = EmailMessage()
        message["From"] = f'"{SHOP_NAME}" <{self.sender}>'
        message["To"] = to
        message["Subject"] = confirmation_subject(order)
        message["Message-ID"] = f"<order-{order.id}-{uuid4().hex[:12]}@{self.sender.split('@')[-1]}>"
        message.set_content(f"Hemos recibido tu pedido #{order.id}. Total Pagado: {money(order.total)}")
        message.add_alternative(confirmation_html(order), subtype="html")
        message.add_attachment(
            attachment,
            maintype="application",
            subtype="pdf",
            filename=f"pedido_{order.id}.pdf",
        )
        return message

    def send(self, to: str, order: OrderOut, attachment: bytes) -> dict:
        message = self.build_message(to, order, attachment)
        try:
            if self.port == 465:
                client = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
            else:
                client = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            with client:
                if self.port != 465:
                    client.starttls()
                if self.user:
                    client.login(self.user, self.password or "")
                client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            return {"message_id": None, "status": "failed", "error": str(exc)}
        return {"message_id": message["Message-ID"], "status": "sent"}


class FakeMessageSender(MessageSender):
    """Sender that records messages in memory for test assertions."""

    def __init__(self):
        self.sent: list[dict] = []
        self.should_succeed = True
        self.failure_reason = "Email delivery failed"

    def configure(self, should_succeed: bool = True, failure_reason: str = "Email delivery failed"):
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def send(self, to: str, order: OrderOut, attachment: bytes) -> dict:
        if not self.should_succeed:
            return {"message_id": None, "status": "failed", "error": self.failure_reason}

        message_id = f"email-{uuid4().hex[:12]}"
        self.sent.append(
            {
                "message_id": message_id,
                "to": to,
                "subject": confirmation_subject(order),
                "order_id": order.id,
                "attachment": attachment,
            }
        )
        return {"message_id": message_id, "status": "sent"}

    def reset(self):
        self.sent.clear()
        self.should_succeed = True
        self.failure_reason = "Email delivery failed"


def default_sender() -> Optional[MessageSender]:
    """SMTP when EMAIL_HOST is configured; None leaves e-mail disabled."""
    if EMAIL_HOST:
        return SmtpMessageSender(EMAIL_HOST)
    log.warning("notifications.smtp_not_configured")
    return None


class NotificationDispatcher:
    def __init__(self, renderer: Optional[InvoiceRenderer] = None, sender: Optional[MessageSender] = None):
        self.renderer = renderer or PdfInvoiceRenderer()
        self.sender = sender or default_sender()

    def dispatch(self, order: OrderOut) -> NotifyState:
        recipient = (order.customer_details or {}).get("email")
        if not recipient:
            log.info("notification.skipped", order_id=order.id, reason="no_recipient")
            NOTIFICATIONS.labels(outcome="skipped").inc()
            return NotifyState.SKIPPED

        if self.sender is None:
            log.info("notification.skipped", order_id=order.id, reason="smtp_not_configured")
            NOTIFICATIONS.labels(outcome="skipped").inc()
            return NotifyState.SKIPPED

        log.info("notification.state", order_id=order.id, state=NotifyState.PENDING.value)
        try:
            attachment = self.renderer.render(order)
            result = self.sender.send(recipient, order, attachment)
        except Exception:
            log.error("notification.failed", order_id=order.id, exc_info=True)
            NOTIFICATIONS.labels(outcome="failed").inc()
            return NotifyState.FAILED

        if result.get("status") != "sent":
            log.error("notification.failed", order_id=order.id, error=result.get("error"))
            NOTIFICATIONS.labels(outcome="failed").inc()
            return NotifyState.FAILED

        log.info(
            "notification.state",
            order_id=order.id,
            state=NotifyState.NOTIFIED.value,
            message_id=result.get("message_id"),
        )
        NOTIFICATIONS.labels(outcome="sent").inc()
        return NotifyState.NOTIFIED
