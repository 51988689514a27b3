import asyncio
import logging
import smtplib
from decimal import Decimal
from email.message import EmailMessage
from typing import Awaitable, Optional

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    pass


class EmailNotifier:
    """Sends payment e-mails over SMTP; the blocking client runs in a worker thread."""

    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: str = "ThriftHub <no-reply@thrifthub.app>",
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender

    @classmethod
    def from_settings(cls, settings) -> "EmailNotifier":
        return cls(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
        )

    async def send_payment_confirmation(
        self, email: str, order_number: str, amount: Decimal, is_full_payment: bool
    ) -> None:
        if is_full_payment:
            subject = "Payment Confirmed - ThriftHub"
            note = "Your order is fully paid and will be prepared for delivery."
        else:
            subject = "First Installment Received - ThriftHub"
            note = (
                "This is your first installment (50%). The remaining balance "
                "will be charged on your selected payday."
            )
        body = (
            f"We have received your payment for order {order_number}.\n\n"
            f"Payment amount: GH₵ {amount:.2f}\n\n{note}\n"
        )
        await self._send(email, subject, body)

    async def send_payment_failure(self, email: str, order_number: str, amount: Decimal, reason: str) -> None:
        body = (
            f"We could not charge GH₵ {amount:.2f} for order {order_number}.\n\n"
            f"Reason: {reason}\n\nPlease update your payment details to complete the order.\n"
        )
        await self._send(email, "Payment Failed - ThriftHub", body)

    async def _send(self, to: str, subject: str, body: str) -> None:
        if not self.username:
            logger.info("SMTP not configured; skipping e-mail %r to %s", subject, to)
            return
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Email sending failed: {e}") from e

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            smtp.starttls()
            smtp.login(self.username, self.password or "")
            smtp.send_message(message)


async def notify_safely(send: Awaitable[None], context: str) -> bool:
    """Await a notification, logging instead of raising when it fails."""
    try:
        await send
        return True
    except Exception:
        logger.exception("Failed to send %s", context)
        return False
