import asyncio
from typing import Awaitable, Optional, Protocol, Set

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from jewelry_payments.config import Settings
from jewelry_payments.models import Order, PaymentTransaction

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, text: str, html: str) -> dict:
        """Deliver one message; raise on failure."""


class SendGridEmailSender:
    def __init__(self, api_key: str, from_email: str, http_client: Optional[httpx.AsyncClient] = None):
        self._api_key = api_key
        self._from_email = from_email
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(15.0))
        self._logger = structlog.get_logger().bind(component="sendgrid")

    async def aclose(self) -> None:
        await self._http.aclose()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def send(self, to: str, subject: str, text: str, html: str) -> dict:
        message = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self._from_email},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html},
            ],
        }
        response = await self._http.post(
            SENDGRID_URL,
            json=message,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        response.raise_for_status()
        message_id = response.headers.get("x-message-id")
        self._logger.info("email_sent", to=to, subject=subject, message_id=message_id)
        return {"messageId": message_id}


class LoggingEmailSender:
    """Stand-in used when no mail provider is configured: the message is only logged."""

    def __init__(self):
        self._logger = structlog.get_logger().bind(component="email_log")

    async def send(self, to: str, subject: str, text: str, html: str) -> dict:
        self._logger.info("email_not_delivered", to=to, subject=subject)
        return {"messageId": None}


def build_email_sender(settings: Settings):
    if settings.sendgrid_api_key:
        return SendGridEmailSender(settings.sendgrid_api_key, settings.email_from)
    return LoggingEmailSender()


def _format_money(amount, currency: str) -> str:
    return f"{amount:.2f} {currency}"


class NotificationGateway:
    """Customer and admin emails for the payment lifecycle.

    The ``send_*`` methods deliver one message and report the outcome as
    ``True``/``False``; delivery errors are logged, never raised. The
    ``notify_*`` methods schedule those sends as background tasks and return
    immediately, so request handlers never wait on the mail provider.
    ``drain`` waits for (or, past its timeout, cancels) whatever is still
    in flight.
    """

    def __init__(self, sender: EmailSender, admin_email: Optional[str] = None, shop_name: str = "Jewelry Shop"):
        self.sender = sender
        self.admin_email = admin_email
        self.shop_name = shop_name
        self._pending: Set[asyncio.Task] = set()
        self._logger = structlog.get_logger().bind(component="notifications")

    def notify_payment_succeeded(self, order: Order, transaction: PaymentTransaction) -> None:
        self._schedule(self.send_payment_confirmation(order, transaction.currency))
        self._schedule(self.send_admin_payment_notification(order, transaction))

    def notify_refunded(self, order: Order, transaction: PaymentTransaction) -> None:
        self._schedule(self.send_refund_confirmation(order, transaction))

    async def drain(self, timeout: Optional[float] = None) -> None:
        if not self._pending:
            return
        _, still_running = await asyncio.wait(set(self._pending), timeout=timeout)
        if still_running:
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
            self._logger.warning("emails_cancelled", count=len(still_running))

    def _schedule(self, send: Awaitable[bool]) -> asyncio.Task:
        task = asyncio.ensure_future(send)
        # The event loop keeps only weak references to tasks
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def send_payment_confirmation(self, order: Order, currency: str = "EUR") -> bool:
        lines = [f"- {item.product_name} x{item.quantity}: {_format_money(item.total, currency)}" for item in order.items]
        text = "\n".join(
            [
                "Thank you for your order!",
                f"Order: {order.id}",
                *lines,
                f"Total: {_format_money(order.total, currency)}",
                "We will let you know when your jewelry ships.",
            ]
        )
        html = (
            f"<h1>Thank you for your order!</h1>"
            f"<p>Order <strong>{order.id}</strong> has been paid.</p>"
            f"<ul>{''.join(f'<li>{line[2:]}</li>' for line in lines)}</ul>"
            f"<p>Total: <strong>{_format_money(order.total, currency)}</strong></p>"
        )
        return await self._deliver(order.email, f"{self.shop_name} - Order confirmation", text, html, order_id=order.id)

    async def send_admin_payment_notification(self, order: Order, transaction: PaymentTransaction) -> bool:
        if not self.admin_email:
            return False
        amount = _format_money(transaction.amount, transaction.currency)
        text = (
            f"New paid order {order.id}\n"
            f"Customer: {order.email}\n"
            f"Amount: {amount}\n"
            f"Gateway uuid: {transaction.uuid}"
        )
        html = (
            f"<h2>New paid order</h2><p>Order: {order.id}<br>Customer: {order.email}<br>"
            f"Amount: {amount}<br>Gateway uuid: {transaction.uuid}</p>"
        )
        return await self._deliver(self.admin_email, f"New order {order.id}", text, html, order_id=order.id)

    async def send_refund_confirmation(self, order: Order, transaction: PaymentTransaction) -> bool:
        amount = _format_money(transaction.amount, transaction.currency)
        text = f"Your payment of {amount} for order {order.id} has been refunded."
        html = f"<p>Your payment of <strong>{amount}</strong> for order {order.id} has been refunded.</p>"
        return await self._deliver(order.email, f"{self.shop_name} - Refund confirmation", text, html, order_id=order.id)

    async def _deliver(self, to: str, subject: str, text: str, html: str, **context) -> bool:
        try:
            await self.sender.send(to, subject, text, html)
        except Exception as e:
            self._logger.error("email_send_failed", to=to, subject=subject, error=str(e), **context)
            return False
        return True
