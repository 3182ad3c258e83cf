"""
Customer notifications.

Sends are fire-and-forget: the dispatcher schedules them as background tasks
and a failed send is logged, never raised to the operation that triggered it.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Set

import boto3

from storefront.catalog import CustomerDirectory
from storefront.config import Config

logger = logging.getLogger(__name__)


class NotificationSender(ABC):
    """Delivery channel for customer messages"""

    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> None:
        ...


class LoggingNotificationSender(NotificationSender):
    """Writes messages to the log instead of delivering them"""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info(f"Notification: {subject}", extra={"recipient_domain": to.split("@")[-1]})


class SesNotificationSender(NotificationSender):
    """Email delivery through Amazon SES"""

    def __init__(self, from_address: str = Config.NOTIFICATION_FROM_ADDRESS, region: str = Config.REGION):
        self.from_address = from_address
        self.client = boto3.client("ses", region_name=region)

    async def send(self, to: str, subject: str, body: str) -> None:
        # boto3 is blocking; keep it off the event loop
        await asyncio.to_thread(
            self.client.send_email,
            Source=self.from_address,
            Destination={"ToAddresses": [to]},
            Message={
                "Subject": {"Data": subject},
                "Body": {"Text": {"Data": body}},
            },
        )


def build_sender(backend: str = Config.NOTIFICATION_BACKEND) -> NotificationSender:
    if backend == "ses":
        return SesNotificationSender()
    return LoggingNotificationSender()


class NotificationDispatcher:
    """Schedules customer notifications without blocking the caller"""

    def __init__(self, sender: NotificationSender, customers: CustomerDirectory):
        self.sender = sender
        self.customers = customers
        self._pending: Set[asyncio.Task] = set()

    def notify_customer(self, customer_id: int, subject: str, body: str) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(customer_id, subject, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, customer_id: int, subject: str, body: str) -> None:
        try:
            email = await self.customers.get_email(customer_id)
            if not email:
                logger.warning(f"No email on file for customer, skipping notification: {subject}")
                return
            await self.sender.send(email, subject, body)
        except Exception as e:
            logger.error(
                f"Notification failed: {subject}",
                extra={"error": str(e), "error_type": type(e).__name__},
                exc_info=True
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight notifications (shutdown, tests)"""
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)


def shipped_message(order_id: int, tracking_number: Optional[str], courier: Optional[str]) -> tuple:
    subject = f"Your order #{order_id} has shipped"
    body = f"Good news! Order #{order_id} is on its way."
    if tracking_number:
        carrier = f" via {courier}" if courier else ""
        body += f" Tracking number{carrier}: {tracking_number}."
    return subject, body


def delivered_message(order_id: int) -> tuple:
    return (
        f"Your order #{order_id} has been delivered",
        f"Order #{order_id} has been delivered. Thank you for shopping with us!",
    )
