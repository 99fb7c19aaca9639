"""Delivery of verification status notifications to companies."""

from typing import Optional, Protocol

import httpx

from trustflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class NotificationDispatcher(Protocol):
    """Anything that can tell a company its verification status changed."""

    async def notify_verification_status(
        self, company_id: str, status: str, notes: Optional[str] = None
    ) -> None:
        ...


class LoggingNotificationDispatcher:
    """Dispatcher used when no delivery endpoint is configured."""

    async def notify_verification_status(
        self, company_id: str, status: str, notes: Optional[str] = None
    ) -> None:
        LOGGER.info(
            f"Verification status notification: {status}",
            extra={"company_id": company_id, "notes": notes},
        )


class WebhookNotificationDispatcher:
    """Posts status changes to a notification service endpoint."""

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport

    async def notify_verification_status(
        self, company_id: str, status: str, notes: Optional[str] = None
    ) -> None:
        """POST the notification.

        Raises:
            httpx.HTTPError: If delivery fails; callers decide whether that matters
        """
        payload = {
            "type": "verification_status",
            "company_id": company_id,
            "status": status,
            "notes": notes,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        LOGGER.info(
            f"Delivered verification notification: {status}",
            extra={"company_id": company_id},
        )
