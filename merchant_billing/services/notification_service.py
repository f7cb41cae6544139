"""Delivery of subscription state-change events.

Events are always logged. When ``notification_webhook_url`` is configured
they are also POSTed as JSON for downstream consumers (entitlements,
customer email). Delivery failures are logged, never raised.
"""

import logging

import httpx

from merchant_billing.config import Settings, settings
from merchant_billing.domain.events import SubscriptionEvent

logger = logging.getLogger(__name__)


class NotificationService:
    """Event sink for subscription lifecycle events."""

    def __init__(self, config: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config or settings
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-load HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=10.0, transport=self._transport)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def publish(self, event: SubscriptionEvent) -> None:
        logger.info(
            f"{event.name}: subscription {event.subscription_id} (merchant {event.merchant_id}) "
            f"{event.old_status} -> {event.new_status}"
            + (f" ({event.reason})" if event.reason else "")
        )

        url = self.config.notification_webhook_url
        if not url:
            return
        try:
            response = await self.http_client.post(url, json=event.to_dict())
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to deliver {event.name} for subscription {event.subscription_id}: {e}")

    async def publish_all(self, events: list[SubscriptionEvent]) -> None:
        for event in events:
            await self.publish(event)


# Singleton instance
notification_service = NotificationService()
