from typing import Any, Dict, Optional, Protocol

import httpx
from structlog import get_logger

from bazaar.common.db.models import OutboxEvent
from bazaar.common.errors import OutboxDeliveryError

logger = get_logger()


class OutboxSink(Protocol):
    """Delivers one outbox event. Raises OutboxDeliveryError (or any exception) on failure."""

    async def deliver(self, event: OutboxEvent) -> Optional[Dict[str, Any]]: ...


class HttpSink:
    """
    POSTs the event payload to a downstream service.

    The event id travels as Idempotency-Key so receivers can drop redeliveries;
    the order id travels as X-Order-Id for the ERP's order-keyed dedup.
    """

    destination = "http"
    path = "/"

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 10.0):
        self.client = client
        self.url = f"{base_url.rstrip('/')}{self.path}"
        self.timeout = timeout

    async def deliver(self, event: OutboxEvent) -> Optional[Dict[str, Any]]:
        headers = {
            "Idempotency-Key": event.id,
            "X-Event-Type": event.event_type,
        }
        if event.order_id:
            headers["X-Order-Id"] = event.order_id

        try:
            response = await self.client.post(self.url, json=event.payload, headers=headers, timeout=self.timeout)
        except httpx.TransportError as e:
            raise OutboxDeliveryError(self.destination, f"{type(e).__name__}: {e}")

        # 409 means the receiver already has this event
        if response.status_code == 409:
            logger.info("outbox_duplicate_acknowledged", destination=self.destination, event_id=event.id)
            return None
        if response.status_code >= 400:
            raise OutboxDeliveryError(self.destination, f"HTTP {response.status_code}")

        if response.content and response.headers.get("content-type", "").startswith("application/json"):
            return response.json()
        return None


class NotificationClient(HttpSink):
    """Email/SMS notification service."""
    destination = "notification"
    path = "/messages"


class ErpClient(HttpSink):
    """One-way order push to the ERP. The ack may carry the ERP's own reference."""
    destination = "erp"
    path = "/orders/sync"
