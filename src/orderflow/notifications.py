"""Domain event publishing.

Components never talk to a global emitter. They receive a
NotificationPublisher at construction and call emit(), which swallows and
logs delivery failures so an event can never fail the operation that
produced it.
"""

import logging
from typing import Any, Protocol

import httpx

from .errors import NotificationError

logger = logging.getLogger(__name__)

ORDER_PLACED = "order_placed"
ORDER_PAID = "order_paid"
ORDER_UPDATED = "order_updated"
RETURN_REQUESTED = "return_requested"
RETURN_UPDATED = "return_updated"
REFUND_PROCESSED = "refund_processed"
REPLACEMENT_CREATED = "replacement_created"
DISCOUNT_APPLIED = "discount_applied"


class NotificationPublisher(Protocol):
    def publish(self, event: str, payload: dict[str, Any]) -> None: ...


class LoggingPublisher:
    """Writes events to the log. Used when no bus is configured."""

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("event %s: %s", event, payload.get("order_id") or payload)


class HttpNotificationPublisher:
    """Posts events to the real-time fan-out service."""

    def __init__(self, url: str, client: httpx.Client):
        self.url = url
        self._client = client

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        try:
            response = self._client.post(self.url, json={"event": event, "data": payload})
        except httpx.TimeoutException:
            raise NotificationError(event, "timed out")
        except httpx.HTTPError as e:
            raise NotificationError(event, str(e))
        if response.status_code >= 400:
            raise NotificationError(event, f"HTTP {response.status_code}")


def emit(publisher: NotificationPublisher, event: str, payload: dict[str, Any]) -> None:
    """Publish an event; failures are logged and never propagated."""
    try:
        publisher.publish(event, payload)
    except Exception:
        logger.warning("Failed to publish %s event", event, exc_info=True)
