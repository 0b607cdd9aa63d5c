"""Courier gateway adapter.

Hands confirmed orders to the shipping courier and records the courier's
order number. Hand-off is best effort: it retries transient failures with
exponential backoff and logs anything else, because the order it ships has
already been committed.
"""

import logging
import time
from typing import Any, Callable

import httpx

from .errors import CourierRejectedError, CourierUnavailableError, OrderNotFoundError
from .models import Order, OrderLineItem, PaymentMethod, ShippingAddress, _utc_now
from .store import ORDERS, DocumentStore

logger = logging.getLogger(__name__)

# Latest scan stages the storefront shows as-is
DISPLAY_STAGES = ("Delivered", "Out For Delivery", "In Transit")


class CourierClient:
    """HTTP client for the courier's create-shipment and tracking endpoints."""

    def __init__(self, api_key: str, create_url: str, tracking_url: str, client: httpx.Client):
        self.api_key = api_key
        self.create_url = create_url
        self.tracking_url = tracking_url
        self._client = client

    def _post(self, url: str, payload: dict[str, Any], operation: str) -> dict[str, Any]:
        if not url:
            raise CourierRejectedError(operation, "courier endpoint not configured")
        try:
            response = self._client.post(url, json=payload)
        except httpx.TimeoutException:
            raise CourierUnavailableError(operation, "timed out")
        except httpx.TransportError as e:
            raise CourierUnavailableError(operation, str(e))

        if response.status_code >= 500:
            raise CourierUnavailableError(operation, f"HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            raise CourierUnavailableError(operation, "invalid response body")
        if response.status_code >= 400 or (isinstance(data, dict) and data.get("error")):
            detail = data.get("error") if isinstance(data, dict) else None
            raise CourierRejectedError(operation, str(detail or f"HTTP {response.status_code}"))
        return data

    def create_shipment(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._post(self.create_url, {"api_key": self.api_key, **payload}, "create shipment")

    def fetch_tracking(self, order_no: str) -> dict[str, Any]:
        return self._post(
            self.tracking_url, {"api_key": self.api_key, "order_no": order_no}, "fetch tracking"
        )


def build_shipment_payload(
    client_order_no: str,
    shipping: ShippingAddress,
    payment_method: PaymentMethod,
    total_price: Any,
    line: OrderLineItem,
    weight: str | None = None,
) -> dict[str, str]:
    """Courier payload for one order, described by its first line item."""
    return {
        "customer_name": shipping.name or "",
        "customer_email": shipping.email or "",
        "customer_address1": shipping.address or "",
        "customer_address_state": shipping.state or "",
        "customer_address_city": shipping.city or "",
        "customer_address_pincode": shipping.postal_code or "",
        "customer_contact_number1": shipping.delivery_phone or "",
        "product_id": line.product_id,
        "product_name": line.product_name,
        "sku": line.sku,
        "mrp": str(line.price_at_order),
        "product_size": line.size,
        "product_weight": weight or "",
        "product_color": line.color,
        "pay_mode": "COD" if payment_method == PaymentMethod.COD else "PREPAID",
        "quantity": str(line.quantity),
        "total_amount": str(total_price),
        # Idempotency token: the courier dedups on this
        "client_order_no": client_order_no,
    }


class CourierAdapter:
    """Retry/fallback policy around the courier client."""

    def __init__(
        self,
        client: CourierClient,
        store: DocumentStore,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def submit(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Create a shipment, retrying transient failures.

        Raises:
            CourierRejectedError: The courier refused the shipment.
            CourierUnavailableError: Still failing after max_attempts.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.client.create_shipment(payload)
            except CourierUnavailableError as e:
                if attempt == self.max_attempts:
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Courier attempt %d/%d failed (%s); retrying in %.2fs",
                    attempt, self.max_attempts, e, delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def preview(
        self,
        token: str,
        shipping: ShippingAddress,
        payment_method: PaymentMethod,
        total_price: Any,
        line: OrderLineItem,
    ) -> dict[str, Any]:
        """Check the courier accepts this destination before payment starts."""
        payload = build_shipment_payload(token, shipping, payment_method, total_price, line)
        return self.submit(payload)

    def hand_off(self, order_id: str) -> str | None:
        """
        Submit a committed order to the courier and record its order number.

        Never raises: the order is already placed, so failures are logged.
        Returns the courier order number when one was recorded.
        """
        try:
            return self._hand_off(order_id)
        except Exception:
            logger.error("Courier hand-off failed for order %s", order_id, exc_info=True)
            return None

    def _hand_off(self, order_id: str) -> str | None:
        doc = self.store.get(ORDERS, order_id)
        if doc is None:
            raise OrderNotFoundError(order_id)
        order = Order.from_dict(doc)
        if order.courier_order_no:
            return order.courier_order_no
        if not order.products:
            logger.warning("Order %s has no line items; skipping courier hand-off", order_id)
            return None

        payload = build_shipment_payload(
            order.order_id,
            order.shipping_address,
            order.payment_method,
            order.total_price,
            order.products[0],
        )
        response = self.submit(payload)
        order_no = response.get("order_no")
        if not order_no:
            logger.warning("Courier accepted order %s without an order number", order_id)
            return None

        def record(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise OrderNotFoundError(order_id)
            updated = Order.from_dict(current)
            if updated.courier_order_no is None:
                updated.courier_order_no = str(order_no)
                updated.updated_at = _utc_now()
            return updated.to_dict()

        self.store.modify(ORDERS, order_id, record)
        logger.info("Order %s handed to courier as %s", order_id, order_no)
        return str(order_no)

    def fetch_tracking(self, order: Order) -> dict[str, Any]:
        """Live tracking for an order, keyed by its courier order number."""
        return self.client.fetch_tracking(order.courier_order_no or order.order_id)


def latest_scan_stage(tracking: dict[str, Any]) -> str | None:
    stages = tracking.get("scan_stages") or []
    if stages and isinstance(stages[0], dict) and stages[0].get("status"):
        return stages[0]["status"]
    return tracking.get("tracking_status")
