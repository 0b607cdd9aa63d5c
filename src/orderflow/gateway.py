"""HTTP client for the payment gateway (Razorpay REST API)."""

import logging
from typing import Any

import httpx

from .errors import GatewayTimeoutError, PaymentGatewayError

logger = logging.getLogger(__name__)


class RazorpayClient:
    """Thin wrapper over the gateway's orders, payments and refunds endpoints."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        client: httpx.Client,
        currency: str = "INR",
    ):
        """
        Initialize RazorpayClient.

        Args:
            key_id: API key id (basic auth user).
            key_secret: API key secret (basic auth password, also signs callbacks).
            client: httpx client with base_url and timeout configured.
            currency: Currency for new payment orders.
        """
        self.key_id = key_id
        self.key_secret = key_secret
        self.currency = currency
        self._client = client

    def _request(self, method: str, path: str, operation: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(
                method, path, auth=(self.key_id, self.key_secret), **kwargs
            )
        except httpx.TimeoutException:
            logger.warning("Gateway %s timed out", operation)
            raise GatewayTimeoutError(operation)
        except httpx.TransportError as e:
            raise PaymentGatewayError(operation, str(e), retryable=True)

        if response.status_code >= 500:
            raise PaymentGatewayError(
                operation, f"HTTP {response.status_code}", response.status_code, retryable=True
            )
        if response.status_code >= 400:
            try:
                detail = response.json().get("error", {}).get("description", response.text)
            except ValueError:
                detail = response.text
            raise PaymentGatewayError(operation, detail, response.status_code)
        return response.json()

    def create_order(self, amount: int, receipt: str, notes: dict[str, str] | None = None) -> dict[str, Any]:
        """Create a payment order (intent) for amount in minor units."""
        return self._request(
            "POST",
            "/v1/orders",
            "create order",
            json={
                "amount": amount,
                "currency": self.currency,
                "receipt": receipt,
                "payment_capture": 1,
                "notes": notes or {},
            },
        )

    def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        return self._request("GET", f"/v1/payments/{payment_id}", "fetch payment")

    def refund(
        self,
        payment_id: str,
        amount: int,
        idempotency_key: str,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Refund part of a captured payment.

        The idempotency key is sent as the refund receipt and as a header, so
        a retried call after a timeout does not refund twice.
        """
        return self._request(
            "POST",
            f"/v1/payments/{payment_id}/refund",
            "refund",
            json={"amount": amount, "receipt": idempotency_key, "notes": notes or {}},
            headers={"X-Idempotency-Key": idempotency_key},
        )
