"""Payment verification.

Two independent paths can mark an order paid: the gateway's signed
webhook and the client-supplied checkout signature. Both end in the same
conditional flip, so whichever arrives first wins and the other is a
no-op.
"""

import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from .courier import CourierAdapter
from .errors import (
    AlreadyPaidError,
    AmountMismatchError,
    ExternalServiceError,
    GatewayTimeoutError,
    InvalidInputError,
    InvalidSignatureError,
    OrderNotFoundError,
)
from .gateway import RazorpayClient
from .models import Order, PaymentIntent, PaymentMethod, ShippingAddress, WebhookResult, _utc_now
from .notifications import ORDER_PAID, NotificationPublisher, emit
from .orders import CartItem, OrderOrchestrator, PaymentConfirmation, order_event
from .ratelimit import RateLimiter
from .store import ORDERS, PAYMENTS, DocumentStore
from .utils import from_minor, require_text, to_minor

logger = logging.getLogger(__name__)


def compute_signature(secret: str, message: bytes) -> str:
    """Hex HMAC-SHA256 of message under secret."""
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, message: bytes, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, message), signature)


def checkout_message(razorpay_order_id: str, razorpay_payment_id: str) -> bytes:
    """The string the gateway signs for a client-side checkout."""
    return f"{razorpay_order_id}|{razorpay_payment_id}".encode("utf-8")


@dataclass
class OrderDetails:
    """Cart and address submitted with a prepaid checkout."""

    items: list[CartItem]
    shipping_address: ShippingAddress
    shipping_cost: Any = 0
    declared_total: Any = None
    discount_code: str | None = None


def _payment_entity(event: Any) -> dict[str, Any]:
    try:
        entity = event["payload"]["payment"]["entity"]
    except (KeyError, TypeError):
        raise InvalidInputError("Webhook payload has no payment entity")
    if not isinstance(entity, dict):
        raise InvalidInputError("Webhook payload has no payment entity")
    return entity


class PaymentVerifier:
    """Verifies gateway payments and flips orders to paid exactly once."""

    def __init__(
        self,
        store: DocumentStore,
        orders: OrderOrchestrator,
        gateway: RazorpayClient,
        publisher: NotificationPublisher,
        webhook_secret: str,
        rate_limiter: RateLimiter | None = None,
        courier: CourierAdapter | None = None,
    ):
        self.store = store
        self.orders = orders
        self.gateway = gateway
        self.publisher = publisher
        self.webhook_secret = webhook_secret
        self.rate_limiter = rate_limiter
        self.courier = courier

    # --- Shared flip ---

    def _mark_paid(
        self,
        order_id: str,
        payment_id: str,
        captured_minor: int,
        signature: str | None = None,
    ) -> Order:
        """
        Conditionally flip an order from unpaid to paid and publish order_paid.

        Raises:
            AlreadyPaidError: Another path flipped it first.
        """

        def flip(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise OrderNotFoundError(order_id)
            order = Order.from_dict(current)
            if order.is_paid:
                raise AlreadyPaidError(order_id)
            now = _utc_now()
            order.is_paid = True
            order.paid_at = now
            order.razorpay_payment_id = payment_id
            if signature is not None:
                order.razorpay_signature = signature
            order.captured_amount = from_minor(captured_minor)
            order.updated_at = now
            return order.to_dict()

        order = Order.from_dict(self.store.modify(ORDERS, order_id, flip))
        logger.info("Order %s marked paid by payment %s", order_id, payment_id)
        emit(self.publisher, ORDER_PAID, order_event(order))
        return order

    # --- Webhook path ---

    def handle_webhook(self, raw_body: bytes, signature: str | None, source_ip: str) -> WebhookResult:
        """
        Process a gateway payment webhook.

        The signature is checked over the exact bytes received, before the
        body is parsed.

        Raises:
            RateLimitExceededError: Too many calls from source_ip.
            InvalidSignatureError: Signature missing or wrong.
            OrderNotFoundError: No order carries the gateway order id.
            AmountMismatchError: Paid amount differs from the order total.
        """
        if self.rate_limiter is not None:
            self.rate_limiter.check(source_ip)
        if not verify_signature(self.webhook_secret, raw_body, signature):
            logger.warning("Rejected webhook with invalid signature from %s", source_ip)
            raise InvalidSignatureError("webhook")

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise InvalidInputError("Webhook body is not valid JSON")
        entity = _payment_entity(event)
        gateway_order_id = require_text(entity.get("order_id"), "order_id")
        payment_id = require_text(entity.get("id"), "id")
        amount = entity.get("amount")
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise InvalidInputError("Webhook amount must be an integer", field="amount")

        order = self.orders.find_by_gateway_order(gateway_order_id)
        if order is None:
            raise OrderNotFoundError(gateway_order_id)
        if order.is_paid:
            logger.info("Webhook for already paid order %s", order.order_id)
            return WebhookResult(order.order_id, already_paid=True)

        expected = to_minor(order.total_price)
        if amount != expected:
            raise AmountMismatchError(order.order_id, expected, amount)

        try:
            self._mark_paid(order.order_id, payment_id, amount)
        except AlreadyPaidError:
            return WebhookResult(order.order_id, already_paid=True)
        return WebhookResult(order.order_id, already_paid=False)

    # --- Client-confirmation path ---

    def verify_payment(
        self, order_id: str, user_id: str, payment_id: str, signature: str
    ) -> WebhookResult:
        """
        Confirm payment of an existing order from the client's checkout signature.

        Raises:
            OrderNotFoundError: Unknown order, or not owned by user_id.
            InvalidSignatureError: Signature does not match.
        """
        order = self.orders.get_user_order(order_id, user_id)
        if not order.razorpay_order_id:
            raise InvalidInputError(f"Order {order_id} has no gateway order")
        if not verify_signature(
            self.gateway.key_secret, checkout_message(order.razorpay_order_id, payment_id), signature
        ):
            logger.warning("Invalid checkout signature for order %s", order_id)
            raise InvalidSignatureError("payment")
        if order.is_paid:
            return WebhookResult(order_id, already_paid=True)
        try:
            self._mark_paid(order_id, payment_id, to_minor(order.total_price), signature)
        except AlreadyPaidError:
            return WebhookResult(order_id, already_paid=True)
        return WebhookResult(order_id, already_paid=False)

    def create_payment_intent(self, user_id: str, details: OrderDetails) -> PaymentIntent:
        """
        Price a prepaid cart, check the courier can ship it, then open a gateway order.

        Nothing is written to the store.

        Raises:
            CourierRejectedError: The courier refused the destination.
            PaymentGatewayError, GatewayTimeoutError: Gateway order creation failed.
        """
        quote = self.orders.quote_order(
            user_id, details.items, details.shipping_cost, details.discount_code
        )
        courier_status = None
        courier_order_no = None
        if self.courier is not None:
            preview = self.courier.preview(
                f"preview-{user_id}-{uuid.uuid4().hex[:8]}",
                details.shipping_address,
                PaymentMethod.PREPAID,
                quote.total,
                quote.lines[0].item,
            )
            courier_status = preview.get("status")
            courier_order_no = preview.get("order_no")

        amount = to_minor(quote.total)
        gateway_order = self.gateway.create_order(
            amount,
            receipt=f"prepaid_{user_id}_{_utc_now()}",
            notes={
                "userEmail": details.shipping_address.email,
                "userName": details.shipping_address.name,
            },
        )
        logger.info("Payment intent %s for %s: %d", gateway_order.get("id"), user_id, amount)
        return PaymentIntent(
            razorpay_order_id=gateway_order["id"],
            amount=amount,
            courier_status=courier_status,
            courier_order_no=str(courier_order_no) if courier_order_no else None,
        )

    def _captured_amount(self, payment_id: str, fallback: int) -> tuple[int, bool]:
        """
        Ask the gateway what it captured for a payment.

        Returns the amount in minor units and whether the gateway confirmed
        it. A lookup that fails transiently falls back to the quoted total,
        flagged unverified so refunds check again first.

        Raises:
            PaymentGatewayError: The gateway definitively refused the lookup.
        """
        try:
            payment = self.gateway.fetch_payment(payment_id)
        except ExternalServiceError as e:
            if not (isinstance(e, GatewayTimeoutError) or e.retryable):
                logger.error("Gateway rejected lookup of payment %s: %s", payment_id, e)
                raise
            logger.warning(
                "Could not fetch payment %s (%s); assuming the quoted total, unverified",
                payment_id,
                e,
            )
            return fallback, False
        amount = payment.get("amount")
        if not isinstance(amount, int):
            logger.warning("Payment %s has no amount; assuming the quoted total, unverified", payment_id)
            return fallback, False
        return amount, True

    def verify_and_create(
        self,
        user_id: str,
        razorpay_order_id: str,
        razorpay_payment_id: str,
        razorpay_signature: str,
        details: OrderDetails,
        defer: Callable[..., Any] | None = None,
    ) -> Order:
        """
        Verify a checkout signature and create the paid order.

        Replaying the same payment id returns the order created the first time.

        Raises:
            InvalidInputError: Missing gateway ids or order details.
            InvalidSignatureError: Signature does not match.
            AmountMismatchError: The gateway captured less than the order total.
            PaymentGatewayError: The gateway does not know the payment.
        """
        razorpay_order_id = require_text(razorpay_order_id, "razorpayOrderId")
        razorpay_payment_id = require_text(razorpay_payment_id, "razorpayPaymentId")
        razorpay_signature = require_text(razorpay_signature, "razorpaySignature")
        message = checkout_message(razorpay_order_id, razorpay_payment_id)
        if not verify_signature(self.gateway.key_secret, message, razorpay_signature):
            logger.warning("Invalid checkout signature for gateway order %s", razorpay_order_id)
            raise InvalidSignatureError("payment")

        existing = self.store.get(PAYMENTS, razorpay_payment_id)
        if existing is not None:
            logger.info("Payment %s already created order %s", razorpay_payment_id, existing["order_id"])
            return self.orders.get_order(existing["order_id"])

        quote = self.orders.quote_order(
            user_id, details.items, details.shipping_cost, details.discount_code
        )
        captured, verified = self._captured_amount(razorpay_payment_id, to_minor(quote.total))
        order = self.orders.create_order(
            user_id,
            details.items,
            details.shipping_address,
            PaymentMethod.PREPAID,
            declared_total=details.declared_total,
            shipping_cost=details.shipping_cost,
            discount_code=details.discount_code,
            payment=PaymentConfirmation(
                razorpay_order_id=razorpay_order_id,
                razorpay_payment_id=razorpay_payment_id,
                razorpay_signature=razorpay_signature,
                captured_amount=from_minor(captured),
                capture_verified=verified,
            ),
            defer=defer,
        )
        return order
