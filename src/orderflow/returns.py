"""Per-line return, pickup, refund and replacement workflow.

A returned line moves Delivered -> Return Requested -> Return Approved,
is picked up, and then ends either Refunded (money back through the
gateway) or Returned (a free replacement order was created).

Refunds are idempotent. A refund claim with a stable idempotency key is
written to the line before the gateway is called, and the same key is
reused when the call is retried, so the gateway never pays out twice for
one line.
"""

import logging
from decimal import Decimal
from typing import Any, Callable

from .courier import CourierAdapter
from .errors import (
    GatewayTimeoutError,
    IllegalTransitionError,
    InvalidInputError,
    OrderNotFoundError,
    PaymentGatewayError,
    RefundExceedsCaptureError,
    RefundInProgressError,
    RefundNotEligibleError,
    VariantNotFoundError,
)
from .gateway import RazorpayClient
from .models import (
    LineItemStatus,
    Order,
    OrderLineItem,
    OrderStatus,
    PaymentMethod,
    PickupStatus,
    Product,
    RefundRecord,
    RefundResult,
    RefundState,
    RefundStatus,
    ResolutionType,
    _utc_now,
)
from .notifications import (
    REFUND_PROCESSED,
    REPLACEMENT_CREATED,
    RETURN_REQUESTED,
    RETURN_UPDATED,
    NotificationPublisher,
    emit,
)
from .orders import order_event, run_now
from .state_machine import apply_order_status, check_line_transition, check_pickup_transition
from .store import ORDERS, PRODUCTS, DocumentStore, Transaction
from .uploads import ImageUpload, ImageUploader, validate_images
from .utils import find_line, from_minor, generate_line_id, require_text, to_minor

logger = logging.getLogger(__name__)

RETURN_STATES = (
    LineItemStatus.RETURN_REQUESTED,
    LineItemStatus.RETURN_APPROVED,
    LineItemStatus.RETURN_REJECTED,
    LineItemStatus.REFUNDED,
    LineItemStatus.RETURNED,
)

# Lines in these states are finished with the return process
SETTLED_STATES = (
    LineItemStatus.RETURN_REJECTED,
    LineItemStatus.REFUNDED,
    LineItemStatus.RETURNED,
)

OPEN_STATES = (LineItemStatus.RETURN_REQUESTED, LineItemStatus.RETURN_APPROVED)

DECISIONS = (LineItemStatus.RETURN_APPROVED, LineItemStatus.RETURN_REJECTED)


def parse_resolution(value: str) -> ResolutionType:
    try:
        return ResolutionType(require_text(value, "returnResolutionType"))
    except ValueError:
        raise InvalidInputError(
            f"Invalid resolution type: {value}", field="returnResolutionType"
        )


def idempotency_key(order_id: str, line_id: str) -> str:
    """Stable refund key for a line; the same line always maps to the same key."""
    return f"rfnd_{order_id}_{line_id}"


def settle_order(order: Order, now: str) -> None:
    """
    Bring the order status in line with its lines once no return is open.

    The order becomes Returned when every line has finished its return and at
    least one was refunded or taken back. A Return Requested order whose
    returns were all rejected or withdrawn goes back to Delivered.
    """
    if order.status in (OrderStatus.RETURNED, OrderStatus.CANCELLED):
        return
    if any(line.status in OPEN_STATES for line in order.products):
        return
    finished = all(line.status in SETTLED_STATES for line in order.products) and any(
        line.status in (LineItemStatus.REFUNDED, LineItemStatus.RETURNED)
        for line in order.products
    )
    if not finished:
        if order.status == OrderStatus.RETURN_REQUESTED:
            # No line is Return Requested, so the line reset is a no-op
            apply_order_status(order, OrderStatus.DELIVERED, now)
        return
    if order.status == OrderStatus.DELIVERED:
        apply_order_status(order, OrderStatus.RETURN_REQUESTED, now)
    apply_order_status(order, OrderStatus.RETURNED, now)


def _reserved_minor(order: Order, exclude: OrderLineItem) -> int:
    """Minor units held by other lines' refund claims that have not settled yet."""
    return sum(
        to_minor(line.refund.amount)
        for line in order.products
        if line is not exclude
        and line.refund is not None
        and line.refund.state == RefundState.INITIATED
        and line.refund.amount is not None
    )


def _return_item(line: OrderLineItem) -> dict[str, Any]:
    return {
        "line_id": line.line_id,
        "product_id": line.product_id,
        "product_name": line.product_name,
        "slug": line.slug,
        "color": line.color,
        "size": line.size,
        "quantity": line.quantity,
        "price_at_order": str(line.price_at_order),
        "return_status": line.status.value,
        "return_issue_type": line.return_issue_type,
        "return_issue_desc": line.return_issue_desc,
        "return_resolution_type": (
            line.return_resolution_type.value if line.return_resolution_type else None
        ),
        "return_images": list(line.return_images),
        "exchange_to_color": line.exchange_to_color,
        "exchange_to_size": line.exchange_to_size,
        "pickup_status": line.pickup_status.value,
        "replacement_order_id": line.replacement_order_id,
        "refund_amount": str(line.refund.amount) if line.refund and line.refund.amount else None,
        "refund_transaction_id": line.refund.transaction_id if line.refund else None,
    }


class ReturnWorkflow:
    """Return requests, admin decisions, pickups, refunds and replacements."""

    def __init__(
        self,
        store: DocumentStore,
        gateway: RazorpayClient,
        uploader: ImageUploader,
        publisher: NotificationPublisher,
        courier: CourierAdapter | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.uploader = uploader
        self.publisher = publisher
        self.courier = courier

    def _load(self, order_id: str) -> Order:
        doc = self.store.get(ORDERS, order_id)
        if doc is None:
            raise OrderNotFoundError(order_id)
        return Order.from_dict(doc)

    def _update(self, order_id: str, mutate: Callable[[Order, str], None]) -> Order:
        """Conditional update of one order; mutate re-checks state on every attempt."""

        def fn(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise OrderNotFoundError(order_id)
            order = Order.from_dict(current)
            now = _utc_now()
            mutate(order, now)
            order.updated_at = now
            return order.to_dict()

        return Order.from_dict(self.store.modify(ORDERS, order_id, fn))

    # --- Customer side ---

    def request_return(
        self,
        order_id: str,
        user_id: str,
        line_key: str | None,
        issue_type: str,
        issue_desc: str,
        resolution_type: str,
        images: list[ImageUpload],
        selected_color: str | None = None,
        selected_size: str | None = None,
    ) -> Order:
        """
        Ask to return one line, or every delivered line when line_key is None.

        Raises:
            InvalidInputError: Missing fields, bad resolution or bad images.
            OrderNotFoundError, LineItemNotFoundError: Unknown order or line.
            IllegalTransitionError: The line is not Delivered.
        """
        issue_type = require_text(issue_type, "returnIssueType")
        issue_desc = require_text(issue_desc, "returnIssueDesc")
        resolution = parse_resolution(resolution_type)
        validate_images(images)

        order = self._load(order_id)
        if order.user_id != user_id:
            raise OrderNotFoundError(order_id)
        self._eligible_lines(order, line_key)

        urls = [self.uploader.upload(image) for image in images]

        def mutate(order: Order, now: str) -> None:
            if order.user_id != user_id:
                raise OrderNotFoundError(order_id)
            for line in self._eligible_lines(order, line_key):
                line.status = LineItemStatus.RETURN_REQUESTED
                line.return_issue_type = issue_type
                line.return_issue_desc = issue_desc
                line.return_resolution_type = resolution
                line.return_images = list(urls)
                if resolution == ResolutionType.REPLACEMENT:
                    line.exchange_to_color = selected_color or line.color
                    line.exchange_to_size = selected_size or line.size
            everything = all(
                line.status == LineItemStatus.RETURN_REQUESTED for line in order.products
            )
            if order.status == OrderStatus.DELIVERED and (line_key is None or everything):
                apply_order_status(order, OrderStatus.RETURN_REQUESTED, now)
            order.return_requested_at = now
            if resolution == ResolutionType.REFUND:
                order.refund_status = RefundStatus.REQUESTED

        order = self._update(order_id, mutate)
        logger.info("Return requested on order %s (%s)", order_id, line_key or "all lines")
        emit(self.publisher, RETURN_REQUESTED, {**order_event(order), "line": line_key})
        return order

    def _eligible_lines(self, order: Order, line_key: str | None) -> list[OrderLineItem]:
        if line_key is not None:
            line = find_line(order, line_key)
            check_line_transition(line.status, LineItemStatus.RETURN_REQUESTED)
            return [line]
        lines = [line for line in order.products if line.status == LineItemStatus.DELIVERED]
        if not lines:
            raise IllegalTransitionError(
                "order", order.status.value, OrderStatus.RETURN_REQUESTED.value
            )
        return lines

    def cancel_return(self, order_id: str, user_id: str, line_key: str | None = None) -> Order:
        """Withdraw a pending return request for one line or for the whole order."""

        def mutate(order: Order, now: str) -> None:
            if order.user_id != user_id:
                raise OrderNotFoundError(order_id)
            if line_key is not None:
                lines = [find_line(order, line_key)]
            else:
                lines = [
                    line
                    for line in order.products
                    if line.status == LineItemStatus.RETURN_REQUESTED
                ]
                if not lines:
                    raise IllegalTransitionError(
                        "order", order.status.value, OrderStatus.DELIVERED.value
                    )
            for line in lines:
                check_line_transition(line.status, LineItemStatus.DELIVERED)
                line.status = LineItemStatus.DELIVERED
                line.return_issue_type = None
                line.return_issue_desc = None
                line.return_resolution_type = None
                line.return_images = []
                line.exchange_to_color = None
                line.exchange_to_size = None
            if order.refund_status == RefundStatus.REQUESTED and not any(
                line.return_resolution_type == ResolutionType.REFUND
                and line.status in OPEN_STATES
                for line in order.products
            ):
                order.refund_status = RefundStatus.NONE
            settle_order(order, now)

        order = self._update(order_id, mutate)
        logger.info("Return cancelled on order %s (%s)", order_id, line_key or "all lines")
        emit(self.publisher, RETURN_UPDATED, {**order_event(order), "line": line_key})
        return order

    # --- Admin side ---

    def decide_return(
        self, order_id: str, line_key: str, status: LineItemStatus, admin_id: str
    ) -> Order:
        """
        Approve or reject a pending return request.

        Raises:
            InvalidInputError: status is not Return Approved or Return Rejected.
            IllegalTransitionError: The line has no pending request.
        """
        if status not in DECISIONS:
            raise InvalidInputError(f"Invalid status: {status.value}", field="status")

        def mutate(order: Order, now: str) -> None:
            line = find_line(order, line_key)
            check_line_transition(line.status, status)
            line.status = status
            if line.return_resolution_type == ResolutionType.REFUND:
                order.refund_status = (
                    RefundStatus.APPROVED
                    if status == LineItemStatus.RETURN_APPROVED
                    else RefundStatus.REJECTED
                )
            order.last_updated_by = admin_id
            settle_order(order, now)

        order = self._update(order_id, mutate)
        logger.info("Return on %s/%s set to %s by %s", order_id, line_key, status.value, admin_id)
        emit(self.publisher, RETURN_UPDATED, {**order_event(order), "line": line_key})
        return order

    def confirm_pickup(self, order_id: str, line_key: str, admin_id: str) -> Order:
        """Record that the courier collected an approved return. Repeats are no-ops."""

        def mutate(order: Order, now: str) -> None:
            line = find_line(order, line_key)
            if line.status != LineItemStatus.RETURN_APPROVED:
                raise IllegalTransitionError(
                    "pickup", f"line {line.status.value}", PickupStatus.PICKED_UP.value
                )
            if line.pickup_status == PickupStatus.PICKED_UP:
                return
            check_pickup_transition(line.pickup_status, PickupStatus.PICKED_UP)
            line.pickup_status = PickupStatus.PICKED_UP
            order.last_updated_by = admin_id

        order = self._update(order_id, mutate)
        logger.info("Pickup confirmed for %s/%s by %s", order_id, line_key, admin_id)
        emit(self.publisher, RETURN_UPDATED, {**order_event(order), "line": line_key})
        return order

    def process_refund(self, order_id: str, line_key: str, admin_id: str) -> RefundResult:
        """
        Refund one picked-up line through the payment gateway.

        A line that already has a processed refund returns the stored result
        without calling the gateway again.

        Raises:
            RefundNotEligibleError: Not a paid prepaid order, or the line is
                not approved, picked up and marked for refund.
            RefundExceedsCaptureError: The line costs more than what is left
                of the captured amount.
            GatewayTimeoutError: The claim is kept; retrying reuses its key.
            PaymentGatewayError: A definitive rejection releases the claim.
                Either may also come from re-reading an unverified capture.
        """
        stored: RefundResult | None = None
        claim: RefundRecord | None = None
        payment_id = ""
        line_id = ""

        def take_claim(order: Order, now: str) -> None:
            nonlocal stored, claim, payment_id, line_id
            stored = None
            if order.payment_method != PaymentMethod.PREPAID or not order.is_paid:
                raise RefundNotEligibleError(order_id, "order is not a paid prepaid order")
            if not order.razorpay_payment_id:
                raise RefundNotEligibleError(order_id, "order has no gateway payment")
            if not order.capture_verified:
                raise RefundNotEligibleError(order_id, "captured amount is unverified")
            line = find_line(order, line_key)
            line_id = line.line_id
            if line.refund is not None and line.refund.state == RefundState.PROCESSED:
                stored = RefundResult(
                    order_id=order_id,
                    line_id=line.line_id,
                    refund_id=line.refund.transaction_id or "",
                    amount=line.refund.amount or Decimal("0.00"),
                    refund_date=line.refund.date or "",
                    already_processed=True,
                )
                return
            if line.status != LineItemStatus.RETURN_APPROVED:
                raise RefundNotEligibleError(order_id, f"line is {line.status.value}")
            if line.pickup_status != PickupStatus.PICKED_UP:
                raise RefundNotEligibleError(order_id, "return has not been picked up")
            if line.return_resolution_type != ResolutionType.REFUND:
                raise RefundNotEligibleError(order_id, "return was requested as a replacement")

            amount = to_minor(line.subtotal)
            if amount <= 0:
                raise RefundNotEligibleError(order_id, "refund amount invalid")
            headroom = to_minor(order.refund_headroom) - _reserved_minor(order, line)
            if amount > headroom:
                raise RefundExceedsCaptureError(order_id, amount, max(headroom, 0))
            if line.refund is None:
                line.refund = RefundRecord(
                    idempotency_key=idempotency_key(order_id, line.line_id),
                    amount=line.subtotal,
                    date=now,
                )
            order.last_updated_by = admin_id
            payment_id = order.razorpay_payment_id
            claim = line.refund

        self._confirm_capture(order_id)
        self._update(order_id, take_claim)
        if stored is not None:
            logger.info("Refund for %s/%s already processed", order_id, line_key)
            return stored
        assert claim is not None and claim.amount is not None

        try:
            response = self.gateway.refund(
                payment_id,
                to_minor(claim.amount),
                claim.idempotency_key,
                notes={"order_id": order_id, "line_id": line_id},
            )
        except GatewayTimeoutError:
            logger.warning("Refund %s timed out; claim kept for retry", claim.idempotency_key)
            raise
        except PaymentGatewayError as e:
            if e.retryable:
                logger.warning("Refund %s failed (%s); claim kept for retry", claim.idempotency_key, e)
            else:
                logger.error("Refund %s rejected by gateway: %s", claim.idempotency_key, e)
                self._release_claim(order_id, line_id, claim.idempotency_key)
            raise

        refund_id = str(response.get("id", ""))
        refunded = from_minor(response["amount"]) if isinstance(response.get("amount"), int) else claim.amount
        result: RefundResult | None = None

        def record(order: Order, now: str) -> None:
            nonlocal result
            line = find_line(order, line_id)
            if line.refund is not None and line.refund.state == RefundState.PROCESSED:
                result = RefundResult(
                    order_id, line.line_id, line.refund.transaction_id or "",
                    line.refund.amount or refunded, line.refund.date or now, True,
                )
                return
            check_line_transition(line.status, LineItemStatus.REFUNDED)
            line.status = LineItemStatus.REFUNDED
            line.refund = RefundRecord(
                idempotency_key=claim.idempotency_key,
                state=RefundState.PROCESSED,
                amount=refunded,
                date=now,
                transaction_id=refund_id,
            )
            order.refunded_amount += refunded
            order.refund_status = RefundStatus.PROCESSED
            order.refund_transaction_id = refund_id
            order.refund_date = now
            settle_order(order, now)
            result = RefundResult(order_id, line.line_id, refund_id, refunded, now)

        order = self._update(order_id, record)
        assert result is not None
        if not result.already_processed:
            logger.info(
                "Refunded %s on %s/%s (gateway id %s)", refunded, order_id, line_id, refund_id
            )
            emit(self.publisher, REFUND_PROCESSED, {
                **order_event(order),
                "line_id": line_id,
                "refund_id": refund_id,
                "amount": str(refunded),
            })
        return result

    def _confirm_capture(self, order_id: str) -> None:
        """Re-read the captured amount of a payment the checkout could not verify."""
        order = self._load(order_id)
        if order.capture_verified or not order.razorpay_payment_id:
            return
        payment = self.gateway.fetch_payment(order.razorpay_payment_id)
        amount = payment.get("amount")
        if not isinstance(amount, int):
            raise RefundNotEligibleError(order_id, "captured amount could not be confirmed")

        def mutate(order: Order, now: str) -> None:
            order.captured_amount = from_minor(amount)
            order.capture_verified = True

        self._update(order_id, mutate)
        logger.info("Confirmed capture of %d on order %s", amount, order_id)

    def _release_claim(self, order_id: str, line_id: str, key: str) -> None:
        def release(order: Order, now: str) -> None:
            line = find_line(order, line_id)
            if (
                line.refund is not None
                and line.refund.state == RefundState.INITIATED
                and line.refund.idempotency_key == key
            ):
                line.refund = None

        self._update(order_id, release)

    def create_replacement(
        self,
        order_id: str,
        line_key: str,
        admin_id: str,
        color: str | None = None,
        size: str | None = None,
        defer: Callable[..., Any] | None = None,
    ) -> Order:
        """
        Ship a free replacement for a picked-up line.

        The replacement order and the original line's move to Returned are
        written in one transaction.

        Raises:
            IllegalTransitionError: Line not approved and picked up.
            InvalidInputError: Line was returned for a refund.
            RefundInProgressError: A refund claim is open on the line.
            VariantNotFoundError: Requested color or size does not exist.
        """

        def work(txn: Transaction) -> Order:
            doc = txn.get(ORDERS, order_id)
            if doc is None:
                raise OrderNotFoundError(order_id)
            order = Order.from_dict(doc)
            line = find_line(order, line_key)
            if line.refund is not None:
                raise RefundInProgressError(order_id, line_key)
            check_line_transition(line.status, LineItemStatus.RETURNED)
            if line.pickup_status != PickupStatus.PICKED_UP:
                raise IllegalTransitionError(
                    "line item", "Return Approved (awaiting pickup)", LineItemStatus.RETURNED.value
                )
            if line.return_resolution_type != ResolutionType.REPLACEMENT:
                raise InvalidInputError(f"Line {line_key} was returned for a refund")

            new_line = self._replacement_line(
                txn,
                line,
                color or line.exchange_to_color or line.color,
                size or line.exchange_to_size or line.size,
            )
            replacement = Order.create(
                user_id=order.user_id,
                products=[new_line],
                shipping_address=order.shipping_address,
                payment_method=PaymentMethod.REPLACEMENT,
                total_price=Decimal("0.00"),
            )
            replacement.last_updated_by = admin_id

            now = _utc_now()
            line.status = LineItemStatus.RETURNED
            line.exchange_to_color = new_line.color
            line.exchange_to_size = new_line.size
            line.replacement_order_id = replacement.order_id
            order.last_updated_by = admin_id
            order.updated_at = now
            settle_order(order, now)

            txn.put(ORDERS, order_id, order.to_dict())
            txn.insert(ORDERS, replacement.order_id, replacement.to_dict())
            return replacement

        replacement = self.store.run_transaction(work)
        logger.info("Replacement order %s created for %s/%s", replacement.order_id, order_id, line_key)
        if self.courier is not None:
            try:
                (defer or run_now)(self.courier.hand_off, replacement.order_id)
            except Exception:
                logger.error(
                    "Could not schedule courier hand-off for %s", replacement.order_id, exc_info=True
                )
        emit(self.publisher, REPLACEMENT_CREATED, {
            **order_event(replacement),
            "original_order_id": order_id,
        })
        return replacement

    def _replacement_line(
        self, txn: Transaction, line: OrderLineItem, color: str, size: str
    ) -> OrderLineItem:
        sku = line.sku
        doc = txn.get(PRODUCTS, line.product_id)
        if doc is not None:
            product = Product.from_dict(doc)
            variant = product.find_color(color)
            if variant is None:
                raise VariantNotFoundError(product.name, color)
            details = variant.sizes.get(size.strip())
            if details is None:
                raise VariantNotFoundError(product.name, variant.name, size)
            color, sku = variant.name, details.sku
        return OrderLineItem(
            line_id=generate_line_id(),
            product_id=line.product_id,
            product_name=line.product_name,
            slug=line.slug,
            sku=sku,
            color=color,
            size=size.strip(),
            quantity=line.quantity,
            price_at_order=Decimal("0.00"),
        )

    # --- Queries ---

    def refund_status(self, order_id: str, user_id: str | None = None) -> dict[str, Any]:
        order = self._load(order_id)
        if user_id is not None and order.user_id != user_id:
            raise OrderNotFoundError(order_id)
        return {
            "order_id": order.order_id,
            "refund_status": order.refund_status.value,
            "refunded_amount": order.refunded_amount,
            "refund_transaction_id": order.refund_transaction_id or "",
            "refund_date": order.refund_date,
        }

    def list_returns(self) -> list[dict[str, Any]]:
        """Return activity grouped by order; orders with pending requests first."""
        groups = []
        for doc in self.store.find(ORDERS):
            order = Order.from_dict(doc)
            items = [_return_item(line) for line in order.products if line.status in RETURN_STATES]
            if not items:
                continue
            groups.append({
                "order_id": order.order_id,
                "user_id": order.user_id,
                "status": order.status.value,
                "created_at": order.created_at,
                "items": items,
            })
        groups.sort(key=lambda g: g["created_at"], reverse=True)
        groups.sort(
            key=lambda g: not any(
                item["return_status"] == LineItemStatus.RETURN_REQUESTED.value for item in g["items"]
            )
        )
        return groups
