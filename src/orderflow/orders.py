"""Order creation and queries."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Protocol

from .courier import CourierAdapter
from .discounts import ZERO, DiscountLedger
from .errors import (
    AmountMismatchError,
    InvalidInputError,
    OrderNotFoundError,
    ProductNotFoundError,
    UserNotFoundError,
    VariantNotFoundError,
)
from .models import (
    Order,
    OrderLineItem,
    OrderStatus,
    PaymentMethod,
    PricedLine,
    Product,
    Quote,
    ShippingAddress,
    _utc_now,
)
from .notifications import DISCOUNT_APPLIED, ORDER_PAID, ORDER_PLACED, NotificationPublisher, emit
from .store import ORDERS, PAYMENTS, PRODUCTS, USERS, DocumentStore, Transaction
from .utils import generate_line_id, require_text, to_minor, to_money

logger = logging.getLogger(__name__)

class _Reader(Protocol):
    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...


@dataclass
class CartItem:
    """A line as submitted by the client."""

    product_id: str
    color: str
    size: str
    quantity: int = 1
    price: Decimal | None = None  # client-declared, audit only


@dataclass
class PaymentConfirmation:
    """A verified gateway payment the new order is created against."""

    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    captured_amount: Decimal
    capture_verified: bool = True


def validate_cart(items: list[CartItem]) -> None:
    """
    Raises:
        InvalidInputError: If the cart is empty or an item is malformed.
    """
    if not items:
        raise InvalidInputError("Missing required order details: products", field="products")
    for index, item in enumerate(items):
        require_text(item.product_id, f"products[{index}].productId")
        require_text(item.color, f"products[{index}].color")
        require_text(item.size, f"products[{index}].size")
        if not isinstance(item.quantity, int) or item.quantity < 1:
            raise InvalidInputError(
                f"Quantity must be at least 1 for {item.product_id}",
                field=f"products[{index}].quantity",
            )


def validate_shipping(shipping: ShippingAddress) -> None:
    require_text(shipping.name, "name")
    require_text(shipping.email, "email")
    require_text(shipping.address, "address")
    require_text(shipping.postal_code, "pincode")


def run_now(fn: Callable[..., Any], *args: Any) -> None:
    fn(*args)


class OrderOrchestrator:
    """Owns the order-creation transaction and order lookups."""

    def __init__(
        self,
        store: DocumentStore,
        ledger: DiscountLedger,
        publisher: NotificationPublisher,
        courier: CourierAdapter | None = None,
    ):
        self.store = store
        self.ledger = ledger
        self.publisher = publisher
        self.courier = courier

    # --- Catalog ---

    def _load_product(self, reader: _Reader, product_id: str) -> Product:
        doc = reader.get(PRODUCTS, product_id)
        if doc is None:
            raise ProductNotFoundError(product_id)
        return Product.from_dict(doc)

    def _enrich(self, reader: _Reader, item: CartItem) -> OrderLineItem:
        """Resolve a cart item against authoritative product data."""
        product = self._load_product(reader, item.product_id)
        variant = product.find_color(item.color)
        if variant is None:
            raise VariantNotFoundError(product.name, item.color)
        size_key = item.size.strip()
        size = variant.sizes.get(size_key)
        if size is None:
            raise VariantNotFoundError(product.name, variant.name, size_key)

        price = product.unit_price()
        declared = to_money(item.price) if item.price is not None else None
        if declared is not None and declared != price:
            logger.warning(
                "Declared price %s for %s differs from catalog price %s; using catalog",
                declared, product.product_id, price,
            )
        return OrderLineItem(
            line_id=generate_line_id(),
            product_id=product.product_id,
            product_name=product.name,
            slug=product.slug,
            sku=size.sku,
            color=variant.name,
            size=size_key,
            quantity=item.quantity,
            price_at_order=price,
            declared_price=declared,
        )

    # --- Pricing ---

    def quote_order(
        self,
        user_id: str,
        items: list[CartItem],
        shipping_cost: Any = 0,
        discount_code: str | None = None,
    ) -> Quote:
        """Price a cart the way create_order would, consuming nothing."""
        validate_cart(items)
        shipping = to_money(shipping_cost)
        lines = [self._enrich(self.store, item) for item in items]
        priced = []
        for line in lines:
            discount, ids = self.ledger.preview_preorders(user_id, line)
            priced.append(PricedLine(line, min(discount, line.subtotal), ids))
        subtotal = sum((line.subtotal for line in lines), ZERO)
        preorder_total = sum((p.preorder_discount for p in priced), ZERO)
        promo = ZERO
        if discount_code:
            promo = self.ledger.quote_code(
                discount_code, user_id, subtotal - preorder_total, lines, shipping
            )
        return Quote(
            lines=priced,
            subtotal=subtotal,
            shipping_cost=shipping,
            preorder_discount=preorder_total,
            promo_discount=promo,
            total=subtotal + shipping - preorder_total - promo,
        )

    # --- Creation ---

    def create_order(
        self,
        user_id: str,
        items: list[CartItem],
        shipping_address: ShippingAddress,
        payment_method: PaymentMethod,
        declared_total: Any = None,
        shipping_cost: Any = 0,
        discount_code: str | None = None,
        payment: PaymentConfirmation | None = None,
        defer: Callable[..., Any] | None = None,
    ) -> Order:
        """
        Create an order in one transaction with its preorder and promo redemptions.

        Either the order and every redemption it made persist, or none do.
        After commit the courier hand-off is scheduled through defer and an
        order_placed event is published; neither can fail the call.

        Raises:
            InvalidInputError, ProductNotFoundError, VariantNotFoundError,
            UserNotFoundError, AmountMismatchError, DiscountNotApplicableError,
            DuplicateRedemptionError: The transaction is aborted.
            TransactionAbortError: Conflicts persisted after all retries.
        """
        validate_cart(items)
        validate_shipping(shipping_address)
        if payment_method == PaymentMethod.REPLACEMENT:
            raise InvalidInputError("Replacement orders are created by the returns workflow")
        if payment_method == PaymentMethod.PREPAID and payment is None:
            raise InvalidInputError(
                "Prepaid orders are created only after payment verification",
                field="paymentMethod",
            )
        shipping = to_money(shipping_cost)
        if shipping < 0:
            raise InvalidInputError("Shipping cost cannot be negative", field="shippingCost")

        def work(txn: Transaction) -> tuple[Order, bool]:
            if txn.get(USERS, user_id) is None:
                raise UserNotFoundError(user_id)
            if payment is not None:
                existing = txn.get(PAYMENTS, payment.razorpay_payment_id)
                if existing is not None:
                    return Order.from_dict(txn.get(ORDERS, existing["order_id"])), False

            lines = [self._enrich(txn, item) for item in items]
            preorder_total = ZERO
            for line in lines:
                discount, _ = self.ledger.apply_preorders(txn, user_id, line)
                preorder_total += min(discount, line.subtotal)
            subtotal = sum((line.subtotal for line in lines), ZERO)
            promo = ZERO
            if discount_code:
                promo = self.ledger.redeem_code(
                    txn, discount_code, user_id, subtotal - preorder_total, lines, shipping
                )
            discount_total = preorder_total + promo

            order = Order.create(
                user_id=user_id,
                products=lines,
                shipping_address=shipping_address,
                payment_method=payment_method,
                total_price=subtotal + shipping - discount_total,
                shipping_cost=shipping,
                discount_total=discount_total,
            )
            order.applied_discount_code = discount_code.upper() if discount_code else None
            if payment is not None:
                if to_minor(payment.captured_amount) < to_minor(order.total_price):
                    raise AmountMismatchError(
                        order.order_id,
                        to_minor(order.total_price),
                        to_minor(payment.captured_amount),
                    )
                order.is_paid = True
                order.paid_at = _utc_now()
                order.razorpay_order_id = payment.razorpay_order_id
                order.razorpay_payment_id = payment.razorpay_payment_id
                order.razorpay_signature = payment.razorpay_signature
                order.captured_amount = payment.captured_amount
                order.capture_verified = payment.capture_verified
                txn.insert(PAYMENTS, payment.razorpay_payment_id, {"order_id": order.order_id})
            txn.insert(ORDERS, order.order_id, order.to_dict())
            self._check_declared_total(declared_total, subtotal + shipping, order)
            return order, True

        order, created = self.store.run_transaction(work)
        if not created:
            logger.info("Order %s already exists for this payment", order.order_id)
            return order

        logger.info(
            "Order %s placed by %s: total %s (%s)",
            order.order_id, user_id, order.total_price, order.payment_method.value,
        )
        if self.courier is not None:
            try:
                (defer or run_now)(self.courier.hand_off, order.order_id)
            except Exception:
                logger.error("Could not schedule courier hand-off for %s", order.order_id, exc_info=True)
        if order.applied_discount_code:
            emit(self.publisher, DISCOUNT_APPLIED, {
                "order_id": order.order_id,
                "code": order.applied_discount_code,
                "applied_at": order.created_at,
            })
        emit(self.publisher, ORDER_PLACED, order_event(order))
        if order.is_paid:
            emit(self.publisher, ORDER_PAID, order_event(order))
        return order

    def _check_declared_total(self, declared: Any, gross: Decimal, order: Order) -> None:
        if declared is None:
            return
        declared_total = to_money(declared)
        if declared_total not in (gross, order.total_price):
            logger.warning(
                "Order %s: client total %s matches neither gross %s nor net %s",
                order.order_id, declared_total, gross, order.total_price,
            )

    # --- Queries ---

    def get_order(self, order_id: str) -> Order:
        doc = self.store.get(ORDERS, order_id)
        if doc is None:
            raise OrderNotFoundError(order_id)
        return Order.from_dict(doc)

    def get_user_order(self, order_id: str, user_id: str) -> Order:
        """Fetch an order owned by user_id; other users' orders look missing."""
        order = self.get_order(order_id)
        if order.user_id != user_id:
            raise OrderNotFoundError(order_id)
        return order

    def find_by_gateway_order(self, razorpay_order_id: str) -> Order | None:
        docs = self.store.find(ORDERS, lambda d: d.get("razorpay_order_id") == razorpay_order_id)
        return Order.from_dict(docs[0]) if docs else None

    def list_user_orders(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        product: str | None = None,
        order_id: str | None = None,
    ) -> tuple[list[Order], int]:
        """Newest-first orders of a user, optionally filtered; returns (page, total)."""
        orders = [
            Order.from_dict(d) for d in self.store.find(ORDERS, lambda d: d["user_id"] == user_id)
        ]
        if product:
            needle = product.strip().lower()
            orders = [
                o for o in orders
                if any(
                    needle in line.product_name.lower() or needle in line.slug.lower()
                    for line in o.products
                )
            ]
        if order_id:
            needle = order_id.strip().lower()
            orders = [o for o in orders if needle in o.order_id.lower()]
        return _paginate(orders, page, limit)

    def active_orders(self, user_id: str) -> list[Order]:
        """Orders of a user that have not reached the customer yet."""
        finished = {
            OrderStatus.DELIVERED.value,
            OrderStatus.RETURNED.value,
            OrderStatus.RETURN_REQUESTED.value,
        }
        orders = [
            Order.from_dict(d)
            for d in self.store.find(
                ORDERS, lambda d: d["user_id"] == user_id and d.get("status") not in finished
            )
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    def list_orders(
        self, status: OrderStatus | None = None, page: int = 1, limit: int = 10
    ) -> tuple[list[Order], int]:
        orders = [
            Order.from_dict(d)
            for d in self.store.find(
                ORDERS, lambda d: status is None or d.get("status") == status.value
            )
        ]
        return _paginate(orders, page, limit)


def _paginate(orders: list[Order], page: int, limit: int) -> tuple[list[Order], int]:
    page = max(1, page)
    limit = max(1, limit)
    orders.sort(key=lambda o: o.created_at, reverse=True)
    start = (page - 1) * limit
    return orders[start:start + limit], len(orders)


def order_event(order: Order) -> dict[str, Any]:
    """Compact event payload for an order."""
    return {
        "order_id": order.order_id,
        "user_id": order.user_id,
        "status": order.status.value,
        "total_price": str(order.total_price),
        "payment_method": order.payment_method.value,
        "is_paid": order.is_paid,
        "last_updated_by": order.last_updated_by,
    }
