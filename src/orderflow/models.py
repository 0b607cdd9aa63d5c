"""Data models for orderflow."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
import uuid

from .utils import generate_order_id, to_money


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _generate_id() -> str:
    return str(uuid.uuid4())


def _money_or_none(value: Any) -> Decimal | None:
    return None if value is None else to_money(value)


def _str_or_none(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


# --- Closed status types ---


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURN_REQUESTED = "Return Requested"
    RETURNED = "Returned"


class LineItemStatus(str, Enum):
    PENDING = "Pending"
    DELIVERED = "Delivered"
    RETURN_REQUESTED = "Return Requested"
    RETURN_APPROVED = "Return Approved"
    RETURN_REJECTED = "Return Rejected"
    RETURNED = "Returned"
    REFUNDED = "Refunded"


class PickupStatus(str, Enum):
    PENDING = "Pending"
    PICKED_UP = "Picked Up"


class RefundStatus(str, Enum):
    NONE = "None"
    REQUESTED = "Requested"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    PROCESSED = "Processed"


class RefundState(str, Enum):
    INITIATED = "Initiated"
    PROCESSED = "Processed"


class ResolutionType(str, Enum):
    REFUND = "Refund"
    REPLACEMENT = "Replacement"


class PaymentMethod(str, Enum):
    COD = "cod"
    PREPAID = "prepaid"
    REPLACEMENT = "replacement"


class PreorderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class DiscountType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    FIRST_ORDER = "first_order"
    LOYALTY = "loyalty"
    CART_DISCOUNT = "cart_discount"
    BULK_DISCOUNT = "bulk_discount"
    SEASONAL = "seasonal"
    REFERRAL = "referral"
    BUY_X_GET_Y = "buy_x_get_y"
    FREE_SHIPPING = "free_shipping"
    PAYMENT_METHOD = "payment_method"
    APP_DISCOUNT = "app_discount"


# --- Catalog read model ---


@dataclass
class SizeDetails:
    sku: str
    quantity: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"sku": self.sku, "quantity": self.quantity}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SizeDetails":
        return cls(sku=data["sku"], quantity=data.get("quantity", 0))


@dataclass
class ColorVariant:
    """A color of a product with its ordered size table."""

    name: str
    sizes: dict[str, SizeDetails] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "sizes": {key: size.to_dict() for key, size in self.sizes.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ColorVariant":
        return cls(
            name=data["name"],
            sizes={
                key: SizeDetails.from_dict(value)
                for key, value in data.get("sizes", {}).items()
            },
        )


@dataclass
class Product:
    """Authoritative product data as published by the catalog."""

    product_id: str
    name: str
    slug: str
    price: Decimal
    colors: list[ColorVariant] = field(default_factory=list)
    discount_price: Decimal | None = None
    discount_expiry: str | None = None
    weight: str | None = None

    def unit_price(self, now: str | None = None) -> Decimal:
        """Sale price while it is unexpired, otherwise the list price."""
        if self.discount_price is None:
            return self.price
        if self.discount_expiry and self.discount_expiry < (now or _utc_now()):
            return self.price
        return self.discount_price

    def find_color(self, color: str) -> ColorVariant | None:
        wanted = color.strip().lower()
        for variant in self.colors:
            if variant.name.strip().lower() == wanted:
                return variant
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "product_id": self.product_id,
            "name": self.name,
            "slug": self.slug,
            "price": str(self.price),
            "colors": [c.to_dict() for c in self.colors],
        }
        if self.discount_price is not None:
            result["discount_price"] = str(self.discount_price)
        if self.discount_expiry is not None:
            result["discount_expiry"] = self.discount_expiry
        if self.weight is not None:
            result["weight"] = self.weight
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            product_id=data["product_id"],
            name=data["name"],
            slug=data["slug"],
            price=to_money(data["price"]),
            colors=[ColorVariant.from_dict(c) for c in data.get("colors", [])],
            discount_price=_money_or_none(data.get("discount_price")),
            discount_expiry=data.get("discount_expiry"),
            weight=data.get("weight"),
        )


@dataclass
class User:
    user_id: str
    name: str = ""
    email: str = ""
    is_admin: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "is_admin": self.is_admin,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        return cls(
            user_id=data["user_id"],
            name=data.get("name", ""),
            email=data.get("email", ""),
            is_admin=data.get("is_admin", False),
        )


# --- Discount ledger records ---


@dataclass
class Preorder:
    """A deposit-backed reservation of one product variant."""

    preorder_id: str
    user_id: str
    product_id: str
    color: str
    size: str
    amount_paid: Decimal = Decimal("100.00")
    discount_type: DiscountType = DiscountType.FIXED
    discount_value: Decimal = Decimal("100.00")
    status: PreorderStatus = PreorderStatus.PENDING
    created_at: str = field(default_factory=_utc_now)

    def matches(self, user_id: str, product_id: str, color: str, size: str) -> bool:
        return (
            self.status == PreorderStatus.PENDING
            and self.user_id == user_id
            and self.product_id == product_id
            and self.color.strip().lower() == color.strip().lower()
            and self.size.strip() == size.strip()
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "preorder_id": self.preorder_id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "color": self.color,
            "size": self.size,
            "amount_paid": str(self.amount_paid),
            "discount_type": self.discount_type.value,
            "discount_value": str(self.discount_value),
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Preorder":
        return cls(
            preorder_id=data["preorder_id"],
            user_id=data["user_id"],
            product_id=data["product_id"],
            color=data.get("color", ""),
            size=data.get("size", ""),
            amount_paid=to_money(data.get("amount_paid", "100")),
            discount_type=DiscountType(data.get("discount_type", "fixed")),
            discount_value=to_money(data.get("discount_value", "100")),
            status=PreorderStatus(data.get("status", "pending")),
            created_at=data.get("created_at", ""),
        )

    @classmethod
    def create(
        cls,
        user_id: str,
        product_id: str,
        color: str,
        size: str,
        amount_paid: Decimal | None = None,
        discount_type: DiscountType = DiscountType.FIXED,
        discount_value: Decimal | None = None,
    ) -> "Preorder":
        return cls(
            preorder_id=_generate_id(),
            user_id=user_id,
            product_id=product_id,
            color=color,
            size=size,
            amount_paid=amount_paid if amount_paid is not None else Decimal("100.00"),
            discount_type=discount_type,
            discount_value=discount_value if discount_value is not None else Decimal("100.00"),
        )


@dataclass
class Discount:
    """A promotional code."""

    code: str
    discount_type: DiscountType
    discount_value: Decimal
    expiry_date: str
    is_active: bool = True
    usage_limit: int = 1
    used_count: int = 0
    min_order_amount: Decimal = Decimal("0.00")
    allowed_users: list[str] = field(default_factory=list)
    product_slugs: list[str] = field(default_factory=list)
    min_quantity: int = 1
    users_used: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now)

    def is_expired(self, now: str | None = None) -> bool:
        return self.expiry_date < (now or _utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "discount_type": self.discount_type.value,
            "discount_value": str(self.discount_value),
            "expiry_date": self.expiry_date,
            "is_active": self.is_active,
            "usage_limit": self.usage_limit,
            "used_count": self.used_count,
            "min_order_amount": str(self.min_order_amount),
            "allowed_users": list(self.allowed_users),
            "product_slugs": list(self.product_slugs),
            "min_quantity": self.min_quantity,
            "users_used": list(self.users_used),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Discount":
        return cls(
            code=data["code"],
            discount_type=DiscountType(data["discount_type"]),
            discount_value=to_money(data["discount_value"]),
            expiry_date=data["expiry_date"],
            is_active=data.get("is_active", True),
            usage_limit=data.get("usage_limit", 1),
            used_count=data.get("used_count", 0),
            min_order_amount=to_money(data.get("min_order_amount", "0")),
            allowed_users=list(data.get("allowed_users", [])),
            product_slugs=list(data.get("product_slugs", [])),
            min_quantity=data.get("min_quantity", 1),
            users_used=list(data.get("users_used", [])),
            created_at=data.get("created_at", ""),
        )


# --- Orders ---


@dataclass
class ShippingAddress:
    """Address snapshot copied into the order at creation time."""

    name: str
    email: str
    address: str
    postal_code: str
    delivery_phone: str | None = None
    city: str | None = None
    state: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "address": self.address,
            "postal_code": self.postal_code,
            "delivery_phone": self.delivery_phone,
            "city": self.city,
            "state": self.state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShippingAddress":
        return cls(
            name=data.get("name", ""),
            email=data.get("email", ""),
            address=data.get("address", ""),
            postal_code=data.get("postal_code", ""),
            delivery_phone=data.get("delivery_phone"),
            city=data.get("city"),
            state=data.get("state"),
        )


@dataclass
class RefundRecord:
    """Gateway refund bookkeeping for one line item."""

    idempotency_key: str
    state: RefundState = RefundState.INITIATED
    amount: Decimal | None = None
    date: str | None = None
    transaction_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "state": self.state.value,
            "amount": _str_or_none(self.amount),
            "date": self.date,
            "transaction_id": self.transaction_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RefundRecord":
        return cls(
            idempotency_key=data["idempotency_key"],
            state=RefundState(data.get("state", "Initiated")),
            amount=_money_or_none(data.get("amount")),
            date=data.get("date"),
            transaction_id=data.get("transaction_id"),
        )


@dataclass
class OrderLineItem:
    """One product/color/size/quantity entry, with its own lifecycle."""

    line_id: str
    product_id: str
    product_name: str
    slug: str
    sku: str
    color: str
    size: str
    quantity: int
    price_at_order: Decimal
    declared_price: Decimal | None = None
    status: LineItemStatus = LineItemStatus.PENDING
    return_issue_type: str | None = None
    return_issue_desc: str | None = None
    return_resolution_type: ResolutionType | None = None
    return_images: list[str] = field(default_factory=list)
    exchange_to_color: str | None = None
    exchange_to_size: str | None = None
    replacement_order_id: str | None = None
    pickup_status: PickupStatus = PickupStatus.PENDING
    refund: RefundRecord | None = None

    @property
    def subtotal(self) -> Decimal:
        return self.price_at_order * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_id": self.line_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "slug": self.slug,
            "sku": self.sku,
            "color": self.color,
            "size": self.size,
            "quantity": self.quantity,
            "price_at_order": str(self.price_at_order),
            "declared_price": _str_or_none(self.declared_price),
            "status": self.status.value,
            "return_issue_type": self.return_issue_type,
            "return_issue_desc": self.return_issue_desc,
            "return_resolution_type": (
                self.return_resolution_type.value if self.return_resolution_type else None
            ),
            "return_images": list(self.return_images),
            "exchange_to_color": self.exchange_to_color,
            "exchange_to_size": self.exchange_to_size,
            "replacement_order_id": self.replacement_order_id,
            "pickup_status": self.pickup_status.value,
            "refund": self.refund.to_dict() if self.refund else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderLineItem":
        resolution = data.get("return_resolution_type")
        refund = data.get("refund")
        return cls(
            line_id=data["line_id"],
            product_id=data["product_id"],
            product_name=data.get("product_name", ""),
            slug=data.get("slug", ""),
            sku=data.get("sku", ""),
            color=data.get("color", ""),
            size=data.get("size", ""),
            quantity=data["quantity"],
            price_at_order=to_money(data["price_at_order"]),
            declared_price=_money_or_none(data.get("declared_price")),
            status=LineItemStatus(data.get("status", "Pending")),
            return_issue_type=data.get("return_issue_type"),
            return_issue_desc=data.get("return_issue_desc"),
            return_resolution_type=ResolutionType(resolution) if resolution else None,
            return_images=list(data.get("return_images", [])),
            exchange_to_color=data.get("exchange_to_color"),
            exchange_to_size=data.get("exchange_to_size"),
            replacement_order_id=data.get("replacement_order_id"),
            pickup_status=PickupStatus(data.get("pickup_status", "Pending")),
            refund=RefundRecord.from_dict(refund) if refund else None,
        )


@dataclass
class Order:
    """The order aggregate. Never deleted, only status-transitioned."""

    order_id: str
    user_id: str
    products: list[OrderLineItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    total_price: Decimal
    shipping_cost: Decimal = Decimal("0.00")
    discount_total: Decimal = Decimal("0.00")
    applied_discount_code: str | None = None
    is_paid: bool = False
    paid_at: str | None = None
    razorpay_order_id: str | None = None
    razorpay_payment_id: str | None = None
    razorpay_signature: str | None = None
    captured_amount: Decimal | None = None
    capture_verified: bool = True
    status: OrderStatus = OrderStatus.PENDING
    last_updated_by: str | None = None
    delivered_at: str | None = None
    cancelled_at: str | None = None
    cancellation_reason: str | None = None
    return_requested_at: str | None = None
    refund_status: RefundStatus = RefundStatus.NONE
    refunded_amount: Decimal = Decimal("0.00")
    refund_transaction_id: str | None = None
    refund_date: str | None = None
    shipped_from: str | None = None
    tracking_number: str | None = None
    shipping_carrier: str | None = None
    courier_order_no: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    @property
    def refund_headroom(self) -> Decimal:
        """Amount still refundable: captured by the gateway minus refunds issued."""
        if self.captured_amount is None:
            return Decimal("0.00")
        return self.captured_amount - self.refunded_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "user_id": self.user_id,
            "products": [p.to_dict() for p in self.products],
            "shipping_address": self.shipping_address.to_dict(),
            "payment_method": self.payment_method.value,
            "total_price": str(self.total_price),
            "shipping_cost": str(self.shipping_cost),
            "discount_total": str(self.discount_total),
            "applied_discount_code": self.applied_discount_code,
            "is_paid": self.is_paid,
            "paid_at": self.paid_at,
            "razorpay_order_id": self.razorpay_order_id,
            "razorpay_payment_id": self.razorpay_payment_id,
            "razorpay_signature": self.razorpay_signature,
            "captured_amount": _str_or_none(self.captured_amount),
            "capture_verified": self.capture_verified,
            "status": self.status.value,
            "last_updated_by": self.last_updated_by,
            "delivered_at": self.delivered_at,
            "cancelled_at": self.cancelled_at,
            "cancellation_reason": self.cancellation_reason,
            "return_requested_at": self.return_requested_at,
            "refund_status": self.refund_status.value,
            "refunded_amount": str(self.refunded_amount),
            "refund_transaction_id": self.refund_transaction_id,
            "refund_date": self.refund_date,
            "shipped_from": self.shipped_from,
            "tracking_number": self.tracking_number,
            "shipping_carrier": self.shipping_carrier,
            "courier_order_no": self.courier_order_no,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        return cls(
            order_id=data["order_id"],
            user_id=data["user_id"],
            products=[OrderLineItem.from_dict(p) for p in data.get("products", [])],
            shipping_address=ShippingAddress.from_dict(data.get("shipping_address", {})),
            payment_method=PaymentMethod(data["payment_method"]),
            total_price=to_money(data["total_price"]),
            shipping_cost=to_money(data.get("shipping_cost", "0")),
            discount_total=to_money(data.get("discount_total", "0")),
            applied_discount_code=data.get("applied_discount_code"),
            is_paid=data.get("is_paid", False),
            paid_at=data.get("paid_at"),
            razorpay_order_id=data.get("razorpay_order_id"),
            razorpay_payment_id=data.get("razorpay_payment_id"),
            razorpay_signature=data.get("razorpay_signature"),
            captured_amount=_money_or_none(data.get("captured_amount")),
            capture_verified=data.get("capture_verified", True),
            status=OrderStatus(data.get("status", "Pending")),
            last_updated_by=data.get("last_updated_by"),
            delivered_at=data.get("delivered_at"),
            cancelled_at=data.get("cancelled_at"),
            cancellation_reason=data.get("cancellation_reason"),
            return_requested_at=data.get("return_requested_at"),
            refund_status=RefundStatus(data.get("refund_status", "None")),
            refunded_amount=to_money(data.get("refunded_amount", "0")),
            refund_transaction_id=data.get("refund_transaction_id"),
            refund_date=data.get("refund_date"),
            shipped_from=data.get("shipped_from"),
            tracking_number=data.get("tracking_number"),
            shipping_carrier=data.get("shipping_carrier"),
            courier_order_no=data.get("courier_order_no"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def create(
        cls,
        user_id: str,
        products: list[OrderLineItem],
        shipping_address: ShippingAddress,
        payment_method: PaymentMethod,
        total_price: Decimal,
        shipping_cost: Decimal = Decimal("0.00"),
        discount_total: Decimal = Decimal("0.00"),
    ) -> "Order":
        """Create a new order with generated ID and timestamps."""
        now = _utc_now()
        return cls(
            order_id=generate_order_id(),
            user_id=user_id,
            products=products,
            shipping_address=shipping_address,
            payment_method=payment_method,
            total_price=total_price,
            shipping_cost=shipping_cost,
            discount_total=discount_total,
            created_at=now,
            updated_at=now,
        )


# Models for operation results


@dataclass
class PricedLine:
    """A line item with the discount it received while pricing."""

    item: OrderLineItem
    preorder_discount: Decimal = Decimal("0.00")
    preorder_ids: list[str] = field(default_factory=list)


@dataclass
class Quote:
    """Server-side pricing of a cart; nothing consumed."""

    lines: list[PricedLine]
    subtotal: Decimal
    shipping_cost: Decimal
    preorder_discount: Decimal
    promo_discount: Decimal
    total: Decimal

    @property
    def discount_total(self) -> Decimal:
        return self.preorder_discount + self.promo_discount


@dataclass
class PaymentIntent:
    razorpay_order_id: str
    amount: int  # minor units
    courier_status: str | None
    courier_order_no: str | None


@dataclass
class WebhookResult:
    order_id: str
    already_paid: bool


@dataclass
class RefundResult:
    order_id: str
    line_id: str
    refund_id: str
    amount: Decimal
    refund_date: str
    already_processed: bool = False
