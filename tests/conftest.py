"""Pytest fixtures for orderflow tests."""

import json
import tempfile
from decimal import Decimal
from pathlib import Path
from typing import Any

import httpx
import pytest

from orderflow.config import Settings
from orderflow.models import (
    ColorVariant,
    OrderStatus,
    PaymentMethod,
    Product,
    ShippingAddress,
    SizeDetails,
    User,
)
from orderflow.orders import CartItem
from orderflow.payments import OrderDetails, checkout_message, compute_signature
from orderflow.services import Services
from orderflow.store import PRODUCTS, USERS, DocumentStore
from orderflow.uploads import ImageUpload, LocalImageUploader

KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test"

TEE = "prod-tee"
HOODIE = "prod-hoodie"


class RecordingPublisher:
    """Keeps every published event in memory."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def count(self, event: str) -> int:
        return self.names().count(event)


class FakeGateway:
    """Razorpay REST API stand-in served through httpx.MockTransport."""

    def __init__(self):
        self.orders: list[dict[str, Any]] = []
        self.payments: dict[str, int] = {}
        self.refund_calls: list[dict[str, Any]] = []
        self.refund_mode = "ok"
        self.fetch_mode = "ok"
        self._refunds_by_key: dict[str, str] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == "/v1/orders":
            body = json.loads(request.content)
            order = {"id": f"order_{len(self.orders) + 1}", "amount": body["amount"]}
            self.orders.append({**body, **order})
            return httpx.Response(200, json=order)

        if request.method == "GET" and path.startswith("/v1/payments/"):
            payment_id = path.rsplit("/", 1)[-1]
            if self.fetch_mode == "timeout":
                raise httpx.ReadTimeout("timed out", request=request)
            if payment_id not in self.payments:
                return httpx.Response(404, json={"error": {"description": "no such payment"}})
            return httpx.Response(
                200, json={"id": payment_id, "amount": self.payments[payment_id], "status": "captured"}
            )

        if request.method == "POST" and path.endswith("/refund"):
            body = json.loads(request.content)
            key = request.headers.get("X-Idempotency-Key", "")
            self.refund_calls.append({"path": path, "key": key, **body})
            if self.refund_mode == "timeout":
                raise httpx.ReadTimeout("timed out", request=request)
            if self.refund_mode == "reject":
                return httpx.Response(
                    400, json={"error": {"description": "The payment has been fully refunded"}}
                )
            refund_id = self._refunds_by_key.setdefault(key, f"rfnd_gw_{len(self._refunds_by_key) + 1}")
            return httpx.Response(200, json={"id": refund_id, "amount": body["amount"]})

        return httpx.Response(404, json={"error": {"description": "unknown endpoint"}})

    def successful_refunds(self) -> set[str]:
        return set(self._refunds_by_key.values())


class FakeCourier:
    """Courier API stand-in served through httpx.MockTransport."""

    def __init__(self):
        self.shipments: list[dict[str, Any]] = []
        self.failures_left = 0
        self.reject_reason: str | None = None
        self.tracking: dict[str, Any] = {"scan_stages": [{"status": "In Transit"}]}

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path == "/create":
            if self.failures_left > 0:
                self.failures_left -= 1
                return httpx.Response(503, json={"error": "busy"})
            if self.reject_reason:
                return httpx.Response(200, json={"error": self.reject_reason})
            self.shipments.append(body)
            return httpx.Response(
                200, json={"status": "success", "order_no": f"SC{len(self.shipments):04d}"}
            )
        if request.url.path == "/track":
            return httpx.Response(200, json={"order_no": body["order_no"], **self.tracking})
        return httpx.Response(404, json={"error": "unknown endpoint"})


def seed_catalog(store: DocumentStore) -> None:
    """Two products and three users."""
    tee_product = Product(
        product_id=TEE,
        name="Classic Tee",
        slug="classic-tee",
        price=Decimal("999.00"),
        colors=[
            ColorVariant(
                "Black",
                {"S": SizeDetails("TEE-BLK-S", 5), "M": SizeDetails("TEE-BLK-M", 5)},
            ),
            ColorVariant("White", {"M": SizeDetails("TEE-WHT-M", 5)}),
        ],
        weight="0.3",
    )
    hoodie_product = Product(
        product_id=HOODIE,
        name="Zip Hoodie",
        slug="zip-hoodie",
        price=Decimal("1499.00"),
        discount_price=Decimal("1299.00"),
        discount_expiry="2999-01-01T00:00:00Z",
        colors=[ColorVariant("Grey", {"L": SizeDetails("HD-GRY-L", 2)})],
    )
    for product in (tee_product, hoodie_product):
        store.put(PRODUCTS, product.product_id, product.to_dict())
    for user_id in ("user-1", "user-2", "admin-1"):
        store.put(USERS, user_id, User(user_id, name=user_id, is_admin=user_id.startswith("admin")).to_dict())


def make_address(**overrides: Any) -> ShippingAddress:
    fields = {
        "name": "Asha Rao",
        "email": "asha@example.com",
        "address": "12 MG Road",
        "postal_code": "560001",
        "delivery_phone": "9999999999",
        "city": "Bengaluru",
        "state": "KA",
    }
    fields.update(overrides)
    return ShippingAddress(**fields)


def tee(color: str = "Black", size: str = "M", quantity: int = 1) -> CartItem:
    return CartItem(TEE, color, size, quantity)


def hoodie(quantity: int = 1) -> CartItem:
    return CartItem(HOODIE, "Grey", "L", quantity)


def sign_checkout(razorpay_order_id: str, payment_id: str) -> str:
    return compute_signature(KEY_SECRET, checkout_message(razorpay_order_id, payment_id))


def image(name: str = "damage.jpg", content_type: str = "image/jpeg") -> ImageUpload:
    return ImageUpload(filename=name, content_type=content_type, content=b"\xff\xd8fake-jpeg")


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def courier():
    return FakeCourier()


@pytest.fixture
def settings():
    return Settings(
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
        razorpay_api_url="https://gateway.test",
        courier_api_key="courier-key",
        courier_create_url="https://courier.test/create",
        courier_tracking_url="https://courier.test/track",
        courier_max_attempts=3,
        courier_backoff_seconds=0.01,
        webhook_rate_limit=5,
    )


@pytest.fixture
def services(settings, temp_dir, publisher, gateway, courier):
    """Fully wired services over an in-memory store with a seeded catalog."""
    store = DocumentStore()
    seed_catalog(store)
    built = Services.from_settings(
        settings,
        store=store,
        publisher=publisher,
        uploader=LocalImageUploader(temp_dir / "uploads"),
        gateway_transport=httpx.MockTransport(gateway.handler),
        courier_transport=httpx.MockTransport(courier.handler),
        sleep=lambda seconds: None,
    )
    yield built
    built.close()


@pytest.fixture
def place_cod(services):
    """Place a cash-on-delivery order."""

    def place(user_id: str = "user-1", items: list[CartItem] | None = None, **kwargs: Any):
        return services.orders.create_order(
            user_id, items or [tee()], make_address(), PaymentMethod.COD, **kwargs
        )

    return place


@pytest.fixture
def place_prepaid(services, gateway):
    """Create a paid prepaid order through the checkout verification path."""
    counter = {"n": 0}

    def place(user_id: str = "user-1", items: list[CartItem] | None = None, **kwargs: Any):
        counter["n"] += 1
        details = OrderDetails(items=items or [tee()], shipping_address=make_address(), **kwargs)
        quote = services.orders.quote_order(
            user_id, details.items, details.shipping_cost, details.discount_code
        )
        rzp_order_id = f"order_test_{counter['n']}"
        payment_id = f"pay_test_{counter['n']}"
        gateway.payments[payment_id] = int(quote.total * 100)
        return services.payments.verify_and_create(
            user_id, rzp_order_id, payment_id, sign_checkout(rzp_order_id, payment_id), details
        )

    return place


@pytest.fixture
def delivered_prepaid(services, place_prepaid):
    """A paid prepaid order that has been shipped and delivered."""

    def place(user_id: str = "user-1", items: list[CartItem] | None = None, **kwargs: Any):
        order = place_prepaid(user_id, items, **kwargs)
        services.state_machine.update_status(
            order.order_id,
            OrderStatus.SHIPPED,
            "admin-1",
            shipped_from="Warehouse A",
            tracking_number="TRK123",
            shipping_carrier="Shipcorp",
        )
        return services.state_machine.update_status(
            order.order_id, OrderStatus.DELIVERED, "admin-1"
        )

    return place
