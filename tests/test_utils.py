"""Tests for money helpers, line lookup, rate limiting, uploads and events."""

from decimal import Decimal

import httpx
import pytest

from orderflow.config import Settings
from orderflow.errors import (
    AmbiguousLineItemError,
    InvalidInputError,
    LineItemNotFoundError,
    NotificationError,
    RateLimitExceededError,
)
from orderflow.models import Order, OrderLineItem, PaymentMethod
from orderflow.notifications import HttpNotificationPublisher, emit
from orderflow.ratelimit import RateLimiter
from orderflow.uploads import LocalImageUploader, MAX_IMAGES, validate_images
from orderflow.utils import find_line, from_minor, require_text, to_minor, to_money

from .conftest import image, make_address


def make_order(*product_ids: str) -> Order:
    lines = [
        OrderLineItem(
            line_id=f"line-{i}",
            product_id=product_id,
            product_name=product_id,
            slug=product_id,
            sku="SKU",
            color="Black",
            size="M",
            quantity=1,
            price_at_order=Decimal("10.00"),
        )
        for i, product_id in enumerate(product_ids)
    ]
    return Order.create("user-1", lines, make_address(), PaymentMethod.COD, Decimal("10.00"))


class TestMoney:
    def test_to_money_rounds_half_up(self):
        assert to_money("10.005") == Decimal("10.01")
        assert to_money(999.99) == Decimal("999.99")
        assert to_money(5) == Decimal("5.00")

    def test_to_money_rejects_garbage(self):
        with pytest.raises(InvalidInputError):
            to_money("ten")
        with pytest.raises(InvalidInputError):
            to_money("NaN")

    def test_minor_units(self):
        assert to_minor(Decimal("799.00")) == 79900
        assert to_minor(Decimal("0.29")) == 29
        assert from_minor(84910) == Decimal("849.10")

    def test_require_text(self):
        assert require_text("  hi ", "field") == "hi"
        with pytest.raises(InvalidInputError) as exc_info:
            require_text("   ", "returnIssueType")
        assert exc_info.value.field == "returnIssueType"


class TestFindLine:
    def test_by_line_id_or_product_id(self):
        order = make_order("a", "b")
        assert find_line(order, "line-1").product_id == "b"
        assert find_line(order, "a").line_id == "line-0"

    def test_missing(self):
        with pytest.raises(LineItemNotFoundError):
            find_line(make_order("a"), "z")

    def test_ambiguous(self):
        with pytest.raises(AmbiguousLineItemError):
            find_line(make_order("a", "a"), "a")


class TestRateLimiter:
    def test_window_slides(self):
        now = [0.0]
        limiter = RateLimiter(2, 60, clock=lambda: now[0])

        limiter.check("ip")
        limiter.check("ip")
        with pytest.raises(RateLimitExceededError):
            limiter.check("ip")

        now[0] = 61.0
        limiter.check("ip")

    def test_sources_independent(self):
        limiter = RateLimiter(1, 60)
        limiter.check("a")
        limiter.check("b")
        with pytest.raises(RateLimitExceededError):
            limiter.check("a")

    def test_reset(self):
        limiter = RateLimiter(1, 60)
        limiter.check("a")
        limiter.reset("a")
        limiter.check("a")


class TestUploads:
    def test_too_many_images(self):
        with pytest.raises(InvalidInputError):
            validate_images([image() for _ in range(MAX_IMAGES + 1)])

    def test_too_large(self):
        big = image()
        big.content = b"0" * (5 * 1024 * 1024 + 1)
        with pytest.raises(InvalidInputError):
            validate_images([big])

    def test_local_uploader_writes_file(self, temp_dir):
        uploader = LocalImageUploader(temp_dir / "returns", base_url="/media/")

        url = uploader.upload(image("photo.png", "image/png"))

        assert url.startswith("/media/")
        assert url.endswith(".png")
        stored = temp_dir / "returns" / url.rsplit("/", 1)[-1]
        assert stored.read_bytes() == image().content


class TestNotifications:
    def test_emit_swallows_failures(self, caplog):
        class Broken:
            def publish(self, event, payload):
                raise NotificationError(event, "down")

        emit(Broken(), "order_placed", {"order_id": "ORD-1"})
        assert "Failed to publish order_placed" in caplog.text

    def test_http_publisher_posts_event(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        publisher = HttpNotificationPublisher(
            "https://bus.test/events", httpx.Client(transport=httpx.MockTransport(handler))
        )
        publisher.publish("order_paid", {"order_id": "ORD-1"})

        assert seen[0].url == "https://bus.test/events"
        assert b"order_paid" in seen[0].content

    def test_http_publisher_raises_on_error_status(self):
        publisher = HttpNotificationPublisher(
            "https://bus.test/events",
            httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
        )
        with pytest.raises(NotificationError):
            publisher.publish("order_paid", {})


class TestSettings:
    def test_from_env(self, monkeypatch, temp_dir):
        monkeypatch.setenv("ORDERFLOW_DATA_DIR", str(temp_dir))
        monkeypatch.setenv("ORDERFLOW_COURIER_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("ORDERFLOW_RAZORPAY_KEY_SECRET", "secret")

        settings = Settings.from_env()

        assert settings.data_dir == temp_dir
        assert settings.courier_max_attempts == 5
        assert settings.razorpay_key_secret == "secret"
        assert settings.courier_create_url == ""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ORDERFLOW_DATA_DIR", raising=False)
        settings = Settings.from_env()
        assert settings.data_dir is None
        assert settings.currency == "INR"
