"""Tests for the courier client and hand-off adapter."""

import json
from decimal import Decimal

import httpx
import pytest

from orderflow.courier import (
    CourierAdapter,
    CourierClient,
    build_shipment_payload,
    latest_scan_stage,
)
from orderflow.errors import CourierRejectedError, CourierUnavailableError
from orderflow.models import OrderLineItem, PaymentMethod
from orderflow.store import DocumentStore

from .conftest import make_address


def make_line() -> OrderLineItem:
    return OrderLineItem(
        line_id="line-1",
        product_id="prod-tee",
        product_name="Classic Tee",
        slug="classic-tee",
        sku="TEE-BLK-M",
        color="Black",
        size="M",
        quantity=2,
        price_at_order=Decimal("999.00"),
    )


def make_client(handler, create_url="https://courier.test/create") -> CourierClient:
    return CourierClient(
        "key",
        create_url,
        "https://courier.test/track",
        httpx.Client(transport=httpx.MockTransport(handler)),
    )


class TestShipmentPayload:
    def test_fields(self):
        payload = build_shipment_payload(
            "ORD-1", make_address(), PaymentMethod.PREPAID, Decimal("1998.00"), make_line(), "0.3"
        )

        assert payload["client_order_no"] == "ORD-1"
        assert payload["pay_mode"] == "PREPAID"
        assert payload["quantity"] == "2"
        assert payload["total_amount"] == "1998.00"
        assert payload["mrp"] == "999.00"
        assert payload["product_weight"] == "0.3"
        assert payload["customer_address_city"] == "Bengaluru"

    def test_missing_optional_address_fields_are_blank(self):
        address = make_address(city=None, state=None, delivery_phone=None)
        payload = build_shipment_payload("ORD-1", address, PaymentMethod.COD, 1, make_line())

        assert payload["pay_mode"] == "COD"
        assert payload["customer_address_city"] == ""
        assert payload["customer_contact_number1"] == ""


class TestCourierClient:
    def test_server_error_is_unavailable(self):
        client = make_client(lambda request: httpx.Response(502, text="bad gateway"))
        with pytest.raises(CourierUnavailableError):
            client.create_shipment({})

    def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        with pytest.raises(CourierUnavailableError):
            make_client(handler).create_shipment({})

    def test_error_body_is_rejection(self):
        client = make_client(lambda request: httpx.Response(200, json={"error": "Bad pincode"}))
        with pytest.raises(CourierRejectedError) as exc_info:
            client.create_shipment({})
        assert "Bad pincode" in str(exc_info.value)

    def test_client_error_is_rejection(self):
        client = make_client(lambda request: httpx.Response(422, json={"message": "invalid"}))
        with pytest.raises(CourierRejectedError):
            client.create_shipment({})

    def test_unconfigured_endpoint(self):
        client = make_client(lambda request: httpx.Response(200, json={}), create_url="")
        with pytest.raises(CourierRejectedError):
            client.create_shipment({})

    def test_api_key_sent(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"order_no": "SC1"})

        make_client(handler).create_shipment({"client_order_no": "ORD-1"})
        assert seen[0]["api_key"] == "key"
        assert seen[0]["client_order_no"] == "ORD-1"


class TestCourierAdapter:
    def test_backoff_between_attempts(self):
        calls = []
        sleeps = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"order_no": "SC9"})

        adapter = CourierAdapter(
            make_client(handler), DocumentStore(), max_attempts=3,
            backoff_seconds=0.5, sleep=sleeps.append,
        )

        assert adapter.submit({}) == {"order_no": "SC9"}
        assert sleeps == [0.5, 1.0]

    def test_gives_up_after_max_attempts(self):
        sleeps = []
        adapter = CourierAdapter(
            make_client(lambda request: httpx.Response(503)), DocumentStore(),
            max_attempts=2, backoff_seconds=0.1, sleep=sleeps.append,
        )

        with pytest.raises(CourierUnavailableError):
            adapter.submit({})
        assert sleeps == [0.1]

    def test_rejection_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(200, json={"error": "Not serviceable"})

        adapter = CourierAdapter(make_client(handler), DocumentStore(), sleep=lambda s: None)

        with pytest.raises(CourierRejectedError):
            adapter.submit({})
        assert len(calls) == 1

    def test_hand_off_of_missing_order_is_logged(self, caplog):
        adapter = CourierAdapter(
            make_client(lambda request: httpx.Response(200, json={"order_no": "SC1"})),
            DocumentStore(),
        )
        assert adapter.hand_off("ORD-NOPE") is None
        assert "Courier hand-off failed" in caplog.text


class TestScanStage:
    def test_latest_scan_first(self):
        tracking = {"scan_stages": [{"status": "Out For Delivery"}, {"status": "In Transit"}]}
        assert latest_scan_stage(tracking) == "Out For Delivery"

    def test_falls_back_to_tracking_status(self):
        assert latest_scan_stage({"tracking_status": "Manifested"}) == "Manifested"

    def test_nothing_reported(self):
        assert latest_scan_stage({}) is None
