"""Tests for order status transitions."""

import pytest

from orderflow.errors import (
    CourierUnavailableError,
    IllegalTransitionError,
    InvalidInputError,
    OrderNotFoundError,
)
from orderflow.models import LineItemStatus, Order, OrderStatus
from orderflow.notifications import ORDER_UPDATED
from orderflow.state_machine import (
    ORDER_TRANSITIONS,
    OrderStateMachine,
    check_line_transition,
    check_order_transition,
)
from orderflow.store import ORDERS

SHIPPING = {"shipped_from": "Warehouse A", "tracking_number": "TRK123", "shipping_carrier": "Shipcorp"}


def ship(services, order_id, **overrides):
    fields = dict(SHIPPING)
    fields.update(overrides)
    return services.state_machine.update_status(order_id, OrderStatus.SHIPPED, "admin-1", **fields)


class TestTransitionTables:
    def test_terminal_statuses(self):
        assert ORDER_TRANSITIONS[OrderStatus.CANCELLED] == frozenset()
        assert ORDER_TRANSITIONS[OrderStatus.RETURNED] == frozenset()

    def test_every_status_has_entry(self):
        assert set(ORDER_TRANSITIONS) == set(OrderStatus)

    @pytest.mark.parametrize(
        "current, target",
        [
            (OrderStatus.PENDING, OrderStatus.DELIVERED),
            (OrderStatus.DELIVERED, OrderStatus.SHIPPED),
            (OrderStatus.CANCELLED, OrderStatus.PENDING),
            (OrderStatus.RETURNED, OrderStatus.DELIVERED),
            (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
        ],
    )
    def test_illegal_order_transitions(self, current, target):
        with pytest.raises(IllegalTransitionError):
            check_order_transition(current, target)

    def test_line_cannot_skip_approval(self):
        with pytest.raises(IllegalTransitionError):
            check_line_transition(LineItemStatus.RETURN_REQUESTED, LineItemStatus.REFUNDED)
        with pytest.raises(IllegalTransitionError):
            check_line_transition(LineItemStatus.PENDING, LineItemStatus.RETURN_REQUESTED)


class TestAdminStatusUpdate:
    def test_shipped_requires_all_fields(self, services, place_cod):
        order = place_cod()

        with pytest.raises(InvalidInputError) as exc_info:
            ship(services, order.order_id, tracking_number=None)

        assert "trackingNumber" in str(exc_info.value)
        assert services.orders.get_order(order.order_id).status == OrderStatus.PENDING

    def test_blank_shipping_field_rejected(self, services, place_cod):
        order = place_cod()
        with pytest.raises(InvalidInputError):
            ship(services, order.order_id, shipping_carrier="  ")

    def test_ship_records_fields(self, services, place_cod, publisher):
        order = place_cod()

        shipped = ship(services, order.order_id)

        assert shipped.status == OrderStatus.SHIPPED
        assert shipped.tracking_number == "TRK123"
        assert shipped.shipped_from == "Warehouse A"
        assert shipped.last_updated_by == "admin-1"
        assert publisher.names()[-1] == ORDER_UPDATED
        assert publisher.events[-1][1]["status"] == "Shipped"

    def test_processing_then_shipped(self, services, place_cod):
        order = place_cod()
        services.state_machine.update_status(order.order_id, OrderStatus.PROCESSING, "admin-1")
        assert ship(services, order.order_id).status == OrderStatus.SHIPPED

    def test_delivery_marks_lines_delivered(self, services, place_cod):
        order = place_cod()
        ship(services, order.order_id)

        delivered = services.state_machine.update_status(
            order.order_id, OrderStatus.DELIVERED, "admin-1"
        )

        assert delivered.delivered_at is not None
        assert all(line.status == LineItemStatus.DELIVERED for line in delivered.products)

    def test_illegal_jump_rejected(self, services, place_cod):
        order = place_cod()
        with pytest.raises(IllegalTransitionError):
            services.state_machine.update_status(order.order_id, OrderStatus.DELIVERED, "admin-1")

    def test_same_status_is_noop(self, services, place_cod, publisher):
        order = place_cod()
        ship(services, order.order_id)
        events = len(publisher.events)

        again = ship(services, order.order_id, tracking_number="TRK999")

        assert again.status == OrderStatus.SHIPPED
        assert again.tracking_number == "TRK999"
        assert len(publisher.events) == events

    def test_cancel_clears_tracking(self, services, place_cod):
        order = place_cod()
        ship(services, order.order_id)

        cancelled = services.state_machine.update_status(
            order.order_id, OrderStatus.CANCELLED, "admin-1"
        )

        assert cancelled.cancelled_at is not None
        assert cancelled.tracking_number is None
        assert cancelled.shipping_carrier is None

    def test_cancelled_is_terminal(self, services, place_cod):
        order = place_cod()
        services.state_machine.update_status(order.order_id, OrderStatus.CANCELLED, "admin-1")
        with pytest.raises(IllegalTransitionError):
            services.state_machine.update_status(order.order_id, OrderStatus.PROCESSING, "admin-1")

    def test_unknown_order(self, services):
        with pytest.raises(OrderNotFoundError):
            services.state_machine.update_status("ORD-NOPE", OrderStatus.PROCESSING, "admin-1")


class TestCustomerTransitions:
    def test_confirm_delivery(self, services, place_cod):
        order = place_cod()
        ship(services, order.order_id)

        delivered = services.state_machine.confirm_delivery(order.order_id, "user-1")

        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.last_updated_by == "user-1"

    def test_confirm_delivery_requires_shipped(self, services, place_cod):
        order = place_cod()
        with pytest.raises(IllegalTransitionError):
            services.state_machine.confirm_delivery(order.order_id, "user-1")

    def test_confirm_delivery_owner_only(self, services, place_cod):
        order = place_cod()
        ship(services, order.order_id)
        with pytest.raises(OrderNotFoundError):
            services.state_machine.confirm_delivery(order.order_id, "user-2")

    def test_cancel_order(self, services, place_cod):
        order = place_cod()

        cancelled = services.state_machine.cancel_order(order.order_id, "user-1", "Changed my mind")

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancellation_reason == "Changed my mind"

    def test_cannot_cancel_delivered(self, services, place_cod):
        order = place_cod()
        ship(services, order.order_id)
        services.state_machine.confirm_delivery(order.order_id, "user-1")

        with pytest.raises(IllegalTransitionError):
            services.state_machine.cancel_order(order.order_id, "user-1")

    def test_cancel_owner_only(self, services, place_cod):
        order = place_cod()
        with pytest.raises(OrderNotFoundError):
            services.state_machine.cancel_order(order.order_id, "user-2")


class TestCourierTracking:
    def test_in_transit(self, services, place_cod):
        order = place_cod()
        ship(services, order.order_id)

        result = services.state_machine.sync_courier_tracking(order.order_id)

        assert result["display_status"] == "In Transit"
        assert result["order_status"] == "Shipped"
        assert result["tracking"]["order_no"] == "SC0001"

    def test_courier_delivery_marks_order_delivered(self, services, place_cod, courier):
        order = place_cod()
        ship(services, order.order_id)
        courier.tracking = {"scan_stages": [{"status": "Delivered"}, {"status": "In Transit"}]}

        result = services.state_machine.sync_courier_tracking(order.order_id)

        assert result["order_status"] == "Delivered"
        stored = services.orders.get_order(order.order_id)
        assert stored.status == OrderStatus.DELIVERED
        assert stored.last_updated_by == "courier"

    def test_unknown_stage_shows_order_status(self, services, place_cod, courier):
        order = place_cod()
        courier.tracking = {"tracking_status": "Manifested"}

        result = services.state_machine.sync_courier_tracking(order.order_id)

        assert result["display_status"] == "Pending"

    def test_order_without_courier_number(self, services, place_cod):
        order = place_cod()

        def forget(doc):
            current = Order.from_dict(doc)
            current.courier_order_no = None
            return current.to_dict()

        services.store.modify(ORDERS, order.order_id, forget)
        with pytest.raises(OrderNotFoundError):
            services.state_machine.sync_courier_tracking(order.order_id)

    def test_no_courier_configured(self, services, place_cod):
        order = place_cod()
        machine = OrderStateMachine(services.store, services.publisher)
        with pytest.raises(CourierUnavailableError):
            machine.sync_courier_tracking(order.order_id)
