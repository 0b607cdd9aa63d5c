"""Order and line-item status transitions."""

import logging
from typing import Any, Callable

from .courier import DISPLAY_STAGES, CourierAdapter, latest_scan_stage
from .errors import (
    CourierUnavailableError,
    IllegalTransitionError,
    InvalidInputError,
    OrderNotFoundError,
)
from .models import LineItemStatus, Order, OrderStatus, PickupStatus, _utc_now
from .notifications import ORDER_UPDATED, NotificationPublisher, emit
from .orders import order_event
from .store import ORDERS, DocumentStore

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED}
    ),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURN_REQUESTED}),
    OrderStatus.RETURN_REQUESTED: frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

LINE_TRANSITIONS: dict[LineItemStatus, frozenset[LineItemStatus]] = {
    LineItemStatus.PENDING: frozenset({LineItemStatus.DELIVERED}),
    LineItemStatus.DELIVERED: frozenset({LineItemStatus.RETURN_REQUESTED}),
    LineItemStatus.RETURN_REQUESTED: frozenset(
        {
            LineItemStatus.RETURN_APPROVED,
            LineItemStatus.RETURN_REJECTED,
            LineItemStatus.DELIVERED,
        }
    ),
    LineItemStatus.RETURN_APPROVED: frozenset(
        {LineItemStatus.REFUNDED, LineItemStatus.RETURNED}
    ),
    LineItemStatus.RETURN_REJECTED: frozenset(),
    LineItemStatus.REFUNDED: frozenset(),
    LineItemStatus.RETURNED: frozenset(),
}

PICKUP_TRANSITIONS: dict[PickupStatus, frozenset[PickupStatus]] = {
    PickupStatus.PENDING: frozenset({PickupStatus.PICKED_UP}),
    PickupStatus.PICKED_UP: frozenset(),
}

# Owners may cancel until the parcel is delivered
CANCELLABLE = (OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.SHIPPED)


def check_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    if target not in ORDER_TRANSITIONS[current]:
        raise IllegalTransitionError("order", current.value, target.value)


def check_line_transition(current: LineItemStatus, target: LineItemStatus) -> None:
    if target not in LINE_TRANSITIONS[current]:
        raise IllegalTransitionError("line item", current.value, target.value)


def check_pickup_transition(current: PickupStatus, target: PickupStatus) -> None:
    if target not in PICKUP_TRANSITIONS[current]:
        raise IllegalTransitionError("pickup", current.value, target.value)


def validate_shipping_fields(
    shipped_from: str | None, tracking_number: str | None, shipping_carrier: str | None
) -> None:
    """
    Raises:
        InvalidInputError: Unless all three shipping fields are present.
    """
    missing = [
        name
        for name, value in (
            ("shippedFrom", shipped_from),
            ("trackingNumber", tracking_number),
            ("shippingCarrier", shipping_carrier),
        )
        if not value or not value.strip()
    ]
    if missing:
        raise InvalidInputError(
            "Shipped status requires shippedFrom, trackingNumber and shippingCarrier "
            f"(missing: {', '.join(missing)})",
            field=missing[0],
        )


def apply_order_status(order: Order, target: OrderStatus, now: str) -> None:
    """Move an order to target, updating the fields that go with it."""
    check_order_transition(order.status, target)
    previous = order.status
    order.status = target
    order.updated_at = now
    if target == OrderStatus.DELIVERED:
        if previous == OrderStatus.RETURN_REQUESTED:
            for line in order.products:
                if line.status == LineItemStatus.RETURN_REQUESTED:
                    line.status = LineItemStatus.DELIVERED
        else:
            order.delivered_at = now
            for line in order.products:
                if line.status == LineItemStatus.PENDING:
                    line.status = LineItemStatus.DELIVERED
    elif target == OrderStatus.CANCELLED:
        order.cancelled_at = now
        order.shipped_from = None
        order.tracking_number = None
        order.shipping_carrier = None
    elif target == OrderStatus.RETURN_REQUESTED:
        order.return_requested_at = order.return_requested_at or now


class OrderStateMachine:
    """Admin and customer driven order status changes."""

    def __init__(
        self,
        store: DocumentStore,
        publisher: NotificationPublisher,
        courier: CourierAdapter | None = None,
    ):
        self.store = store
        self.publisher = publisher
        self.courier = courier

    def _transition(
        self,
        order_id: str,
        mutate: Callable[[Order, str], bool],
    ) -> Order:
        """
        Apply mutate to the latest stored order as a conditional update.

        mutate returns whether the status changed; an order_updated event is
        published only then.
        """
        changed = False

        def fn(current: dict[str, Any] | None) -> dict[str, Any]:
            nonlocal changed
            if current is None:
                raise OrderNotFoundError(order_id)
            order = Order.from_dict(current)
            changed = mutate(order, _utc_now())
            return order.to_dict()

        order = Order.from_dict(self.store.modify(ORDERS, order_id, fn))
        if changed:
            logger.info("Order %s is now %s", order.order_id, order.status.value)
            emit(self.publisher, ORDER_UPDATED, order_event(order))
        return order

    def update_status(
        self,
        order_id: str,
        status: OrderStatus,
        admin_id: str,
        shipped_from: str | None = None,
        tracking_number: str | None = None,
        shipping_carrier: str | None = None,
    ) -> Order:
        """
        Admin status change.

        Raises:
            InvalidInputError: Shipped without all shipping fields.
            IllegalTransitionError: Target not reachable from the current status.
            OrderNotFoundError: Unknown order.
        """
        if status == OrderStatus.SHIPPED:
            validate_shipping_fields(shipped_from, tracking_number, shipping_carrier)

        def mutate(order: Order, now: str) -> bool:
            order.last_updated_by = admin_id
            if order.status == status:
                if status == OrderStatus.SHIPPED:
                    order.shipped_from = shipped_from
                    order.tracking_number = tracking_number
                    order.shipping_carrier = shipping_carrier
                order.updated_at = now
                return False
            apply_order_status(order, status, now)
            if status == OrderStatus.SHIPPED:
                order.shipped_from = shipped_from
                order.tracking_number = tracking_number
                order.shipping_carrier = shipping_carrier
            return True

        return self._transition(order_id, mutate)

    def confirm_delivery(self, order_id: str, user_id: str) -> Order:
        """Owner confirms a shipped order arrived."""

        def mutate(order: Order, now: str) -> bool:
            if order.user_id != user_id:
                raise OrderNotFoundError(order_id)
            if order.status != OrderStatus.SHIPPED:
                raise IllegalTransitionError(
                    "order", order.status.value, OrderStatus.DELIVERED.value
                )
            apply_order_status(order, OrderStatus.DELIVERED, now)
            order.last_updated_by = user_id
            return True

        return self._transition(order_id, mutate)

    def cancel_order(self, order_id: str, user_id: str, reason: str | None = None) -> Order:
        def mutate(order: Order, now: str) -> bool:
            if order.user_id != user_id:
                raise OrderNotFoundError(order_id)
            if order.status not in CANCELLABLE:
                raise IllegalTransitionError(
                    "order", order.status.value, OrderStatus.CANCELLED.value
                )
            apply_order_status(order, OrderStatus.CANCELLED, now)
            order.cancellation_reason = reason
            order.last_updated_by = user_id
            return True

        return self._transition(order_id, mutate)

    def sync_courier_tracking(self, order_id: str) -> dict[str, Any]:
        """
        Fetch live courier tracking and mark a shipped order delivered when
        the courier reports delivery.

        Returns a dict with tracking, order_status and display_status.
        """
        if self.courier is None:
            raise CourierUnavailableError("fetch tracking", "courier not configured")
        doc = self.store.get(ORDERS, order_id)
        if doc is None:
            raise OrderNotFoundError(order_id)
        order = Order.from_dict(doc)
        if not order.courier_order_no:
            raise OrderNotFoundError(order_id)

        tracking = self.courier.fetch_tracking(order)
        stage = latest_scan_stage(tracking)
        display_status = stage if stage in DISPLAY_STAGES else order.status.value

        if stage == OrderStatus.DELIVERED.value and order.status == OrderStatus.SHIPPED:

            def mutate(current: Order, now: str) -> bool:
                if current.status != OrderStatus.SHIPPED:
                    return False
                apply_order_status(current, OrderStatus.DELIVERED, now)
                current.last_updated_by = "courier"
                return True

            order = self._transition(order_id, mutate)

        return {
            "tracking": tracking,
            "order_status": order.status.value,
            "display_status": display_status,
        }
