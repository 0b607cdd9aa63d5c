"""Wiring of the order-fulfillment components."""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import httpx

from .config import Settings
from .courier import CourierAdapter, CourierClient
from .discounts import DiscountLedger
from .gateway import RazorpayClient
from .notifications import HttpNotificationPublisher, LoggingPublisher, NotificationPublisher
from .orders import OrderOrchestrator
from .payments import PaymentVerifier
from .ratelimit import RateLimiter
from .returns import ReturnWorkflow
from .state_machine import OrderStateMachine
from .store import DocumentStore
from .uploads import ImageUploader, LocalImageUploader

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every component, built once per process and shared by the API and CLI."""

    settings: Settings
    store: DocumentStore
    publisher: NotificationPublisher
    gateway: RazorpayClient
    courier: CourierAdapter | None
    ledger: DiscountLedger
    orders: OrderOrchestrator
    payments: PaymentVerifier
    state_machine: OrderStateMachine
    returns: ReturnWorkflow
    _clients: list[httpx.Client] = field(default_factory=list, repr=False)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: DocumentStore | None = None,
        publisher: NotificationPublisher | None = None,
        uploader: ImageUploader | None = None,
        gateway_transport: httpx.BaseTransport | None = None,
        courier_transport: httpx.BaseTransport | None = None,
        notification_transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "Services":
        """
        Build the component graph.

        Transports are injectable so tests can stand in for the gateway,
        courier and notification bus with httpx.MockTransport.
        """
        timeout = httpx.Timeout(settings.http_timeout_seconds)
        clients: list[httpx.Client] = []

        if store is None:
            store = DocumentStore(settings.data_dir, settings.transaction_retries)

        if publisher is None:
            if settings.notification_url:
                bus = httpx.Client(timeout=timeout, transport=notification_transport)
                clients.append(bus)
                publisher = HttpNotificationPublisher(settings.notification_url, bus)
            else:
                publisher = LoggingPublisher()

        gateway_http = httpx.Client(
            base_url=settings.razorpay_api_url, timeout=timeout, transport=gateway_transport
        )
        clients.append(gateway_http)
        gateway = RazorpayClient(
            settings.razorpay_key_id, settings.razorpay_key_secret, gateway_http, settings.currency
        )

        courier = None
        if settings.courier_create_url:
            courier_http = httpx.Client(timeout=timeout, transport=courier_transport)
            clients.append(courier_http)
            courier = CourierAdapter(
                CourierClient(
                    settings.courier_api_key,
                    settings.courier_create_url,
                    settings.courier_tracking_url,
                    courier_http,
                ),
                store,
                max_attempts=settings.courier_max_attempts,
                backoff_seconds=settings.courier_backoff_seconds,
                sleep=sleep,
            )
        else:
            logger.warning("No courier endpoint configured; orders will not be handed off")

        if uploader is None:
            upload_dir = settings.upload_dir or Path(settings.data_dir or ".") / "uploads"
            uploader = LocalImageUploader(upload_dir)

        ledger = DiscountLedger(store)
        orders = OrderOrchestrator(store, ledger, publisher, courier)
        payments = PaymentVerifier(
            store,
            orders,
            gateway,
            publisher,
            settings.razorpay_webhook_secret,
            rate_limiter=RateLimiter(
                settings.webhook_rate_limit, settings.webhook_rate_window_seconds
            ),
            courier=courier,
        )
        return cls(
            settings=settings,
            store=store,
            publisher=publisher,
            gateway=gateway,
            courier=courier,
            ledger=ledger,
            orders=orders,
            payments=payments,
            state_machine=OrderStateMachine(store, publisher, courier),
            returns=ReturnWorkflow(store, gateway, uploader, publisher, courier),
            _clients=clients,
        )

    def close(self) -> None:
        for client in self._clients:
            client.close()
