"""FastAPI REST API for order fulfillment."""

import logging
from typing import Any, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from .config import Settings
from .errors import (
    AmountMismatchError,
    ConflictError,
    CourierRejectedError,
    CourierUnavailableError,
    DiscountNotApplicableError,
    ExternalServiceError,
    GatewayTimeoutError,
    InvalidInputError,
    NotFoundError,
    OrderflowError,
    OrderNotFoundError,
    PaymentGatewayError,
    RateLimitExceededError,
    SignatureError,
    TransactionAbortError,
    TransactionConflictError,
    ValidationError,
)
from .models import (
    DiscountType,
    LineItemStatus,
    Order,
    OrderLineItem,
    OrderStatus,
    PaymentMethod,
    ShippingAddress,
)
from .orders import CartItem
from .payments import OrderDetails
from .services import Services
from .store import ORDERS
from .uploads import ImageUpload

logger = logging.getLogger(__name__)


# --- Pydantic Schemas ---


class CamelModel(BaseModel):
    """Base schema: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItemSchema(CamelModel):
    product_id: str
    color: str
    size: str
    quantity: int = Field(default=1, ge=1)
    price: Optional[float] = None


class OrderDetailsSchema(CamelModel):
    """Cart plus the flat shipping fields the storefront submits."""

    products: list[CartItemSchema]
    total_price: Optional[float] = None
    shipping_cost: float = 0
    discount_code: Optional[str] = None
    name: str = ""
    email: str = ""
    address: str = ""
    pincode: str = ""
    delivery_phone: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None


class OrderCreateRequest(OrderDetailsSchema):
    payment_method: str = "cod"


class VerifyAndCreateRequest(CamelModel):
    razorpay_order_id: str = ""
    razorpay_payment_id: str = ""
    razorpay_signature: str = ""
    order_details: OrderDetailsSchema


class VerifyPaymentRequest(CamelModel):
    order_id: str
    payment_id: str
    razorpay_signature: str


class StatusUpdateRequest(CamelModel):
    status: str
    shipped_from: Optional[str] = None
    tracking_number: Optional[str] = None
    shipping_carrier: Optional[str] = None


class CancelOrderRequest(CamelModel):
    reason: Optional[str] = None


class ReturnDecisionRequest(CamelModel):
    status: str


class ReplacementRequest(CamelModel):
    color: Optional[str] = None
    size: Optional[str] = None


class PreorderCreateRequest(CamelModel):
    product_id: str
    color: str
    size: str
    amount: Optional[float] = None
    discount_type: str = DiscountType.FIXED.value
    discount_value: Optional[float] = None


class DiscountCreateRequest(CamelModel):
    code: str
    discount_type: str
    discount_value: float
    expiry_date: str
    usage_limit: int = 1
    min_order_amount: float = 0
    allowed_users: list[str] = Field(default_factory=list)
    product_slugs: list[str] = Field(default_factory=list)
    min_quantity: int = 1


class DiscountApplyRequest(CamelModel):
    code: str
    products: list[CartItemSchema]
    shipping_cost: float = 0


class ShippingAddressSchema(CamelModel):
    name: str
    email: str
    address: str
    postal_code: str
    delivery_phone: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None


class LineItemSchema(CamelModel):
    line_id: str
    product_id: str
    product_name: str
    slug: str
    sku: str
    color: str
    size: str
    quantity: int
    price_at_order: float
    status: str
    return_issue_type: Optional[str] = None
    return_issue_desc: Optional[str] = None
    return_resolution_type: Optional[str] = None
    return_images: list[str] = Field(default_factory=list)
    exchange_to_color: Optional[str] = None
    exchange_to_size: Optional[str] = None
    replacement_order_id: Optional[str] = None
    pickup_status: str
    refund_amount: Optional[float] = None
    refund_date: Optional[str] = None
    refund_transaction_id: Optional[str] = None


class OrderSchema(CamelModel):
    order_id: str
    user_id: str
    products: list[LineItemSchema]
    shipping_address: ShippingAddressSchema
    payment_method: str
    total_price: float
    shipping_cost: float
    discount_total: float
    applied_discount_code: Optional[str] = None
    is_paid: bool
    paid_at: Optional[str] = None
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    status: str
    last_updated_by: Optional[str] = None
    delivered_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None
    return_requested_at: Optional[str] = None
    refund_status: str
    refunded_amount: float
    refund_transaction_id: Optional[str] = None
    refund_date: Optional[str] = None
    shipped_from: Optional[str] = None
    tracking_number: Optional[str] = None
    shipping_carrier: Optional[str] = None
    courier_order_no: Optional[str] = None
    created_at: str
    updated_at: str


class OrderListResponse(CamelModel):
    orders: list[OrderSchema]
    total_orders: int
    page: int
    pages: int


class PaymentIntentResponse(CamelModel):
    razorpay_order_id: str
    amount: int
    courier_status: Optional[str] = None
    courier_order_no: Optional[str] = None


class WebhookResponse(CamelModel):
    status: str
    order_id: Optional[str] = None


class RefundResponse(CamelModel):
    order_id: str
    line_id: str
    refund_id: str
    amount: float
    refund_date: str
    already_processed: bool


class RefundStatusResponse(CamelModel):
    order_id: str
    refund_status: str
    refunded_amount: float
    refund_transaction_id: str
    refund_date: Optional[str] = None


class TrackingResponse(CamelModel):
    tracking: dict[str, Any]
    order_status: str
    display_status: str


class ReturnItemSchema(CamelModel):
    line_id: str
    product_id: str
    product_name: str
    slug: str
    color: str
    size: str
    quantity: int
    price_at_order: float
    return_status: str
    return_issue_type: Optional[str] = None
    return_issue_desc: Optional[str] = None
    return_resolution_type: Optional[str] = None
    return_images: list[str] = Field(default_factory=list)
    exchange_to_color: Optional[str] = None
    exchange_to_size: Optional[str] = None
    pickup_status: str
    replacement_order_id: Optional[str] = None
    refund_amount: Optional[float] = None
    refund_transaction_id: Optional[str] = None


class ReturnGroupSchema(CamelModel):
    order_id: str
    user_id: str
    status: str
    created_at: str
    items: list[ReturnItemSchema]


class ReturnListResponse(CamelModel):
    returns: list[ReturnGroupSchema]
    count: int


class QuoteResponse(CamelModel):
    subtotal: float
    shipping_cost: float
    preorder_discount: float
    promo_discount: float
    discount_total: float
    total: float


class PreorderSchema(CamelModel):
    preorder_id: str
    user_id: str
    product_id: str
    color: str
    size: str
    amount_paid: float
    discount_type: str
    discount_value: float
    status: str
    created_at: str


class DiscountSchema(CamelModel):
    code: str
    discount_type: str
    discount_value: float
    expiry_date: str
    is_active: bool
    usage_limit: int
    used_count: int
    min_order_amount: float
    allowed_users: list[str]
    product_slugs: list[str]
    min_quantity: int
    created_at: str


class ErrorResponse(BaseModel):
    detail: str
    error_type: str


# --- Helper Functions ---


_services: Optional[Services] = None


def get_services() -> Services:
    """Get the process-wide Services, building them from the environment on first use."""
    global _services
    if _services is None:
        _services = Services.from_settings(Settings.from_env())
    return _services


def set_services(services: Optional[Services]) -> None:
    """Install the Services the endpoints use (CLI startup and tests)."""
    global _services
    _services = services


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


def current_admin(x_admin_id: Optional[str] = Header(default=None)) -> str:
    if not x_admin_id:
        raise HTTPException(status_code=401, detail="Admin authentication required")
    return x_admin_id


def _parse_enum(enum_cls: Any, value: str, field: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidInputError(f"Invalid {field}: {value}", field=field)


def line_to_schema(line: OrderLineItem) -> LineItemSchema:
    refund = line.refund
    return LineItemSchema(
        line_id=line.line_id,
        product_id=line.product_id,
        product_name=line.product_name,
        slug=line.slug,
        sku=line.sku,
        color=line.color,
        size=line.size,
        quantity=line.quantity,
        price_at_order=float(line.price_at_order),
        status=line.status.value,
        return_issue_type=line.return_issue_type,
        return_issue_desc=line.return_issue_desc,
        return_resolution_type=(
            line.return_resolution_type.value if line.return_resolution_type else None
        ),
        return_images=line.return_images,
        exchange_to_color=line.exchange_to_color,
        exchange_to_size=line.exchange_to_size,
        replacement_order_id=line.replacement_order_id,
        pickup_status=line.pickup_status.value,
        refund_amount=float(refund.amount) if refund and refund.amount is not None else None,
        refund_date=refund.date if refund else None,
        refund_transaction_id=refund.transaction_id if refund else None,
    )


def order_to_schema(order: Order) -> OrderSchema:
    """Convert dataclass Order to Pydantic schema."""
    return OrderSchema(
        order_id=order.order_id,
        user_id=order.user_id,
        products=[line_to_schema(line) for line in order.products],
        shipping_address=ShippingAddressSchema(**order.shipping_address.to_dict()),
        payment_method=order.payment_method.value,
        total_price=float(order.total_price),
        shipping_cost=float(order.shipping_cost),
        discount_total=float(order.discount_total),
        applied_discount_code=order.applied_discount_code,
        is_paid=order.is_paid,
        paid_at=order.paid_at,
        razorpay_order_id=order.razorpay_order_id,
        razorpay_payment_id=order.razorpay_payment_id,
        status=order.status.value,
        last_updated_by=order.last_updated_by,
        delivered_at=order.delivered_at,
        cancelled_at=order.cancelled_at,
        cancellation_reason=order.cancellation_reason,
        return_requested_at=order.return_requested_at,
        refund_status=order.refund_status.value,
        refunded_amount=float(order.refunded_amount),
        refund_transaction_id=order.refund_transaction_id,
        refund_date=order.refund_date,
        shipped_from=order.shipped_from,
        tracking_number=order.tracking_number,
        shipping_carrier=order.shipping_carrier,
        courier_order_no=order.courier_order_no,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def _order_list(orders: list[Order], total: int, page: int, limit: int) -> OrderListResponse:
    return OrderListResponse(
        orders=[order_to_schema(o) for o in orders],
        total_orders=total,
        page=page,
        pages=(total + limit - 1) // limit,
    )


def _cart(products: list[CartItemSchema]) -> list[CartItem]:
    return [
        CartItem(
            product_id=p.product_id,
            color=p.color,
            size=p.size,
            quantity=p.quantity,
            price=p.price,
        )
        for p in products
    ]


def _order_details(request: OrderDetailsSchema) -> OrderDetails:
    return OrderDetails(
        items=_cart(request.products),
        shipping_address=ShippingAddress(
            name=request.name,
            email=request.email,
            address=request.address,
            postal_code=request.pincode,
            delivery_phone=request.delivery_phone,
            city=request.city,
            state=request.state,
        ),
        shipping_cost=request.shipping_cost,
        declared_total=request.total_price,
        discount_code=request.discount_code,
    )


def _images(files: list[UploadFile]) -> list[ImageUpload]:
    return [
        ImageUpload(
            filename=f.filename or "image",
            content_type=f.content_type or "",
            content=f.file.read(),
        )
        for f in files
    ]


# --- FastAPI App ---


app = FastAPI(
    title="orderflow API",
    description="REST API for order placement, payment verification and returns",
    version="0.1.0",
)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes; the most specific class wins
ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    DiscountNotApplicableError: 400,
    SignatureError: 400,
    AmountMismatchError: 400,
    RateLimitExceededError: 429,
    ExternalServiceError: 502,
    PaymentGatewayError: 502,
    GatewayTimeoutError: 504,
    CourierUnavailableError: 503,
    CourierRejectedError: 400,
    TransactionConflictError: 500,
    TransactionAbortError: 500,
}


def status_code_for(exc: OrderflowError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(OrderflowError)
async def orderflow_error_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    """Map OrderflowError subclasses to appropriate HTTP responses."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


# --- Endpoints ---


@app.get("/health")
def health_check():
    """Health check endpoint."""
    services = get_services()
    return {
        "status": "ok",
        "order_count": len(services.store.find(ORDERS)),
        "courier_configured": services.courier is not None,
    }


# --- Checkout Endpoints ---


@app.post("/orders", response_model=OrderSchema, status_code=201)
def place_order(
    request: OrderCreateRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
):
    """Place a cash-on-delivery order."""
    if request.payment_method != PaymentMethod.COD.value:
        raise InvalidInputError(
            "Only cash on delivery orders can be placed here", field="paymentMethod"
        )
    details = _order_details(request)
    order = get_services().orders.create_order(
        user_id,
        details.items,
        details.shipping_address,
        PaymentMethod.COD,
        declared_total=details.declared_total,
        shipping_cost=details.shipping_cost,
        discount_code=details.discount_code,
        defer=background_tasks.add_task,
    )
    return order_to_schema(order)


@app.post("/orders/payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(request: OrderDetailsSchema, user_id: str = Depends(current_user)):
    """Validate a prepaid cart, check the courier, and open a gateway order."""
    intent = get_services().payments.create_payment_intent(user_id, _order_details(request))
    return PaymentIntentResponse(
        razorpay_order_id=intent.razorpay_order_id,
        amount=intent.amount,
        courier_status=intent.courier_status,
        courier_order_no=intent.courier_order_no,
    )


@app.post("/orders/verify-and-create", response_model=OrderSchema, status_code=201)
def verify_and_create(
    request: VerifyAndCreateRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
):
    """Verify a checkout signature and create the paid order."""
    order = get_services().payments.verify_and_create(
        user_id,
        request.razorpay_order_id,
        request.razorpay_payment_id,
        request.razorpay_signature,
        _order_details(request.order_details),
        defer=background_tasks.add_task,
    )
    return order_to_schema(order)


@app.post("/orders/verify-payment", response_model=WebhookResponse)
def verify_payment(request: VerifyPaymentRequest, user_id: str = Depends(current_user)):
    """Confirm payment of an existing order from the checkout signature."""
    result = get_services().payments.verify_payment(
        request.order_id, user_id, request.payment_id, request.razorpay_signature
    )
    return WebhookResponse(
        status="already_paid" if result.already_paid else "paid", order_id=result.order_id
    )


@app.post("/orders/webhook", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(default=None),
):
    """
    Gateway payment webhook.

    The body is read raw so the signature is checked over the exact bytes sent.
    Payments for orders this service does not know are acknowledged and ignored.
    """
    raw_body = await request.body()
    source_ip = request.client.host if request.client else "unknown"
    try:
        result = await run_in_threadpool(
            get_services().payments.handle_webhook, raw_body, x_razorpay_signature, source_ip
        )
    except OrderNotFoundError as e:
        logger.warning("Ignoring webhook: %s", e)
        return WebhookResponse(status="ignored")
    return WebhookResponse(
        status="already_paid" if result.already_paid else "paid", order_id=result.order_id
    )


@app.post("/discounts/apply", response_model=QuoteResponse)
def apply_discount(request: DiscountApplyRequest, user_id: str = Depends(current_user)):
    """Price a cart with a promo code without redeeming it."""
    quote = get_services().orders.quote_order(
        user_id, _cart(request.products), request.shipping_cost, request.code
    )
    return QuoteResponse(
        subtotal=float(quote.subtotal),
        shipping_cost=float(quote.shipping_cost),
        preorder_discount=float(quote.preorder_discount),
        promo_discount=float(quote.promo_discount),
        discount_total=float(quote.discount_total),
        total=float(quote.total),
    )


@app.post("/preorders", response_model=PreorderSchema, status_code=201)
def create_preorder(request: PreorderCreateRequest, user_id: str = Depends(current_user)):
    preorder = get_services().ledger.create_preorder(
        user_id,
        request.product_id,
        request.color,
        request.size,
        amount=request.amount,
        discount_type=_parse_enum(DiscountType, request.discount_type, "discountType"),
        discount_value=request.discount_value,
    )
    return PreorderSchema(**preorder.to_dict())


# --- Customer Order Endpoints ---


@app.get("/orders/mine", response_model=OrderListResponse)
def list_my_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    product: Optional[str] = Query(default=None),
    order_id: Optional[str] = Query(default=None, alias="orderId"),
    user_id: str = Depends(current_user),
):
    """List the caller's orders, newest first."""
    orders, total = get_services().orders.list_user_orders(
        user_id, page=page, limit=limit, product=product, order_id=order_id
    )
    return _order_list(orders, total, page, limit)


@app.get("/orders/track", response_model=OrderListResponse)
def track_orders(user_id: str = Depends(current_user)):
    """The caller's orders that are still on their way."""
    orders = get_services().orders.active_orders(user_id)
    if not orders:
        raise HTTPException(status_code=404, detail="No active order found for this user.")
    return _order_list(orders, len(orders), 1, max(len(orders), 1))


@app.get("/orders/{order_id}", response_model=OrderSchema)
def get_order(order_id: str, user_id: str = Depends(current_user)):
    return order_to_schema(get_services().orders.get_user_order(order_id, user_id))


@app.put("/orders/{order_id}/confirm-delivery", response_model=OrderSchema)
def confirm_delivery(order_id: str, user_id: str = Depends(current_user)):
    return order_to_schema(get_services().state_machine.confirm_delivery(order_id, user_id))


@app.post("/orders/{order_id}/cancel", response_model=OrderSchema)
def cancel_order(
    order_id: str,
    request: Optional[CancelOrderRequest] = None,
    user_id: str = Depends(current_user),
):
    reason = request.reason if request else None
    return order_to_schema(get_services().state_machine.cancel_order(order_id, user_id, reason))


@app.get("/orders/{order_id}/refund-status", response_model=RefundStatusResponse)
def refund_status(order_id: str, user_id: str = Depends(current_user)):
    status = get_services().returns.refund_status(order_id, user_id)
    return RefundStatusResponse(
        order_id=status["order_id"],
        refund_status=status["refund_status"],
        refunded_amount=float(status["refunded_amount"]),
        refund_transaction_id=status["refund_transaction_id"],
        refund_date=status["refund_date"],
    )


@app.get("/orders/{order_id}/courier-tracking", response_model=TrackingResponse)
def courier_tracking(order_id: str, user_id: str = Depends(current_user)):
    """Live courier tracking; marks the order delivered when the courier says so."""
    services = get_services()
    services.orders.get_user_order(order_id, user_id)
    result = services.state_machine.sync_courier_tracking(order_id)
    return TrackingResponse(**result)


def _request_return(
    order_id: str,
    line_key: Optional[str],
    user_id: str,
    return_issue_type: str,
    return_issue_desc: str,
    return_resolution_type: str,
    selected_color: Optional[str],
    selected_size: Optional[str],
    return_images: list[UploadFile],
) -> OrderSchema:
    order = get_services().returns.request_return(
        order_id,
        user_id,
        line_key,
        return_issue_type,
        return_issue_desc,
        return_resolution_type,
        _images(return_images),
        selected_color=selected_color,
        selected_size=selected_size,
    )
    return order_to_schema(order)


@app.post("/orders/{order_id}/return", response_model=OrderSchema)
def request_order_return(
    order_id: str,
    return_issue_type: str = Form(default="", alias="returnIssueType"),
    return_issue_desc: str = Form(default="", alias="returnIssueDesc"),
    return_resolution_type: str = Form(default="", alias="returnResolutionType"),
    selected_color: Optional[str] = Form(default=None, alias="selectedColor"),
    selected_size: Optional[str] = Form(default=None, alias="selectedSize"),
    return_images: list[UploadFile] = File(default=[], alias="returnImages"),
    user_id: str = Depends(current_user),
):
    """Return every delivered line of an order."""
    return _request_return(
        order_id, None, user_id, return_issue_type, return_issue_desc,
        return_resolution_type, selected_color, selected_size, return_images,
    )


@app.post("/orders/{order_id}/return/{product_id}", response_model=OrderSchema)
def request_line_return(
    order_id: str,
    product_id: str,
    return_issue_type: str = Form(default="", alias="returnIssueType"),
    return_issue_desc: str = Form(default="", alias="returnIssueDesc"),
    return_resolution_type: str = Form(default="", alias="returnResolutionType"),
    selected_color: Optional[str] = Form(default=None, alias="selectedColor"),
    selected_size: Optional[str] = Form(default=None, alias="selectedSize"),
    return_images: list[UploadFile] = File(default=[], alias="returnImages"),
    user_id: str = Depends(current_user),
):
    """Return one line, addressed by line id or by a product id unique in the order."""
    return _request_return(
        order_id, product_id, user_id, return_issue_type, return_issue_desc,
        return_resolution_type, selected_color, selected_size, return_images,
    )


@app.post("/orders/{order_id}/cancel-return", response_model=OrderSchema)
def cancel_order_return(order_id: str, user_id: str = Depends(current_user)):
    return order_to_schema(get_services().returns.cancel_return(order_id, user_id))


@app.post("/orders/{order_id}/cancel-return/{product_id}", response_model=OrderSchema)
def cancel_line_return(order_id: str, product_id: str, user_id: str = Depends(current_user)):
    return order_to_schema(get_services().returns.cancel_return(order_id, user_id, product_id))


# --- Admin Endpoints ---


@app.get("/admin/orders", response_model=OrderListResponse)
def admin_list_orders(
    status: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    admin_id: str = Depends(current_admin),
):
    wanted = _parse_enum(OrderStatus, status, "status") if status else None
    orders, total = get_services().orders.list_orders(wanted, page=page, limit=limit)
    return _order_list(orders, total, page, limit)


@app.put("/admin/orders/{order_id}/status", response_model=OrderSchema)
def admin_update_status(
    order_id: str, request: StatusUpdateRequest, admin_id: str = Depends(current_admin)
):
    """Move an order through its lifecycle. Shipped requires all shipping fields."""
    order = get_services().state_machine.update_status(
        order_id,
        _parse_enum(OrderStatus, request.status, "status"),
        admin_id,
        shipped_from=request.shipped_from,
        tracking_number=request.tracking_number,
        shipping_carrier=request.shipping_carrier,
    )
    return order_to_schema(order)


@app.get("/admin/returns", response_model=ReturnListResponse)
def admin_list_returns(admin_id: str = Depends(current_admin)):
    groups = get_services().returns.list_returns()
    return ReturnListResponse(
        returns=[ReturnGroupSchema(**g) for g in groups],
        count=len(groups),
    )


@app.put("/admin/returns/{order_id}/{product_id}", response_model=OrderSchema)
def admin_decide_return(
    order_id: str,
    product_id: str,
    request: ReturnDecisionRequest,
    admin_id: str = Depends(current_admin),
):
    """Approve or reject a return request."""
    order = get_services().returns.decide_return(
        order_id,
        product_id,
        _parse_enum(LineItemStatus, request.status, "status"),
        admin_id,
    )
    return order_to_schema(order)


@app.put("/admin/returns/{order_id}/{product_id}/pickup", response_model=OrderSchema)
def admin_confirm_pickup(order_id: str, product_id: str, admin_id: str = Depends(current_admin)):
    return order_to_schema(get_services().returns.confirm_pickup(order_id, product_id, admin_id))


@app.post(
    "/admin/returns/{order_id}/{product_id}/replacement",
    response_model=OrderSchema,
    status_code=201,
)
def admin_create_replacement(
    order_id: str,
    product_id: str,
    background_tasks: BackgroundTasks,
    request: Optional[ReplacementRequest] = None,
    admin_id: str = Depends(current_admin),
):
    """Create the free replacement order for a picked-up return."""
    replacement = get_services().returns.create_replacement(
        order_id,
        product_id,
        admin_id,
        color=request.color if request else None,
        size=request.size if request else None,
        defer=background_tasks.add_task,
    )
    return order_to_schema(replacement)


@app.post("/admin/orders/{order_id}/{product_id}/refund", response_model=RefundResponse)
def admin_process_refund(order_id: str, product_id: str, admin_id: str = Depends(current_admin)):
    """Refund a picked-up line through the payment gateway."""
    result = get_services().returns.process_refund(order_id, product_id, admin_id)
    return RefundResponse(
        order_id=result.order_id,
        line_id=result.line_id,
        refund_id=result.refund_id,
        amount=float(result.amount),
        refund_date=result.refund_date,
        already_processed=result.already_processed,
    )


@app.post("/admin/discounts", response_model=DiscountSchema, status_code=201)
def admin_create_discount(request: DiscountCreateRequest, admin_id: str = Depends(current_admin)):
    discount = get_services().ledger.create_discount(
        request.code,
        _parse_enum(DiscountType, request.discount_type, "discountType"),
        request.discount_value,
        request.expiry_date,
        usage_limit=request.usage_limit,
        min_order_amount=request.min_order_amount,
        allowed_users=request.allowed_users,
        product_slugs=request.product_slugs,
        min_quantity=request.min_quantity,
    )
    return DiscountSchema(**discount.to_dict())
