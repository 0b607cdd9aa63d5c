"""Custom exceptions for orderflow."""


class OrderflowError(Exception):
    """Base exception for all orderflow errors."""

    pass


# --- Validation ---


class ValidationError(OrderflowError):
    """Malformed or missing input. Never retried."""

    pass


class InvalidInputError(ValidationError):
    """Raised when a request is missing fields or carries invalid values."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class AmbiguousLineItemError(ValidationError):
    """Raised when a product id matches more than one line of an order."""

    def __init__(self, order_id: str, key: str, count: int):
        self.order_id = order_id
        self.key = key
        super().__init__(
            f"Product {key} appears in {count} lines of order {order_id}; use the line id"
        )


# --- Not found ---


class NotFoundError(OrderflowError):
    """A referenced entity does not exist."""

    pass


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class VariantNotFoundError(NotFoundError):
    """Raised when a color or size is absent from a product."""

    def __init__(self, product_name: str, color: str, size: str | None = None):
        self.product_name = product_name
        self.color = color
        self.size = size
        if size is None:
            msg = f"Color '{color}' not found for product '{product_name}'"
        else:
            msg = f"Size '{size}' not found for color '{color}' in product '{product_name}'"
        super().__init__(msg)


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class LineItemNotFoundError(NotFoundError):
    def __init__(self, order_id: str, key: str):
        self.order_id = order_id
        self.key = key
        super().__init__(f"Product {key} not found in order {order_id}")


class DiscountNotFoundError(NotFoundError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Invalid discount code: {code}")


# --- Conflicts ---


class ConflictError(OrderflowError):
    """The requested change does not fit the current state. Never retried."""

    pass


class IllegalTransitionError(ConflictError):
    """Raised when a status change is not in the transition table."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot change {entity} status from {current} to {target}")


class DuplicateRedemptionError(ConflictError):
    def __init__(self, code: str, user_id: str):
        self.code = code
        self.user_id = user_id
        super().__init__(f"Discount {code} has already been used by user {user_id}")


class DiscountNotApplicableError(ConflictError):
    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(f"Discount {code} cannot be applied: {reason}")


class AlreadyPaidError(ConflictError):
    """Raised when an order is already paid. Callers treat it as success."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order already paid: {order_id}")


class RefundNotEligibleError(ConflictError):
    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Refund not eligible for order {order_id}: {reason}")


class RefundExceedsCaptureError(ConflictError):
    """Raised when a refund is larger than the remaining refundable headroom."""

    def __init__(self, order_id: str, refund_amount: int, headroom: int):
        self.order_id = order_id
        self.refund_amount = refund_amount
        self.headroom = headroom
        super().__init__(
            f"Refund amount {refund_amount} exceeds refundable amount {headroom} "
            f"for order {order_id}"
        )


class RefundInProgressError(ConflictError):
    def __init__(self, order_id: str, key: str):
        self.order_id = order_id
        self.key = key
        super().__init__(f"A refund for {key} in order {order_id} is already in progress")


# --- Payment verification ---


class SignatureError(OrderflowError):
    """Signature mismatch. Logged as a security event, never retried."""

    pass


class InvalidSignatureError(SignatureError):
    def __init__(self, source: str):
        self.source = source
        super().__init__(f"Invalid {source} signature")


class AmountMismatchError(OrderflowError):
    def __init__(self, order_id: str, expected: int, received: int):
        self.order_id = order_id
        self.expected = expected
        self.received = received
        super().__init__(
            f"Payment amount mismatch for order {order_id}: "
            f"expected {expected}, received {received}"
        )


class RateLimitExceededError(OrderflowError):
    def __init__(self, source: str):
        self.source = source
        super().__init__("Too many requests from this IP, please try again later.")


# --- External services ---


class ExternalServiceError(OrderflowError):
    """A collaborator (gateway, courier, notification bus) failed."""

    def __init__(self, service: str, message: str, retryable: bool = False):
        self.service = service
        self.retryable = retryable
        super().__init__(f"{service}: {message}")


class GatewayTimeoutError(ExternalServiceError):
    """The payment gateway did not answer in time. Safe to retry."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__("payment gateway", f"{operation} timed out", retryable=True)


class PaymentGatewayError(ExternalServiceError):
    """The payment gateway rejected a request."""

    def __init__(
        self,
        operation: str,
        detail: str,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        self.operation = operation
        self.status_code = status_code
        super().__init__("payment gateway", f"{operation} failed: {detail}", retryable=retryable)


class CourierUnavailableError(ExternalServiceError):
    """Courier timed out or returned a server error. Safe to retry."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        super().__init__("courier", f"{operation} failed: {detail}", retryable=True)


class CourierRejectedError(ExternalServiceError):
    """Courier definitively refused the shipment."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        super().__init__("courier", f"Shipping not possible: {detail}")


class NotificationError(ExternalServiceError):
    def __init__(self, event: str, detail: str):
        self.event = event
        super().__init__("notification bus", f"{event}: {detail}", retryable=True)


# --- Store ---


class TransactionConflictError(OrderflowError):
    """A concurrent writer changed a document read by this transaction."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Concurrent modification of {collection}/{doc_id}")


class TransactionAbortError(OrderflowError):
    """Raised when a transaction keeps conflicting after all retries."""

    def __init__(self, attempts: int, reason: str):
        self.attempts = attempts
        super().__init__(f"Transaction aborted after {attempts} attempts: {reason}")
