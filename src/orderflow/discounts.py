"""Discount ledger: preorder deposits and promotional codes.

Pricing order when both apply to a cart:

1. Preorder deductions, per line: the oldest matching pending preorder's
   rule (fixed amount, or a percentage of the unit price) plus every
   matching preorder's deposit.
2. One promotional code, evaluated on the merchandise subtotal left after
   preorder deductions.

The combined discount never exceeds the merchandise subtotal; shipping is
only reduced by a free_shipping code.
"""

import logging
from decimal import Decimal
from typing import Any

from .errors import (
    DiscountNotApplicableError,
    DiscountNotFoundError,
    DuplicateRedemptionError,
    InvalidInputError,
)
from .models import (
    Discount,
    DiscountType,
    OrderLineItem,
    Preorder,
    PreorderStatus,
)
from .store import DISCOUNTS, PREORDERS, DocumentStore, Transaction
from .utils import require_text, to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def preorder_discount(preorders: list[Preorder], line: OrderLineItem) -> Decimal:
    """Discount owed for a line given its matching preorders (oldest first)."""
    if not preorders:
        return ZERO
    rule = preorders[0]
    if rule.discount_type == DiscountType.PERCENTAGE:
        discount = line.price_at_order * rule.discount_value / 100
    elif rule.discount_type == DiscountType.FIXED:
        discount = rule.discount_value
    else:
        discount = ZERO
    # The deposit paid when reserving is always given back
    discount += sum((p.amount_paid for p in preorders), ZERO)
    return to_money(discount)


def _matching_preorders(
    docs: list[dict[str, Any]], user_id: str, line: OrderLineItem
) -> list[Preorder]:
    preorders = [Preorder.from_dict(d) for d in docs]
    matches = [
        p for p in preorders if p.matches(user_id, line.product_id, line.color, line.size)
    ]
    return sorted(matches, key=lambda p: p.created_at)


class DiscountLedger:
    """Computes and redeems preorder and promo-code discounts."""

    def __init__(self, store: DocumentStore):
        self.store = store

    # --- Preorders ---

    def create_preorder(
        self,
        user_id: str,
        product_id: str,
        color: str,
        size: str,
        amount: Any = None,
        discount_type: DiscountType = DiscountType.FIXED,
        discount_value: Any = None,
    ) -> Preorder:
        """Record a deposit-backed reservation."""
        if discount_type not in (DiscountType.FIXED, DiscountType.PERCENTAGE):
            raise InvalidInputError("Preorder discount must be fixed or percentage")
        preorder = Preorder.create(
            user_id=user_id,
            product_id=require_text(product_id, "productId"),
            color=require_text(color, "color"),
            size=require_text(size, "size"),
            amount_paid=to_money(amount) if amount is not None else None,
            discount_type=discount_type,
            discount_value=to_money(discount_value) if discount_value is not None else None,
        )
        self.store.put(PREORDERS, preorder.preorder_id, preorder.to_dict())
        logger.info("Preorder %s placed by %s for %s", preorder.preorder_id, user_id, product_id)
        return preorder

    def preview_preorders(self, user_id: str, line: OrderLineItem) -> tuple[Decimal, list[str]]:
        """Discount a line would get right now, without consuming anything."""
        docs = self.store.find(PREORDERS, lambda d: d.get("status") == PreorderStatus.PENDING.value)
        matches = _matching_preorders(docs, user_id, line)
        return preorder_discount(matches, line), [p.preorder_id for p in matches]

    def apply_preorders(
        self, txn: Transaction, user_id: str, line: OrderLineItem
    ) -> tuple[Decimal, list[str]]:
        """
        Fold matching pending preorders into a discount and mark them completed.

        Runs inside the order-creation transaction, so a preorder is only
        consumed if the order that consumed it commits.
        """
        docs = txn.find(PREORDERS, lambda d: d.get("status") == PreorderStatus.PENDING.value)
        matches = _matching_preorders(docs, user_id, line)
        if not matches:
            return ZERO, []
        discount = preorder_discount(matches, line)
        for preorder in matches:
            preorder.status = PreorderStatus.COMPLETED
            txn.put(PREORDERS, preorder.preorder_id, preorder.to_dict())
        logger.info(
            "Applied %d preorder(s) to %s for user %s: discount %s",
            len(matches), line.product_id, user_id, discount,
        )
        return discount, [p.preorder_id for p in matches]

    # --- Promo codes ---

    def create_discount(
        self,
        code: str,
        discount_type: DiscountType,
        discount_value: Any,
        expiry_date: str,
        usage_limit: int = 1,
        min_order_amount: Any = 0,
        allowed_users: list[str] | None = None,
        product_slugs: list[str] | None = None,
        min_quantity: int = 1,
    ) -> Discount:
        code = require_text(code, "code").upper()
        if usage_limit < 1:
            raise InvalidInputError("usageLimit must be at least 1", field="usageLimit")
        discount = Discount(
            code=code,
            discount_type=discount_type,
            discount_value=to_money(discount_value),
            expiry_date=require_text(expiry_date, "expiryDate"),
            usage_limit=usage_limit,
            min_order_amount=to_money(min_order_amount),
            allowed_users=list(allowed_users or []),
            product_slugs=[s.strip().lower() for s in (product_slugs or [])],
            min_quantity=min_quantity,
        )

        def insert(txn: Transaction) -> None:
            if txn.get(DISCOUNTS, code) is not None:
                raise InvalidInputError(f"Discount code already exists: {code}", field="code")
            txn.insert(DISCOUNTS, code, discount.to_dict())

        self.store.run_transaction(insert)
        return discount

    def evaluate(
        self,
        discount: Discount,
        user_id: str,
        subtotal: Decimal,
        lines: list[OrderLineItem],
        shipping_cost: Decimal = ZERO,
    ) -> Decimal:
        """
        Amount a code takes off a cart.

        Raises:
            DiscountNotApplicableError: If any eligibility rule fails.
            DuplicateRedemptionError: If the user already redeemed the code.
        """
        code = discount.code
        if not discount.is_active:
            raise DiscountNotApplicableError(code, "code is inactive")
        if discount.is_expired():
            raise DiscountNotApplicableError(code, "code expired")
        if discount.used_count >= discount.usage_limit:
            raise DiscountNotApplicableError(code, "usage limit reached")
        if user_id in discount.users_used:
            raise DuplicateRedemptionError(code, user_id)
        if discount.allowed_users and user_id not in discount.allowed_users:
            raise DiscountNotApplicableError(code, "not available for this user")
        if subtotal < discount.min_order_amount:
            raise DiscountNotApplicableError(
                code, f"minimum order amount is {discount.min_order_amount}"
            )

        eligible = lines
        if discount.product_slugs:
            eligible = [line for line in lines if line.slug.lower() in discount.product_slugs]
            if not eligible:
                raise DiscountNotApplicableError(code, "not valid for any product in the cart")
        if sum(line.quantity for line in eligible) < discount.min_quantity:
            raise DiscountNotApplicableError(
                code, f"requires at least {discount.min_quantity} items"
            )

        if discount.discount_type == DiscountType.PERCENTAGE:
            amount = subtotal * discount.discount_value / 100
        elif discount.discount_type == DiscountType.FIXED:
            amount = discount.discount_value
        elif discount.discount_type == DiscountType.FREE_SHIPPING:
            return to_money(shipping_cost)
        else:
            amount = ZERO
        return to_money(min(amount, subtotal))

    def _load(self, doc: dict[str, Any] | None, code: str) -> Discount:
        if doc is None:
            raise DiscountNotFoundError(code)
        return Discount.from_dict(doc)

    def quote_code(
        self,
        code: str,
        user_id: str,
        subtotal: Decimal,
        lines: list[OrderLineItem],
        shipping_cost: Decimal = ZERO,
    ) -> Decimal:
        """Check a code against a cart without redeeming it."""
        code = require_text(code, "code").upper()
        discount = self._load(self.store.get(DISCOUNTS, code), code)
        return self.evaluate(discount, user_id, subtotal, lines, shipping_cost)

    def redeem_code(
        self,
        txn: Transaction,
        code: str,
        user_id: str,
        subtotal: Decimal,
        lines: list[OrderLineItem],
        shipping_cost: Decimal = ZERO,
    ) -> Decimal:
        """
        Redeem a code inside the order-creation transaction.

        The usage counter is written through the transaction, so two orders
        racing for the last use conflict at commit and only one succeeds.
        """
        code = require_text(code, "code").upper()
        discount = self._load(txn.get(DISCOUNTS, code), code)
        amount = self.evaluate(discount, user_id, subtotal, lines, shipping_cost)
        discount.used_count += 1
        discount.users_used.append(user_id)
        txn.put(DISCOUNTS, code, discount.to_dict())
        logger.info("Discount %s redeemed by %s for %s", code, user_id, amount)
        return amount

    def get_discount(self, code: str) -> Discount:
        code = code.upper()
        return self._load(self.store.get(DISCOUNTS, code), code)
