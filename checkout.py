"""
Checkout rules for Curated Crate

Order totals, coupon validation, simulated card payments and the order status lifecycle.
Nothing in here talks to MongoDB: route handlers load the documents and pass them in,
so every rule can be exercised without a database.

All money is handled as Decimal and quantized to cents with ROUND_HALF_UP.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Mapping, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
FREE_SHIPPING_THRESHOLD = Decimal("50")
FLAT_SHIPPING = Decimal("9.99")
TAX_RATE = Decimal("0.08")


class CheckoutError(Exception):
    """Base for business rule failures; rendered as {"success": false, "message": ...}"""
    status_code = 400
    default_message = "Checkout failed."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


def to_money(value) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ----------------------- Totals -----------------------
@dataclass(frozen=True)
class PriceSummary:
    subtotal: Decimal
    discount: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal

    @property
    def subtotal_after_discount(self) -> Decimal:
        return self.subtotal - self.discount

    def as_dict(self) -> dict:
        return {
            "subtotal": float(self.subtotal),
            "discount": float(self.discount),
            "subtotalAfterDiscount": float(self.subtotal_after_discount),
            "shipping": float(self.shipping),
            "tax": float(self.tax),
            "total": float(self.total),
        }


def calculate_subtotal(items: Iterable[Mapping]) -> Decimal:
    subtotal = ZERO
    for item in items:
        price = Decimal(str(item["price"]))
        quantity = int(item["quantity"])
        if price < 0 or quantity < 0:
            raise ValueError("Line items need a non-negative price and quantity")
        subtotal += price * quantity
    return to_money(subtotal)


def calculate_totals(items: Iterable[Mapping], discount_amount=ZERO, free_shipping: bool = False) -> PriceSummary:
    """
    Price a list of {price, quantity} lines.

    Shipping is free when the subtotal exceeds the threshold (or a free-shipping coupon
    applies); tax is charged on the discounted subtotal only, never on shipping.
    """
    subtotal = calculate_subtotal(items)
    discount = min(max(to_money(discount_amount), ZERO), subtotal)
    if free_shipping or subtotal > FREE_SHIPPING_THRESHOLD:
        shipping = ZERO
    else:
        shipping = FLAT_SHIPPING
    taxable = subtotal - discount
    tax = to_money(taxable * TAX_RATE)
    total = to_money(taxable + shipping + tax)
    return PriceSummary(subtotal=subtotal, discount=discount, shipping=shipping, tax=tax, total=total)


# ----------------------- Coupons -----------------------
class CouponError(CheckoutError):
    pass


class CouponNotFound(CouponError):
    status_code = 404
    default_message = "Invalid or inactive discount code."


class CouponInactive(CouponError):
    status_code = 404
    default_message = "Invalid or inactive discount code."


class CouponExpired(CouponError):
    default_message = "Discount code has expired."


class CouponUsageLimitReached(CouponError):
    default_message = "Discount code has reached its maximum usage."


@dataclass(frozen=True)
class CouponResult:
    code: str
    type: str
    value: float
    amount: Decimal
    free_shipping: bool = False

    def as_dict(self) -> dict:
        return {
            "code": self.code,
            "type": self.type,
            "value": self.value,
            "discountAmount": float(self.amount),
            "freeShipping": self.free_shipping,
        }


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def usage_exhausted(discount: Mapping) -> bool:
    max_uses = discount.get("maxUses")
    return max_uses is not None and discount.get("uses", 0) >= max_uses


def validate_coupon(discount: Optional[Mapping], cart_subtotal, now: Optional[datetime] = None) -> CouponResult:
    """
    Check a discount document against a cart subtotal and work out what it is worth.

    `discount` is the document found by code, or None when the lookup missed.
    Raises a CouponError subclass when the code cannot be used.
    """
    if discount is None:
        raise CouponNotFound()
    if not discount.get("isActive", True):
        raise CouponInactive()

    now = now or datetime.now(timezone.utc)
    expiry = ensure_utc(discount.get("expiryDate"))
    if expiry is not None and expiry < now:
        raise CouponExpired()
    if usage_exhausted(discount):
        raise CouponUsageLimitReached()

    subtotal = to_money(cart_subtotal)
    if subtotal < 0:
        raise CouponError("Invalid cart subtotal provided.")

    kind = discount["type"]
    value = Decimal(str(discount.get("value", 0)))
    free_shipping = False
    if kind == "percentage":
        amount = subtotal * value / 100
    elif kind == "fixed":
        amount = value
    elif kind == "free-shipping":
        amount = ZERO
        free_shipping = True
    else:
        raise CouponError(f"Unsupported discount type '{kind}'.")

    amount = min(max(to_money(amount), ZERO), subtotal)
    return CouponResult(
        code=discount["code"],
        type=kind,
        value=float(value),
        amount=amount,
        free_shipping=free_shipping,
    )


# ----------------------- Payment (simulated) -----------------------
class PaymentDeclined(CheckoutError):
    status_code = 402
    default_message = "Payment failed. Please try again with a different card."


@dataclass
class PaymentOutcome:
    status: str
    is_paid: bool
    paid_at: Optional[datetime] = None
    result: dict = field(default_factory=dict)


def simulate_payment(method: str, total, details: Optional[Mapping] = None, email: Optional[str] = None,
                     now: Optional[datetime] = None) -> PaymentOutcome:
    """
    Stand-in for a card processor.

    Cards starting with 4 are approved, cards starting with 5 are declined,
    a zero total is always paid, anything else stays pending.
    """
    now = now or datetime.now(timezone.utc)
    total = to_money(total)
    txn = uuid4().hex[:16]
    if method != "card":
        return PaymentOutcome(status="pending", is_paid=False)

    card_number = str((details or {}).get("cardNumber") or "").replace(" ", "")
    if total > 0 and card_number.startswith("4"):
        return PaymentOutcome(
            status="paid",
            is_paid=True,
            paid_at=now,
            result={"id": f"mock_txn_{txn}", "status": "COMPLETED", "updateTime": now.isoformat(), "emailAddress": email},
        )
    if total > 0 and card_number.startswith("5"):
        logger.info("Simulated card decline for %s", email)
        raise PaymentDeclined()
    if total == 0:
        return PaymentOutcome(
            status="paid",
            is_paid=True,
            paid_at=now,
            result={"id": f"mock_txn_free_{txn}", "status": "FREE_ORDER", "message": "Order with zero total price."},
        )
    return PaymentOutcome(
        status="pending",
        is_paid=False,
        result={"id": f"mock_txn_pending_{txn}", "status": "PENDING", "message": "Payment initiated, awaiting confirmation."},
    )


# ----------------------- Order status -----------------------
ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled", "refunded", "completed")

ORDER_TRANSITIONS = {
    "pending": {"processing", "shipped", "cancelled", "refunded"},
    "processing": {"shipped", "cancelled", "refunded"},
    "shipped": {"delivered"},
    "delivered": {"completed"},
    "completed": set(),
    "cancelled": set(),
    "refunded": set(),
}


class InvalidStatusTransition(CheckoutError):
    default_message = "Invalid order status change."


def check_status_transition(current: str, target: str) -> bool:
    """Return True when `target` is a real change, False for a no-op; raise if not allowed."""
    if target not in ORDER_TRANSITIONS:
        raise InvalidStatusTransition(f"Unknown order status '{target}'.")
    current = current or "pending"
    if current == target:
        return False
    if target not in ORDER_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(f"Cannot change order status from '{current}' to '{target}'.")
    return True
