"""
Subscription-tiered pricing.

One discount table serves both the on-screen quote and the amount sent to
Stripe. Prices stay as full-precision ``Decimal`` values; rounding to the
currency's minor unit happens only in ``to_minor_units`` when building the
checkout session.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional

from models import Role, SubscriptionPlan

DISCOUNT_RATES: dict[SubscriptionPlan, Decimal] = {
    SubscriptionPlan.NONE: Decimal("0.00"),
    SubscriptionPlan.BASIC: Decimal("0.10"),
    SubscriptionPlan.PREMIUM: Decimal("0.20"),
    SubscriptionPlan.ENTERPRISE: Decimal("0.30"),
    SubscriptionPlan.PROVIDER: Decimal("0.00"),
}

MINOR_UNIT = Decimal("0.01")


def as_decimal(value: Any) -> Decimal:
    """Coerce a price coming back from PostgREST (int, float, str) to Decimal."""
    if isinstance(value, Decimal):
        return value
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def discount_rate(plan: SubscriptionPlan | str | None, role: Role | str = Role.CUSTOMER) -> Decimal:
    if Role(role) != Role.CUSTOMER:
        return Decimal("0.00")
    return DISCOUNT_RATES[SubscriptionPlan(plan or SubscriptionPlan.NONE)]


def price(service_price: Any, plan: SubscriptionPlan | str | None, role: Role | str = Role.CUSTOMER) -> Decimal:
    amount = as_decimal(service_price)
    if amount < 0:
        raise ValueError(f"Service price must be non-negative, got {amount}")
    return amount * (Decimal("1") - discount_rate(plan, role))


def to_minor_units(amount: Decimal) -> int:
    """Round half-up to cents and return the integer amount Stripe expects."""
    return int((amount / MINOR_UNIT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def summarize(prices: Iterable[Decimal], plan: Optional[SubscriptionPlan], role: Role | str = Role.CUSTOMER) -> dict[str, Decimal]:
    """Totals for the pay-services page. Presentation only; each booking is charged on its own."""
    original_total = Decimal("0")
    total = Decimal("0")
    for p in prices:
        original_total += as_decimal(p)
        total += price(p, plan, role)

    return {
        "total": total,
        "original_total": original_total,
        "savings": original_total - total,
    }
