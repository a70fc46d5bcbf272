"""Pricing engine: pure fee breakdown for a sale.

Commission tiers (lower-inclusive, upper-exclusive):
    [0, 5000)      -> 15%
    [5000, 15000)  -> 10%
    [15000, inf)   -> 5%

Shipping is a flat constant here; refined quoting belongs to the shipping
provider. Insurance is delegated to an injected rate function of item price.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from provenance_exchange.domain.models import PricingBreakdown

if TYPE_CHECKING:
    from collections.abc import Callable

CENT = Decimal("0.01")

FLAT_SHIPPING_COST = Decimal("25")
DEFAULT_INSURANCE_RATE = Decimal("0.02")

# (lower bound, rate), checked from the highest bound down
COMMISSION_TIERS: tuple[tuple[Decimal, Decimal], ...] = (
    (Decimal("15000"), Decimal("0.05")),
    (Decimal("5000"), Decimal("0.10")),
    (Decimal("0"), Decimal("0.15")),
)


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def commission_rate(item_price: Decimal) -> Decimal:
    for lower_bound, rate in COMMISSION_TIERS:
        if item_price >= lower_bound:
            return rate
    raise ValueError(f"Item price must be non-negative, got {item_price}")


def commission_fee(item_price: Decimal) -> Decimal:
    return _money(item_price * commission_rate(item_price))


def flat_rate_insurance(rate: Decimal = DEFAULT_INSURANCE_RATE) -> Callable[[Decimal], Decimal]:
    """Build an insurance function charging a fixed share of the item price."""

    def insurance(item_price: Decimal) -> Decimal:
        return item_price * rate

    return insurance


def compute_breakdown(
    item_price: Decimal,
    verification_cost: Decimal,
    insurance: Callable[[Decimal], Decimal] | None = None,
    shipping_cost: Decimal = FLAT_SHIPPING_COST,
) -> PricingBreakdown:
    """Compute the full buyer-facing breakdown for a sale.

    Args:
        item_price: Agreed sale price. Must be positive.
        verification_cost: Fee of the chosen authentication partner.
        insurance: Rate function of item price (defaults to 2%).
        shipping_cost: Flat shipping charge.

    Returns:
        A PricingBreakdown whose total_amount is the sum of the other five fields.
    """
    if item_price <= 0:
        raise ValueError(f"Item price must be positive, got {item_price}")

    insurance = insurance or flat_rate_insurance()

    item = _money(item_price)
    shipping = _money(shipping_cost)
    verification = _money(verification_cost)
    commission = commission_fee(item_price)
    insurance_cost = _money(insurance(item_price))

    return PricingBreakdown(
        item_price=item,
        shipping_cost=shipping,
        verification_cost=verification,
        commission_fee=commission,
        insurance_cost=insurance_cost,
        total_amount=item + shipping + verification + commission + insurance_cost,
    )
