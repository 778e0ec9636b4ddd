"""Platform fee calculation."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

CENT = Decimal("0.01")


def round_money(amount: Decimal) -> Decimal:
    """Round to cents, half up."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeBreakdown:
    """Order total split between platform and seller."""

    total: Decimal
    platform_fee: Decimal
    seller_payout: Decimal


def calculate_order_fees(
    line_totals: Iterable[Decimal],
    commission_rate: Decimal,
) -> FeeBreakdown:
    """Split an order total into platform commission and seller payout.

    >>> calculate_order_fees([Decimal("200"), Decimal("300")], Decimal("0.09"))
    FeeBreakdown(total=Decimal('500.00'), platform_fee=Decimal('45.00'), seller_payout=Decimal('455.00'))
    """
    total = round_money(sum(line_totals, Decimal("0")))
    platform_fee = round_money(total * commission_rate)
    return FeeBreakdown(
        total=total,
        platform_fee=platform_fee,
        seller_payout=total - platform_fee,
    )


def calculate_withdrawal_fee(amount: Decimal, fee_rate: Decimal) -> tuple[Decimal, Decimal]:
    """Return (fee, net) for a withdrawal."""
    fee = round_money(amount * fee_rate)
    return fee, round_money(amount) - fee
