"""Payment-processor fee math.

The one implementation used both when a payment is recorded and when the UI
previews what a contribution will net, so the two always agree to the cent.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from config.settings import get_settings

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeBreakdown:
    gross: Decimal
    fee: Decimal
    net: Decimal


def round_currency(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_fees(
    gross: Decimal | int | float | str,
    percentage: Decimal | None = None,
    flat_fee: Decimal | None = None,
) -> FeeBreakdown:
    """Split a gross amount into processor fee and net.

    fee = gross * (percentage / 100) + flat_fee
    net = max(0, round2(gross - fee)), fee_amount = gross - net
    """
    settings = get_settings()
    pct = settings.stripe_percentage_transaction if percentage is None else Decimal(percentage)
    flat = settings.stripe_additional_transaction_fee if flat_fee is None else Decimal(flat_fee)

    gross_d = Decimal(str(gross)) if isinstance(gross, float) else Decimal(gross)
    if gross_d < 0:
        raise ValueError(f"gross amount must be >= 0, got {gross_d}")

    fee = gross_d * (pct / Decimal(100)) + flat
    net = max(Decimal("0.00"), round_currency(gross_d - fee))
    return FeeBreakdown(gross=gross_d, fee=gross_d - net, net=net)


def net_amount(gross: Decimal | int | float | str) -> Decimal:
    """Net amount retained after processor fees."""
    return calculate_fees(gross).net
