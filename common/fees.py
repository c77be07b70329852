"""
Fee math for paywall purchases and cash-outs.

All amounts are integers in cents. The platform fee percentage is split in
two equal halves: one half is added on top of the listed price and paid by the
buyer, the other half is withheld from the seller. Each derived amount is
rounded independently to the nearest cent, half up.

    >>> compute_total_charge(1000, 20)
    1100
    >>> compute_seller_share(1000, 20)
    900
    >>> compute_platform_profit(1000, 20)
    200
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from common.error_handling import InvalidAmount, InvalidFeePercent

FeePercent = Union[int, float, str, Decimal]

DEFAULT_PLATFORM_FEE_PERCENT = Decimal("20")

INSTANT_PAYOUT_FEE_PERCENT = Decimal("1")
INSTANT_PAYOUT_MIN_FEE_IN_CENTS = 50

_HUNDRED = Decimal("100")
_ONE_CENT = Decimal("1")
_FEE_QUANTUM = Decimal("0.01")


def normalize_fee_percent(value: FeePercent) -> Decimal:
    """Parse a fee percentage into a Decimal with two places, within [0, 100]."""
    if value is None:
        return DEFAULT_PLATFORM_FEE_PERCENT
    if isinstance(value, bool):
        raise InvalidFeePercent(f"Fee percent must be numeric, got {value!r}", field="platform_fee_percent")
    try:
        fee = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidFeePercent(f"Fee percent must be numeric, got {value!r}", field="platform_fee_percent")
    if not fee.is_finite() or fee < 0 or fee > _HUNDRED:
        raise InvalidFeePercent(
            f"Fee percent must be between 0 and 100, got {value}",
            field="platform_fee_percent",
            context={"platform_fee_percent": str(value)},
        )
    return fee.quantize(_FEE_QUANTUM, rounding=ROUND_HALF_UP)


def _require_cents(amount_in_cents: int, field: str = "amount_in_cents") -> int:
    if isinstance(amount_in_cents, bool) or not isinstance(amount_in_cents, int):
        raise InvalidAmount(f"{field} must be an integer number of cents", field=field)
    if amount_in_cents < 0:
        raise InvalidAmount(f"{field} must not be negative", field=field, context={field: amount_in_cents})
    return amount_in_cents


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(_ONE_CENT, rounding=ROUND_HALF_UP))


def _half_fee_rate(platform_fee_percent: FeePercent) -> Decimal:
    return normalize_fee_percent(platform_fee_percent) / 2 / _HUNDRED


def compute_total_charge(base_price_in_cents: int, platform_fee_percent: FeePercent = DEFAULT_PLATFORM_FEE_PERCENT) -> int:
    """Price the buyer pays: base plus half of the platform fee."""
    base = _require_cents(base_price_in_cents, "base_price_in_cents")
    buyer_fee = _round_cents(Decimal(base) * _half_fee_rate(platform_fee_percent))
    return base + buyer_fee


def compute_seller_share(base_price_in_cents: int, platform_fee_percent: FeePercent = DEFAULT_PLATFORM_FEE_PERCENT) -> int:
    """Amount credited to the seller: base minus the other half of the fee."""
    base = _require_cents(base_price_in_cents, "base_price_in_cents")
    return _round_cents(Decimal(base) * (1 - _half_fee_rate(platform_fee_percent)))


def compute_platform_profit(base_price_in_cents: int, platform_fee_percent: FeePercent = DEFAULT_PLATFORM_FEE_PERCENT) -> int:
    return (
        compute_total_charge(base_price_in_cents, platform_fee_percent)
        - compute_seller_share(base_price_in_cents, platform_fee_percent)
    )


def compute_instant_payout_fee(amount_in_cents: int) -> int:
    """Instant cash-outs cost 1% with a 50 cent floor. Nothing to withdraw costs nothing."""
    amount = _require_cents(amount_in_cents)
    if amount == 0:
        return 0
    fee = _round_cents(Decimal(amount) * INSTANT_PAYOUT_FEE_PERCENT / _HUNDRED)
    return max(fee, INSTANT_PAYOUT_MIN_FEE_IN_CENTS)


def cents_to_dollars(amount_in_cents: int) -> Decimal:
    return (Decimal(amount_in_cents) / _HUNDRED).quantize(_FEE_QUANTUM)


def format_usd(amount_in_cents: int) -> str:
    return f"${cents_to_dollars(amount_in_cents):,.2f}"
