"""
Centralized Money Utilities

RULES:
1. Money is always a Decimal with exactly 2 fraction digits (never float)
2. Every rounding step uses ROUND_HALF_UP (standard accounting)

Split remainders (see ledger.utils.splits) depend on this rounding mode, so
nothing in the ledger may quantize money any other way.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


# =========================
# CONVERSION
# =========================
def to_decimal(value) -> Decimal:
    """
    Convert int/str/Decimal input to Decimal without rounding.

    Floats go through str() so 0.1 becomes Decimal("0.1") and not the binary
    approximation.

    Raises:
        ValueError: if the value is None or not a number
    """
    if value is None:
        raise ValueError("Amount is required")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f"Invalid amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return result


# =========================
# ROUNDING
# =========================
def round_money(amount, decimals: int = 2) -> Decimal:
    """
    Money rounding (split shares, percentage amounts, balances)

    RULE:
    - ROUND_HALF_UP
    - Auto-converts int/str to Decimal

    Examples:
    33.333 → 33.33
    66.665 → 66.67
    8.554 → 8.55
    """
    if amount is None:
        return ZERO
    amount = to_decimal(amount)
    quant = Decimal("1").scaleb(-decimals)  # 0.01 for 2 decimals
    return amount.quantize(quant, rounding=ROUND_HALF_UP)


def has_at_most_two_places(amount: Decimal) -> bool:
    """True when the amount needs no rounding to be stored as money."""
    return amount == amount.quantize(CENT, rounding=ROUND_HALF_UP)


def is_zero(amount: Decimal) -> bool:
    return amount is None or amount == 0


def sum_money(amounts) -> Decimal:
    """Sum an iterable of Decimals, returning 0.00 for an empty iterable."""
    total = ZERO
    for amount in amounts:
        total += amount
    return round_money(total)


def format_money(amount: Decimal) -> str:
    """String form with exactly 2 decimals, as stored and returned by the API."""
    return str(round_money(amount))
