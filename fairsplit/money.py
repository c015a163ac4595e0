"""
money.py - minor-unit rounding

Amounts are kept as floats inside the engine and rounded only when they leave
it (settlement amounts, per-member allocations, exports). Rounding is
round-half-even to the currency's number of decimals.
"""

from decimal import Decimal, ROUND_HALF_EVEN
from typing import Dict

# currencies whose minor unit is not 1/100
CURRENCY_DECIMALS: Dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "CLP": 0,
    "ISK": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "JOD": 3,
    "TND": 3,
}
DEFAULT_DECIMALS = 2


def currency_decimals(currency: str) -> int:
    return CURRENCY_DECIMALS.get((currency or "").upper(), DEFAULT_DECIMALS)


def minor_unit(currency: str) -> Decimal:
    """Smallest representable amount, e.g. Decimal('0.01') for EUR."""
    return Decimal(1).scaleb(-currency_decimals(currency))


def to_decimal(amount: float, currency: str) -> Decimal:
    # go through str() so 0.1 stays 0.1 instead of its binary expansion
    return Decimal(str(amount)).quantize(minor_unit(currency), rounding=ROUND_HALF_EVEN)


def round_money(amount: float, currency: str) -> float:
    return float(to_decimal(amount, currency))


def money_tolerance(currency: str) -> float:
    """Half a minor unit: differences below this vanish after rounding."""
    return float(minor_unit(currency)) / 2
