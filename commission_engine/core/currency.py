"""
Currency arithmetic for commission math.

All amounts inside the engine are integer minor units (cents, fils, yen).
Conversion from decimal major units happens exactly once per transaction,
and every rounding step uses ROUND_HALF_UP. Do not introduce another
rounding rule anywhere in the engine.

Usage:
    minor = to_minor_units(Decimal("1000.00"), "USD")    # 100000
    commission = apply_rate(minor, Decimal("0.10"))       # 10000
    from_minor_units(commission, "USD")                   # Decimal("100.00")
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from commission_engine.core.exceptions import SettlementValidationError


Amount = Union[Decimal, int, str, float]

DEFAULT_MINOR_UNIT_EXPONENT = 2

# ISO 4217 currencies whose minor unit differs from 2 decimal places
MINOR_UNIT_EXPONENTS = {
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0,
    "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0,
    "XOF": 0, "XPF": 0,
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
}

_ONE = Decimal(1)

# Ledger amount columns are signed 64-bit integers
MAX_MINOR_UNITS = 2 ** 63 - 1


def _round_half_up(value: Decimal, amount: Amount) -> int:
    try:
        return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise SettlementValidationError(f"Amount '{amount}' is out of range")


def minor_unit_exponent(currency: str) -> int:
    """Number of decimal places in the currency's minor unit."""
    if not currency:
        raise SettlementValidationError("Currency code is required")
    code = currency.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise SettlementValidationError(f"Invalid currency code '{currency}'")
    return MINOR_UNIT_EXPONENTS.get(code, DEFAULT_MINOR_UNIT_EXPONENT)


def to_decimal(amount: Amount) -> Decimal:
    """Coerce an external amount to Decimal without binary float artifacts."""
    if isinstance(amount, Decimal):
        value = amount
    elif isinstance(amount, bool):
        raise SettlementValidationError("Amount must be numeric, got bool")
    elif isinstance(amount, float):
        value = Decimal(str(amount))
    else:
        try:
            value = Decimal(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise SettlementValidationError(f"Invalid amount '{amount}'")
    if not value.is_finite():
        raise SettlementValidationError(f"Amount must be finite, got '{amount}'")
    return value


def to_minor_units(amount: Amount, currency: str = "USD") -> int:
    """Convert major units to integer minor units, rounding half-up."""
    exponent = minor_unit_exponent(currency)
    return _round_half_up(to_decimal(amount).scaleb(exponent), amount)


def from_minor_units(amount_minor: int, currency: str = "USD") -> Decimal:
    """Exact inverse of to_minor_units for amounts at the currency's precision."""
    exponent = minor_unit_exponent(currency)
    quantum = _ONE.scaleb(-exponent)
    return Decimal(int(amount_minor)).scaleb(-exponent).quantize(quantum)


def apply_rate(amount_minor: int, rate: Amount) -> int:
    """Multiply a minor-unit amount by a fractional rate, rounding half-up."""
    product = Decimal(int(amount_minor)) * to_decimal(rate)
    return _round_half_up(product, amount_minor)


def approx_equal(a: Amount, b: Amount, tolerance: Amount = Decimal("0.01")) -> bool:
    """
    Compare two major-unit totals within a tolerance.

    Only for sanity-checking totals supplied from outside the engine
    (e.g. an order total reported by a POS); never used inside settlement math.
    """
    return abs(to_decimal(a) - to_decimal(b)) <= abs(to_decimal(tolerance))
