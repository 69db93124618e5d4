"""Currency helpers for minor/major unit conversion."""

from __future__ import annotations

from decimal import Decimal

# ISO 4217 currencies Stripe treats as having no minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
        "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
    }
)

THREE_DECIMAL_CURRENCIES = frozenset({"bhd", "jod", "kwd", "omr", "tnd"})


def minor_unit_exponent(currency: str) -> int:
    """Return the number of decimal places for ``currency``."""

    code = currency.lower()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def to_major_units(amount: int, currency: str) -> Decimal:
    """Convert an integer minor-unit amount to major units.

    >>> to_major_units(12345, "usd")
    Decimal('123.45')
    """

    return Decimal(int(amount)).scaleb(-minor_unit_exponent(currency))


def normalize_currency(currency: str | None, default: str = "USD") -> str:
    return (currency or default).upper()
