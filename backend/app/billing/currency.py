"""Currency helpers used for plan localization and payment amounts."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional, Union

Number = Union[int, float, str, Decimal]

DEFAULT_CURRENCY = "USD"

COUNTRY_TO_CURRENCY: Dict[str, str] = {
    "US": "USD",
    "IN": "INR",
    "GB": "GBP",
    "EU": "EUR",
    "DE": "EUR",
    "FR": "EUR",
    "ES": "EUR",
    "IT": "EUR",
    "NL": "EUR",
    "BE": "EUR",
    "AT": "EUR",
    "IE": "EUR",
    "PT": "EUR",
    "FI": "EUR",
    "GR": "EUR",
    "LU": "EUR",
}

# ISO 4217 currencies without a minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset({"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"})

_CENT = Decimal("0.01")


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps floats like 1.3457 from expanding into binary noise
    return Decimal(str(value))


def convert_currency(amount: Number, ratio: Number) -> Decimal:
    """Return ``amount * ratio`` rounded half-up to two decimal places."""

    return (_to_decimal(amount) * _to_decimal(ratio)).quantize(_CENT, rounding=ROUND_HALF_UP)


def calculate_conversion_ratio(base_price: Number, target_price: Number) -> Decimal:
    """Return ``target_price / base_price``, or ``1`` for a zero base price."""

    base = _to_decimal(base_price)
    if base == 0:
        return Decimal(1)
    return _to_decimal(target_price) / base


def currency_for_country(country_code: Optional[str], *, default: str = DEFAULT_CURRENCY) -> str:
    if not country_code:
        return default
    return COUNTRY_TO_CURRENCY.get(country_code.strip().upper(), default)


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def from_minor_units(amount_minor: int, currency: str) -> Decimal:
    """Convert an integer amount in minor units into an exact major-unit value."""

    return Decimal(amount_minor).scaleb(-currency_exponent(currency))


def to_minor_units(amount: Number, currency: str) -> int:
    exponent = currency_exponent(currency)
    scaled = _to_decimal(amount).scaleb(exponent).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(scaled)


def parse_conversion_ratios(raw: Optional[str]) -> Dict[str, Decimal]:
    """Parse ``"INR=83.2,GBP=0.79"`` into ``{"INR": Decimal("83.2"), ...}``."""

    ratios: Dict[str, Decimal] = {}
    if not raw:
        return ratios
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        code, sep, value = chunk.partition("=")
        if not sep:
            raise ValueError(f"Invalid conversion ratio entry {chunk!r}; expected CODE=RATIO")
        try:
            ratio = Decimal(value.strip())
        except ArithmeticError as exc:
            raise ValueError(f"Invalid conversion ratio for {code.strip()!r}: {value!r}") from exc
        if ratio <= 0:
            raise ValueError(f"Conversion ratio for {code.strip()!r} must be positive")
        ratios[code.strip().upper()] = ratio
    return ratios
