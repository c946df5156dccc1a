# Overview: Currency catalog and money rounding helpers.

"""
Storekeeper Money Semantics (authoritative)

- Stored amounts are full-precision decimals (Numeric(14, 4)); the display
  currency never changes what is stored.
- Currency decimals are used for rounding at exactly two places: the one-time
  cents migration, and line/total arithmetic done by quantize_money().
- Rounding is half-up, matching the receipt totals cashiers see.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping

from flask import current_app

# Legacy installs stored every amount as an integer count of minor units
LEGACY_MINOR_UNIT_FACTOR = 100

# decimals per ISO-4217 code supported by the shop settings screen
CURRENCY_DECIMALS: dict[str, int] = {
    "MMK": 0,
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "JPY": 0,
    "CNY": 2,
    "THB": 2,
}

MAX_DECIMALS = 4


@dataclass(frozen=True)
class CurrencySettings:
    code: str
    decimals: int

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.decimals)


def currency_settings_from_config(config: Mapping[str, Any]) -> CurrencySettings:
    code = str(config.get("CURRENCY_CODE") or "USD").upper()
    decimals = config.get("CURRENCY_DECIMALS")
    if decimals is None:
        if code not in CURRENCY_DECIMALS:
            raise ValueError(f"Unknown currency code {code!r}; set CURRENCY_DECIMALS explicitly")
        decimals = CURRENCY_DECIMALS[code]
    decimals = int(decimals)
    if decimals < 0 or decimals > MAX_DECIMALS:
        raise ValueError(f"CURRENCY_DECIMALS must be between 0 and {MAX_DECIMALS}")
    return CurrencySettings(code=code, decimals=decimals)


def to_decimal(value: Any) -> Decimal:
    """Coerce int/str/float/Decimal to Decimal; floats go through str() to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("boolean is not a money amount")
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"invalid money amount: {value!r}") from exc


def quantize_money(value: Any, decimals: int) -> Decimal:
    quantum = Decimal(1).scaleb(-decimals)
    return to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


def get_currency_settings() -> CurrencySettings:
    """Settings injected by create_app(); never a module-level singleton."""
    return current_app.extensions["storekeeper"]["currency"]
