"""Utilities for working with monetary values in SchoolWallet."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

CENT = Decimal("0.01")
DEFAULT_CURRENCY = "NGN"
CURRENCY_SYMBOLS = {"NGN": "₦"}

AmountLike = Union[Decimal, int, float, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert ``value`` to a :class:`~decimal.Decimal` with two decimal places."""

    if isinstance(value, bool):
        raise TypeError(f"Unsupported amount type: {type(value)!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        result = Decimal(value.strip())
    else:
        raise TypeError(f"Unsupported amount type: {type(value)!r}")

    return result.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(raw: Optional[str]) -> Optional[Decimal]:
    """Parse a form amount, returning ``None`` when it is empty or not a finite number."""

    text = (raw or "").strip().replace(",", "")
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    try:
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # More digits than the decimal context can hold.
        return None


def require_positive(amount: Decimal, *, allow_zero: bool = False) -> Decimal:
    """Ensure ``amount`` is positive (or non-negative when ``allow_zero`` is true)."""

    if allow_zero:
        if amount < Decimal("0"):
            raise ValueError("Amount must be zero or greater.")
    else:
        if amount <= Decimal("0"):
            raise ValueError("Amount must be greater than zero.")
    return amount


def format_currency(amount: Decimal, currency: str = DEFAULT_CURRENCY) -> str:
    """Return ``amount`` as a currency formatted string (e.g. ``₦12,500.00``)."""

    symbol = CURRENCY_SYMBOLS.get(currency, currency)
    return f"{symbol}{amount.quantize(CENT, rounding=ROUND_HALF_UP):,.2f}"
