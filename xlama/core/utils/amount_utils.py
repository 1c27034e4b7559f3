from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

AmountLike = Union[str, int, Decimal]

_PLAIN_DECIMAL = re.compile(r"^\d*(\.\d*)?$")
_BPS_DENOMINATOR = 10_000


def _to_plain_decimal_string(amount: AmountLike) -> Optional[str]:
    """
    Normalize a human amount into a plain non-negative decimal string (no exponent).
    Returns None when the input is not a number.
    """
    if isinstance(amount, bool):
        return None
    if isinstance(amount, int):
        return str(amount) if amount >= 0 else None
    if isinstance(amount, Decimal):
        if not amount.is_finite() or amount < 0:
            return None
        return format(amount, "f")

    text = str(amount or "").strip().replace(",", "")
    if not text or text == ".":
        return None
    if _PLAIN_DECIMAL.match(text):
        return text
    # Scientific notation or other Decimal-parsable input ("1e-7", "+3")
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return None
    if not parsed.is_finite() or parsed < 0:
        return None
    return format(parsed, "f")


def is_positive_amount(amount: AmountLike) -> bool:
    """True when the human amount parses to a number strictly greater than zero."""
    text = _to_plain_decimal_string(amount)
    if text is None:
        return False
    return Decimal(text) > 0


def to_smallest_unit(amount: AmountLike, decimals: int) -> str:
    """
    Convert a human amount ("1.5") into its smallest integer unit ("1500000000000000000").

    String arithmetic only: the fractional part is right-padded with zeros and truncated
    to `decimals` digits. Non-numeric input yields "0".
    """
    text = _to_plain_decimal_string(amount)
    if text is None:
        return "0"

    whole, _, fraction = text.partition(".")
    padded_fraction = (fraction + "0" * decimals)[:decimals] if decimals > 0 else ""
    combined = (whole + padded_fraction).lstrip("0")
    return combined or "0"


def from_smallest_unit(raw_amount: AmountLike, decimals: int) -> str:
    """Inverse of `to_smallest_unit`: exact decimal string with trailing zeros removed."""
    value = _parse_integer(raw_amount)
    if decimals <= 0:
        return str(value)

    negative = value < 0
    value = abs(value)
    divisor = 10 ** decimals
    whole, remainder = divmod(value, divisor)
    if remainder == 0:
        text = str(whole)
    else:
        fraction = str(remainder).rjust(decimals, "0").rstrip("0")
        text = f"{whole}.{fraction}"
    return f"-{text}" if negative else text


def _parse_integer(value: AmountLike) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        return int(value)
    text = str(value or "").strip()
    if not text:
        return 0
    try:
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    except ValueError:
        try:
            return int(Decimal(text))
        except InvalidOperation:
            return 0


def calculate_min_received(raw_amount: AmountLike, slippage_bps: float) -> str:
    """Minimum output after slippage, `slippage_bps` in basis points (50 = 0.5%)."""
    amount = _parse_integer(raw_amount)
    if amount <= 0:
        return "0"
    factor = _BPS_DENOMINATOR - int(slippage_bps)
    return str(max(amount * factor // _BPS_DENOMINATOR, 0))


def compare_amounts(a: AmountLike, b: AmountLike) -> int:
    left, right = _parse_integer(a), _parse_integer(b)
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def percent_to_bps(percent: float) -> int:
    return int(round(percent * 100))
