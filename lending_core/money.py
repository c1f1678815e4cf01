"""
Money Helpers

Decimal precision, cent splitting and parsing for peso amounts and USD
quantities. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR, InvalidOperation, getcontext
from datetime import date, datetime
from typing import Any, List, Union
import re

from .config import get_config
from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0')
CENT = Decimal('0.01')
HUNDRED = Decimal('100')

Number = Union[Decimal, int, str, float]


def to_decimal(value: Any) -> Decimal:
    """
    Convert a stored or caller-supplied value to Decimal.

    None and empty strings are treated as zero, matching how missing
    counters behave in the document store.
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError("INVALID_AMOUNT", f"Invalid numeric value: {value!r}")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return decimal_from_string(value)
    try:
        # str() first so floats keep their shortest repr
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("INVALID_AMOUNT", f"Invalid numeric value: {value!r}")


def amount_epsilon() -> Decimal:
    """Tolerance used when comparing amounts that went through rounding"""
    return to_decimal(get_config().amount_epsilon)


def round_money(value: Any) -> Decimal:
    """Round to cents using ROUND_HALF_UP"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Any) -> int:
    """Convert an amount to integer cents"""
    return int((to_decimal(value) * HUNDRED).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a 2-decimal amount"""
    return (Decimal(cents) / HUNDRED).quantize(CENT)


def split_cents(total: Any, parts: int) -> List[Decimal]:
    """
    Split an amount into `parts` cent-exact pieces.

    Every piece gets floor(total / parts) cents and the last one absorbs the
    remainder, so the pieces always sum to the total exactly.
    """
    if parts <= 0:
        raise ValidationError("INVALID_INPUT", "parts must be > 0")
    total_cents = to_cents(total)
    base = (Decimal(total_cents) / Decimal(parts)).to_integral_value(rounding=ROUND_FLOOR)
    base_cents = int(base)
    pieces = [from_cents(base_cents) for _ in range(parts - 1)]
    pieces.append(from_cents(total_cents - base_cents * (parts - 1)))
    return pieces


def clamp_zero(value: Any) -> Decimal:
    """Return max(value, 0) rounded to cents"""
    rounded = round_money(value)
    return rounded if rounded > ZERO else ZERO


def money_str(value: Any) -> str:
    """Serialize an amount for storage (Decimal string, 2 places)"""
    return str(round_money(value))


def decimal_from_string(value: str) -> Decimal:
    """
    Parse a user-typed number, accepting the local "1.234,56" format

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValidationError: If the string is not a number
    """
    if not value or not isinstance(value, str):
        raise ValidationError("INVALID_AMOUNT", "Value must be a non-empty string")

    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Dots are thousands separators, comma is the decimal mark
        clean_value = clean_value.replace('.', '').replace(',', '.')
    else:
        clean_value = clean_value.replace(',', '.')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValidationError("INVALID_AMOUNT", f"Cannot convert '{value}' to Decimal")


def month_key(value: Union[date, datetime]) -> str:
    """YYYY-MM key used by the monthly rollups"""
    return f"{value.year:04d}-{value.month:02d}"


def parse_date(value: Any) -> date:
    """Accept date, datetime or ISO string (YYYY-MM-DD or full timestamp)"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            if re.match(r'^\d{4}-\d{2}-\d{2}$', text):
                return date.fromisoformat(text)
            return datetime.fromisoformat(text).date()
        except ValueError:
            pass
    raise ValidationError("INVALID_INPUT", f"Invalid date: {value!r}")
