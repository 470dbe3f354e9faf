"""Decimal parsing for charge amounts and percentages."""
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from pricetool.utils.logger import get_logger

logger = get_logger(__name__)

Numeric = Union[str, int, float, Decimal]

# Characters hospitals put around amounts ("$1,234.00", "1 234")
_AMOUNT_NOISE = str.maketrans("", "", "$, \t")

# Files use 999999999 and similar as "not applicable" markers
DEFAULT_PLACEHOLDER_THRESHOLD = Decimal("999999999")


def is_blank(value: Optional[Numeric]) -> bool:
    """True for None and whitespace-only strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def parse_decimal(value: Optional[Numeric]) -> Optional[Decimal]:
    """
    Parse a value to Decimal without rounding.

    Returns None for blank values and for text that is not a number
    (including NaN and infinity).

    Example:
        >>> parse_decimal("123.456")
        Decimal('123.456')
        >>> parse_decimal("call for pricing") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        try:
            result = Decimal(str(value))
        except (ValueError, InvalidOperation):
            return None
    elif isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            result = Decimal(value)
        except (ValueError, InvalidOperation):
            logger.debug("Not a decimal value", value=value)
            return None
    else:
        logger.warning("Unsupported type for decimal parsing", value=value, type=type(value).__name__)
        return None

    if not result.is_finite():
        return None
    return result


def parse_amount(
    value: Optional[Numeric],
    placeholder_threshold: Optional[Decimal] = DEFAULT_PLACEHOLDER_THRESHOLD,
) -> Optional[Decimal]:
    """
    Parse a monetary amount.

    Currency symbols, thousands separators and whitespace are removed.
    Amounts at or above ``placeholder_threshold`` are treated as missing.

    Example:
        >>> parse_amount("$1,250.50")
        Decimal('1250.50')
        >>> parse_amount("999999999") is None
        True
    """
    if isinstance(value, str):
        value = value.translate(_AMOUNT_NOISE)
    result = parse_decimal(value)
    if result is None:
        return None
    if placeholder_threshold is not None and result >= placeholder_threshold:
        return None
    return result


def parse_percentage(value: Optional[Numeric]) -> Optional[Decimal]:
    """
    Parse a percentage on the 0-100 scale as written.

    A trailing percent sign is accepted: "45%" and "45" both give Decimal('45').
    """
    if isinstance(value, str):
        value = value.strip()
        if value.endswith("%"):
            value = value[:-1]
        value = value.translate(_AMOUNT_NOISE)
    return parse_decimal(value)


# Bounds for values written to NUMERIC columns
MAX_INTEGER_DIGITS = 15
MAX_FRACTION_DIGITS = 20


def fits_numeric(
    value: Decimal,
    max_integer_digits: int = MAX_INTEGER_DIGITS,
    max_fraction_digits: int = MAX_FRACTION_DIGITS,
) -> bool:
    """
    Check a parsed value is within the range the store accepts.

    Example:
        >>> fits_numeric(Decimal("1250.50"))
        True
        >>> fits_numeric(Decimal("1e20"))
        False
    """
    if value.is_zero():
        return True
    if value.adjusted() >= max_integer_digits:
        return False
    exponent = value.as_tuple().exponent
    return -exponent <= max_fraction_digits
