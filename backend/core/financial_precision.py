"""
DECIMAL PRECISION & MONEY MATH

This module provides:
1. Decimal conversion and 2-decimal storage rounding
2. Office charge and refundable amount calculation
3. Equal-installment splitting with remainder on the last installment
4. Calendar-month due date arithmetic

Rounding policy:
- Office charge is rounded to a whole currency unit, ROUND_HALF_UP
- Installment base is floored to a whole currency unit
- Stored values are quantized to 2 decimal places, ROUND_HALF_UP
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR
from datetime import date, datetime
from typing import Union, List, NamedTuple
from bson import Decimal128
from dateutil.relativedelta import relativedelta
import logging

from core.errors import InvalidDeductionError, InvalidInstallmentCountError

logger = logging.getLogger(__name__)

# Precision configuration
QUANTIZE_PATTERN = Decimal('0.01')
WHOLE_UNIT = Decimal('1')

MIN_INSTALLMENTS = 1
MAX_INSTALLMENTS = 36

Numeric = Union[float, int, str, Decimal, Decimal128]


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be converted to Decimal"""
    pass


class NegativeValueError(Exception):
    """Raised when a negative financial value is detected"""
    pass


class InstallmentSlice(NamedTuple):
    installment_number: int
    due_date: date
    amount: Decimal


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if value is None:
        return Decimal('0')
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        return Decimal(value)
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Numeric) -> Decimal:
    """Round a value to 2 decimal places using ROUND_HALF_UP."""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def round_currency_unit(value: Numeric) -> Decimal:
    """Round to the nearest whole currency unit, halves away from zero."""
    return to_decimal(value).quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


def to_decimal128(value: Numeric) -> Decimal128:
    """Convert to Decimal128 for MongoDB storage"""
    return Decimal128(round_financial(value))


def validate_positive(value: Numeric, field_name: str) -> None:
    """Raises NegativeValueError if value <= 0."""
    if to_decimal(value) <= Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def calculate_percentage(amount: Numeric, percentage: Numeric) -> Decimal:
    """
    Calculate percentage of an amount, unrounded.
    Example: calculate_percentage(1000, 10) = 100
    """
    return to_decimal(amount) * to_decimal(percentage) / Decimal('100')


def add_months(start: Union[date, datetime], months: int) -> Union[date, datetime]:
    """
    Advance by calendar months. Jan 31 + 1 month lands on the last day of
    February, never on an invalid date.
    """
    return start + relativedelta(months=months)


# =============================================================================
# CANCELLATION / REFUND MONEY MATH
# =============================================================================

def compute_office_charge(paid_amount: Numeric, percent: Numeric) -> Decimal:
    """
    LOCKED FORMULA:
    - office_charge = round_half_up(paid_amount * percent / 100) to whole units
    """
    paid = to_decimal(paid_amount)
    pct = to_decimal(percent)

    if pct < Decimal('0') or pct > Decimal('100'):
        raise InvalidDeductionError(
            f"Office charge percent must be between 0 and 100, got {percent}"
        )
    if paid < Decimal('0'):
        raise InvalidDeductionError(f"Paid amount cannot be negative: {paid_amount}")

    return round_currency_unit(calculate_percentage(paid, pct))


def compute_refundable(
    paid_amount: Numeric,
    office_charge_amount: Numeric,
    other_deductions: Numeric
) -> Decimal:
    """
    LOCKED FORMULA:
    - refundable = paid_amount - office_charge_amount - other_deductions

    A negative result is reported, never clamped to zero.
    """
    deductions = to_decimal(other_deductions)
    if deductions < Decimal('0'):
        raise InvalidDeductionError(f"Other deductions cannot be negative: {other_deductions}")

    refundable = to_decimal(paid_amount) - to_decimal(office_charge_amount) - deductions

    if refundable < Decimal('0'):
        raise InvalidDeductionError(
            f"Deductions exceed the amount paid: refundable would be {refundable}"
        )

    return refundable


def validate_installment_count(count: int) -> None:
    """Raises InvalidInstallmentCountError when count is outside [1, 36]."""
    if isinstance(count, bool) or not isinstance(count, int):
        raise InvalidInstallmentCountError(count)
    if count < MIN_INSTALLMENTS or count > MAX_INSTALLMENTS:
        raise InvalidInstallmentCountError(count)


def split_into_installments(
    total_amount: Numeric,
    count: int,
    start_date: Union[date, datetime]
) -> List[InstallmentSlice]:
    """
    Split total_amount into `count` installments.

    LOCKED FORMULAS:
    - base = floor(total / count) to whole units
    - installments 1..count-1 = base
    - installment count = total - base * (count - 1)
    - due_date[i] = start_date + i calendar months (i from 0)

    The amounts always sum to total_amount exactly.
    """
    validate_installment_count(count)

    total = to_decimal(total_amount)
    if total < Decimal('0'):
        raise InvalidDeductionError(f"Amount to split cannot be negative: {total_amount}")

    base = (total / Decimal(count)).quantize(WHOLE_UNIT, rounding=ROUND_FLOOR)
    last = total - base * (count - 1)

    slices = []
    for index in range(count):
        amount = last if index == count - 1 else base
        slices.append(
            InstallmentSlice(
                installment_number=index + 1,
                due_date=add_months(start_date, index),
                amount=amount
            )
        )

    logger.debug(f"[MONEY] Split {total} into {count} installments: base={base}, last={last}")
    return slices
