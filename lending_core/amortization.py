"""
Amortization Module

Fixed-payment (annuity) loan math: monthly payment, processing fee, total
repayable amount and the installment schedule.

Rounding: each formula rounds its final result half-up to the currency
precision. The final installment takes whatever principal is left so the
schedule always closes at exactly zero.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import List
from enum import Enum
import calendar

from .currency import Money, Numeric, to_decimal, percentage_of
from .errors import ValidationError


MONTHS_PER_YEAR = Decimal('12')
INSTALLMENT_INTERVAL_DAYS = 30


class DueDateConvention(Enum):
    """How installment due dates are spaced"""
    FIXED_30_DAY = "fixed_30_day"      # start + 30*i days
    CALENDAR_MONTH = "calendar_month"  # start + 30 days, then monthly


@dataclass(frozen=True)
class ScheduleEntry:
    """Single installment of a repayment plan"""
    payment_number: int
    due_date: date
    principal_portion: Money
    interest_portion: Money
    total_payment: Money
    remaining_balance: Money


def _validate_terms(principal: Money, annual_rate: Decimal, term_months: int) -> None:
    if term_months is None or term_months <= 0:
        raise ValidationError(f"Term must be a positive number of months, got {term_months}")
    if not principal.is_positive():
        raise ValidationError(f"Principal must be positive, got {principal.to_string()}")
    if annual_rate < Decimal('0'):
        raise ValidationError(f"Interest rate cannot be negative, got {annual_rate}")


def monthly_rate(annual_rate: Numeric) -> Decimal:
    return to_decimal(annual_rate) / MONTHS_PER_YEAR


def calculate_monthly_payment(principal: Money, annual_rate: Numeric, term_months: int) -> Money:
    """
    Fixed monthly installment.

    Standard annuity formula: P * r * (1+r)^n / ((1+r)^n - 1), where r is the
    monthly rate. A zero rate degrades to straight-line P / n.
    """
    annual_rate = to_decimal(annual_rate)
    _validate_terms(principal, annual_rate, term_months)

    rate = monthly_rate(annual_rate)
    if rate == Decimal('0'):
        return Money(principal.amount / Decimal(term_months), principal.currency)

    factor = (Decimal('1') + rate) ** term_months
    payment = principal.amount * rate * factor / (factor - Decimal('1'))
    return Money(payment, principal.currency)


def calculate_processing_fee(principal: Money, fee_rate: Numeric) -> Money:
    """Upfront processing fee charged on the principal"""
    return percentage_of(principal, fee_rate)


def calculate_total_amount(principal: Money, annual_rate: Numeric, term_months: int,
                           processing_fee_rate: Numeric = Decimal('0')) -> Money:
    """Total repayable: every installment plus the processing fee"""
    payment = calculate_monthly_payment(principal, annual_rate, term_months)
    fee = calculate_processing_fee(principal, processing_fee_rate)
    return Money(payment.amount * Decimal(term_months) + fee.amount, principal.currency)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(start_date: date, payment_number: int,
                 convention: DueDateConvention = DueDateConvention.FIXED_30_DAY,
                 interval_days: int = INSTALLMENT_INTERVAL_DAYS) -> date:
    """Due date of installment ``payment_number`` (1-based)"""
    if convention == DueDateConvention.CALENDAR_MONTH:
        first_due = start_date + timedelta(days=interval_days)
        return add_months(first_due, payment_number - 1)
    return start_date + timedelta(days=interval_days * payment_number)


def compute_schedule(
    principal: Money,
    annual_rate: Numeric,
    term_months: int,
    start_date: date,
    convention: DueDateConvention = DueDateConvention.FIXED_30_DAY,
    interval_days: int = INSTALLMENT_INTERVAL_DAYS
) -> List[ScheduleEntry]:
    """
    Generate the fixed-payment amortization schedule

    Args:
        principal: Amount disbursed
        annual_rate: Annual interest rate as a decimal (0.18 for 18%)
        term_months: Number of monthly installments
        start_date: Disbursement date; installments fall due after it
        convention: Due date spacing

    Returns:
        One ScheduleEntry per month, the last closing the balance at zero

    Raises:
        ValidationError: For a non-positive principal or term, or a negative rate
    """
    annual_rate = to_decimal(annual_rate)
    payment = calculate_monthly_payment(principal, annual_rate, term_months)
    rate = monthly_rate(annual_rate)
    currency = principal.currency

    schedule = []
    balance = principal

    for payment_number in range(1, term_months + 1):
        interest = Money(balance.amount * rate, currency)

        if payment_number == term_months:
            # Final installment absorbs the accumulated rounding residue
            principal_portion = balance
        else:
            principal_portion = min(payment - interest, balance)

        total_payment = principal_portion + interest
        balance = balance - principal_portion

        schedule.append(ScheduleEntry(
            payment_number=payment_number,
            due_date=due_date_for(start_date, payment_number, convention, interval_days),
            principal_portion=principal_portion,
            interest_portion=interest,
            total_payment=total_payment,
            remaining_balance=balance
        ))

    return schedule
