"""
Credit Scoring Module

Heuristic applicant score in [300, 850] and the coarse risk rating derived
from it. Pure functions: no storage, no side effects.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from .currency import Money, Numeric, to_decimal


MIN_SCORE = 300
MAX_SCORE = 850
BASE_SCORE = 500


class PaymentHistory(Enum):
    """Self-declared or bureau-reported repayment track record"""
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class RiskRating(Enum):
    """Risk bucket derived from credit score"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


PAYMENT_HISTORY_ADJUSTMENTS = {
    PaymentHistory.EXCELLENT: 150,
    PaymentHistory.GOOD: 100,
    PaymentHistory.FAIR: 50,
    PaymentHistory.POOR: -100,
}


def _amount(value: Union[Money, Numeric]) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    return to_decimal(value)


def income_adjustment(loan_amount: Union[Money, Numeric],
                      monthly_income: Optional[Union[Money, Numeric]]) -> int:
    if monthly_income is None:
        return 0
    income = _amount(monthly_income)
    if income <= Decimal('0'):
        return 0

    ratio = _amount(loan_amount) / income
    if ratio < 1:
        return 150
    if ratio < 2:
        return 100
    if ratio < 3:
        return 50
    return 0


def existing_loans_adjustment(existing_loans: Optional[int]) -> int:
    if existing_loans is None:
        return 0
    if existing_loans == 0:
        return 100
    if existing_loans == 1:
        return 50
    if existing_loans > 3:
        return -50
    return 0


def employment_adjustment(employment_years: Optional[Numeric]) -> int:
    if employment_years is None:
        return 0
    years = to_decimal(employment_years)
    if years >= 5:
        return 100
    if years >= 2:
        return 50
    if years >= 1:
        return 25
    return 0


def calculate_credit_score(
    loan_amount: Union[Money, Numeric],
    monthly_income: Optional[Union[Money, Numeric]] = None,
    existing_loans: Optional[int] = None,
    employment_years: Optional[Numeric] = None,
    payment_history: Optional[Union[PaymentHistory, str]] = None
) -> int:
    """
    Score an applicant.

    Starts from 500 and adds band adjustments for the loan-to-income ratio,
    number of existing loans, employment tenure and payment history. Any
    factor left as None contributes nothing. The result is clamped to
    [300, 850].
    """
    score = BASE_SCORE
    score += income_adjustment(loan_amount, monthly_income)
    score += existing_loans_adjustment(existing_loans)
    score += employment_adjustment(employment_years)

    if payment_history is not None:
        score += PAYMENT_HISTORY_ADJUSTMENTS[PaymentHistory(payment_history)]

    return max(MIN_SCORE, min(MAX_SCORE, score))


def determine_risk_rating(credit_score: int) -> RiskRating:
    """Bucket a credit score into a risk rating"""
    if credit_score >= 700:
        return RiskRating.LOW
    if credit_score >= 600:
        return RiskRating.MEDIUM
    if credit_score >= 500:
        return RiskRating.HIGH
    return RiskRating.VERY_HIGH
