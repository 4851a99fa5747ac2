"""
Test suite for amortization module

Tests the annuity payment formula, schedule generation, due date conventions
and input validation. Schedules must close at exactly zero.
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.currency import Money, Currency, money_sum
from lending_core.amortization import (
    DueDateConvention, add_months, calculate_monthly_payment,
    calculate_processing_fee, calculate_total_amount, compute_schedule, due_date_for
)
from lending_core.errors import ValidationError


def kes(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.KES)


class TestMonthlyPayment:
    """Test fixed monthly installment calculation"""

    def test_standard_annuity_payment(self):
        """120,000 at 12% over 12 months"""
        payment = calculate_monthly_payment(kes(120000), Decimal('0.12'), 12)
        assert payment == kes('10661.85')

    def test_zero_rate_is_straight_line(self):
        payment = calculate_monthly_payment(kes(12000), Decimal('0'), 12)
        assert payment == kes('1000.00')

    def test_single_month_term(self):
        """One installment repays principal plus one month of interest"""
        payment = calculate_monthly_payment(kes(10000), Decimal('0.12'), 1)
        assert payment == kes('10100.00')

    def test_rate_accepts_strings(self):
        assert calculate_monthly_payment(kes(120000), '0.12', 12) == kes('10661.85')

    @pytest.mark.parametrize("principal,rate,term", [
        (kes(10000), Decimal('0.12'), 0),
        (kes(10000), Decimal('0.12'), -3),
        (kes(0), Decimal('0.12'), 12),
        (kes(-100), Decimal('0.12'), 12),
        (kes(10000), Decimal('-0.01'), 12),
    ])
    def test_invalid_inputs(self, principal, rate, term):
        with pytest.raises(ValidationError):
            calculate_monthly_payment(principal, rate, term)


class TestFeesAndTotals:
    """Test processing fee and total repayable amount"""

    def test_processing_fee(self):
        assert calculate_processing_fee(kes(50000), Decimal('0.02')) == kes('1000.00')
        assert calculate_processing_fee(kes(50000), Decimal('0')).is_zero()

    def test_total_amount_includes_fee(self):
        total = calculate_total_amount(kes(120000), Decimal('0.12'), 12, Decimal('0.02'))
        # 12 * 10,661.85 + 2,400.00
        assert total == kes('130342.20')

    def test_total_amount_without_fee(self):
        total = calculate_total_amount(kes(120000), Decimal('0.12'), 12)
        assert total == kes('127942.20')


class TestSchedule:
    """Test amortization schedule generation"""

    def setup_method(self):
        self.start = date(2024, 1, 1)
        self.schedule = compute_schedule(kes(120000), Decimal('0.12'), 12, self.start)

    def test_schedule_length_and_numbering(self):
        assert len(self.schedule) == 12
        assert [e.payment_number for e in self.schedule] == list(range(1, 13))

    def test_first_installment_split(self):
        first = self.schedule[0]
        assert first.interest_portion == kes('1200.00')
        assert first.principal_portion == kes('9461.85')
        assert first.total_payment == kes('10661.85')
        assert first.remaining_balance == kes('110538.15')

    def test_principal_sums_to_loan_amount(self):
        total_principal = money_sum((e.principal_portion for e in self.schedule), Currency.KES)
        assert total_principal == kes(120000)

    def test_closes_at_zero(self):
        assert self.schedule[-1].remaining_balance.is_zero()

    def test_every_total_is_principal_plus_interest(self):
        for entry in self.schedule:
            assert entry.total_payment == entry.principal_portion + entry.interest_portion
            assert not entry.principal_portion.is_negative()

    def test_balance_strictly_decreases(self):
        balances = [e.remaining_balance for e in self.schedule]
        assert all(later < earlier for earlier, later in zip(balances, balances[1:]))

    def test_final_installment_absorbs_residue(self):
        """Only the last installment may differ from the fixed payment"""
        for entry in self.schedule[:-1]:
            assert entry.total_payment == kes('10661.85')
        assert abs(self.schedule[-1].total_payment - kes('10661.85')) < kes('1.00')

    def test_zero_rate_schedule(self):
        schedule = compute_schedule(kes(1000), Decimal('0'), 3, self.start)
        assert [e.principal_portion for e in schedule] == [kes('333.33'), kes('333.33'), kes('333.34')]
        assert all(e.interest_portion.is_zero() for e in schedule)
        assert schedule[-1].remaining_balance.is_zero()

    @pytest.mark.parametrize("principal,rate,term", [
        (kes(10000), Decimal('0.18'), 6),
        (kes(75000), Decimal('0.24'), 24),
        (kes(500000), Decimal('0.15'), 360),
        (Money(Decimal('999999'), Currency.JPY), Decimal('0.07'), 36),
    ])
    def test_invariants_hold_across_terms(self, principal, rate, term):
        schedule = compute_schedule(principal, rate, term, self.start)
        assert len(schedule) == term
        assert money_sum((e.principal_portion for e in schedule), principal.currency) == principal
        assert schedule[-1].remaining_balance.is_zero()

    def test_invalid_schedule_inputs(self):
        with pytest.raises(ValidationError):
            compute_schedule(kes(1000), Decimal('0.12'), 0, self.start)


class TestDueDates:
    """Test installment due date conventions"""

    def test_fixed_30_day_spacing(self):
        start = date(2024, 1, 1)
        assert due_date_for(start, 1) == date(2024, 1, 31)
        assert due_date_for(start, 2) == date(2024, 3, 1)
        assert due_date_for(start, 12) == date(2024, 12, 26)

    def test_calendar_month_spacing(self):
        start = date(2024, 1, 1)
        convention = DueDateConvention.CALENDAR_MONTH
        assert due_date_for(start, 1, convention) == date(2024, 1, 31)
        assert due_date_for(start, 2, convention) == date(2024, 2, 29)
        assert due_date_for(start, 3, convention) == date(2024, 3, 31)

    def test_schedule_uses_convention(self):
        schedule = compute_schedule(kes(3000), Decimal('0.12'), 3, date(2024, 1, 1),
                                    DueDateConvention.CALENDAR_MONTH)
        assert [e.due_date for e in schedule] == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]

    def test_add_months_clamps_to_month_end(self):
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)
        assert add_months(date(2024, 5, 10), 0) == date(2024, 5, 10)
