"""
Repayment Ledger Module

Persists the installment plan generated at disbursement and applies
payments against it. Also computes days overdue and late fees for
installments whose due date has passed without full payment.

Within an installment a payment settles the unpaid late fee first, then
interest, then principal. Across installments the oldest due date is
settled first.
"""

from decimal import Decimal
from datetime import date, datetime, time, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Union, TYPE_CHECKING
from enum import Enum
import math
import uuid

from .currency import Money, Currency, Numeric, to_decimal
from .amortization import ScheduleEntry
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_date
from .errors import ValidationError, NotFoundError, ConflictError

if TYPE_CHECKING:
    from .loans import Loan


DEFAULT_LATE_FEE_WEEKLY_RATE = Decimal('0.01')
SECONDS_PER_DAY = 24 * 60 * 60

# Namespace for deterministic installment ids
SCHEDULE_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_OID, "lending_core.repayment_schedule")

DateLike = Union[date, datetime]


class RepaymentStatus(Enum):
    """Status of a single installment"""
    PENDING = "pending"    # Not yet due, nothing paid
    PAID = "paid"          # Fully settled, late fee included
    PARTIAL = "partial"    # Something paid, not yet due
    OVERDUE = "overdue"    # Past due with an unpaid remainder
    WAIVED = "waived"      # Forgiven; no longer collectable


SETTLED_STATUSES = {RepaymentStatus.PAID, RepaymentStatus.WAIVED}


def _as_utc_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return _as_utc_datetime(value).astimezone(timezone.utc).date()
    return value


def calculate_overdue_days(due_date: date, now: Optional[DateLike] = None) -> int:
    """
    Whole days an installment is overdue.

    Counted from midnight UTC of the due date and rounded up, so any part of
    a day counts as a full day. Returns 0 when the due date has not passed.
    Passing a plain date for ``now`` means midnight UTC of that day.
    """
    current = _as_utc_datetime(now or datetime.now(timezone.utc))
    due = _as_utc_datetime(due_date)
    if current <= due:
        return 0
    elapsed = (current - due).total_seconds()
    return math.ceil(elapsed / SECONDS_PER_DAY)


def calculate_late_fee(amount_due: Money, days_overdue: int, base_fee: Money,
                       weekly_rate: Numeric = DEFAULT_LATE_FEE_WEEKLY_RATE) -> Money:
    """
    Late fee for an installment: base fee plus ``weekly_rate`` of the amount
    due for every full week overdue. Zero when not overdue.

    Ten days late on 1000 with a base fee of 100 is 100 + 1 * 1000 * 0.01 = 110.
    """
    if days_overdue <= 0:
        return Money.zero(amount_due.currency)
    weeks = Decimal(days_overdue // 7)
    fee = base_fee.amount + weeks * amount_due.amount * to_decimal(weekly_rate)
    return Money(fee, amount_due.currency)


def schedule_entry_id(loan_id: str, payment_number: int) -> str:
    return str(uuid.uuid5(SCHEDULE_NAMESPACE, f"{loan_id}:{payment_number}"))


@dataclass
class RepaymentScheduleEntry(StorageRecord):
    """
    One installment of a disbursed loan

    The plan (due date, amount due and its split) is fixed at creation;
    only the payment tracking fields change afterwards.
    """
    loan_id: str
    payment_number: int
    due_date: date
    currency: Currency
    amount_due: Money
    principal_portion: Money
    interest_portion: Money
    amount_paid: Money
    late_fee: Money
    late_fee_paid: Money
    status: RepaymentStatus = RepaymentStatus.PENDING
    days_overdue: int = 0
    paid_date: Optional[date] = None

    @property
    def unpaid_amount(self) -> Money:
        return self.amount_due - self.amount_paid

    @property
    def unpaid_late_fee(self) -> Money:
        return self.late_fee - self.late_fee_paid

    @property
    def interest_paid(self) -> Money:
        return min(self.amount_paid, self.interest_portion)

    @property
    def principal_paid(self) -> Money:
        return self.amount_paid - self.interest_paid

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentScheduleEntry':
        currency = Currency[data['currency']]

        def money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            payment_number=data['payment_number'],
            due_date=parse_date(data['due_date']),
            currency=currency,
            amount_due=money('amount_due'),
            principal_portion=money('principal_portion'),
            interest_portion=money('interest_portion'),
            amount_paid=money('amount_paid'),
            late_fee=money('late_fee'),
            late_fee_paid=money('late_fee_paid'),
            status=RepaymentStatus(data['status']),
            days_overdue=data.get('days_overdue', 0),
            paid_date=parse_date(data.get('paid_date'))
        )


@dataclass(frozen=True)
class PaymentAllocation:
    """How much of one payment landed on one installment"""
    payment_number: int
    late_fee: Money
    interest: Money
    principal: Money
    status: RepaymentStatus

    @property
    def total(self) -> Money:
        return self.late_fee + self.interest + self.principal


class RepaymentLedger:
    """
    Stores installment plans and applies payments to them.

    The ledger never changes loan status; the loan manager owns the loan row
    and calls into the ledger inside its own atomic block.
    """

    def __init__(self, storage: StorageInterface,
                 late_fee_weekly_rate: Numeric = DEFAULT_LATE_FEE_WEEKLY_RATE):
        self.storage = storage
        self.table_name = "loan_repayments"
        self.late_fee_weekly_rate = to_decimal(late_fee_weekly_rate)

    def create_schedule(self, loan: 'Loan', entries: List[ScheduleEntry]) -> List[RepaymentScheduleEntry]:
        """Persist the installment plan for a loan; a loan gets exactly one"""
        if self.storage.find(self.table_name, {"loan_id": loan.id}):
            raise ConflictError(f"Repayment schedule already exists for loan {loan.id}")
        if not entries:
            raise ValidationError("Repayment schedule cannot be empty")

        now = datetime.now(timezone.utc)
        zero = Money.zero(loan.currency)
        created = []
        for entry in entries:
            installment = RepaymentScheduleEntry(
                id=schedule_entry_id(loan.id, entry.payment_number),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                payment_number=entry.payment_number,
                due_date=entry.due_date,
                currency=loan.currency,
                amount_due=entry.total_payment,
                principal_portion=entry.principal_portion,
                interest_portion=entry.interest_portion,
                amount_paid=zero,
                late_fee=zero,
                late_fee_paid=zero
            )
            self.storage.save(self.table_name, installment.id, installment.to_dict())
            created.append(installment)

        return created

    def get_schedule(self, loan_id: str) -> List[RepaymentScheduleEntry]:
        """Installments of a loan ordered by payment number"""
        entries = [
            RepaymentScheduleEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {"loan_id": loan_id})
        ]
        entries.sort(key=lambda e: e.payment_number)
        return entries

    def get_installment(self, loan_id: str, payment_number: int) -> RepaymentScheduleEntry:
        data = self.storage.load(self.table_name, schedule_entry_id(loan_id, payment_number))
        if not data:
            raise NotFoundError("Installment", f"{loan_id}#{payment_number}")
        return RepaymentScheduleEntry.from_dict(data)

    def _save(self, entry: RepaymentScheduleEntry) -> None:
        entry.touch()
        self.storage.save(self.table_name, entry.id, entry.to_dict())

    def assess_late_fees(self, loan: 'Loan', as_of: Optional[DateLike] = None) -> List[RepaymentScheduleEntry]:
        """
        Refresh days overdue and late fees for every unsettled installment.

        A late fee never decreases once assessed. Returns the installments
        whose late fee went up.
        """
        as_of = as_of or datetime.now(timezone.utc)
        increased = []

        for entry in self.get_schedule(loan.id):
            if entry.is_settled or not entry.unpaid_amount.is_positive():
                continue

            days = calculate_overdue_days(entry.due_date, as_of)
            if days == 0:
                continue

            fee = calculate_late_fee(entry.amount_due, days, loan.late_payment_fee,
                                     self.late_fee_weekly_rate)
            fee_increased = fee > entry.late_fee
            if fee_increased:
                entry.late_fee = fee
                increased.append(entry)

            if fee_increased or days != entry.days_overdue or entry.status != RepaymentStatus.OVERDUE:
                entry.days_overdue = days
                entry.status = RepaymentStatus.OVERDUE
                self._save(entry)

        return increased

    def outstanding_late_fees(self, loan: 'Loan') -> Money:
        """Late fees assessed but not yet collected"""
        total = Money.zero(loan.currency)
        for entry in self.get_schedule(loan.id):
            if not entry.is_settled:
                total = total + entry.unpaid_late_fee
        return total

    def allocate_payment(self, loan: 'Loan', amount: Money,
                         as_of: Optional[DateLike] = None) -> List[PaymentAllocation]:
        """
        Apply a payment oldest installment first.

        Returns one allocation per installment touched. Any amount left over
        after every installment is settled is not applied; callers reject
        overpayments before allocating.
        """
        if not amount.is_positive():
            raise ValidationError("Payment amount must be positive")

        as_of = as_of or datetime.now(timezone.utc)
        remaining = amount
        allocations = []

        for entry in self.get_schedule(loan.id):
            if not remaining.is_positive():
                break
            if entry.is_settled:
                continue

            fee_part = min(remaining, entry.unpaid_late_fee)
            remaining = remaining - fee_part

            interest_part = min(remaining, entry.interest_portion - entry.interest_paid)
            remaining = remaining - interest_part

            principal_part = min(remaining, entry.principal_portion - entry.principal_paid)
            remaining = remaining - principal_part

            entry.late_fee_paid = entry.late_fee_paid + fee_part
            entry.amount_paid = entry.amount_paid + interest_part + principal_part

            if entry.unpaid_amount.is_zero() and entry.unpaid_late_fee.is_zero():
                entry.status = RepaymentStatus.PAID
                entry.paid_date = _as_date(as_of)
            elif calculate_overdue_days(entry.due_date, as_of) > 0:
                entry.status = RepaymentStatus.OVERDUE
            else:
                entry.status = RepaymentStatus.PARTIAL

            self._save(entry)
            allocations.append(PaymentAllocation(
                payment_number=entry.payment_number,
                late_fee=fee_part,
                interest=interest_part,
                principal=principal_part,
                status=entry.status
            ))

        return allocations

    def waive_installment(self, loan: 'Loan', payment_number: int) -> RepaymentScheduleEntry:
        """Forgive the unpaid remainder of one installment, late fee included"""
        entry = self.get_installment(loan.id, payment_number)
        if entry.is_settled:
            raise ConflictError(
                f"Installment {payment_number} of loan {loan.id} is already {entry.status.value}"
            )
        entry.status = RepaymentStatus.WAIVED
        self._save(entry)
        return entry
