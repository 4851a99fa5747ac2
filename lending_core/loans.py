"""
Loan Lifecycle Module

Takes a loan from application through approval, disbursement and repayment
to closure. Every status change goes through ALLOWED_TRANSITIONS and is
written with a conditional update keyed on the status and version the
caller read, inside one ``storage.atomic()`` block, so two concurrent
requests can never both pass the same guard.

Interest rate, term, processing fee rate and late fee are copied from the
product at application time and never re-read from the product afterwards.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import random
import time
import uuid

from .currency import Money, Currency, Numeric, to_decimal, money_sum
from .amortization import (
    DueDateConvention, add_months, calculate_monthly_payment,
    calculate_processing_fee, compute_schedule
)
from .scoring import RiskRating, calculate_credit_score, determine_risk_rating
from .products import ProductCatalog, LoanProduct
from .customers import CustomerManager
from .repayments import (
    RepaymentLedger, RepaymentScheduleEntry, PaymentAllocation, DateLike,
    calculate_overdue_days
)
from .transactions import TransactionLedger, Transaction, TransactionType
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_date
from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .errors import ValidationError, KYCRequiredError, NotFoundError, ConflictError
from .logging_config import get_logger, log_action


class LoanStatus(Enum):
    """Stored loan status"""
    PENDING = "pending"          # Applied, awaiting decision
    APPROVED = "approved"        # Approved, awaiting disbursement
    REJECTED = "rejected"        # Declined by an officer
    ACTIVE = "active"            # Disbursed and being repaid
    DISBURSED = "active"         # Alias of ACTIVE
    COMPLETED = "completed"      # Fully repaid
    DEFAULTED = "defaulted"      # Borrower stopped paying
    CANCELLED = "cancelled"      # Withdrawn before disbursement
    SUSPENDED = "suspended"      # Collections paused
    WRITTEN_OFF = "written_off"  # Balance deemed unrecoverable


ALLOWED_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED, LoanStatus.CANCELLED},
    LoanStatus.APPROVED: {LoanStatus.ACTIVE, LoanStatus.CANCELLED},
    LoanStatus.ACTIVE: {
        LoanStatus.COMPLETED, LoanStatus.DEFAULTED,
        LoanStatus.SUSPENDED, LoanStatus.WRITTEN_OFF
    },
    LoanStatus.SUSPENDED: {
        LoanStatus.ACTIVE, LoanStatus.COMPLETED,
        LoanStatus.DEFAULTED, LoanStatus.WRITTEN_OFF
    },
    LoanStatus.DEFAULTED: {LoanStatus.WRITTEN_OFF},
    LoanStatus.REJECTED: set(),
    LoanStatus.COMPLETED: set(),
    LoanStatus.CANCELLED: set(),
    LoanStatus.WRITTEN_OFF: set(),
}

# A customer may hold at most one loan in these states
OPEN_STATUSES = {LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.ACTIVE, LoanStatus.SUSPENDED}

TERMINAL_STATUSES = {status for status, targets in ALLOWED_TRANSITIONS.items() if not targets}


class DisbursementMethod(Enum):
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    CASH = "cash"


@dataclass
class Loan(StorageRecord):
    """
    Loan application and, once disbursed, the loan account itself
    """
    loan_number: str
    user_id: str                    # Borrowing customer
    product_id: str
    currency: Currency
    principal: Money
    interest_rate: Decimal          # Annual, decimal; frozen at application
    term_months: int
    processing_fee_rate: Decimal
    processing_fee: Money
    late_payment_fee: Money
    monthly_payment: Money
    total_amount: Money
    outstanding_balance: Money
    total_paid: Money
    principal_paid: Money
    interest_paid: Money
    late_fees_paid: Money
    purpose: str
    status: LoanStatus
    credit_score: int
    risk_rating: RiskRating
    application_date: datetime
    version: int = 0

    approved_amount: Optional[Money] = None
    approver_id: Optional[str] = None
    approval_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    status_reason: Optional[str] = None

    disbursed_amount: Optional[Money] = None
    disbursement_method: Optional[DisbursementMethod] = None
    disbursement_account: Optional[str] = None
    disbursement_reference: Optional[str] = None
    disbursement_date: Optional[datetime] = None
    first_payment_date: Optional[date] = None
    final_payment_date: Optional[date] = None
    last_payment_date: Optional[datetime] = None
    closed_date: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency[data['currency']]

        def money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        def optional_money(key: str) -> Optional[Money]:
            value = data.get(key)
            return Money(Decimal(value), currency) if value is not None else None

        method = data.get('disbursement_method')
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_number=data['loan_number'],
            user_id=data['user_id'],
            product_id=data['product_id'],
            currency=currency,
            principal=money('principal'),
            interest_rate=Decimal(data['interest_rate']),
            term_months=data['term_months'],
            processing_fee_rate=Decimal(data['processing_fee_rate']),
            processing_fee=money('processing_fee'),
            late_payment_fee=money('late_payment_fee'),
            monthly_payment=money('monthly_payment'),
            total_amount=money('total_amount'),
            outstanding_balance=money('outstanding_balance'),
            total_paid=money('total_paid'),
            principal_paid=money('principal_paid'),
            interest_paid=money('interest_paid'),
            late_fees_paid=money('late_fees_paid'),
            purpose=data['purpose'],
            status=LoanStatus(data['status']),
            credit_score=data['credit_score'],
            risk_rating=RiskRating(data['risk_rating']),
            application_date=parse_datetime(data['application_date']),
            version=data.get('version', 0),
            approved_amount=optional_money('approved_amount'),
            approver_id=data.get('approver_id'),
            approval_date=parse_datetime(data.get('approval_date')),
            rejection_reason=data.get('rejection_reason'),
            status_reason=data.get('status_reason'),
            disbursed_amount=optional_money('disbursed_amount'),
            disbursement_method=DisbursementMethod(method) if method else None,
            disbursement_account=data.get('disbursement_account'),
            disbursement_reference=data.get('disbursement_reference'),
            disbursement_date=parse_datetime(data.get('disbursement_date')),
            first_payment_date=parse_date(data.get('first_payment_date')),
            final_payment_date=parse_date(data.get('final_payment_date')),
            last_payment_date=parse_datetime(data.get('last_payment_date')),
            closed_date=parse_datetime(data.get('closed_date'))
        )


@dataclass
class RepaymentResult:
    """Outcome of one repayment"""
    loan: Loan
    repayment_transaction: Optional[Transaction]
    penalty_transaction: Optional[Transaction]
    allocations: List[PaymentAllocation]
    amount_applied: Money
    completed: bool


@dataclass
class LoanPage:
    items: List[Loan]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


def generate_loan_number() -> str:
    """Human-readable loan number, e.g. PL1718031234567042"""
    return f"PL{int(time.time() * 1000)}{random.randint(0, 999):03d}"


class LoanManager:
    """
    Manages the loan lifecycle from application to closure
    """

    def __init__(
        self,
        storage: StorageInterface,
        products: ProductCatalog,
        customers: CustomerManager,
        repayments: RepaymentLedger,
        transactions: TransactionLedger,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.products = products
        self.customers = customers
        self.repayments = repayments
        self.transactions = transactions
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.logger = get_logger("lending_core.loans")

        self.loans_table = "loans"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_money(value: Union[Money, Numeric], currency: Currency, label: str) -> Money:
        if isinstance(value, Money):
            if value.currency != currency:
                raise ValidationError(
                    f"{label} currency {value.currency.code} does not match loan currency {currency.code}"
                )
            return value
        return Money(to_decimal(value), currency)

    def _load_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError("Loan", loan_id)
        return Loan.from_dict(data)

    @staticmethod
    def _check_transition(loan: Loan, new_status: LoanStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[loan.status]:
            raise ConflictError(
                f"Loan {loan.loan_number} cannot move from {loan.status.value} to {new_status.value}",
                {"loan_id": loan.id, "status": loan.status.value, "requested": new_status.value}
            )

    def _write_loan(self, loan: Loan, expected_status: LoanStatus) -> None:
        """Persist the loan only if nobody changed it since it was read"""
        expected = {"status": expected_status.value, "version": loan.version}
        loan.version += 1
        loan.touch()
        if not self.storage.update_where(self.loans_table, loan.id, expected, loan.to_dict()):
            raise ConflictError(f"Loan {loan.loan_number} was modified concurrently")

    def _log(self, message: str, action: str, loan: Loan, user_id: Optional[str] = None,
             extra: Optional[Dict[str, Any]] = None) -> None:
        log_action(
            self.logger, "info", message,
            user_id=user_id, action=action, resource=f"loan:{loan.id}", extra=extra,
            loan_id=loan.id, loan_number=loan.loan_number,
            loan_status=loan.status.value, customer_id=loan.user_id
        )

    def _change_status(
        self,
        loan_id: str,
        new_status: LoanStatus,
        actor_id: Optional[str],
        event_type: AuditEventType,
        reason: Optional[str] = None,
        from_statuses: Optional[set] = None
    ) -> Loan:
        """Plain status transition with no side effects beyond the loan row"""
        with self.storage.atomic():
            loan = self._load_loan(loan_id)
            if from_statuses is not None and loan.status not in from_statuses:
                raise ConflictError(
                    f"Loan {loan.loan_number} cannot move from {loan.status.value} to {new_status.value}"
                )
            self._check_transition(loan, new_status)

            previous_status = loan.status
            loan.status = new_status
            loan.status_reason = reason
            if loan.is_terminal:
                loan.closed_date = datetime.now(timezone.utc)
            self._write_loan(loan, previous_status)

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"from": previous_status, "to": new_status, "reason": reason},
                user_id=actor_id
            )

        self._log(f"Loan {new_status.value}", event_type.value, loan, actor_id,
                  {"previous_status": previous_status.value, "reason": reason})
        return loan

    def _count_defaulted_loans(self, user_id: str) -> int:
        return len(self.storage.find(
            self.loans_table, {"user_id": user_id, "status": LoanStatus.DEFAULTED.value}
        ))

    def _unique_loan_number(self) -> str:
        while True:
            loan_number = generate_loan_number()
            if not self.storage.find(self.loans_table, {"loan_number": loan_number}):
                return loan_number

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def get_loan_products(self) -> List[LoanProduct]:
        """Active loan products"""
        return self.products.get_loan_products()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def apply_for_loan(
        self,
        user_id: str,
        product_id: str,
        amount: Union[Money, Numeric],
        term_months: int,
        purpose: str
    ) -> Loan:
        """
        Submit a loan application

        Args:
            user_id: Applying customer
            product_id: Loan product applied for
            amount: Requested principal
            term_months: Requested term
            purpose: Free-text loan purpose

        Returns:
            The PENDING loan

        Raises:
            ValidationError: Bad amount, term or purpose, or outside product bounds
            NotFoundError: Unknown or inactive product, unknown customer
            KYCRequiredError: Customer has not passed KYC
            ConflictError: Customer already has an open loan
        """
        raw_amount = amount.amount if isinstance(amount, Money) else to_decimal(amount)
        if raw_amount <= Decimal('0'):
            raise ValidationError("Loan amount must be positive")
        if term_months is None or term_months <= 0:
            raise ValidationError("Term must be a positive number of months")
        if term_months > self.config.max_term_months:
            raise ValidationError(f"Term cannot exceed {self.config.max_term_months} months")
        if not purpose or not purpose.strip():
            raise ValidationError("Loan purpose is required")

        product = self.products.get_product(product_id)
        if not product or not product.is_active:
            raise NotFoundError("Loan product", product_id)

        principal = self._to_money(amount, product.currency, "Loan amount")
        if not product.amount_in_range(principal):
            raise ValidationError(
                f"Loan amount must be between {product.min_amount.to_string()} "
                f"and {product.max_amount.to_string()}"
            )
        if not product.term_in_range(term_months):
            raise ValidationError(
                f"Loan term must be between {product.min_term_months} "
                f"and {product.max_term_months} months"
            )

        customer = self.customers.get_customer(user_id)
        if not customer:
            raise NotFoundError("Customer", user_id)
        if not customer.is_kyc_approved:
            raise KYCRequiredError("KYC verification required before applying for a loan")

        with self.storage.atomic():
            for data in self.storage.find(self.loans_table, {"user_id": user_id}):
                if LoanStatus(data['status']) in OPEN_STATUSES:
                    raise ConflictError(
                        "Customer already has an open loan",
                        {"loan_id": data['id'], "status": data['status']}
                    )

            credit_score = calculate_credit_score(
                loan_amount=principal,
                monthly_income=customer.monthly_income,
                existing_loans=customer.external_loans_count + self._count_defaulted_loans(user_id),
                employment_years=customer.employment_years,
                payment_history=customer.payment_history
            )
            monthly_payment = calculate_monthly_payment(principal, product.interest_rate, term_months)
            processing_fee = calculate_processing_fee(principal, product.processing_fee_rate)
            outstanding = monthly_payment * term_months
            zero = Money.zero(product.currency)

            now = datetime.now(timezone.utc)
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=self._unique_loan_number(),
                user_id=user_id,
                product_id=product.id,
                currency=product.currency,
                principal=principal,
                interest_rate=product.interest_rate,
                term_months=term_months,
                processing_fee_rate=product.processing_fee_rate,
                processing_fee=processing_fee,
                late_payment_fee=product.late_payment_fee,
                monthly_payment=monthly_payment,
                total_amount=outstanding + processing_fee,
                outstanding_balance=outstanding,
                total_paid=zero,
                principal_paid=zero,
                interest_paid=zero,
                late_fees_paid=zero,
                purpose=purpose.strip(),
                status=LoanStatus.PENDING,
                credit_score=credit_score,
                risk_rating=determine_risk_rating(credit_score),
                application_date=now
            )
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPLIED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "product_id": product.id,
                    "principal": principal.to_string(),
                    "term_months": term_months,
                    "credit_score": credit_score,
                    "risk_rating": loan.risk_rating
                },
                user_id=user_id
            )

        self._log("Loan application submitted", "apply_for_loan", loan, user_id, {
            "principal": principal.to_string(),
            "term_months": term_months,
            "credit_score": credit_score,
            "risk_rating": loan.risk_rating.value
        })
        return loan

    def approve_loan(self, loan_id: str, approver_id: str,
                     approved_amount: Optional[Union[Money, Numeric]] = None) -> Loan:
        """Approve a PENDING loan, optionally for less than was requested"""
        with self.storage.atomic():
            loan = self._load_loan(loan_id)
            self._check_transition(loan, LoanStatus.APPROVED)

            amount = loan.principal
            if approved_amount is not None:
                amount = self._to_money(approved_amount, loan.currency, "Approved amount")
            if not amount.is_positive() or amount > loan.principal:
                raise ValidationError(
                    f"Approved amount must be positive and at most {loan.principal.to_string()}"
                )

            loan.status = LoanStatus.APPROVED
            loan.approved_amount = amount
            loan.approver_id = approver_id
            loan.approval_date = datetime.now(timezone.utc)
            self._write_loan(loan, LoanStatus.PENDING)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPROVED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"approved_amount": amount.to_string()},
                user_id=approver_id
            )

        self._log("Loan approved", "approve_loan", loan, approver_id,
                  {"approved_amount": amount.to_string()})
        return loan

    def reject_loan(self, loan_id: str, approver_id: str, reason: str) -> Loan:
        """Reject a PENDING loan with a reason"""
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")

        with self.storage.atomic():
            loan = self._load_loan(loan_id)
            self._check_transition(loan, LoanStatus.REJECTED)

            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = reason.strip()
            loan.approver_id = approver_id
            loan.closed_date = datetime.now(timezone.utc)
            self._write_loan(loan, LoanStatus.PENDING)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REJECTED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"reason": loan.rejection_reason},
                user_id=approver_id
            )

        self._log("Loan rejected", "reject_loan", loan, approver_id,
                  {"reason": loan.rejection_reason})
        return loan

    def disburse_loan(
        self,
        loan_id: str,
        method: Union[DisbursementMethod, str],
        account: str,
        reference: Optional[str] = None,
        amount: Optional[Union[Money, Numeric]] = None,
        actor_id: Optional[str] = None
    ) -> Loan:
        """
        Pay out an APPROVED loan and generate its repayment schedule

        The schedule is built from the disbursed amount with the frozen rate
        and term. It is written only after the conditional APPROVED -> ACTIVE
        update succeeds, so a loan is disbursed and scheduled exactly once.
        """
        if not method:
            raise ValidationError("Disbursement method is required")
        try:
            method = DisbursementMethod(method)
        except ValueError:
            raise ValidationError(f"Unknown disbursement method: {method}")
        if not account or not account.strip():
            raise ValidationError("Disbursement account is required")

        with self.storage.atomic():
            loan = self._load_loan(loan_id)
            self._check_transition(loan, LoanStatus.ACTIVE)
            if loan.status != LoanStatus.APPROVED:
                raise ConflictError(f"Loan {loan.loan_number} is not approved")

            approved = loan.approved_amount or loan.principal
            disbursed = approved
            if amount is not None:
                disbursed = self._to_money(amount, loan.currency, "Disbursement amount")
            if not disbursed.is_positive() or disbursed > approved:
                raise ValidationError(
                    f"Disbursement amount must be positive and at most {approved.to_string()}"
                )

            now = datetime.now(timezone.utc)
            convention = DueDateConvention(self.config.due_date_convention)
            schedule = compute_schedule(
                disbursed, loan.interest_rate, loan.term_months, now.date(),
                convention, self.config.installment_interval_days
            )

            loan.status = LoanStatus.ACTIVE
            loan.disbursed_amount = disbursed
            loan.disbursement_method = method
            loan.disbursement_account = account.strip()
            loan.disbursement_reference = reference
            loan.disbursement_date = now
            loan.monthly_payment = calculate_monthly_payment(disbursed, loan.interest_rate, loan.term_months)
            loan.processing_fee = calculate_processing_fee(disbursed, loan.processing_fee_rate)
            loan.outstanding_balance = money_sum((entry.total_payment for entry in schedule), loan.currency)
            loan.total_amount = loan.outstanding_balance + loan.processing_fee
            loan.first_payment_date = schedule[0].due_date
            if convention == DueDateConvention.CALENDAR_MONTH:
                loan.final_payment_date = schedule[-1].due_date
            else:
                loan.final_payment_date = add_months(loan.first_payment_date, loan.term_months - 1)

            # Only the caller whose conditional update lands gets past here
            self._write_loan(loan, LoanStatus.APPROVED)

            self.repayments.create_schedule(loan, schedule)
            disbursement = self.transactions.record(
                loan_id=loan.id,
                user_id=loan.user_id,
                transaction_type=TransactionType.DISBURSEMENT,
                amount=disbursed,
                method=method.value,
                reference=reference,
                description=f"Disbursement of loan {loan.loan_number}"
            )
            if loan.processing_fee.is_positive():
                self.transactions.record(
                    loan_id=loan.id,
                    user_id=loan.user_id,
                    transaction_type=TransactionType.FEE,
                    amount=loan.processing_fee,
                    method=method.value,
                    description=f"Processing fee for loan {loan.loan_number}"
                )

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DISBURSED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "amount": disbursed.to_string(),
                    "method": method,
                    "transaction_id": disbursement.id,
                    "first_payment_date": loan.first_payment_date,
                    "final_payment_date": loan.final_payment_date
                },
                user_id=actor_id
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_GENERATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"installments": len(schedule), "convention": convention},
                user_id=actor_id
            )

        self._log("Loan disbursed", "disburse_loan", loan, actor_id, {
            "amount": disbursed.to_string(),
            "method": method.value,
            "installments": len(schedule),
            "outstanding_balance": loan.outstanding_balance.to_string()
        })
        return loan

    def process_repayment(
        self,
        loan_id: str,
        amount: Union[Money, Numeric],
        method: str,
        reference: Optional[str] = None,
        as_of: Optional[DateLike] = None,
        actor_id: Optional[str] = None
    ) -> RepaymentResult:
        """
        Apply a repayment to an ACTIVE loan

        Late fees are assessed as of ``as_of`` first, then the payment is
        allocated oldest installment first. A payment larger than the
        outstanding balance plus unpaid late fees is rejected.
        """
        if not method or not str(method).strip():
            raise ValidationError("Payment method is required")
        as_of = as_of or datetime.now(timezone.utc)

        with self.storage.atomic():
            loan = self._load_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise ConflictError(
                    f"Repayments are only accepted on active loans, loan {loan.loan_number} "
                    f"is {loan.status.value}"
                )

            payment = self._to_money(amount, loan.currency, "Payment amount")
            if not payment.is_positive():
                raise ValidationError("Payment amount must be positive")

            charged = self.repayments.assess_late_fees(loan, as_of)
            if charged:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LATE_FEE_ASSESSED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"installments": [entry.payment_number for entry in charged]},
                    user_id=actor_id
                )

            payable = loan.outstanding_balance + self.repayments.outstanding_late_fees(loan)
            if payment > payable:
                raise ValidationError(
                    f"Payment exceeds amount owed of {payable.to_string()}",
                    {"amount_owed": str(payable.amount)}
                )

            allocations = self.repayments.allocate_payment(loan, payment, as_of)
            fees = money_sum((a.late_fee for a in allocations), loan.currency)
            interest = money_sum((a.interest for a in allocations), loan.currency)
            principal = money_sum((a.principal for a in allocations), loan.currency)
            installments = interest + principal

            loan.outstanding_balance = loan.outstanding_balance - installments
            loan.total_paid = loan.total_paid + payment
            loan.principal_paid = loan.principal_paid + principal
            loan.interest_paid = loan.interest_paid + interest
            loan.late_fees_paid = loan.late_fees_paid + fees
            loan.last_payment_date = datetime.now(timezone.utc)

            completed = loan.outstanding_balance.is_zero()
            if completed:
                self._check_transition(loan, LoanStatus.COMPLETED)
                loan.status = LoanStatus.COMPLETED
                loan.closed_date = loan.last_payment_date
            self._write_loan(loan, LoanStatus.ACTIVE)

            repayment_txn = None
            if installments.is_positive():
                repayment_txn = self.transactions.record(
                    loan_id=loan.id,
                    user_id=loan.user_id,
                    transaction_type=TransactionType.REPAYMENT,
                    amount=installments,
                    method=method,
                    reference=reference,
                    description=f"Repayment on loan {loan.loan_number}",
                    metadata={"principal": principal.amount, "interest": interest.amount}
                )
            penalty_txn = None
            if fees.is_positive():
                penalty_txn = self.transactions.record(
                    loan_id=loan.id,
                    user_id=loan.user_id,
                    transaction_type=TransactionType.PENALTY,
                    amount=fees,
                    method=method,
                    reference=f"{reference}-PEN" if reference else None,
                    description=f"Late fees on loan {loan.loan_number}"
                )

            self.audit_trail.log_event(
                event_type=AuditEventType.REPAYMENT_RECEIVED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "amount": payment.to_string(),
                    "principal": principal.to_string(),
                    "interest": interest.to_string(),
                    "late_fees": fees.to_string(),
                    "outstanding_balance": loan.outstanding_balance.to_string()
                },
                user_id=actor_id
            )
            if completed:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_COMPLETED,
                    entity_type="loan",
                    entity_id=loan.id,
                    user_id=actor_id
                )

        self._log("Repayment processed", "process_repayment", loan, actor_id, {
            "amount": payment.to_string(),
            "late_fees": fees.to_string(),
            "outstanding_balance": loan.outstanding_balance.to_string(),
            "completed": completed
        })
        return RepaymentResult(
            loan=loan,
            repayment_transaction=repayment_txn,
            penalty_transaction=penalty_txn,
            allocations=allocations,
            amount_applied=payment,
            completed=completed
        )

    def waive_installment(self, loan_id: str, payment_number: int,
                          actor_id: Optional[str] = None) -> Loan:
        """Forgive one installment; its unpaid remainder leaves the balance"""
        with self.storage.atomic():
            loan = self._load_loan(loan_id)
            if loan.status not in (LoanStatus.ACTIVE, LoanStatus.SUSPENDED):
                raise ConflictError(
                    f"Installments can only be waived on active or suspended loans, "
                    f"loan {loan.loan_number} is {loan.status.value}"
                )

            entry = self.repayments.waive_installment(loan, payment_number)
            previous_status = loan.status
            loan.outstanding_balance = loan.outstanding_balance - entry.unpaid_amount
            completed = loan.outstanding_balance.is_zero()
            if completed:
                # Suspended loans close as well
                self._check_transition(loan, LoanStatus.COMPLETED)
                loan.status = LoanStatus.COMPLETED
                loan.closed_date = datetime.now(timezone.utc)
            self._write_loan(loan, previous_status)

            self.audit_trail.log_event(
                event_type=AuditEventType.INSTALLMENT_WAIVED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "payment_number": payment_number,
                    "waived_amount": entry.unpaid_amount.to_string(),
                    "waived_late_fee": entry.unpaid_late_fee.to_string()
                },
                user_id=actor_id
            )
            if completed:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_COMPLETED,
                    entity_type="loan",
                    entity_id=loan.id,
                    user_id=actor_id
                )

        self._log("Installment waived", "waive_installment", loan, actor_id,
                  {"payment_number": payment_number})
        return loan

    def cancel_loan(self, loan_id: str, actor_id: Optional[str] = None,
                    reason: Optional[str] = None) -> Loan:
        """Withdraw a PENDING or APPROVED loan"""
        return self._change_status(loan_id, LoanStatus.CANCELLED, actor_id,
                                   AuditEventType.LOAN_CANCELLED, reason)

    def suspend_loan(self, loan_id: str, actor_id: Optional[str] = None,
                     reason: Optional[str] = None) -> Loan:
        return self._change_status(loan_id, LoanStatus.SUSPENDED, actor_id,
                                   AuditEventType.LOAN_SUSPENDED, reason)

    def resume_loan(self, loan_id: str, actor_id: Optional[str] = None) -> Loan:
        """Return a SUSPENDED loan to ACTIVE; approved loans go through disbursement"""
        return self._change_status(loan_id, LoanStatus.ACTIVE, actor_id,
                                   AuditEventType.LOAN_RESUMED,
                                   from_statuses={LoanStatus.SUSPENDED})

    def mark_defaulted(self, loan_id: str, actor_id: Optional[str] = None,
                       reason: Optional[str] = None) -> Loan:
        return self._change_status(loan_id, LoanStatus.DEFAULTED, actor_id,
                                   AuditEventType.LOAN_DEFAULTED, reason)

    def write_off_loan(self, loan_id: str, actor_id: Optional[str] = None,
                       reason: Optional[str] = None) -> Loan:
        return self._change_status(loan_id, LoanStatus.WRITTEN_OFF, actor_id,
                                   AuditEventType.LOAN_WRITTEN_OFF, reason)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str, user_id: Optional[str] = None) -> Loan:
        """
        Get a loan by ID

        When ``user_id`` is given the loan must belong to that user; someone
        else's loan is reported as not found.
        """
        loan = self._load_loan(loan_id)
        if user_id is not None and loan.user_id != user_id:
            raise NotFoundError("Loan", loan_id)
        return loan

    def get_user_loans(self, user_id: str) -> List[Loan]:
        """All loans of a customer, newest first"""
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, {"user_id": user_id})]
        loans.sort(key=lambda loan: loan.application_date, reverse=True)
        return loans

    def list_loans(self, status: Optional[Union[LoanStatus, str]] = None,
                   page: int = 1, limit: Optional[int] = None) -> LoanPage:
        """Paginated loan listing for officers, newest first"""
        limit = limit or self.config.default_page_limit
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if limit < 1 or limit > self.config.max_page_limit:
            raise ValidationError(f"Limit must be between 1 and {self.config.max_page_limit}")

        filters = {}
        if status is not None:
            try:
                filters["status"] = LoanStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown loan status: {status}")

        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.application_date, reverse=True)
        start = (page - 1) * limit
        return LoanPage(items=loans[start:start + limit], total=len(loans), page=page, limit=limit)

    def get_repayment_schedule(self, loan_id: str, user_id: Optional[str] = None) -> List[RepaymentScheduleEntry]:
        """Installments ordered by payment number; empty before disbursement"""
        loan = self.get_loan(loan_id, user_id)
        return self.repayments.get_schedule(loan.id)

    def get_loan_transactions(self, loan_id: str, user_id: Optional[str] = None) -> List[Transaction]:
        loan = self.get_loan(loan_id, user_id)
        return self.transactions.get_loan_transactions(loan.id)

    def is_overdue(self, loan_id: str, as_of: Optional[DateLike] = None) -> bool:
        """Overdue view: an active loan with an unsettled installment past its due date"""
        loan = self._load_loan(loan_id)
        if loan.status != LoanStatus.ACTIVE:
            return False
        as_of = as_of or datetime.now(timezone.utc)
        return any(
            not entry.is_settled and calculate_overdue_days(entry.due_date, as_of) > 0
            for entry in self.repayments.get_schedule(loan.id)
        )

    def refresh_overdue(self, as_of: Optional[DateLike] = None) -> Dict[str, int]:
        """
        Assess late fees across all active loans

        Returns:
            Counts of loans checked, loans overdue and installments charged
        """
        as_of = as_of or datetime.now(timezone.utc)
        result = {"loans_checked": 0, "loans_overdue": 0, "installments_charged": 0}

        for data in self.storage.find(self.loans_table, {"status": LoanStatus.ACTIVE.value}):
            loan = Loan.from_dict(data)
            result["loans_checked"] += 1

            with self.storage.atomic():
                charged = self.repayments.assess_late_fees(loan, as_of)
                if charged:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.LATE_FEE_ASSESSED,
                        entity_type="loan",
                        entity_id=loan.id,
                        metadata={"installments": [entry.payment_number for entry in charged]}
                    )

            if self.is_overdue(loan.id, as_of):
                result["loans_overdue"] += 1
            result["installments_charged"] += len(charged)

        log_action(
            self.logger, "info", "Overdue refresh completed",
            action="refresh_overdue", resource="loans", extra=result
        )
        return result
