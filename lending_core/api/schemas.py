"""
Pydantic schemas for API requests and response builders

Amounts travel as decimal strings in both directions. Rates are entered as
whole percentages and returned as decimals.
"""

from decimal import Decimal
from datetime import date
from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field

from ..currency import Money, decimal_from_string
from ..products import LoanProduct
from ..customers import Customer
from ..loans import Loan, LoanPage, RepaymentResult
from ..repayments import RepaymentScheduleEntry, PaymentAllocation
from ..transactions import Transaction


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (KES, USD, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """Lenient amount parsing: accepts '12500', '12,500.00' or 'KES 12,500'"""
    if value is None:
        return None
    return decimal_from_string(value)


# Product schemas
class CreateProductRequest(BaseModel):
    name: str
    currency: Optional[str] = Field(None, description="Defaults to the configured lending currency")
    min_amount: str
    max_amount: str
    interest_rate_percent: str = Field(..., description="Annual rate, e.g. '18' for 18%")
    min_term_months: int = Field(..., gt=0)
    max_term_months: int = Field(..., gt=0)
    processing_fee_percent: str = "0"
    late_payment_fee: Optional[str] = None
    description: str = ""


# Customer schemas
class CreateCustomerRequest(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    customer_id: Optional[str] = Field(None, description="Officers only; defaults to the caller")


class UpdateKYCRequest(BaseModel):
    status: str = Field(..., description="KYC status (not_started, pending, approved, rejected)")


class UpdateProfileRequest(BaseModel):
    monthly_income: Optional[str] = None
    employment_years: Optional[str] = None
    payment_history: Optional[str] = Field(None, description="excellent, good, fair or poor")
    external_loans_count: Optional[int] = Field(None, ge=0)


# Loan schemas
class ApplyLoanRequest(BaseModel):
    product_id: str
    amount: str
    term_months: int
    purpose: str
    user_id: Optional[str] = Field(None, description="Officers only; defaults to the caller")


class ApproveLoanRequest(BaseModel):
    approved_amount: Optional[str] = None


class RejectLoanRequest(BaseModel):
    reason: str


class DisburseLoanRequest(BaseModel):
    method: str = Field(..., description="bank_transfer, mobile_money or cash")
    account: str
    reference: Optional[str] = None
    amount: Optional[str] = None


class RepayLoanRequest(BaseModel):
    amount: str
    method: str
    reference: Optional[str] = None
    as_of: Optional[date] = None


class StatusChangeRequest(BaseModel):
    reason: Optional[str] = None


class OverdueRefreshRequest(BaseModel):
    as_of: Optional[date] = None


# Response builders
def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _amount(money: Optional[Money]) -> Optional[str]:
    return str(money.amount) if money is not None else None


def product_response(product: LoanProduct) -> Dict[str, Any]:
    return {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "currency": product.currency.code,
        "min_amount": _amount(product.min_amount),
        "max_amount": _amount(product.max_amount),
        "interest_rate": str(product.interest_rate),
        "min_term_months": product.min_term_months,
        "max_term_months": product.max_term_months,
        "processing_fee_rate": str(product.processing_fee_rate),
        "late_payment_fee": _amount(product.late_payment_fee),
        "is_active": product.is_active
    }


def customer_response(customer: Customer) -> Dict[str, Any]:
    return {
        "id": customer.id,
        "first_name": customer.first_name,
        "last_name": customer.last_name,
        "email": customer.email,
        "phone": customer.phone,
        "kyc_status": customer.kyc_status.value,
        "kyc_verified_at": _iso(customer.kyc_verified_at),
        "monthly_income": str(customer.monthly_income) if customer.monthly_income is not None else None,
        "employment_years": str(customer.employment_years) if customer.employment_years is not None else None,
        "payment_history": customer.payment_history.value if customer.payment_history else None,
        "external_loans_count": customer.external_loans_count
    }


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "loan_number": loan.loan_number,
        "user_id": loan.user_id,
        "product_id": loan.product_id,
        "status": loan.status.value,
        "currency": loan.currency.code,
        "principal": _amount(loan.principal),
        "interest_rate": str(loan.interest_rate),
        "term_months": loan.term_months,
        "processing_fee": _amount(loan.processing_fee),
        "monthly_payment": _amount(loan.monthly_payment),
        "total_amount": _amount(loan.total_amount),
        "outstanding_balance": _amount(loan.outstanding_balance),
        "total_paid": _amount(loan.total_paid),
        "approved_amount": _amount(loan.approved_amount),
        "disbursed_amount": _amount(loan.disbursed_amount),
        "credit_score": loan.credit_score,
        "risk_rating": loan.risk_rating.value,
        "purpose": loan.purpose,
        "rejection_reason": loan.rejection_reason,
        "application_date": _iso(loan.application_date),
        "approval_date": _iso(loan.approval_date),
        "disbursement_date": _iso(loan.disbursement_date),
        "first_payment_date": _iso(loan.first_payment_date),
        "final_payment_date": _iso(loan.final_payment_date),
        "closed_date": _iso(loan.closed_date)
    }


def loan_page_response(page: LoanPage) -> Dict[str, Any]:
    return {
        "items": [loan_response(loan) for loan in page.items],
        "total": page.total,
        "page": page.page,
        "limit": page.limit,
        "pages": page.pages
    }


def schedule_entry_response(entry: RepaymentScheduleEntry) -> Dict[str, Any]:
    return {
        "payment_number": entry.payment_number,
        "due_date": entry.due_date.isoformat(),
        "amount_due": _amount(entry.amount_due),
        "principal_portion": _amount(entry.principal_portion),
        "interest_portion": _amount(entry.interest_portion),
        "amount_paid": _amount(entry.amount_paid),
        "late_fee": _amount(entry.late_fee),
        "late_fee_paid": _amount(entry.late_fee_paid),
        "status": entry.status.value,
        "days_overdue": entry.days_overdue,
        "paid_date": _iso(entry.paid_date)
    }


def transaction_response(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "loan_id": transaction.loan_id,
        "type": transaction.transaction_type.value,
        "amount": MoneyModel.from_money(transaction.amount).model_dump(),
        "method": transaction.method,
        "reference": transaction.reference,
        "description": transaction.description,
        "status": transaction.status.value,
        "created_at": transaction.created_at.isoformat()
    }


def allocation_response(allocation: PaymentAllocation) -> Dict[str, Any]:
    return {
        "payment_number": allocation.payment_number,
        "late_fee": _amount(allocation.late_fee),
        "interest": _amount(allocation.interest),
        "principal": _amount(allocation.principal),
        "status": allocation.status.value
    }


def repayment_response(result: RepaymentResult) -> Dict[str, Any]:
    transactions: List[Dict[str, Any]] = [
        transaction_response(t)
        for t in (result.repayment_transaction, result.penalty_transaction) if t is not None
    ]
    return {
        "loan": loan_response(result.loan),
        "amount_applied": _amount(result.amount_applied),
        "completed": result.completed,
        "allocations": [allocation_response(a) for a in result.allocations],
        "transactions": transactions
    }
