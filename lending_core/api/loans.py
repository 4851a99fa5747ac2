"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from .auth import (
    LendingSystem, Principal, get_lending_system, get_current_principal,
    require_officer, scope_user
)
from .schemas import (
    ApplyLoanRequest, ApproveLoanRequest, RejectLoanRequest, DisburseLoanRequest,
    RepayLoanRequest, StatusChangeRequest, OverdueRefreshRequest, parse_amount,
    loan_response, loan_page_response, product_response, schedule_entry_response,
    transaction_response, repayment_response
)


router = APIRouter()


def _reason(request: Optional[StatusChangeRequest]) -> Optional[str]:
    return request.reason if request else None


@router.get("/products")
async def get_loan_products(
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Loan products available for application"""
    return {"products": [product_response(p) for p in system.loan_manager.get_loan_products()]}


@router.post("/apply", status_code=status.HTTP_201_CREATED)
async def apply_for_loan(
    request: ApplyLoanRequest,
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Submit a loan application for the caller"""
    user_id = principal.user_id
    if request.user_id and request.user_id != principal.user_id:
        if not principal.is_officer:
            raise HTTPException(status_code=403, detail="Cannot apply on behalf of another user")
        user_id = request.user_id

    loan = system.loan_manager.apply_for_loan(
        user_id=user_id,
        product_id=request.product_id,
        amount=parse_amount(request.amount),
        term_months=request.term_months,
        purpose=request.purpose
    )
    return loan_response(loan)


@router.get("")
async def get_my_loans(
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Loans of the caller, newest first"""
    loans = system.loan_manager.get_user_loans(principal.user_id)
    return {"loans": [loan_response(loan) for loan in loans]}


@router.get("/admin/all")
async def list_all_loans(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    """Paginated listing of every loan, optionally filtered by status"""
    loan_page = system.loan_manager.list_loans(status=status_filter, page=page, limit=limit)
    return loan_page_response(loan_page)


@router.post("/overdue/refresh")
async def refresh_overdue(
    request: Optional[OverdueRefreshRequest] = None,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    """Assess late fees across all active loans"""
    as_of = request.as_of if request else None
    return system.loan_manager.refresh_overdue(as_of)


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    loan = system.loan_manager.get_loan(loan_id, scope_user(principal))
    result = loan_response(loan)
    result["is_overdue"] = system.loan_manager.is_overdue(loan.id)
    return result


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: Optional[ApproveLoanRequest] = None,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    """Approve a pending loan"""
    approved_amount = parse_amount(request.approved_amount) if request else None
    loan = system.loan_manager.approve_loan(loan_id, principal.user_id, approved_amount)
    return loan_response(loan)


@router.post("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    """Reject a pending loan"""
    loan = system.loan_manager.reject_loan(loan_id, principal.user_id, request.reason)
    return loan_response(loan)


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse an approved loan and generate its repayment schedule"""
    loan = system.loan_manager.disburse_loan(
        loan_id,
        method=request.method,
        account=request.account,
        reference=request.reference,
        amount=parse_amount(request.amount),
        actor_id=principal.user_id
    )
    return loan_response(loan)


@router.post("/{loan_id}/repay")
async def repay_loan(
    loan_id: str,
    request: RepayLoanRequest,
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Make a repayment; only officers may backdate the assessment date"""
    if request.as_of is not None and not principal.is_officer:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                            detail="Only loan officers may set as_of on a repayment")
    # Ownership check before touching the loan
    system.loan_manager.get_loan(loan_id, scope_user(principal))
    result = system.loan_manager.process_repayment(
        loan_id,
        amount=parse_amount(request.amount),
        method=request.method,
        reference=request.reference,
        as_of=request.as_of,
        actor_id=principal.user_id
    )
    return repayment_response(result)


@router.post("/{loan_id}/cancel")
async def cancel_loan(
    loan_id: str,
    request: Optional[StatusChangeRequest] = None,
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Withdraw a pending or approved loan"""
    system.loan_manager.get_loan(loan_id, scope_user(principal))
    loan = system.loan_manager.cancel_loan(loan_id, principal.user_id, _reason(request))
    return loan_response(loan)


@router.post("/{loan_id}/suspend")
async def suspend_loan(
    loan_id: str,
    request: Optional[StatusChangeRequest] = None,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.loan_manager.suspend_loan(loan_id, principal.user_id, _reason(request))
    return loan_response(loan)


@router.post("/{loan_id}/resume")
async def resume_loan(
    loan_id: str,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.loan_manager.resume_loan(loan_id, principal.user_id)
    return loan_response(loan)


@router.post("/{loan_id}/default")
async def mark_defaulted(
    loan_id: str,
    request: Optional[StatusChangeRequest] = None,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.loan_manager.mark_defaulted(loan_id, principal.user_id, _reason(request))
    return loan_response(loan)


@router.post("/{loan_id}/write-off")
async def write_off_loan(
    loan_id: str,
    request: Optional[StatusChangeRequest] = None,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.loan_manager.write_off_loan(loan_id, principal.user_id, _reason(request))
    return loan_response(loan)


@router.get("/{loan_id}/repayments")
async def get_repayment_schedule(
    loan_id: str,
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Repayment schedule ordered by payment number"""
    schedule = system.loan_manager.get_repayment_schedule(loan_id, scope_user(principal))
    return {"loan_id": loan_id, "repayments": [schedule_entry_response(e) for e in schedule]}


@router.post("/{loan_id}/repayments/{payment_number}/waive")
async def waive_installment(
    loan_id: str,
    payment_number: int,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    """Forgive one installment"""
    loan = system.loan_manager.waive_installment(loan_id, payment_number, principal.user_id)
    return loan_response(loan)


@router.get("/{loan_id}/transactions")
async def get_loan_transactions(
    loan_id: str,
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Transactions on a loan, newest first"""
    transactions = system.loan_manager.get_loan_transactions(loan_id, scope_user(principal))
    return {"loan_id": loan_id, "transactions": [transaction_response(t) for t in transactions]}
