"""
Customer endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, status

from .auth import LendingSystem, Principal, get_lending_system, get_current_principal, require_officer
from .schemas import CreateCustomerRequest, UpdateKYCRequest, UpdateProfileRequest, parse_amount, customer_response
from ..customers import KYCStatus
from ..scoring import PaymentHistory
from ..errors import ValidationError


router = APIRouter()


def _check_access(principal: Principal, customer_id: str) -> None:
    if not principal.is_officer and principal.user_id != customer_id:
        raise HTTPException(status_code=403, detail="Access denied")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_customer(
    request: CreateCustomerRequest,
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Create a borrower profile; non-officers can only create their own"""
    customer_id = request.customer_id if principal.is_officer else principal.user_id
    customer = system.customer_manager.create_customer(
        first_name=request.first_name,
        last_name=request.last_name,
        email=request.email,
        phone=request.phone,
        customer_id=customer_id
    )
    return customer_response(customer)


@router.get("/{customer_id}")
async def get_customer(
    customer_id: str,
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Get customer details"""
    _check_access(principal, customer_id)
    return customer_response(system.customer_manager.require_customer(customer_id))


@router.put("/{customer_id}/kyc")
async def update_kyc_status(
    customer_id: str,
    request: UpdateKYCRequest,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a KYC review outcome"""
    try:
        kyc_status = KYCStatus(request.status.lower())
    except ValueError:
        raise ValidationError(f"Unknown KYC status: {request.status}")

    customer = system.customer_manager.update_kyc_status(customer_id, kyc_status, principal.user_id)
    return customer_response(customer)


@router.put("/{customer_id}/profile")
async def update_financial_profile(
    customer_id: str,
    request: UpdateProfileRequest,
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Update the credit scoring inputs"""
    _check_access(principal, customer_id)

    payment_history = None
    if request.payment_history:
        try:
            payment_history = PaymentHistory(request.payment_history.lower())
        except ValueError:
            raise ValidationError(f"Unknown payment history: {request.payment_history}")

    customer = system.customer_manager.update_financial_profile(
        customer_id,
        monthly_income=parse_amount(request.monthly_income),
        employment_years=parse_amount(request.employment_years),
        payment_history=payment_history,
        external_loans_count=request.external_loans_count
    )
    return customer_response(customer)
