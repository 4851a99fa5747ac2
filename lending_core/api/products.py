"""
Loan product endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import LendingSystem, Principal, get_lending_system, get_current_principal, require_officer
from .schemas import CreateProductRequest, parse_amount, product_response
from ..currency import Currency, Money, percent_to_rate
from ..errors import ValidationError, NotFoundError


router = APIRouter()


@router.get("")
async def list_products(
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Active loan products"""
    products = system.loan_manager.get_loan_products()
    return {"products": [product_response(p) for p in products]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_product(
    request: CreateProductRequest,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    """Create a loan product"""
    currency_code = (request.currency or system.config.default_currency).upper()
    try:
        currency = Currency[currency_code]
    except KeyError:
        raise ValidationError(f"Unsupported currency: {currency_code}")

    late_fee = parse_amount(request.late_payment_fee)
    product = system.product_catalog.create_product(
        name=request.name,
        min_amount=Money(parse_amount(request.min_amount), currency),
        max_amount=Money(parse_amount(request.max_amount), currency),
        interest_rate=percent_to_rate(request.interest_rate_percent),
        min_term_months=request.min_term_months,
        max_term_months=request.max_term_months,
        processing_fee_rate=percent_to_rate(request.processing_fee_percent),
        late_payment_fee=Money(late_fee, currency) if late_fee is not None else None,
        description=request.description,
        created_by=principal.user_id
    )
    return product_response(product)


@router.get("/{product_id}")
async def get_product(
    product_id: str,
    principal: Principal = Depends(get_current_principal),
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan product details"""
    product = system.product_catalog.get_product(product_id)
    if not product:
        raise NotFoundError("Loan product", product_id)
    return product_response(product)


@router.delete("/{product_id}")
async def deactivate_product(
    product_id: str,
    principal: Principal = Depends(require_officer),
    system: LendingSystem = Depends(get_lending_system)
):
    """Withdraw a loan product from sale"""
    product = system.product_catalog.deactivate_product(product_id, principal.user_id)
    return product_response(product)
