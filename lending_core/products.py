"""
Loan Product Catalog

Loan products define the business parameters a loan is priced against:
amount and term bounds, annual interest rate, processing fee rate and late
payment fee. Products are read-only to the loan engine, which copies the
values it needs into each loan at application time.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
import uuid

from .currency import Money, Currency, Numeric, to_decimal
from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .errors import ValidationError, NotFoundError


MAX_TERM_MONTHS = 360
DEFAULT_LATE_FEE = Decimal('100')


@dataclass
class LoanProduct(StorageRecord):
    """Loan product with pricing and eligibility bounds"""
    name: str
    currency: Currency
    min_amount: Money
    max_amount: Money
    interest_rate: Decimal          # Annual, decimal (0.18 = 18%)
    min_term_months: int
    max_term_months: int
    processing_fee_rate: Decimal    # Decimal (0.02 = 2%)
    late_payment_fee: Money
    description: str = ""
    is_active: bool = True

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValidationError("Product name is required")
        if not self.min_amount.is_positive():
            raise ValidationError("Minimum amount must be positive")
        if self.min_amount > self.max_amount:
            raise ValidationError("Minimum amount cannot exceed maximum amount")
        if self.min_term_months <= 0:
            raise ValidationError("Minimum term must be at least one month")
        if self.min_term_months > self.max_term_months:
            raise ValidationError("Minimum term cannot exceed maximum term")
        if self.max_term_months > MAX_TERM_MONTHS:
            raise ValidationError(f"Maximum term cannot exceed {MAX_TERM_MONTHS} months")
        if self.interest_rate < Decimal('0') or self.processing_fee_rate < Decimal('0'):
            raise ValidationError("Rates cannot be negative")
        if self.late_payment_fee.is_negative():
            raise ValidationError("Late payment fee cannot be negative")

    def amount_in_range(self, amount: Money) -> bool:
        return self.min_amount <= amount <= self.max_amount

    def term_in_range(self, term_months: int) -> bool:
        return self.min_term_months <= term_months <= self.max_term_months

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanProduct':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            name=data['name'],
            currency=currency,
            min_amount=Money(Decimal(data['min_amount']), currency),
            max_amount=Money(Decimal(data['max_amount']), currency),
            interest_rate=Decimal(data['interest_rate']),
            min_term_months=data['min_term_months'],
            max_term_months=data['max_term_months'],
            processing_fee_rate=Decimal(data['processing_fee_rate']),
            late_payment_fee=Money(Decimal(data['late_payment_fee']), currency),
            description=data.get('description', ""),
            is_active=data.get('is_active', True)
        )


class ProductCatalog:
    """Creates and serves loan products"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 default_late_fee: Numeric = DEFAULT_LATE_FEE):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "loan_products"
        self.default_late_fee = to_decimal(default_late_fee)

    def create_product(
        self,
        name: str,
        min_amount: Money,
        max_amount: Money,
        interest_rate: Numeric,
        min_term_months: int,
        max_term_months: int,
        processing_fee_rate: Numeric = Decimal('0'),
        late_payment_fee: Optional[Money] = None,
        description: str = "",
        created_by: Optional[str] = None
    ) -> LoanProduct:
        """
        Create a loan product

        Rates are decimals here; callers entering whole percentages convert
        them with ``percent_to_rate`` first.
        """
        if min_amount.currency != max_amount.currency:
            raise ValidationError("Amount bounds must use the same currency")
        currency = min_amount.currency
        if late_payment_fee is None:
            late_payment_fee = Money(self.default_late_fee, currency)
        if late_payment_fee.currency != currency:
            raise ValidationError("Late payment fee currency must match product currency")

        now = datetime.now(timezone.utc)
        product = LoanProduct(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip() if name else name,
            currency=currency,
            min_amount=min_amount,
            max_amount=max_amount,
            interest_rate=to_decimal(interest_rate),
            min_term_months=min_term_months,
            max_term_months=max_term_months,
            processing_fee_rate=to_decimal(processing_fee_rate),
            late_payment_fee=late_payment_fee,
            description=description
        )

        with self.storage.atomic():
            self.storage.save(self.table_name, product.id, product.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PRODUCT_CREATED,
                entity_type="product",
                entity_id=product.id,
                metadata={
                    "name": product.name,
                    "interest_rate": product.interest_rate,
                    "min_amount": product.min_amount.to_string(),
                    "max_amount": product.max_amount.to_string()
                },
                user_id=created_by
            )

        return product

    def get_product(self, product_id: str) -> Optional[LoanProduct]:
        """Get product by ID"""
        data = self.storage.load(self.table_name, product_id)
        if data:
            return LoanProduct.from_dict(data)
        return None

    def require_product(self, product_id: str) -> LoanProduct:
        product = self.get_product(product_id)
        if not product:
            raise NotFoundError("Loan product", product_id)
        return product

    def get_loan_products(self) -> List[LoanProduct]:
        """Active products, cheapest entry point first"""
        products = [
            LoanProduct.from_dict(data)
            for data in self.storage.find(self.table_name, {"is_active": True})
        ]
        products.sort(key=lambda p: p.min_amount.amount)
        return products

    def deactivate_product(self, product_id: str, user_id: Optional[str] = None) -> LoanProduct:
        """Withdraw a product from sale; existing loans keep their frozen terms"""
        with self.storage.atomic():
            product = self.require_product(product_id)
            product.is_active = False
            product.touch()
            self.storage.save(self.table_name, product.id, product.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PRODUCT_DEACTIVATED,
                entity_type="product",
                entity_id=product.id,
                user_id=user_id
            )
        return product
