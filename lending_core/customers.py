"""
Customer Management Module

Borrower profiles: contact details, KYC status and the financial facts the
credit scorer consumes. Document collection and identity verification happen
elsewhere; this module only records their outcome.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Optional, Any
from enum import Enum
import uuid
import re

from .currency import Numeric, to_decimal
from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .scoring import PaymentHistory
from .errors import ValidationError, NotFoundError


class KYCStatus(Enum):
    """KYC verification status"""
    NOT_STARTED = "not_started"  # No documents submitted
    PENDING = "pending"          # Submitted, under review
    APPROVED = "approved"        # Verified; may borrow
    REJECTED = "rejected"        # Verification failed


EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


@dataclass
class Customer(StorageRecord):
    """
    Borrower profile with KYC status and credit inputs
    """
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    kyc_status: KYCStatus = KYCStatus.NOT_STARTED
    kyc_verified_at: Optional[datetime] = None
    monthly_income: Optional[Decimal] = None
    employment_years: Optional[Decimal] = None
    payment_history: Optional[PaymentHistory] = None
    external_loans_count: int = 0

    def __post_init__(self):
        if not EMAIL_PATTERN.match(self.email or ""):
            raise ValidationError("Invalid email format")
        if self.monthly_income is not None and self.monthly_income < Decimal('0'):
            raise ValidationError("Monthly income cannot be negative")
        if self.external_loans_count < 0:
            raise ValidationError("External loans count cannot be negative")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_kyc_approved(self) -> bool:
        return self.kyc_status == KYCStatus.APPROVED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        def optional_decimal(key: str) -> Optional[Decimal]:
            value = data.get(key)
            return Decimal(value) if value is not None else None

        history = data.get('payment_history')
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            first_name=data['first_name'],
            last_name=data['last_name'],
            email=data['email'],
            phone=data.get('phone'),
            kyc_status=KYCStatus(data.get('kyc_status', KYCStatus.NOT_STARTED.value)),
            kyc_verified_at=parse_datetime(data.get('kyc_verified_at')),
            monthly_income=optional_decimal('monthly_income'),
            employment_years=optional_decimal('employment_years'),
            payment_history=PaymentHistory(history) if history else None,
            external_loans_count=data.get('external_loans_count', 0)
        )


class CustomerManager:
    """Manages borrower profiles and records KYC outcomes"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "customers"

    def create_customer(
        self,
        first_name: str,
        last_name: str,
        email: str,
        phone: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> Customer:
        """Create a borrower profile; KYC starts as NOT_STARTED"""
        if not first_name or not last_name:
            raise ValidationError("First and last name are required")

        with self.storage.atomic():
            if self.storage.find(self.table_name, {"email": email.lower()}):
                raise ValidationError(f"Customer with email {email} already exists")

            now = datetime.now(timezone.utc)
            customer = Customer(
                id=customer_id or str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                first_name=first_name,
                last_name=last_name,
                email=email.lower(),
                phone=phone
            )
            self.storage.save(self.table_name, customer.id, customer.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.CUSTOMER_CREATED,
                entity_type="customer",
                entity_id=customer.id,
                metadata={"email": customer.email}
            )

        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        """Get customer by ID"""
        data = self.storage.load(self.table_name, customer_id)
        if data:
            return Customer.from_dict(data)
        return None

    def require_customer(self, customer_id: str) -> Customer:
        customer = self.get_customer(customer_id)
        if not customer:
            raise NotFoundError("Customer", customer_id)
        return customer

    def update_kyc_status(self, customer_id: str, new_status: KYCStatus,
                          reviewer_id: Optional[str] = None) -> Customer:
        """Record the outcome of a KYC review"""
        with self.storage.atomic():
            customer = self.require_customer(customer_id)
            old_status = customer.kyc_status
            customer.kyc_status = new_status
            customer.kyc_verified_at = (
                datetime.now(timezone.utc) if new_status == KYCStatus.APPROVED else None
            )
            customer.touch()
            self.storage.save(self.table_name, customer.id, customer.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.KYC_STATUS_CHANGED,
                entity_type="customer",
                entity_id=customer.id,
                metadata={"old_status": old_status, "new_status": new_status},
                user_id=reviewer_id
            )
        return customer

    def update_financial_profile(
        self,
        customer_id: str,
        monthly_income: Optional[Numeric] = None,
        employment_years: Optional[Numeric] = None,
        payment_history: Optional[PaymentHistory] = None,
        external_loans_count: Optional[int] = None
    ) -> Customer:
        """Update the credit scoring inputs; None leaves a field unchanged"""
        with self.storage.atomic():
            customer = self.require_customer(customer_id)
            if monthly_income is not None:
                customer.monthly_income = to_decimal(monthly_income)
            if employment_years is not None:
                customer.employment_years = to_decimal(employment_years)
            if payment_history is not None:
                customer.payment_history = PaymentHistory(payment_history)
            if external_loans_count is not None:
                customer.external_loans_count = external_loans_count
            # Re-run field validation
            customer.__post_init__()
            customer.touch()
            self.storage.save(self.table_name, customer.id, customer.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.CUSTOMER_PROFILE_UPDATED,
                entity_type="customer",
                entity_id=customer.id
            )
        return customer
