"""
Transaction Ledger Module

Append-only record of money movements on a loan: disbursement, repayments,
processing fees and late-fee penalties. Transactions are never updated or
deleted; corrections are new transactions.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord, parse_datetime
from .errors import ValidationError


class TransactionType(Enum):
    """Types of loan transactions"""
    DISBURSEMENT = "disbursement"  # Principal paid out to the borrower
    REPAYMENT = "repayment"        # Installment payment received
    FEE = "fee"                    # Upfront processing fee
    PENALTY = "penalty"            # Late fee collected


class TransactionStatus(Enum):
    COMPLETED = "completed"


def generate_reference(prefix: str = "TXN") -> str:
    """Reference for transactions created without an external one"""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{prefix}-{stamp}-{uuid.uuid4().hex[:8].upper()}"


@dataclass
class Transaction(StorageRecord):
    """
    Immutable money movement against a loan
    """
    loan_id: str
    user_id: str
    transaction_type: TransactionType
    amount: Money
    currency: Currency
    method: str
    reference: str
    description: str = ""
    status: TransactionStatus = TransactionStatus.COMPLETED
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValidationError("Transaction amount must be positive")
        if self.amount.currency != self.currency:
            raise ValidationError("Transaction amount currency must match transaction currency")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            user_id=data['user_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Money(Decimal(data['amount']), currency),
            currency=currency,
            method=data['method'],
            reference=data['reference'],
            description=data.get('description', ""),
            status=TransactionStatus(data.get('status', TransactionStatus.COMPLETED.value)),
            metadata=data.get('metadata') or {}
        )


class TransactionLedger:
    """Writes and reads loan transactions"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"

    def record(
        self,
        loan_id: str,
        user_id: str,
        transaction_type: TransactionType,
        amount: Money,
        method: str,
        reference: Optional[str] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """Append a completed transaction"""
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            currency=amount.currency,
            method=method,
            reference=reference or generate_reference(),
            description=description,
            metadata=metadata or {}
        )
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def get_loan_transactions(self, loan_id: str) -> List[Transaction]:
        """All transactions on a loan, newest first"""
        transactions = [
            Transaction.from_dict(data)
            for data in self.storage.find(self.table_name, {"loan_id": loan_id})
        ]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions
