"""
System wiring and authentication dependencies
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..storage import StorageInterface, InMemoryStorage, SQLiteStorage
from ..audit import AuditTrail
from ..products import ProductCatalog
from ..customers import CustomerManager
from ..repayments import RepaymentLedger
from ..transactions import TransactionLedger
from ..loans import LoanManager
from ..config import LendingConfig, get_config


class LendingSystem:
    """Lending core with all components initialized over one storage handle"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LendingConfig] = None):
        self.config = config or get_config()

        if storage is None:
            if self.config.storage_backend == "memory":
                storage = InMemoryStorage()
            else:
                storage = SQLiteStorage(self.config.database_path)
        self.storage = storage

        self.audit_trail = AuditTrail(self.storage)
        self.product_catalog = ProductCatalog(self.storage, self.audit_trail, self.config.default_late_fee)
        self.customer_manager = CustomerManager(self.storage, self.audit_trail)
        self.repayment_ledger = RepaymentLedger(self.storage, self.config.late_fee_weekly_rate)
        self.transaction_ledger = TransactionLedger(self.storage)
        self.loan_manager = LoanManager(
            self.storage, self.product_catalog, self.customer_manager,
            self.repayment_ledger, self.transaction_ledger, self.audit_trail,
            self.config
        )

    def close(self) -> None:
        self.storage.close()


def get_lending_system(request: Request) -> LendingSystem:
    return request.app.state.lending_system


security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller"""
    user_id: str
    role: str
    is_officer: bool = False


def create_access_token(user_id: str, role: str = "customer",
                        config: Optional[LendingConfig] = None,
                        expires_minutes: Optional[int] = None) -> str:
    """Issue a signed bearer token for a user"""
    config = config or get_config()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes or config.jwt_expiry_minutes)
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Principal:
    """Dependency that validates the JWT and returns the caller"""
    system: LendingSystem = request.app.state.lending_system
    config = system.config

    if not request.app.state.auth_enabled:
        return Principal(user_id="test_user", role="admin", is_officer=True)

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret,
                             algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    role = payload.get("role", "customer")
    return Principal(user_id=user_id, role=role, is_officer=role in config.officer_role_set)


def require_officer(principal: Principal = Depends(get_current_principal)) -> Principal:
    """Dependency for loan officer and admin only endpoints"""
    if not principal.is_officer:
        raise HTTPException(status_code=403, detail="Loan officer role required")
    return principal


def scope_user(principal: Principal) -> Optional[str]:
    """Owner filter for loan queries: officers see every loan"""
    return None if principal.is_officer else principal.user_id
