"""
Error Taxonomy

Typed domain errors raised by the lending engine. Each carries the HTTP
status the API layer reports for it.
"""

from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base class for all lending engine errors"""
    status_code = 500
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
    
    def to_dict(self) -> Dict[str, Any]:
        result = {"detail": self.message, "error": type(self).__name__}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(LendingError):
    """Bad input shape or range (amount/term out of bounds, missing field)"""
    status_code = 400


class KYCRequiredError(ValidationError):
    """Borrower has not passed KYC verification"""
    status_code = 403


class NotFoundError(LendingError):
    """Unknown product, loan or customer"""
    status_code = 404
    
    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} {resource_id} not found"
        super().__init__(message, {"resource": resource, "id": resource_id} if resource_id else None)
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(LendingError):
    """Status guard violation or duplicate active loan"""
    status_code = 409


class InternalError(LendingError):
    """Unexpected storage or runtime failure"""
    status_code = 500
