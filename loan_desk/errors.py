"""
Error Taxonomy Module

Every failure surfaced by the loan core carries a stable kind plus a
human-readable message. Validation and access errors are final; dependency
errors are retryable.
"""

import traceback
from typing import Any, Dict, Optional


class LoanDeskError(Exception):
    """Base exception for all loan desk errors"""
    kind = "loan_desk_error"
    retryable = False
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
    
    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.kind, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(LoanDeskError):
    """Missing or malformed input. Nothing is persisted."""
    kind = "validation_error"


class NotFoundError(LoanDeskError):
    """Referenced loan or entry does not exist"""
    kind = "not_found"


class AccessDenied(LoanDeskError):
    """Actor lacks the role or ownership required for the operation"""
    kind = "access_denied"


class InvalidTransition(LoanDeskError):
    """Status change not permitted from the loan's current status"""
    kind = "invalid_transition"


class InsufficientBalance(LoanDeskError):
    """Token or credit precondition failed"""
    kind = "insufficient_balance"


class DependencyError(LoanDeskError):
    """Storage or notification collaborator failure"""
    kind = "dependency_error"
    retryable = True


class ConcurrencyConflict(DependencyError):
    """Optimistic write lost against a concurrent writer too many times"""
    kind = "concurrency_conflict"


class LedgerIntegrityError(LoanDeskError):
    """Cached loan counters disagree with the ledger entries"""
    kind = "ledger_integrity"


def error_response(exc: BaseException, debug: bool = False) -> Dict[str, Any]:
    """
    Map an exception to a caller-facing error body.
    
    Args:
        exc: Exception raised by an operation
        debug: Attach the formatted traceback (development builds only)
        
    Returns:
        Dictionary with error kind, message and optional details
    """
    if isinstance(exc, LoanDeskError):
        body = exc.to_dict()
        body["retryable"] = exc.retryable
    else:
        body = {
            "error": "internal_error",
            "message": "An internal error occurred",
            "retryable": False,
        }
    
    if debug:
        body["traceback"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    
    return body
