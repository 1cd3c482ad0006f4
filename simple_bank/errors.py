"""
Ledger Error Taxonomy

Every error raised by the ledger inherits from LedgerError. Callers can tell
apart an invalid request (ValidationError, NotFoundError), a request rejected
by business rules (InsufficientFundsError, normally surfaced as a failed
transfer) and a system that could not process the request
(ConcurrencyConflictError, PersistenceError).
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(LedgerError, ValueError):
    """Malformed request: never reaches the store, never retried"""
    pass


class InvalidTransitionError(ValidationError):
    """Transfer status change that the state machine does not allow"""
    pass


class NotFoundError(LedgerError, LookupError):
    """Referenced account or transfer does not exist"""

    def __init__(self, entity: str, entity_id: Any, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{entity} {entity_id} not found", details)
        self.entity = entity
        self.entity_id = entity_id


class InsufficientFundsError(LedgerError):
    """Debit would drive a balance below zero"""

    def __init__(self, account_id: int, balance: int, amount: int):
        super().__init__(
            f"insufficient funds: account {account_id} has {balance}, requested {amount}",
            {"account_id": account_id, "balance": balance, "amount": amount}
        )
        self.account_id = account_id
        self.balance = balance
        self.amount = amount


class ConcurrencyConflictError(LedgerError):
    """Lock wait timed out or the store aborted on a serialization conflict"""

    retryable = True


class PersistenceError(LedgerError):
    """Store unavailable, constraint violated or otherwise unusable"""
    pass


class LockOrderError(LedgerError, RuntimeError):
    """Account locks requested out of ascending id order"""
    pass
