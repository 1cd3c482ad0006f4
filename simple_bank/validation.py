"""
Transfer Validation

Balance checks and request validation for the transfer core, plus the lock
ordering rule every two-account path must follow.
"""

from typing import Any, Tuple

from .errors import InsufficientFundsError, ValidationError
from .models import Account


def can_debit(current_balance: int, amount: int) -> bool:
    """True when debiting amount leaves the balance non-negative"""
    return current_balance - amount >= 0


def ensure_can_debit(account: Account, amount: int) -> None:
    """
    Authoritative balance gate

    Must be given an account read under its row lock, never a cached copy.

    Raises:
        InsufficientFundsError: If the debit would make the balance negative
    """
    if not can_debit(account.balance, amount):
        raise InsufficientFundsError(account.id, account.balance, amount)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_transfer_request(from_account_id: int, to_account_id: int, amount: int) -> None:
    """
    Check a transfer request before anything touches the store

    Raises:
        ValidationError: On non-integer ids or amount, non-positive amount,
            or identical source and destination
    """
    details = {
        "from_account_id": from_account_id,
        "to_account_id": to_account_id,
        "amount": amount
    }
    if not _is_int(from_account_id) or not _is_int(to_account_id):
        raise ValidationError("account ids must be integers", details)
    if not _is_int(amount):
        raise ValidationError("amount must be an integer number of minor units", details)
    if amount <= 0:
        raise ValidationError("amount must be positive", details)
    if from_account_id == to_account_id:
        raise ValidationError("cannot transfer to the same account", details)


def validate_page(limit: int, offset: int) -> None:
    """Check limit/offset pagination arguments"""
    if not _is_int(limit) or limit <= 0:
        raise ValidationError("limit must be a positive integer", {"limit": limit})
    if not _is_int(offset) or offset < 0:
        raise ValidationError("offset must be a non-negative integer", {"offset": offset})


def canonical_lock_order(first_account_id: int, second_account_id: int) -> Tuple[int, int]:
    """
    Order in which two account rows must be locked

    Lower id first regardless of transfer direction, so transfers over the
    same pair of accounts always queue for the locks in the same sequence.
    """
    if first_account_id <= second_account_id:
        return first_account_id, second_account_id
    return second_account_id, first_account_id
