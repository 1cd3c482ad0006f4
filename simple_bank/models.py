"""
Ledger Data Model

Accounts, entries and transfers as held by the ledger store. Amounts and
balances are integers in minor currency units.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Currency(Enum):
    """Currencies an account can be held in"""
    USD = "USD"
    EUR = "EUR"
    INR = "INR"
    GBP = "GBP"
    JPY = "JPY"


class TransferStatus(Enum):
    """States of a transfer record"""
    PENDING = "pending"        # Only visible inside the atomic unit
    COMPLETED = "completed"    # Funds moved, entries written
    FAILED = "failed"          # Rejected, no funds moved
    REVERSED = "reversed"      # Compensating transfer for a completed one

    @property
    def is_terminal(self) -> bool:
        if self is TransferStatus.PENDING:
            return False
        if self in (TransferStatus.COMPLETED, TransferStatus.FAILED, TransferStatus.REVERSED):
            return True
        raise AssertionError(f"unhandled transfer status {self!r}")

    def can_transition_to(self, target: 'TransferStatus') -> bool:
        """Only a pending transfer moves; terminal states are final"""
        if self is TransferStatus.PENDING:
            return target is not TransferStatus.PENDING
        return False


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


@dataclass
class Account:
    """Customer account holding a non-negative balance"""
    id: int
    owner: str
    balance: int
    currency: Currency
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['currency'] = self.currency.value
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=int(data['id']),
            owner=data['owner'],
            balance=int(data['balance']),
            currency=Currency(data['currency']),
            created_at=_parse_datetime(data['created_at']),
            updated_at=_parse_datetime(data['updated_at'])
        )


@dataclass(frozen=True)
class Entry:
    """
    One signed movement against one account
    Negative amounts debit the account, positive amounts credit it.
    """
    id: int
    account_id: int
    amount: int
    created_at: datetime
    transfer_id: Optional[int] = None

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Entry':
        transfer_id = data.get('transfer_id')
        return cls(
            id=int(data['id']),
            account_id=int(data['account_id']),
            amount=int(data['amount']),
            created_at=_parse_datetime(data['created_at']),
            transfer_id=int(transfer_id) if transfer_id is not None else None
        )


@dataclass
class Transfer:
    """Requested movement of funds from one account to another"""
    id: int
    from_account_id: int
    to_account_id: int
    amount: int
    status: TransferStatus
    created_at: datetime
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    reverses_transfer_id: Optional[int] = None

    @property
    def is_completed(self) -> bool:
        return self.status == TransferStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == TransferStatus.FAILED

    @property
    def is_reversal(self) -> bool:
        return self.reverses_transfer_id is not None

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['status'] = self.status.value
        result['created_at'] = self.created_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transfer':
        reverses = data.get('reverses_transfer_id')
        return cls(
            id=int(data['id']),
            from_account_id=int(data['from_account_id']),
            to_account_id=int(data['to_account_id']),
            amount=int(data['amount']),
            status=TransferStatus(data['status']),
            created_at=_parse_datetime(data['created_at']),
            reason=data.get('reason'),
            idempotency_key=data.get('idempotency_key'),
            reverses_transfer_id=int(reverses) if reverses is not None else None
        )
