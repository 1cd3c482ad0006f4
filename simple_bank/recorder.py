"""
Entry Recorder

Writes the pair of ledger entries backing a transfer. The pair always sums
to zero; the recorder never commits on its own, its writes belong to the
caller's unit of work.
"""

from typing import List, Optional, Tuple

from .errors import PersistenceError, ValidationError
from .models import Entry
from .storage import LedgerStore, UnitOfWork
from .validation import validate_page


class EntryRecorder:
    """Double-entry writer and entry reader"""

    def __init__(self, store: LedgerStore):
        self.store = store

    def record(
        self,
        uow: UnitOfWork,
        transfer_id: Optional[int],
        source_account_id: int,
        dest_account_id: int,
        amount: int
    ) -> Tuple[Entry, Entry]:
        """
        Record a debit on the source and a matching credit on the destination

        Args:
            uow: Open unit of work holding both account locks
            transfer_id: Transfer the entries back
            source_account_id: Account debited
            dest_account_id: Account credited
            amount: Positive amount in minor units

        Returns:
            (debit_entry, credit_entry)
        """
        if amount <= 0:
            raise ValidationError("entry amount must be positive", {"amount": amount})
        if source_account_id == dest_account_id:
            raise ValidationError("entries must target two distinct accounts",
                                  {"account_id": source_account_id})

        debit = uow.insert_entry(source_account_id, -amount, transfer_id)
        credit = uow.insert_entry(dest_account_id, amount, transfer_id)

        if debit.amount + credit.amount != 0:
            raise PersistenceError(
                "entry pair does not balance",
                {"transfer_id": transfer_id, "debit": debit.amount, "credit": credit.amount}
            )
        return debit, credit

    def get_entries_for_transfer(self, transfer_id: int) -> List[Entry]:
        return self.store.list_entries_for_transfer(transfer_id)

    def get_entries_for_account(self, account_id: int, limit: int = 50, offset: int = 0) -> List[Entry]:
        validate_page(limit, offset)
        return self.store.list_entries_for_account(account_id, limit, offset)

    def list_entries(self, limit: int = 50, offset: int = 0) -> List[Entry]:
        validate_page(limit, offset)
        return self.store.list_entries(limit, offset)
