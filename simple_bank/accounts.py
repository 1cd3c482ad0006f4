"""
Account Management Module

Account opening and read-only account views. Balances change only through
the transfer executor.
"""

from typing import Iterable, List, Union

from .errors import NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .models import Account, Currency, Entry
from .storage import LedgerStore
from .validation import validate_page


class AccountManager:
    """Opens accounts and exposes their balances and entries"""

    def __init__(self, store: LedgerStore):
        self.store = store
        self.logger = get_logger("simple_bank.accounts")

    def create_account(
        self,
        owner: str,
        currency: Union[Currency, str],
        balance: int = 0
    ) -> Account:
        """
        Open a new account

        Args:
            owner: Account holder
            currency: Currency or its code, e.g. "USD"
            balance: Opening balance in minor units

        Returns:
            Created Account

        Raises:
            ValidationError: On an empty owner, unknown currency or negative balance
        """
        if not isinstance(owner, str) or not owner.strip():
            raise ValidationError("owner is required")
        if isinstance(currency, str):
            try:
                currency = Currency(currency.upper())
            except ValueError:
                raise ValidationError(f"unsupported currency: {currency}", {"currency": currency})
        if not isinstance(balance, int) or isinstance(balance, bool) or balance < 0:
            raise ValidationError("opening balance must be a non-negative integer", {"balance": balance})

        account = self.store.create_account(owner, balance, currency)

        log_action(
            self.logger, "info", "Account created",
            action="create_account", account_id=account.id, owner=owner,
            currency=currency.value, balance=balance
        )
        return account

    def get_account(self, account_id: int) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        return account

    def list_accounts(self, limit: int = 50, offset: int = 0) -> List[Account]:
        """Accounts ordered by id"""
        validate_page(limit, offset)
        return self.store.list_accounts(limit, offset)

    def get_account_entries(self, account_id: int, limit: int = 50, offset: int = 0) -> List[Entry]:
        """Entries against one account, ordered by id"""
        validate_page(limit, offset)
        self.get_account(account_id)
        return self.store.list_entries_for_account(account_id, limit, offset)

    def total_balance(self, account_ids: Iterable[int]) -> int:
        """
        Sum of balances over a set of accounts

        All accounts are locked in ascending id order inside one unit, so the
        total is a consistent snapshot even while transfers are running.

        Raises:
            NotFoundError: If any account does not exist
            ConcurrencyConflictError: If a lock wait timed out
        """
        total = 0
        with self.store.atomic() as uow:
            for account_id in sorted(set(account_ids)):
                total += uow.lock_account(account_id).balance
        return total
