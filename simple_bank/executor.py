"""
Transfer Executor

Runs a transfer end to end as one atomic unit against the ledger store:
lock both accounts in ascending id order, re-read balances under lock,
validate, move the funds, write the entry pair and persist the transfer.
Lock timeouts and serialization conflicts retry the whole unit with bounded
exponential backoff; everything else propagates.
"""

from typing import Any, Callable, Dict, List, Optional

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .config import SimpleBankConfig
from .errors import (
    ConcurrencyConflictError, InsufficientFundsError, InvalidTransitionError,
    NotFoundError, PersistenceError, ValidationError
)
from .logging_config import get_logger, log_action
from .models import Account, Entry, Transfer, TransferStatus
from .recorder import EntryRecorder
from .storage import LedgerStore, UnitOfWork
from .validation import (
    can_debit, canonical_lock_order, ensure_can_debit,
    validate_page, validate_transfer_request
)


class TransferExecutor:
    """
    Executes and reverses transfers between two accounts

    The store is passed in explicitly; the executor keeps no account state
    between calls.
    """

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[SimpleBankConfig] = None,
        recorder: Optional[EntryRecorder] = None
    ):
        self.store = store
        self.config = config or store.config
        self.recorder = recorder or EntryRecorder(store)
        self.logger = get_logger("simple_bank.executor")

    def execute(
        self,
        from_account_id: int,
        to_account_id: int,
        amount: int,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Transfer:
        """
        Move amount from one account to another

        Args:
            from_account_id: Account debited
            to_account_id: Account credited
            amount: Positive amount in minor currency units
            reason: Free text stored on a completed transfer
            idempotency_key: Client key; a repeated key returns the transfer
                recorded the first time instead of moving funds again

        Returns:
            Transfer with status COMPLETED, or FAILED with an
            insufficient-funds reason

        Raises:
            ValidationError: Malformed request or currency mismatch
            NotFoundError: Either account does not exist
            ConcurrencyConflictError: Retries exhausted
            PersistenceError: The store failed
        """
        validate_transfer_request(from_account_id, to_account_id, amount)
        context = {
            "from_account_id": from_account_id,
            "to_account_id": to_account_id,
            "amount": amount
        }

        source = self._run_with_retry(
            self._precheck_accounts, context, from_account_id, to_account_id
        )

        # Unlocked read: a hint only, the outcome is decided under lock
        if not can_debit(source.balance, amount):
            self.logger.debug(
                f"Account {source.id} looks short of {amount}, confirming under lock"
            )

        transfer = self._run_with_retry(
            self._execute_once, context,
            from_account_id, to_account_id, amount, reason, idempotency_key, None
        )

        self._log_outcome(transfer)
        return transfer

    def reverse(self, transfer_id: int, reason: str) -> Transfer:
        """
        Compensate a completed transfer with a new transfer the other way

        The original record is left untouched. The compensating transfer is
        stored with status REVERSED and reverses_transfer_id pointing at the
        original; if the destination no longer holds the funds it is stored
        as FAILED instead.

        Raises:
            NotFoundError: If the transfer does not exist
            ValidationError: If the transfer is not a completed, unreversed,
                ordinary transfer
        """
        original = self._run_with_retry(
            self.store.get_transfer, {"reverses_transfer_id": transfer_id}, transfer_id
        )
        if original is None:
            raise NotFoundError("transfer", transfer_id)
        if original.is_reversal:
            raise ValidationError(f"transfer {transfer_id} is itself a reversal",
                                  {"transfer_id": transfer_id})
        if original.status != TransferStatus.COMPLETED:
            raise InvalidTransitionError(
                f"only completed transfers can be reversed, transfer {transfer_id} is {original.status.value}",
                {"transfer_id": transfer_id}
            )

        context = {
            "from_account_id": original.to_account_id,
            "to_account_id": original.from_account_id,
            "amount": original.amount,
            "reverses_transfer_id": transfer_id
        }
        reversal = self._run_with_retry(
            self._execute_once, context,
            original.to_account_id, original.from_account_id, original.amount,
            reason, None, transfer_id
        )
        self._log_outcome(reversal)
        return reversal

    def get_transfer(self, transfer_id: int) -> Transfer:
        transfer = self.store.get_transfer(transfer_id)
        if transfer is None:
            raise NotFoundError("transfer", transfer_id)
        return transfer

    def list_transfers(self, limit: int = 50, offset: int = 0) -> List[Transfer]:
        validate_page(limit, offset)
        return self.store.list_transfers(limit, offset)

    def get_transfer_entries(self, transfer_id: int) -> List[Entry]:
        self.get_transfer(transfer_id)
        return self.recorder.get_entries_for_transfer(transfer_id)

    def _precheck_accounts(self, from_account_id: int, to_account_id: int) -> Account:
        """Unlocked read of both accounts; returns the source account"""
        source = self.store.get_account(from_account_id)
        if source is None:
            raise NotFoundError("account", from_account_id)
        dest = self.store.get_account(to_account_id)
        if dest is None:
            raise NotFoundError("account", to_account_id)

        if source.currency != dest.currency:
            raise ValidationError(
                f"cannot transfer between {source.currency.value} and {dest.currency.value} accounts",
                {"from_account_id": from_account_id, "to_account_id": to_account_id}
            )
        return source

    def _lock_accounts(self, uow: UnitOfWork, first_id: int, second_id: int) -> Dict[int, Account]:
        lower, higher = canonical_lock_order(first_id, second_id)
        locked = {lower: uow.lock_account(lower)}
        locked[higher] = uow.lock_account(higher)
        return locked

    def _execute_once(
        self,
        from_account_id: int,
        to_account_id: int,
        amount: int,
        reason: Optional[str],
        idempotency_key: Optional[str],
        reverses_transfer_id: Optional[int]
    ) -> Transfer:
        """One attempt at the whole atomic unit"""
        success_status = TransferStatus.COMPLETED
        if reverses_transfer_id is not None:
            success_status = TransferStatus.REVERSED

        with self.store.atomic() as uow:
            if idempotency_key is not None:
                existing = uow.find_transfer_by_idempotency_key(idempotency_key)
                if existing is not None:
                    self._check_replay(existing, from_account_id, to_account_id, amount)
                    return existing

            accounts = self._lock_accounts(uow, from_account_id, to_account_id)
            source = accounts[from_account_id]
            dest = accounts[to_account_id]

            if reverses_transfer_id is not None and uow.find_reversal_of(reverses_transfer_id):
                raise ValidationError(f"transfer {reverses_transfer_id} is already reversed",
                                      {"transfer_id": reverses_transfer_id})

            transfer = uow.insert_transfer(
                from_account_id, to_account_id, amount,
                status=TransferStatus.PENDING,
                reason=reason,
                idempotency_key=idempotency_key,
                reverses_transfer_id=reverses_transfer_id
            )

            try:
                ensure_can_debit(source, amount)
            except InsufficientFundsError as exc:
                # Nothing has been mutated yet; only the failed record commits
                return uow.update_transfer_status(transfer.id, TransferStatus.FAILED, exc.message)

            uow.update_account_balance(from_account_id, source.balance - amount)
            uow.update_account_balance(to_account_id, dest.balance + amount)
            self.recorder.record(uow, transfer.id, from_account_id, to_account_id, amount)

            return uow.update_transfer_status(transfer.id, success_status, reason)

    @staticmethod
    def _check_replay(existing: Transfer, from_account_id: int, to_account_id: int, amount: int) -> None:
        """A reused idempotency key must carry the same request"""
        if (existing.from_account_id, existing.to_account_id, existing.amount) != \
                (from_account_id, to_account_id, amount):
            raise ValidationError(
                f"idempotency key {existing.idempotency_key!r} was used for a different transfer",
                {
                    "transfer_id": existing.id,
                    "from_account_id": from_account_id,
                    "to_account_id": to_account_id,
                    "amount": amount
                }
            )

    def _run_with_retry(self, operation: Callable[..., Any], context: Dict[str, Any], *args) -> Any:
        """Run a store operation, retrying only concurrency conflicts"""
        retrying = Retrying(
            retry=retry_if_exception_type(ConcurrencyConflictError),
            stop=stop_after_attempt(max(1, self.config.max_retry_attempts)),
            wait=wait_random_exponential(
                multiplier=self.config.retry_base_delay,
                max=self.config.retry_max_delay
            ),
            reraise=True,
            before_sleep=lambda retry_state: self._log_retry(retry_state, context),
        )
        try:
            for attempt in retrying:
                with attempt:
                    return operation(*args)
        except ConcurrencyConflictError as exc:
            details = dict(context, attempts=self.config.max_retry_attempts)
            log_action(
                self.logger, "warning", "Transfer abandoned after repeated conflicts",
                action="transfer_conflict", error=str(exc), **details
            )
            raise ConcurrencyConflictError(
                "transfer could not be completed because of concurrent activity, try again",
                details
            ) from exc
        except PersistenceError as exc:
            for key, value in context.items():
                exc.details.setdefault(key, value)
            log_action(
                self.logger, "error", f"Ledger store failure: {exc.message}",
                action="transfer_error", **exc.details
            )
            raise

    def _log_retry(self, retry_state, context: Dict[str, Any]) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        log_action(
            self.logger, "warning",
            f"Retrying transfer after conflict (attempt {retry_state.attempt_number})",
            action="transfer_retry", attempt=retry_state.attempt_number,
            error=str(error), **context
        )

    def _log_outcome(self, transfer: Transfer) -> None:
        level = "warning" if transfer.status == TransferStatus.FAILED else "info"
        log_action(
            self.logger, level, f"Transfer {transfer.status.value}",
            action=f"transfer_{transfer.status.value}",
            transfer_id=transfer.id,
            status=transfer.status.value,
            from_account_id=transfer.from_account_id,
            to_account_id=transfer.to_account_id,
            amount=transfer.amount,
            reason=transfer.reason,
            reverses_transfer_id=transfer.reverses_transfer_id
        )
