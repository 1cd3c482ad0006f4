"""
Test suite for the transfer executor

Covers the transfer scenarios, atomicity when a unit fails part way,
the retry policy, idempotency keys and compensating reversals.
"""

import logging
import tempfile
import threading
from pathlib import Path

import pytest
from unittest.mock import Mock

from simple_bank.config import SimpleBankConfig
from simple_bank.errors import (
    ConcurrencyConflictError, InvalidTransitionError, NotFoundError,
    PersistenceError, ValidationError
)
from simple_bank.executor import TransferExecutor
from simple_bank.models import Currency, TransferStatus
from simple_bank.storage import (
    InMemoryLedgerStore, InMemoryUnitOfWork, LedgerStore, SQLiteLedgerStore
)


def make_config(**overrides):
    settings = {"lock_timeout_ms": 200, "max_retry_attempts": 3,
                "retry_base_delay": 0, "retry_max_delay": 0}
    settings.update(overrides)
    return SimpleBankConfig(**settings)


class FaultyUnitOfWork(InMemoryUnitOfWork):
    """Raises queued store faults while writing entries"""

    def insert_entry(self, account_id, amount, transfer_id=None):
        if self._store.faults:
            raise self._store.faults.pop(0)
        return super().insert_entry(account_id, amount, transfer_id)


class FaultyLedgerStore(InMemoryLedgerStore):

    def __init__(self, config):
        super().__init__(config)
        self.faults = []
        self.units_started = 0

    def _begin(self):
        self.units_started += 1
        return FaultyUnitOfWork(self)


class StaleReadLedgerStore(InMemoryLedgerStore):
    """Unlocked reads report a balance higher than the committed one"""

    def get_account(self, account_id):
        account = super().get_account(account_id)
        if account is not None:
            account.balance += 1000
        return account


class CreditAfterReadLedgerStore(InMemoryLedgerStore):
    """Runs a callback once, right after the first unlocked account read"""

    after_read = None

    def get_account(self, account_id):
        account = super().get_account(account_id)
        callback, self.after_read = self.after_read, None
        if callback is not None:
            callback()
        return account


class UnavailableLedgerStore(InMemoryLedgerStore):
    """Unlocked reads fail as if the database went away"""

    failing = False

    def get_account(self, account_id):
        if self.failing:
            raise PersistenceError("could not connect to server")
        return super().get_account(account_id)


class TestTransferScenarios:

    def setup_method(self):
        self.store = InMemoryLedgerStore(make_config())
        self.executor = TransferExecutor(self.store)
        self.a = self.store.create_account("alice", 1000, Currency.USD)
        self.b = self.store.create_account("bob", 500, Currency.USD)

    def balance(self, account):
        return self.store.get_account(account.id).balance

    def test_successful_transfer(self):
        transfer = self.executor.execute(self.a.id, self.b.id, 300, reason="rent")

        assert transfer.status == TransferStatus.COMPLETED
        assert transfer.reason == "rent"
        assert self.balance(self.a) == 700
        assert self.balance(self.b) == 800

        entries = self.executor.get_transfer_entries(transfer.id)
        assert [(e.account_id, e.amount) for e in entries] == [(self.a.id, -300), (self.b.id, 300)]
        assert self.executor.get_transfer(transfer.id) == transfer

    def test_insufficient_funds_records_failed_transfer(self):
        poor = self.store.create_account("carol", 100, Currency.USD)

        transfer = self.executor.execute(poor.id, self.b.id, 300)

        assert transfer.status == TransferStatus.FAILED
        assert "insufficient funds" in transfer.reason
        assert self.balance(poor) == 100
        assert self.balance(self.b) == 500
        assert self.store.list_entries(50, 0) == []
        assert self.store.get_transfer(transfer.id).status == TransferStatus.FAILED

    def test_credit_landing_after_unlocked_read_is_honoured(self):
        store = CreditAfterReadLedgerStore(make_config())
        executor = TransferExecutor(store)
        source = store.create_account("carol", 100, Currency.USD)
        dest = store.create_account("dave", 0, Currency.USD)
        payer = store.create_account("erin", 1000, Currency.USD)
        store.after_read = lambda: executor.execute(payer.id, source.id, 500)

        transfer = executor.execute(source.id, dest.id, 300)

        assert transfer.status == TransferStatus.COMPLETED
        assert store.get_account(source.id).balance == 300
        assert store.get_account(dest.id).balance == 300
        assert len(executor.get_transfer_entries(transfer.id)) == 2

    def test_exact_balance_can_be_spent(self):
        transfer = self.executor.execute(self.b.id, self.a.id, 500)

        assert transfer.status == TransferStatus.COMPLETED
        assert self.balance(self.b) == 0

    def test_same_account_rejected_before_store_access(self):
        store = Mock(spec=LedgerStore)
        executor = TransferExecutor(store, config=make_config())

        with pytest.raises(ValidationError):
            executor.execute(self.a.id, self.a.id, 100)

        assert store.method_calls == []

    @pytest.mark.parametrize("amount", [0, -300, 2.5])
    def test_invalid_amount_rejected_before_store_access(self, amount):
        store = Mock(spec=LedgerStore)
        executor = TransferExecutor(store, config=make_config())

        with pytest.raises(ValidationError):
            executor.execute(self.a.id, self.b.id, amount)

        assert store.method_calls == []

    def test_missing_account(self):
        with pytest.raises(NotFoundError, match="account 9999 not found"):
            self.executor.execute(self.a.id, 9999, 100)
        with pytest.raises(NotFoundError):
            self.executor.execute(9999, self.a.id, 100)

        assert self.store.list_transfers(50, 0) == []
        assert self.balance(self.a) == 1000

    def test_currency_mismatch(self):
        euro = self.store.create_account("dave", 1000, Currency.EUR)

        with pytest.raises(ValidationError, match="USD and EUR"):
            self.executor.execute(self.a.id, euro.id, 100)

        assert self.store.list_transfers(50, 0) == []

    def test_stale_read_does_not_bypass_locked_check(self):
        store = StaleReadLedgerStore(make_config())
        executor = TransferExecutor(store)
        source = store.create_account("carol", 100, Currency.USD)
        dest = store.create_account("dave", 0, Currency.USD)

        transfer = executor.execute(source.id, dest.id, 300)

        assert transfer.status == TransferStatus.FAILED
        assert "has 100" in transfer.reason
        assert store.list_entries(50, 0) == []

    def test_higher_id_source_still_moves_funds(self):
        transfer = self.executor.execute(self.b.id, self.a.id, 50)

        assert transfer.status == TransferStatus.COMPLETED
        assert transfer.from_account_id == self.b.id
        assert self.balance(self.a) == 1050
        assert self.balance(self.b) == 450

    def test_list_transfers(self):
        first = self.executor.execute(self.a.id, self.b.id, 1)
        second = self.executor.execute(self.b.id, self.a.id, 2)

        assert [t.id for t in self.executor.list_transfers()] == [first.id, second.id]
        assert [t.id for t in self.executor.list_transfers(limit=1, offset=1)] == [second.id]
        with pytest.raises(ValidationError):
            self.executor.list_transfers(limit=0)

    def test_get_missing_transfer(self):
        with pytest.raises(NotFoundError):
            self.executor.get_transfer(42)
        with pytest.raises(NotFoundError):
            self.executor.get_transfer_entries(42)


class TestIdempotency:

    def setup_method(self):
        self.store = InMemoryLedgerStore(make_config())
        self.executor = TransferExecutor(self.store)
        self.a = self.store.create_account("alice", 1000, Currency.USD)
        self.b = self.store.create_account("bob", 0, Currency.USD)

    def test_repeated_key_moves_funds_once(self):
        first = self.executor.execute(self.a.id, self.b.id, 300, idempotency_key="pay-1")
        second = self.executor.execute(self.a.id, self.b.id, 300, idempotency_key="pay-1")

        assert second.id == first.id
        assert second.status == TransferStatus.COMPLETED
        assert self.store.get_account(self.a.id).balance == 700
        assert len(self.store.list_transfers(50, 0)) == 1
        assert len(self.store.list_entries(50, 0)) == 2

    def test_repeated_key_returns_failed_transfer(self):
        first = self.executor.execute(self.b.id, self.a.id, 300, idempotency_key="pay-2")
        second = self.executor.execute(self.b.id, self.a.id, 300, idempotency_key="pay-2")

        assert first.status == TransferStatus.FAILED
        assert second.id == first.id
        assert len(self.store.list_transfers(50, 0)) == 1

    def test_reused_key_with_different_request_rejected(self):
        first = self.executor.execute(self.a.id, self.b.id, 300, idempotency_key="pay-5")

        with pytest.raises(ValidationError, match="different transfer") as exc_info:
            self.executor.execute(self.a.id, self.b.id, 301, idempotency_key="pay-5")
        assert exc_info.value.details["transfer_id"] == first.id

        with pytest.raises(ValidationError, match="different transfer"):
            self.executor.execute(self.b.id, self.a.id, 300, idempotency_key="pay-5")

        assert self.store.get_account(self.a.id).balance == 700
        assert len(self.store.list_transfers(50, 0)) == 1

    def test_distinct_keys_are_distinct_transfers(self):
        first = self.executor.execute(self.a.id, self.b.id, 100, idempotency_key="pay-3")
        second = self.executor.execute(self.a.id, self.b.id, 100, idempotency_key="pay-4")

        assert first.id != second.id
        assert self.store.get_account(self.b.id).balance == 200


class TestReversal:

    def setup_method(self):
        self.store = InMemoryLedgerStore(make_config())
        self.executor = TransferExecutor(self.store)
        self.a = self.store.create_account("alice", 1000, Currency.USD)
        self.b = self.store.create_account("bob", 500, Currency.USD)
        self.original = self.executor.execute(self.a.id, self.b.id, 300)

    def test_reverse_creates_compensating_transfer(self):
        reversal = self.executor.reverse(self.original.id, "customer dispute")

        assert reversal.id != self.original.id
        assert reversal.status == TransferStatus.REVERSED
        assert reversal.reverses_transfer_id == self.original.id
        assert reversal.from_account_id == self.b.id
        assert reversal.to_account_id == self.a.id
        assert reversal.reason == "customer dispute"

        assert self.executor.get_transfer(self.original.id).status == TransferStatus.COMPLETED
        assert self.store.get_account(self.a.id).balance == 1000
        assert self.store.get_account(self.b.id).balance == 500

        entries = self.executor.get_transfer_entries(reversal.id)
        assert [(e.account_id, e.amount) for e in entries] == [(self.b.id, -300), (self.a.id, 300)]

    def test_cannot_reverse_twice(self):
        self.executor.reverse(self.original.id, "first")

        with pytest.raises(ValidationError, match="already reversed"):
            self.executor.reverse(self.original.id, "second")

        assert self.store.get_account(self.a.id).balance == 1000

    def test_cannot_reverse_a_reversal(self):
        reversal = self.executor.reverse(self.original.id, "dispute")

        with pytest.raises(ValidationError, match="itself a reversal"):
            self.executor.reverse(reversal.id, "undo")

    def test_cannot_reverse_failed_transfer(self):
        failed = self.executor.execute(self.b.id, self.a.id, 10_000)

        with pytest.raises(InvalidTransitionError):
            self.executor.reverse(failed.id, "nothing to undo")

    def test_reverse_missing_transfer(self):
        with pytest.raises(NotFoundError):
            self.executor.reverse(9999, "missing")

    def test_reversal_without_funds_fails_and_can_be_retried(self):
        carol = self.store.create_account("carol", 0, Currency.USD)
        self.executor.execute(self.b.id, carol.id, 800)

        attempt = self.executor.reverse(self.original.id, "dispute")

        assert attempt.status == TransferStatus.FAILED
        assert attempt.reverses_transfer_id == self.original.id
        assert self.store.get_account(self.b.id).balance == 0

        self.executor.execute(carol.id, self.b.id, 300)
        reversal = self.executor.reverse(self.original.id, "dispute")

        assert reversal.status == TransferStatus.REVERSED
        assert self.store.get_account(self.a.id).balance == 1000


class TestRetryPolicy:

    def setup_method(self):
        self.store = FaultyLedgerStore(make_config())
        self.executor = TransferExecutor(self.store)
        self.a = self.store.create_account("alice", 1000, Currency.USD)
        self.b = self.store.create_account("bob", 500, Currency.USD)
        self.store.units_started = 0

    def test_conflict_is_retried_from_scratch(self, caplog):
        self.store.faults = [ConcurrencyConflictError("lock timeout")]

        with caplog.at_level(logging.WARNING, logger="simple_bank.executor"):
            transfer = self.executor.execute(self.a.id, self.b.id, 300)

        assert transfer.status == TransferStatus.COMPLETED
        assert self.store.units_started == 2
        assert self.store.get_account(self.a.id).balance == 700
        assert self.store.get_account(self.b.id).balance == 800
        assert len(self.store.list_transfers(50, 0)) == 1
        assert len(self.store.list_entries(50, 0)) == 2
        assert any("Retrying transfer" in r.getMessage() for r in caplog.records)

    def test_outcome_log_carries_ledger_fields(self, caplog):
        with caplog.at_level(logging.INFO, logger="simple_bank.executor"):
            transfer = self.executor.execute(self.a.id, self.b.id, 300, reason="rent")

        record = next(r for r in caplog.records if getattr(r, "action", None) == "transfer_completed")
        assert record.ledger["transfer_id"] == transfer.id
        assert record.ledger["status"] == "completed"
        assert record.ledger["from_account_id"] == self.a.id
        assert record.ledger["to_account_id"] == self.b.id
        assert record.ledger["amount"] == 300

    def test_exhausted_retries_leave_nothing_behind(self):
        self.store.faults = [ConcurrencyConflictError("lock timeout") for _ in range(10)]

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            self.executor.execute(self.a.id, self.b.id, 300)

        error = exc_info.value
        assert self.store.units_started == 3
        assert error.details["attempts"] == 3
        assert error.details["from_account_id"] == self.a.id
        assert error.details["amount"] == 300
        assert isinstance(error.__cause__, ConcurrencyConflictError)
        assert "lock" not in error.message

        assert self.store.list_transfers(50, 0) == []
        assert self.store.list_entries(50, 0) == []
        assert self.store.get_account(self.a.id).balance == 1000
        assert self.store.get_account(self.b.id).balance == 500

    def test_persistence_error_is_not_retried(self):
        self.store.faults = [PersistenceError("server closed the connection unexpectedly")]

        with pytest.raises(PersistenceError, match="server closed the connection") as exc_info:
            self.executor.execute(self.a.id, self.b.id, 300)

        assert self.store.units_started == 1
        assert exc_info.value.details["from_account_id"] == self.a.id
        assert exc_info.value.details["to_account_id"] == self.b.id
        assert exc_info.value.details["amount"] == 300
        assert self.store.get_account(self.a.id).balance == 1000
        assert self.store.list_transfers(50, 0) == []

    def test_reversal_uses_same_retry_policy(self):
        original = self.executor.execute(self.a.id, self.b.id, 300)
        self.store.units_started = 0
        self.store.faults = [ConcurrencyConflictError("deadlock detected")]

        reversal = self.executor.reverse(original.id, "dispute")

        assert reversal.status == TransferStatus.REVERSED
        assert self.store.units_started == 2
        assert self.store.get_account(self.a.id).balance == 1000


class TestAccountPreRead:
    """The unlocked account read runs under the same retry policy as the unit"""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = SQLiteLedgerStore(
            Path(self.temp_dir.name) / "ledger.db",
            make_config(lock_timeout_ms=100, max_retry_attempts=10,
                        retry_base_delay=0.05, retry_max_delay=0.1)
        )
        self.executor = TransferExecutor(self.store)
        self.a = self.store.create_account("alice", 1000, Currency.USD)
        self.b = self.store.create_account("bob", 0, Currency.USD)
        self.holder_ready = threading.Event()
        self.release = threading.Event()

    def teardown_method(self):
        self.release.set()
        self.store.close()
        self.temp_dir.cleanup()

    def hold_store(self):
        with self.store.atomic():
            self.holder_ready.set()
            self.release.wait(10)

    def test_busy_store_is_waited_out(self):
        holder = threading.Thread(target=self.hold_store)
        holder.start()
        assert self.holder_ready.wait(5)
        releaser = threading.Timer(0.3, self.release.set)
        releaser.start()
        try:
            transfer = self.executor.execute(self.a.id, self.b.id, 10)
        finally:
            releaser.cancel()
            self.release.set()
            holder.join(5)

        assert transfer.status == TransferStatus.COMPLETED
        assert self.store.get_account(self.b.id).balance == 10

    def test_exhausted_read_retries_hide_lock_detail(self):
        executor = TransferExecutor(self.store, config=make_config(
            lock_timeout_ms=50, max_retry_attempts=2, retry_base_delay=0, retry_max_delay=0
        ))
        holder = threading.Thread(target=self.hold_store)
        holder.start()
        try:
            assert self.holder_ready.wait(5)
            with pytest.raises(ConcurrencyConflictError) as exc_info:
                executor.execute(self.a.id, self.b.id, 10)
        finally:
            self.release.set()
            holder.join(5)

        error = exc_info.value
        assert "lock" not in error.message
        assert error.details["from_account_id"] == self.a.id
        assert error.details["to_account_id"] == self.b.id
        assert error.details["amount"] == 10
        assert error.details["attempts"] == 2
        assert self.store.list_transfers(50, 0) == []

    def test_read_failure_carries_transfer_context(self):
        store = UnavailableLedgerStore(make_config())
        executor = TransferExecutor(store)
        a = store.create_account("alice", 1000, Currency.USD)
        b = store.create_account("bob", 0, Currency.USD)
        store.failing = True

        with pytest.raises(PersistenceError, match="could not connect") as exc_info:
            executor.execute(a.id, b.id, 10)

        assert exc_info.value.details == {
            "from_account_id": a.id, "to_account_id": b.id, "amount": 10
        }
