"""
Ledger Store Module

Durable holder of accounts, entries and transfers. Every write happens inside
a unit of work obtained from LedgerStore.atomic(): leaving the block commits,
an exception rolls back. Units of work take exclusive row locks on accounts
and refuse to take them out of ascending id order.

Backends: in-memory (testing), SQLite (single node persistence) and
PostgreSQL (production, row-level locking with SELECT ... FOR UPDATE).
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
import itertools
import sqlite3
import threading

from .config import SimpleBankConfig, get_config
from .errors import (
    ConcurrencyConflictError, InvalidTransitionError, LedgerError,
    LockOrderError, NotFoundError, PersistenceError
)
from .logging_config import get_logger
from .models import Account, Currency, Entry, Transfer, TransferStatus
from .schema import MigrationManager, POSTGRESQL, SQLITE


logger = get_logger("simple_bank.storage")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UnitOfWork(ABC):
    """
    One atomic unit of work against the ledger store

    Only obtained through LedgerStore.atomic(). Reads inside the unit see the
    unit's own uncommitted writes.
    """

    def __init__(self):
        self._locked_ids: List[int] = []
        self._closed = False

    @property
    def locked_account_ids(self) -> List[int]:
        """Account ids locked so far, in acquisition order"""
        return list(self._locked_ids)

    def lock_account(self, account_id: int) -> Account:
        """
        Take an exclusive row lock on an account and read it fresh

        Raises:
            NotFoundError: If the account does not exist
            LockOrderError: If a higher account id is already locked
            ConcurrencyConflictError: If the lock wait timed out
        """
        if account_id in self._locked_ids:
            account = self.get_account(account_id)
            if account is None:
                raise NotFoundError("account", account_id)
            return account

        if self._locked_ids and account_id < max(self._locked_ids):
            raise LockOrderError(
                f"account {account_id} locked after account {max(self._locked_ids)}",
                {"held": list(self._locked_ids), "requested": account_id}
            )

        account = self._lock_row(account_id)
        self._locked_ids.append(account_id)
        logger.debug(f"Locked account {account_id}")
        return account

    def update_account_balance(self, account_id: int, new_balance: int) -> Account:
        """Set a balance; the account must already be locked by this unit"""
        if account_id not in self._locked_ids:
            raise LockOrderError(
                f"account {account_id} must be locked before its balance changes",
                {"held": list(self._locked_ids), "requested": account_id}
            )
        return self._update_balance(account_id, new_balance)

    def update_transfer_status(
        self,
        transfer_id: int,
        status: TransferStatus,
        reason: Optional[str] = None
    ) -> Transfer:
        """
        Move a transfer out of pending

        Raises:
            InvalidTransitionError: If the state machine forbids the change
        """
        transfer = self.get_transfer(transfer_id)
        if transfer is None:
            raise NotFoundError("transfer", transfer_id)

        if not transfer.status.can_transition_to(status):
            raise InvalidTransitionError(
                f"transfer {transfer_id} cannot move from {transfer.status.value} to {status.value}",
                {"transfer_id": transfer_id}
            )
        if status is TransferStatus.REVERSED and not transfer.is_reversal:
            raise InvalidTransitionError(
                f"transfer {transfer_id} is not a compensating transfer",
                {"transfer_id": transfer_id}
            )
        return self._set_transfer_status(transfer_id, status, reason)

    @abstractmethod
    def _lock_row(self, account_id: int) -> Account:
        pass

    @abstractmethod
    def _update_balance(self, account_id: int, new_balance: int) -> Account:
        pass

    @abstractmethod
    def _set_transfer_status(self, transfer_id: int, status: TransferStatus,
                             reason: Optional[str]) -> Transfer:
        pass

    @abstractmethod
    def get_account(self, account_id: int) -> Optional[Account]:
        """Read an account without locking it"""
        pass

    @abstractmethod
    def insert_account(self, owner: str, balance: int, currency: Currency) -> Account:
        pass

    @abstractmethod
    def insert_transfer(
        self,
        from_account_id: int,
        to_account_id: int,
        amount: int,
        status: TransferStatus = TransferStatus.PENDING,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        reverses_transfer_id: Optional[int] = None
    ) -> Transfer:
        pass

    @abstractmethod
    def insert_entry(self, account_id: int, amount: int, transfer_id: Optional[int] = None) -> Entry:
        pass

    @abstractmethod
    def get_transfer(self, transfer_id: int) -> Optional[Transfer]:
        pass

    @abstractmethod
    def find_transfer_by_idempotency_key(self, idempotency_key: str) -> Optional[Transfer]:
        pass

    @abstractmethod
    def find_reversal_of(self, transfer_id: int) -> Optional[Transfer]:
        """Completed compensating transfer for transfer_id, if any"""
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass


class LedgerStore(ABC):
    """Abstract ledger store"""

    def __init__(self, config: Optional[SimpleBankConfig] = None):
        self.config = config or get_config()

    @abstractmethod
    def _begin(self) -> UnitOfWork:
        pass

    @contextmanager
    def atomic(self) -> Iterator[UnitOfWork]:
        """Context manager for one atomic unit of work"""
        uow = self._begin()
        try:
            yield uow
            uow.commit()
        except Exception:
            uow.rollback()
            raise

    def create_account(self, owner: str, balance: int, currency: Currency) -> Account:
        """Insert a new account row"""
        with self.atomic() as uow:
            return uow.insert_account(owner, balance, currency)

    @abstractmethod
    def get_account(self, account_id: int) -> Optional[Account]:
        pass

    @abstractmethod
    def list_accounts(self, limit: int, offset: int) -> List[Account]:
        pass

    @abstractmethod
    def get_transfer(self, transfer_id: int) -> Optional[Transfer]:
        pass

    @abstractmethod
    def list_transfers(self, limit: int, offset: int) -> List[Transfer]:
        pass

    @abstractmethod
    def get_entry(self, entry_id: int) -> Optional[Entry]:
        pass

    @abstractmethod
    def list_entries(self, limit: int, offset: int) -> List[Entry]:
        pass

    @abstractmethod
    def list_entries_for_account(self, account_id: int, limit: int, offset: int) -> List[Entry]:
        pass

    @abstractmethod
    def list_entries_for_transfer(self, transfer_id: int) -> List[Entry]:
        pass

    def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(UnitOfWork):
    """Stages writes and applies them to the store on commit"""

    def __init__(self, store: 'InMemoryLedgerStore'):
        super().__init__()
        self._store = store
        self._held_locks: List[threading.Lock] = []
        self._accounts: Dict[int, Account] = {}
        self._transfers: Dict[int, Transfer] = {}
        self._entries: List[Entry] = []

    def _lock_row(self, account_id: int) -> Account:
        store = self._store
        with store._mutex:
            if account_id not in store._accounts:
                raise NotFoundError("account", account_id)
            row_lock = store._row_locks[account_id]

        if not row_lock.acquire(timeout=store.config.lock_timeout_seconds):
            raise ConcurrencyConflictError(
                f"timed out waiting for lock on account {account_id}",
                {"account_id": account_id}
            )
        self._held_locks.append(row_lock)

        with store._mutex:
            return replace(store._accounts[account_id])

    def get_account(self, account_id: int) -> Optional[Account]:
        if account_id in self._accounts:
            return replace(self._accounts[account_id])
        return self._store.get_account(account_id)

    def insert_account(self, owner: str, balance: int, currency: Currency) -> Account:
        if balance < 0:
            raise PersistenceError('new row violates check constraint "accounts_balance_check"',
                                   {"balance": balance})
        now = _utcnow()
        account = Account(
            id=self._store._next_id("accounts"),
            owner=owner,
            balance=balance,
            currency=currency,
            created_at=now,
            updated_at=now
        )
        self._accounts[account.id] = account
        return replace(account)

    def _update_balance(self, account_id: int, new_balance: int) -> Account:
        if new_balance < 0:
            raise PersistenceError('new row violates check constraint "accounts_balance_check"',
                                   {"account_id": account_id, "balance": new_balance})
        current = self.get_account(account_id)
        if current is None:
            raise NotFoundError("account", account_id)
        account = replace(current, balance=new_balance, updated_at=_utcnow())
        self._accounts[account_id] = account
        return replace(account)

    def insert_transfer(
        self,
        from_account_id: int,
        to_account_id: int,
        amount: int,
        status: TransferStatus = TransferStatus.PENDING,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        reverses_transfer_id: Optional[int] = None
    ) -> Transfer:
        if amount <= 0:
            raise PersistenceError('new row violates check constraint "transfers_amount_check"',
                                   {"amount": amount})
        for account_id in (from_account_id, to_account_id):
            if self.get_account(account_id) is None:
                raise PersistenceError("insert on transfers violates foreign key constraint",
                                       {"account_id": account_id})
        if idempotency_key is not None and self.find_transfer_by_idempotency_key(idempotency_key):
            raise ConcurrencyConflictError("duplicate idempotency key",
                                           {"idempotency_key": idempotency_key})

        transfer = Transfer(
            id=self._store._next_id("transfers"),
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount,
            status=status,
            created_at=_utcnow(),
            reason=reason,
            idempotency_key=idempotency_key,
            reverses_transfer_id=reverses_transfer_id
        )
        self._transfers[transfer.id] = transfer
        return replace(transfer)

    def _set_transfer_status(self, transfer_id: int, status: TransferStatus,
                             reason: Optional[str]) -> Transfer:
        transfer = replace(self.get_transfer(transfer_id), status=status, reason=reason)
        self._transfers[transfer_id] = transfer
        return replace(transfer)

    def insert_entry(self, account_id: int, amount: int, transfer_id: Optional[int] = None) -> Entry:
        if self.get_account(account_id) is None:
            raise PersistenceError("insert on entries violates foreign key constraint",
                                   {"account_id": account_id})
        entry = Entry(
            id=self._store._next_id("entries"),
            account_id=account_id,
            amount=amount,
            created_at=_utcnow(),
            transfer_id=transfer_id
        )
        self._entries.append(entry)
        return entry

    def get_transfer(self, transfer_id: int) -> Optional[Transfer]:
        if transfer_id in self._transfers:
            return replace(self._transfers[transfer_id])
        return self._store.get_transfer(transfer_id)

    def _visible_transfers(self) -> List[Transfer]:
        with self._store._mutex:
            merged = dict(self._store._transfers)
        merged.update(self._transfers)
        return [merged[key] for key in sorted(merged)]

    def find_transfer_by_idempotency_key(self, idempotency_key: str) -> Optional[Transfer]:
        for transfer in self._visible_transfers():
            if transfer.idempotency_key == idempotency_key:
                return replace(transfer)
        return None

    def find_reversal_of(self, transfer_id: int) -> Optional[Transfer]:
        for transfer in self._visible_transfers():
            if (transfer.reverses_transfer_id == transfer_id and
                    transfer.status == TransferStatus.REVERSED):
                return replace(transfer)
        return None

    def commit(self) -> None:
        store = self._store
        try:
            with store._mutex:
                # Unique idempotency keys, checked against rows committed
                # since this unit inserted its own
                for transfer in self._transfers.values():
                    key = transfer.idempotency_key
                    if key is None:
                        continue
                    for other in store._transfers.values():
                        if other.idempotency_key == key and other.id != transfer.id:
                            raise ConcurrencyConflictError(
                                "duplicate idempotency key",
                                {"idempotency_key": key}
                            )
                for account in self._accounts.values():
                    if account.id not in store._accounts:
                        store._row_locks[account.id] = threading.Lock()
                    store._accounts[account.id] = account
                store._transfers.update(self._transfers)
                for entry in self._entries:
                    store._entries[entry.id] = entry
        finally:
            self._release()

    def rollback(self) -> None:
        self._accounts.clear()
        self._transfers.clear()
        self._entries.clear()
        self._release()

    def _release(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._held_locks:
            self._held_locks.pop().release()


class InMemoryLedgerStore(LedgerStore):
    """In-memory ledger store for testing"""

    def __init__(self, config: Optional[SimpleBankConfig] = None):
        super().__init__(config)
        self._accounts: Dict[int, Account] = {}
        self._transfers: Dict[int, Transfer] = {}
        self._entries: Dict[int, Entry] = {}
        self._row_locks: Dict[int, threading.Lock] = {}
        self._mutex = threading.RLock()
        self._sequences = {
            "accounts": itertools.count(1),
            "transfers": itertools.count(1),
            "entries": itertools.count(1),
        }

    def _next_id(self, table: str) -> int:
        # Like a database sequence, ids consumed by rolled back units are gone
        with self._mutex:
            return next(self._sequences[table])

    def _begin(self) -> UnitOfWork:
        return InMemoryUnitOfWork(self)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._mutex:
            account = self._accounts.get(account_id)
            return replace(account) if account else None

    def list_accounts(self, limit: int, offset: int) -> List[Account]:
        with self._mutex:
            return [replace(self._accounts[key])
                    for key in sorted(self._accounts)[offset:offset + limit]]

    def get_transfer(self, transfer_id: int) -> Optional[Transfer]:
        with self._mutex:
            transfer = self._transfers.get(transfer_id)
            return replace(transfer) if transfer else None

    def list_transfers(self, limit: int, offset: int) -> List[Transfer]:
        with self._mutex:
            return [replace(self._transfers[key])
                    for key in sorted(self._transfers)[offset:offset + limit]]

    def get_entry(self, entry_id: int) -> Optional[Entry]:
        with self._mutex:
            return self._entries.get(entry_id)

    def list_entries(self, limit: int, offset: int) -> List[Entry]:
        with self._mutex:
            return [self._entries[key] for key in sorted(self._entries)[offset:offset + limit]]

    def list_entries_for_account(self, account_id: int, limit: int, offset: int) -> List[Entry]:
        with self._mutex:
            entries = [self._entries[key] for key in sorted(self._entries)
                       if self._entries[key].account_id == account_id]
        return entries[offset:offset + limit]

    def list_entries_for_transfer(self, transfer_id: int) -> List[Entry]:
        with self._mutex:
            return [self._entries[key] for key in sorted(self._entries)
                    if self._entries[key].transfer_id == transfer_id]


# ---------------------------------------------------------------------------
# SQL backends
# ---------------------------------------------------------------------------

ACCOUNT_COLUMNS = "id, owner, balance, currency, created_at, updated_at"
TRANSFER_COLUMNS = ("id, from_account_id, to_account_id, amount, status, reason, "
                    "created_at, idempotency_key, reverses_transfer_id")
ENTRY_COLUMNS = "id, account_id, amount, created_at, transfer_id"


class SQLUnitOfWork(UnitOfWork):
    """Unit of work over one DB-API connection held for its whole duration"""

    def __init__(self, store: '_SQLLedgerStore', connection):
        super().__init__()
        self._store = store
        self._connection = connection

    def _execute(self, sql: str, params: Tuple = ()):
        cursor = self._connection.cursor()
        try:
            cursor.execute(self._store._sql(sql), params)
        except self._store._driver_error as exc:
            cursor.close()
            raise self._store._translate_error(exc) from exc
        return cursor

    def _fetch_one(self, sql: str, params: Tuple = ()) -> Optional[Dict[str, Any]]:
        cursor = self._execute(sql, params)
        try:
            row = cursor.fetchone()
            return dict(row) if row else None
        finally:
            cursor.close()

    def _insert(self, sql: str, params: Tuple) -> int:
        cursor = self._execute(self._store._returning_id(sql), params)
        try:
            return self._store._inserted_id(cursor)
        finally:
            cursor.close()

    def _lock_row(self, account_id: int) -> Account:
        row = self._fetch_one(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = %s{self._store._lock_clause}",
            (account_id,)
        )
        if row is None:
            raise NotFoundError("account", account_id)
        return Account.from_dict(row)

    def get_account(self, account_id: int) -> Optional[Account]:
        row = self._fetch_one(f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = %s", (account_id,))
        return Account.from_dict(row) if row else None

    def insert_account(self, owner: str, balance: int, currency: Currency) -> Account:
        now = self._store._now()
        account_id = self._insert(
            "INSERT INTO accounts (owner, balance, currency, created_at, updated_at) "
            "VALUES (%s, %s, %s, %s, %s)",
            (owner, balance, currency.value, now, now)
        )
        return self.get_account(account_id)

    def _update_balance(self, account_id: int, new_balance: int) -> Account:
        cursor = self._execute(
            "UPDATE accounts SET balance = %s, updated_at = %s WHERE id = %s",
            (new_balance, self._store._now(), account_id)
        )
        cursor.close()
        account = self.get_account(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        return account

    def insert_transfer(
        self,
        from_account_id: int,
        to_account_id: int,
        amount: int,
        status: TransferStatus = TransferStatus.PENDING,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        reverses_transfer_id: Optional[int] = None
    ) -> Transfer:
        transfer_id = self._insert(
            "INSERT INTO transfers (from_account_id, to_account_id, amount, status, reason, "
            "created_at, idempotency_key, reverses_transfer_id) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
            (from_account_id, to_account_id, amount, status.value, reason,
             self._store._now(), idempotency_key, reverses_transfer_id)
        )
        return self.get_transfer(transfer_id)

    def _set_transfer_status(self, transfer_id: int, status: TransferStatus,
                             reason: Optional[str]) -> Transfer:
        cursor = self._execute(
            "UPDATE transfers SET status = %s, reason = %s WHERE id = %s",
            (status.value, reason, transfer_id)
        )
        cursor.close()
        return self.get_transfer(transfer_id)

    def insert_entry(self, account_id: int, amount: int, transfer_id: Optional[int] = None) -> Entry:
        entry_id = self._insert(
            "INSERT INTO entries (account_id, amount, created_at, transfer_id) "
            "VALUES (%s, %s, %s, %s)",
            (account_id, amount, self._store._now(), transfer_id)
        )
        row = self._fetch_one(f"SELECT {ENTRY_COLUMNS} FROM entries WHERE id = %s", (entry_id,))
        return Entry.from_dict(row)

    def get_transfer(self, transfer_id: int) -> Optional[Transfer]:
        row = self._fetch_one(f"SELECT {TRANSFER_COLUMNS} FROM transfers WHERE id = %s", (transfer_id,))
        return Transfer.from_dict(row) if row else None

    def find_transfer_by_idempotency_key(self, idempotency_key: str) -> Optional[Transfer]:
        row = self._fetch_one(
            f"SELECT {TRANSFER_COLUMNS} FROM transfers WHERE idempotency_key = %s",
            (idempotency_key,)
        )
        return Transfer.from_dict(row) if row else None

    def find_reversal_of(self, transfer_id: int) -> Optional[Transfer]:
        row = self._fetch_one(
            f"SELECT {TRANSFER_COLUMNS} FROM transfers "
            f"WHERE reverses_transfer_id = %s AND status = %s ORDER BY id LIMIT 1",
            (transfer_id, TransferStatus.REVERSED.value)
        )
        return Transfer.from_dict(row) if row else None

    def commit(self) -> None:
        try:
            self._connection.commit()
        except self._store._driver_error as exc:
            self.rollback()
            raise self._store._translate_error(exc) from exc
        self._release(broken=False)

    def rollback(self) -> None:
        if self._closed:
            return
        broken = False
        try:
            self._connection.rollback()
        except self._store._driver_error as exc:
            logger.warning(f"Rollback failed, discarding connection: {exc}")
            broken = True
        self._release(broken=broken)

    def _release(self, broken: bool) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._release_connection(self._connection, broken)


class _SQLLedgerStore(LedgerStore):
    """Shared SQL for the SQLite and PostgreSQL backends"""

    dialect = ""
    _lock_clause = ""
    _driver_error: Any = Exception

    def _sql(self, sql: str) -> str:
        return sql

    def _now(self) -> Any:
        return _utcnow()

    def _returning_id(self, sql: str) -> str:
        return sql

    def _inserted_id(self, cursor) -> int:
        return cursor.lastrowid

    def _end_read(self, connection) -> None:
        """Close the implicit transaction a read opened"""
        connection.rollback()

    @abstractmethod
    def _acquire_connection(self):
        pass

    @abstractmethod
    def _start_unit(self, connection) -> None:
        pass

    @abstractmethod
    def _release_connection(self, connection, broken: bool = False) -> None:
        pass

    @abstractmethod
    def _translate_error(self, exc: Exception) -> LedgerError:
        pass

    def _begin(self) -> UnitOfWork:
        connection = self._acquire_connection()
        try:
            self._start_unit(connection)
        except self._driver_error as exc:
            self._release_connection(connection, broken=True)
            raise self._translate_error(exc) from exc
        except Exception:
            self._release_connection(connection, broken=True)
            raise
        return SQLUnitOfWork(self, connection)

    def migrate(self) -> MigrationManager:
        """Apply pending schema migrations"""
        connection = self._acquire_connection()
        try:
            manager = MigrationManager(connection, self.dialect)
            manager.migrate_up()
            return manager
        except self._driver_error as exc:
            raise self._translate_error(exc) from exc
        finally:
            self._release_connection(connection)

    def _fetch_all(self, sql: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        connection = self._acquire_connection()
        broken = False
        try:
            cursor = connection.cursor()
            try:
                cursor.execute(self._sql(sql), params)
                rows = [dict(row) for row in cursor.fetchall()]
            finally:
                cursor.close()
            self._end_read(connection)
            return rows
        except self._driver_error as exc:
            broken = True
            raise self._translate_error(exc) from exc
        finally:
            self._release_connection(connection, broken)

    def get_account(self, account_id: int) -> Optional[Account]:
        rows = self._fetch_all(f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = %s", (account_id,))
        return Account.from_dict(rows[0]) if rows else None

    def list_accounts(self, limit: int, offset: int) -> List[Account]:
        rows = self._fetch_all(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts ORDER BY id LIMIT %s OFFSET %s",
            (limit, offset)
        )
        return [Account.from_dict(row) for row in rows]

    def get_transfer(self, transfer_id: int) -> Optional[Transfer]:
        rows = self._fetch_all(f"SELECT {TRANSFER_COLUMNS} FROM transfers WHERE id = %s", (transfer_id,))
        return Transfer.from_dict(rows[0]) if rows else None

    def list_transfers(self, limit: int, offset: int) -> List[Transfer]:
        rows = self._fetch_all(
            f"SELECT {TRANSFER_COLUMNS} FROM transfers ORDER BY id LIMIT %s OFFSET %s",
            (limit, offset)
        )
        return [Transfer.from_dict(row) for row in rows]

    def get_entry(self, entry_id: int) -> Optional[Entry]:
        rows = self._fetch_all(f"SELECT {ENTRY_COLUMNS} FROM entries WHERE id = %s", (entry_id,))
        return Entry.from_dict(rows[0]) if rows else None

    def list_entries(self, limit: int, offset: int) -> List[Entry]:
        rows = self._fetch_all(
            f"SELECT {ENTRY_COLUMNS} FROM entries ORDER BY id LIMIT %s OFFSET %s",
            (limit, offset)
        )
        return [Entry.from_dict(row) for row in rows]

    def list_entries_for_account(self, account_id: int, limit: int, offset: int) -> List[Entry]:
        rows = self._fetch_all(
            f"SELECT {ENTRY_COLUMNS} FROM entries WHERE account_id = %s "
            f"ORDER BY id LIMIT %s OFFSET %s",
            (account_id, limit, offset)
        )
        return [Entry.from_dict(row) for row in rows]

    def list_entries_for_transfer(self, transfer_id: int) -> List[Entry]:
        rows = self._fetch_all(
            f"SELECT {ENTRY_COLUMNS} FROM entries WHERE transfer_id = %s ORDER BY id",
            (transfer_id,)
        )
        return [Entry.from_dict(row) for row in rows]


class SQLiteLedgerStore(_SQLLedgerStore):
    """
    SQLite ledger store

    One connection guarded by a re-entrant lock held for the whole unit of
    work, so units serialize on the database. BEGIN IMMEDIATE takes the write
    lock up front, which keeps other processes from interleaving.
    """

    dialect = SQLITE
    _driver_error = sqlite3.Error

    def __init__(self, db_path: Union[str, Path] = ":memory:", config: Optional[SimpleBankConfig] = None):
        super().__init__(config)
        self.db_path = str(db_path)
        # isolation_level=None: transactions are opened explicitly
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=self.config.lock_timeout_seconds
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        with self._lock:
            self._connection.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

        if self.config.auto_migrate:
            self.migrate()

    def _sql(self, sql: str) -> str:
        return sql.replace("%s", "?")

    def _now(self) -> Any:
        return _utcnow().isoformat()

    def _acquire_connection(self):
        if self._connection is None:
            raise PersistenceError("SQLite store is closed", {"db_path": self.db_path})
        if not self._lock.acquire(timeout=self.config.lock_timeout_seconds):
            raise ConcurrencyConflictError("timed out waiting for the database lock",
                                           {"db_path": self.db_path})
        return self._connection

    def _start_unit(self, connection) -> None:
        connection.execute("BEGIN IMMEDIATE")

    def _end_read(self, connection) -> None:
        # Autocommit reads leave nothing open; an enclosing unit on this
        # thread keeps its transaction
        pass

    def _release_connection(self, connection, broken: bool = False) -> None:
        self._lock.release()

    def _translate_error(self, exc: Exception) -> LedgerError:
        message = str(exc)
        lowered = message.lower()
        if isinstance(exc, sqlite3.OperationalError) and ("locked" in lowered or "busy" in lowered):
            return ConcurrencyConflictError(message)
        if isinstance(exc, sqlite3.IntegrityError) and "idempotency_key" in lowered:
            return ConcurrencyConflictError(message)
        return PersistenceError(message)

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


# SQLSTATEs that mean "try the whole unit again"
RETRYABLE_SQLSTATES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available (lock_timeout)
    "57014",  # query_canceled (statement_timeout)
}
UNIQUE_VIOLATION = "23505"


class PostgreSQLLedgerStore(_SQLLedgerStore):
    """PostgreSQL ledger store with row-level locking and a connection pool"""

    dialect = POSTGRESQL
    _lock_clause = " FOR UPDATE"

    def __init__(self, connection_string: str, config: Optional[SimpleBankConfig] = None):
        super().__init__(config)
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.psycopg2 = psycopg2
        self._driver_error = psycopg2.Error
        self.connection_string = connection_string
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                1,
                self.config.database_pool_size,
                connection_string,
                cursor_factory=psycopg2.extras.RealDictCursor
            )
        except psycopg2.Error as exc:
            raise PersistenceError(f"cannot connect to PostgreSQL: {exc}") from exc

        if self.config.auto_migrate:
            self.migrate()

    def _returning_id(self, sql: str) -> str:
        return sql + " RETURNING id"

    def _inserted_id(self, cursor) -> int:
        return cursor.fetchone()['id']

    def _acquire_connection(self):
        try:
            connection = self._pool.getconn()
        except self.psycopg2.pool.PoolError as exc:
            raise ConcurrencyConflictError(f"connection pool exhausted: {exc}") from exc
        except self.psycopg2.Error as exc:
            raise PersistenceError(f"cannot connect to PostgreSQL: {exc}") from exc
        connection.autocommit = False
        return connection

    def _start_unit(self, connection) -> None:
        cursor = connection.cursor()
        try:
            cursor.execute("SET LOCAL lock_timeout = %s", (f"{self.config.lock_timeout_ms}ms",))
            cursor.execute("SET LOCAL statement_timeout = %s", (f"{self.config.statement_timeout_ms}ms",))
        finally:
            cursor.close()

    def _release_connection(self, connection, broken: bool = False) -> None:
        self._pool.putconn(connection, close=broken or bool(connection.closed))

    def _translate_error(self, exc: Exception) -> LedgerError:
        pgcode = getattr(exc, "pgcode", None)
        message = str(exc).strip()
        if pgcode in RETRYABLE_SQLSTATES:
            return ConcurrencyConflictError(message, {"sqlstate": pgcode})
        if pgcode == UNIQUE_VIOLATION and "idempotency_key" in message:
            return ConcurrencyConflictError(message, {"sqlstate": pgcode})
        return PersistenceError(message, {"sqlstate": pgcode} if pgcode else None)

    def close(self) -> None:
        """Close all pooled connections"""
        if self._pool and not self._pool.closed:
            self._pool.closeall()


def create_store(config: Optional[SimpleBankConfig] = None) -> LedgerStore:
    """Build the ledger store named by config.database_url"""
    config = config or get_config()
    url = config.database_url

    if url.startswith("memory://"):
        return InMemoryLedgerStore(config)
    if url.startswith("sqlite://"):
        path = url[len("sqlite:///"):] or ":memory:"
        return SQLiteLedgerStore(path, config)
    if url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLLedgerStore(url, config)
    raise ValueError(f"Unsupported database_url: {url}")
