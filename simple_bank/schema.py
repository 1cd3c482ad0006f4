"""
Database Schema and Migrations

Versioned DDL for the ledger tables, rendered for PostgreSQL (the
authoritative schema) and SQLite. MigrationManager applies and rolls back
migrations over a DB-API connection and records them in schema_migrations.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
import hashlib
import logging


logger = logging.getLogger(__name__)


POSTGRESQL = "postgresql"
SQLITE = "sqlite"


class Migration:
    """Represents a single database migration"""

    def __init__(self, version: int, name: str, up_sql: str, down_sql: Optional[str] = None):
        self.version = version
        self.name = name
        self.up_sql = up_sql
        self.down_sql = down_sql
        self.applied_at: Optional[datetime] = None

    @property
    def checksum(self) -> str:
        return hashlib.md5(self.up_sql.encode()).hexdigest()

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


POSTGRESQL_MIGRATIONS = [
    Migration(1, "init_schema", """
-- ENUMs
CREATE TYPE currency_enum AS ENUM ('USD', 'EUR', 'INR', 'GBP', 'JPY');
CREATE TYPE transfer_status AS ENUM ('pending', 'completed', 'failed', 'reversed');

-- ACCOUNTS
CREATE TABLE accounts (
  id bigserial PRIMARY KEY,
  owner varchar NOT NULL,
  balance bigint NOT NULL CHECK (balance >= 0),
  currency currency_enum NOT NULL,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);

-- ENTRIES
CREATE TABLE entries (
  id bigserial PRIMARY KEY,
  account_id bigint NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  amount bigint NOT NULL,
  created_at timestamptz NOT NULL DEFAULT now()
);

-- TRANSFERS
CREATE TABLE transfers (
  id bigserial PRIMARY KEY,
  from_account_id bigint NOT NULL REFERENCES accounts(id) ON DELETE RESTRICT,
  to_account_id bigint NOT NULL REFERENCES accounts(id) ON DELETE RESTRICT,
  amount bigint NOT NULL CHECK (amount > 0),
  status transfer_status NOT NULL DEFAULT 'pending',
  reason text,
  created_at timestamptz NOT NULL DEFAULT now()
);

-- INDEXES
CREATE INDEX idx_accounts_owner ON accounts(owner);
CREATE INDEX idx_entries_account_id ON entries(account_id);
CREATE INDEX idx_transfers_from_id ON transfers(from_account_id);
CREATE INDEX idx_transfers_to_id ON transfers(to_account_id);
CREATE INDEX idx_transfers_both ON transfers(from_account_id, to_account_id);
""", """
-- Drop tables in reverse order (due to foreign key dependencies)
DROP TABLE IF EXISTS transfers;
DROP TABLE IF EXISTS entries;
DROP TABLE IF EXISTS accounts;

-- Drop custom types
DROP TYPE IF EXISTS transfer_status;
DROP TYPE IF EXISTS currency_enum;
"""),
    Migration(2, "ledger_linkage", """
ALTER TABLE entries ADD COLUMN transfer_id bigint REFERENCES transfers(id) ON DELETE RESTRICT;
ALTER TABLE transfers ADD COLUMN idempotency_key varchar;
ALTER TABLE transfers ADD COLUMN reverses_transfer_id bigint REFERENCES transfers(id) ON DELETE RESTRICT;

CREATE INDEX idx_entries_transfer_id ON entries(transfer_id);
CREATE UNIQUE INDEX idx_transfers_idempotency_key ON transfers(idempotency_key);
CREATE INDEX idx_transfers_reverses_id ON transfers(reverses_transfer_id);
""", """
DROP INDEX IF EXISTS idx_transfers_reverses_id;
DROP INDEX IF EXISTS idx_transfers_idempotency_key;
DROP INDEX IF EXISTS idx_entries_transfer_id;

ALTER TABLE transfers DROP COLUMN IF EXISTS reverses_transfer_id;
ALTER TABLE transfers DROP COLUMN IF EXISTS idempotency_key;
ALTER TABLE entries DROP COLUMN IF EXISTS transfer_id;
"""),
]


SQLITE_MIGRATIONS = [
    Migration(1, "init_schema", """
CREATE TABLE accounts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  owner TEXT NOT NULL,
  balance INTEGER NOT NULL CHECK (balance >= 0),
  currency TEXT NOT NULL CHECK (currency IN ('USD', 'EUR', 'INR', 'GBP', 'JPY')),
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE entries (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  amount INTEGER NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE transfers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  from_account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE RESTRICT,
  to_account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE RESTRICT,
  amount INTEGER NOT NULL CHECK (amount > 0),
  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending', 'completed', 'failed', 'reversed')),
  reason TEXT,
  created_at TEXT NOT NULL
);

CREATE INDEX idx_accounts_owner ON accounts(owner);
CREATE INDEX idx_entries_account_id ON entries(account_id);
CREATE INDEX idx_transfers_from_id ON transfers(from_account_id);
CREATE INDEX idx_transfers_to_id ON transfers(to_account_id);
CREATE INDEX idx_transfers_both ON transfers(from_account_id, to_account_id);
""", """
DROP TABLE IF EXISTS transfers;
DROP TABLE IF EXISTS entries;
DROP TABLE IF EXISTS accounts;
"""),
    # SQLite cannot drop a column that carries a foreign key, so the linkage
    # columns are plain integers here.
    Migration(2, "ledger_linkage", """
ALTER TABLE entries ADD COLUMN transfer_id INTEGER;
ALTER TABLE transfers ADD COLUMN idempotency_key TEXT;
ALTER TABLE transfers ADD COLUMN reverses_transfer_id INTEGER;

CREATE INDEX idx_entries_transfer_id ON entries(transfer_id);
CREATE UNIQUE INDEX idx_transfers_idempotency_key ON transfers(idempotency_key);
CREATE INDEX idx_transfers_reverses_id ON transfers(reverses_transfer_id);
""", """
DROP INDEX IF EXISTS idx_transfers_reverses_id;
DROP INDEX IF EXISTS idx_transfers_idempotency_key;
DROP INDEX IF EXISTS idx_entries_transfer_id;

ALTER TABLE transfers DROP COLUMN reverses_transfer_id;
ALTER TABLE transfers DROP COLUMN idempotency_key;
ALTER TABLE entries DROP COLUMN transfer_id;
"""),
]


MIGRATIONS = {
    POSTGRESQL: POSTGRESQL_MIGRATIONS,
    SQLITE: SQLITE_MIGRATIONS,
}


class MigrationManager:
    """Manages schema migrations on a DB-API connection"""

    def __init__(self, connection, dialect: str):
        if dialect not in MIGRATIONS:
            raise ValueError(f"Unsupported dialect: {dialect}")
        self.connection = connection
        self.dialect = dialect
        self.migrations: List[Migration] = sorted(MIGRATIONS[dialect], key=lambda m: m.version)
        self._param = "?" if dialect == SQLITE else "%s"
        self._migration_table = "schema_migrations"
        self._ensure_migration_table()

    def _ensure_migration_table(self) -> None:
        """Ensure the migration tracking table exists"""
        self._execute_sql(f"""
            CREATE TABLE IF NOT EXISTS {self._migration_table} (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """)
        self.connection.commit()

    def get_current_version(self) -> int:
        """Get the current database version"""
        rows = self._query(f"SELECT MAX(version) AS version FROM {self._migration_table}")
        version = rows[0]['version'] if rows else None
        return int(version) if version is not None else 0

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        """Get list of applied migrations"""
        rows = self._query(
            f"SELECT version, name, checksum, applied_at FROM {self._migration_table} ORDER BY version"
        )
        return [dict(row) for row in rows]

    def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        """Get list of pending migrations"""
        current_version = self.get_current_version()
        max_version = target_version or max((m.version for m in self.migrations), default=0)
        return [m for m in self.migrations if current_version < m.version <= max_version]

    def migrate_up(self, target_version: Optional[int] = None) -> List[Migration]:
        """Apply pending migrations up to target version"""
        pending = self.get_pending_migrations(target_version)
        applied = []

        if not pending:
            logger.debug("No pending migrations to apply")
            return applied

        logger.info(f"Applying {len(pending)} pending migrations")

        for migration in pending:
            try:
                logger.info(f"Applying {migration}")
                self._begin()
                self._execute_sql(migration.up_sql)
                self._execute(
                    f"INSERT INTO {self._migration_table} (version, name, checksum, applied_at) "
                    f"VALUES ({self._param}, {self._param}, {self._param}, {self._param})",
                    (migration.version, migration.name, migration.checksum,
                     datetime.now(timezone.utc).isoformat())
                )
                self.connection.commit()
            except Exception as e:
                self.connection.rollback()
                logger.error(f"Failed to apply {migration}: {e}")
                raise RuntimeError(f"Migration failed: {migration}") from e

            migration.applied_at = datetime.now(timezone.utc)
            applied.append(migration)

        logger.info(f"Successfully applied {len(applied)} migrations")
        return applied

    def migrate_down(self, target_version: int) -> List[Migration]:
        """Rollback migrations down to target version"""
        current_version = self.get_current_version()

        if target_version >= current_version:
            logger.info("Target version is not lower than current version")
            return []

        rolledback = []
        for migration in reversed(self.migrations):
            if not target_version < migration.version <= current_version:
                continue
            if not migration.down_sql:
                raise RuntimeError(f"No rollback SQL for {migration}")
            try:
                logger.info(f"Rolling back {migration}")
                self._begin()
                self._execute_sql(migration.down_sql)
                self._execute(
                    f"DELETE FROM {self._migration_table} WHERE version = {self._param}",
                    (migration.version,)
                )
                self.connection.commit()
            except Exception as e:
                self.connection.rollback()
                logger.error(f"Failed to rollback {migration}: {e}")
                raise RuntimeError(f"Rollback failed: {migration}") from e
            rolledback.append(migration)

        logger.info(f"Successfully rolled back {len(rolledback)} migrations")
        return rolledback

    def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        for applied in self.get_applied_migrations():
            migration = next((m for m in self.migrations if m.version == applied['version']), None)
            if not migration:
                logger.warning(f"Applied migration v{applied['version']} not found in definitions")
                continue
            if applied['checksum'] != migration.checksum:
                logger.error(f"Checksum mismatch for v{migration.version}")
                return False
        return True

    def _begin(self) -> None:
        # SQLite connections run in autocommit mode; open the transaction
        # explicitly so the DDL and its version record commit together
        if self.dialect == SQLITE:
            self.connection.execute("BEGIN")

    def _execute_sql(self, sql: str) -> None:
        """Execute a multi-statement DDL script"""
        if self.dialect == SQLITE:
            # executescript would commit the open transaction
            for statement in _split_statements(sql):
                self.connection.execute(statement)
        else:
            cursor = self.connection.cursor()
            try:
                cursor.execute(sql)
            finally:
                cursor.close()

    def _execute(self, sql: str, params: tuple) -> None:
        cursor = self.connection.cursor()
        try:
            cursor.execute(sql, params)
        finally:
            cursor.close()

    def _query(self, sql: str) -> List[Any]:
        cursor = self.connection.cursor()
        try:
            cursor.execute(sql)
            return cursor.fetchall()
        finally:
            cursor.close()


def _split_statements(sql: str) -> List[str]:
    lines = [line for line in sql.splitlines() if not line.strip().startswith("--")]
    return [s.strip() for s in "\n".join(lines).split(";") if s.strip()]
