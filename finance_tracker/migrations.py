"""
Database Migration System

Simple versioned migrations for the relational ledger stores.
Supports both PostgreSQL and SQLite backends; applied versions are
recorded in the schema_migrations table.
"""

from typing import List, Optional, Dict, Any, Sequence, TYPE_CHECKING
from datetime import datetime, timezone
import hashlib
import logging

if TYPE_CHECKING:
    from .storage import SQLLedgerStore


logger = logging.getLogger(__name__)


class Migration:
    """Represents a single database migration"""

    def __init__(self, version: int, name: str, sqlite: Sequence[str], postgresql: Sequence[str]):
        self.version = version
        self.name = name
        self.statements = {
            "sqlite": list(sqlite),
            "postgresql": list(postgresql),
        }
        self.applied_at: Optional[datetime] = None

    def statements_for(self, dialect: str) -> List[str]:
        """Get the DDL statements for a SQL dialect"""
        if dialect not in self.statements:
            raise ValueError(f"Unsupported SQL dialect: {dialect}")
        return self.statements[dialect]

    def checksum(self, dialect: str) -> str:
        """Checksum of the dialect's statements"""
        return hashlib.sha256("\n".join(self.statements_for(dialect)).encode()).hexdigest()

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


MIGRATIONS = [
    Migration(1, "Create accounts table", sqlite=[
        """
        CREATE TABLE IF NOT EXISTS accounts (
            source_name TEXT PRIMARY KEY,
            balance TEXT NOT NULL DEFAULT '0.00',
            created_at TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1
        )
        """,
    ], postgresql=[
        """
        CREATE TABLE IF NOT EXISTS accounts (
            source_name TEXT PRIMARY KEY,
            balance NUMERIC(18, 2) NOT NULL DEFAULT 0 CHECK (balance >= 0),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            is_active BOOLEAN NOT NULL DEFAULT TRUE
        )
        """,
    ]),
    Migration(2, "Create transactions table", sqlite=[
        """
        CREATE TABLE IF NOT EXISTS transactions (
            transaction_id TEXT PRIMARY KEY,
            category_type TEXT NOT NULL CHECK (category_type IN ('income', 'expense')),
            category_name TEXT NOT NULL,
            amount TEXT NOT NULL,
            description TEXT,
            transaction_date TEXT NOT NULL,
            source_name TEXT NOT NULL REFERENCES accounts(source_name),
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_transactions_date
        ON transactions(transaction_date, created_at)
        """,
    ], postgresql=[
        """
        CREATE TABLE IF NOT EXISTS transactions (
            transaction_id UUID PRIMARY KEY,
            category_type TEXT NOT NULL CHECK (category_type IN ('income', 'expense')),
            category_name TEXT NOT NULL,
            amount NUMERIC(18, 2) NOT NULL CHECK (amount >= 0),
            description TEXT,
            transaction_date DATE NOT NULL,
            source_name TEXT NOT NULL REFERENCES accounts(source_name),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_transactions_date
        ON transactions(transaction_date, created_at)
        """,
    ]),
]


class MigrationManager:
    """Manages database migrations for a SQL ledger store"""

    def __init__(self, store: 'SQLLedgerStore', migrations: Optional[List[Migration]] = None):
        self.store = store
        self.migrations: List[Migration] = sorted(
            migrations if migrations is not None else MIGRATIONS,
            key=lambda m: m.version
        )
        self._migration_table = "schema_migrations"
        self._ensure_migration_table()

    def _ensure_migration_table(self) -> None:
        """Ensure the migration tracking table exists"""
        self.store.execute(f"""
            CREATE TABLE IF NOT EXISTS {self._migration_table} (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """)

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        """Get list of applied migrations"""
        rows = self.store.query(
            f"SELECT version, name, checksum, applied_at FROM {self._migration_table} ORDER BY version"
        )
        return [
            {"version": row[0], "name": row[1], "checksum": row[2], "applied_at": row[3]}
            for row in rows
        ]

    def get_current_version(self) -> int:
        """Get the current database version"""
        applied = self.get_applied_migrations()
        return max((m["version"] for m in applied), default=0)

    def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        """Get list of pending migrations"""
        current_version = self.get_current_version()
        max_version = target_version or max((m.version for m in self.migrations), default=0)

        return [
            migration for migration in self.migrations
            if current_version < migration.version <= max_version
        ]

    def migrate_up(self, target_version: Optional[int] = None) -> List[Migration]:
        """Apply pending migrations up to target version"""
        pending = self.get_pending_migrations(target_version)
        applied = []

        if not pending:
            logger.debug("No pending migrations to apply")
            return applied

        logger.info(f"Applying {len(pending)} pending migrations")
        dialect = self.store.dialect

        for migration in pending:
            logger.info(f"Applying {migration}")

            with self.store.atomic():
                for statement in migration.statements_for(dialect):
                    self.store.execute(statement)

                self.store.execute(
                    f"INSERT INTO {self._migration_table} (version, name, checksum, applied_at) "
                    f"VALUES (?, ?, ?, ?)",
                    (
                        migration.version,
                        migration.name,
                        migration.checksum(dialect),
                        datetime.now(timezone.utc).isoformat()
                    )
                )

            migration.applied_at = datetime.now(timezone.utc)
            applied.append(migration)

        logger.info(f"Successfully applied {len(applied)} migrations")
        return applied

    def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        dialect = self.store.dialect

        for applied_migration in self.get_applied_migrations():
            version = applied_migration["version"]
            migration = next((m for m in self.migrations if m.version == version), None)
            if not migration:
                logger.warning(f"Applied migration v{version} not found in definitions")
                continue

            expected_checksum = migration.checksum(dialect)
            if applied_migration["checksum"] != expected_checksum:
                logger.error(f"Checksum mismatch for v{version}: expected {expected_checksum}, "
                             f"got {applied_migration['checksum']}")
                return False

        return True

    def get_migration_status(self) -> Dict[str, Any]:
        """Get detailed migration status"""
        current_version = self.get_current_version()
        pending = self.get_pending_migrations()

        return {
            "current_version": current_version,
            "latest_version": max((m.version for m in self.migrations), default=0),
            "pending_count": len(pending),
            "pending_migrations": [
                {"version": m.version, "name": m.name} for m in pending
            ],
            "needs_migration": len(pending) > 0
        }
