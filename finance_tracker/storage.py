"""
Ledger Store Module

Provides the abstract ledger store and implementations for in-memory
(testing), SQLite (persistence) and PostgreSQL. Monetary values stay
Decimal end to end: SQLite keeps them as text, PostgreSQL as NUMERIC.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import replace
from pathlib import Path
from contextlib import contextmanager, suppress
import sqlite3
import threading

from .errors import DuplicateSource, InvalidBalance, StorageFailure
from .models import (
    Account, AccountStatus, CategoryType, Summary, Transaction, TransactionInfo
)
from .money import ZERO, quantize
from .migrations import MigrationManager


def month_bounds(today: date) -> Tuple[date, date]:
    """First day of the month containing today, and first day of the next month"""
    start = today.replace(day=1)
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


def _to_decimal(value: Any) -> Decimal:
    return quantize(Decimal(str(value)))


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class LedgerStore(ABC):
    """Abstract interface for ledger storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._in_transaction = False

    @abstractmethod
    def find_account_status(self, name: str) -> AccountStatus:
        """Look up a source: active, inactive or not found"""
        pass

    @abstractmethod
    def get_account(self, name: str, for_update: bool = False) -> Optional[Account]:
        """Load a source regardless of its active flag"""
        pass

    @abstractmethod
    def get_balance(self, name: str, for_update: bool = False) -> Optional[Decimal]:
        """Balance of an active source, None if there is no active row"""
        pass

    @abstractmethod
    def insert_account(self, account: Account) -> None:
        """Insert a new source row"""
        pass

    @abstractmethod
    def reactivate_account(self, name: str, amount: Decimal) -> bool:
        """Mark an inactive source active and add amount to its balance"""
        pass

    @abstractmethod
    def adjust_balance(self, name: str, delta: Decimal) -> bool:
        """Apply balance += delta to one active source; False if no row matched"""
        pass

    @abstractmethod
    def insert_transaction(self, record: Transaction) -> None:
        """Append an immutable transaction row"""
        pass

    @abstractmethod
    def list_transactions(self) -> List[TransactionInfo]:
        """All transactions, most recent activity first"""
        pass

    @abstractmethod
    def list_active_accounts(self) -> List[Account]:
        """Active sources ordered by name"""
        pass

    @abstractmethod
    def compute_summary(self, today: Optional[date] = None) -> Summary:
        """Active balance total plus income/expense for today's calendar month"""
        pass

    @abstractmethod
    def deactivate_accounts(self, names: Sequence[str]) -> int:
        """Soft-delete sources by name; returns rows matched"""
        pass

    @abstractmethod
    def delete_transactions(self, ids: Sequence[str]) -> int:
        """Remove transactions by id without touching balances"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def list_active_account_names(self) -> List[str]:
        """Names of the sources that can be posted against"""
        return [account.source_name for account in self.list_active_accounts()]

    def create_or_reactivate_account(self, name: str, initial_balance: Decimal) -> Tuple[Account, bool]:
        """
        Create a source, or bring back a deactivated one.

        A new name gets a fresh active row. An inactive name is reactivated
        and initial_balance is added to the balance it kept.

        Returns:
            The stored account, and whether it was reactivated rather than created

        Raises:
            InvalidBalance: if initial_balance is negative
            DuplicateSource: if an active source already has this name
        """
        if initial_balance < 0:
            raise InvalidBalance(initial_balance)

        with self.atomic():
            status = self.find_account_status(name)
            if status == AccountStatus.ACTIVE:
                raise DuplicateSource(name)

            reactivated = status == AccountStatus.INACTIVE
            if reactivated:
                self.reactivate_account(name, initial_balance)
            else:
                self.insert_account(Account(
                    source_name=name,
                    balance=quantize(initial_balance),
                    created_at=datetime.now(timezone.utc),
                    is_active=True
                ))

            return self.get_account(name), reactivated

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for an all-or-nothing unit of work.

        The store lock is held for the whole unit so units sharing the
        connection never interleave. A nested call joins the enclosing unit.
        Any exception, cancellation included, rolls the unit back.
        """
        with self._lock:
            if self._in_transaction:
                yield
                return

            self.begin_transaction()
            try:
                yield
                self.commit()
            except BaseException:
                self.rollback()
                raise


class InMemoryLedgerStore(LedgerStore):
    """In-memory ledger store for testing"""

    def __init__(self):
        super().__init__()
        self._accounts: Dict[str, Account] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._snapshot: Optional[Tuple[Dict[str, Account], Dict[str, Transaction]]] = None

    def find_account_status(self, name: str) -> AccountStatus:
        with self._lock:
            account = self._accounts.get(name)
            if account is None:
                return AccountStatus.NOT_FOUND
            return AccountStatus.ACTIVE if account.is_active else AccountStatus.INACTIVE

    def get_account(self, name: str, for_update: bool = False) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(name)
            # Copy to prevent external mutation
            return replace(account) if account else None

    def get_balance(self, name: str, for_update: bool = False) -> Optional[Decimal]:
        with self._lock:
            account = self._accounts.get(name)
            if account is None or not account.is_active:
                return None
            return account.balance

    def insert_account(self, account: Account) -> None:
        with self._lock:
            if account.source_name in self._accounts:
                raise StorageFailure("insert_account")
            self._accounts[account.source_name] = replace(account)

    def reactivate_account(self, name: str, amount: Decimal) -> bool:
        with self._lock:
            account = self._accounts.get(name)
            if account is None or account.is_active:
                return False
            account.is_active = True
            account.balance = quantize(account.balance + amount)
            return True

    def adjust_balance(self, name: str, delta: Decimal) -> bool:
        with self._lock:
            account = self._accounts.get(name)
            if account is None or not account.is_active:
                return False
            account.balance = quantize(account.balance + delta)
            return True

    def insert_transaction(self, record: Transaction) -> None:
        with self._lock:
            if record.transaction_id in self._transactions or record.source_name not in self._accounts:
                raise StorageFailure("insert_transaction")
            self._transactions[record.transaction_id] = record

    def list_transactions(self) -> List[TransactionInfo]:
        with self._lock:
            # Insertion order breaks ties between identical timestamps
            ordered = sorted(
                enumerate(self._transactions.values()),
                key=lambda item: (item[1].transaction_date, item[1].created_at, item[0]),
                reverse=True
            )
            return [
                TransactionInfo(
                    transaction_id=record.transaction_id,
                    amount=record.amount,
                    category_type=record.category_type.display,
                    category_name=record.category_name,
                    transaction_date=record.transaction_date,
                    source_name=self._accounts[record.source_name].source_name.upper(),
                    description=record.description
                )
                for _, record in ordered
            ]

    def list_active_accounts(self) -> List[Account]:
        with self._lock:
            return [
                replace(account)
                for name, account in sorted(self._accounts.items())
                if account.is_active
            ]

    def compute_summary(self, today: Optional[date] = None) -> Summary:
        start, end = month_bounds(today or date.today())
        with self._lock:
            total = sum(
                (a.balance for a in self._accounts.values() if a.is_active), ZERO
            )
            income = expense = ZERO
            for record in self._transactions.values():
                if not start <= record.transaction_date < end:
                    continue
                if record.category_type == CategoryType.INCOME:
                    income += record.amount
                else:
                    expense += record.amount
            return Summary(total_balance=total, month_income=income, month_expense=expense)

    def deactivate_accounts(self, names: Sequence[str]) -> int:
        with self._lock:
            count = 0
            for name in set(names):
                account = self._accounts.get(name)
                if account is not None:
                    account.is_active = False
                    count += 1
            return count

    def delete_transactions(self, ids: Sequence[str]) -> int:
        with self._lock:
            count = 0
            for transaction_id in set(ids):
                if self._transactions.pop(transaction_id, None) is not None:
                    count += 1
            return count

    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
                self._snapshot = (
                    {name: replace(account) for name, account in self._accounts.items()},
                    dict(self._transactions)
                )
                self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None
            self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction and self._snapshot is not None:
                self._accounts, self._transactions = self._snapshot
            self._snapshot = None
            self._in_transaction = False

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLLedgerStore(LedgerStore):
    """
    Shared SQL for the relational backends.

    Queries are written with ``?`` placeholders; backends translate them and
    adapt parameters for their driver.
    """

    dialect = "sql"
    lock_clause = ""
    order_tiebreak = ""

    @abstractmethod
    def _cursor(self, operation: str):
        """Context manager yielding a cursor; driver errors become StorageFailure"""
        pass

    def _sql(self, sql: str) -> str:
        return sql

    def _adapt_params(self, params: Sequence[Any]) -> Tuple[Any, ...]:
        return tuple(params)

    def execute(self, sql: str, params: Sequence[Any] = (), operation: str = "execute") -> int:
        """Run a statement, returning the affected row count"""
        with self._cursor(operation) as cursor:
            cursor.execute(self._sql(sql), self._adapt_params(params))
            return cursor.rowcount

    def query(self, sql: str, params: Sequence[Any] = (), operation: str = "query") -> List[Tuple]:
        """Run a query, returning all rows as tuples"""
        with self._cursor(operation) as cursor:
            cursor.execute(self._sql(sql), self._adapt_params(params))
            return [tuple(row) for row in cursor.fetchall()]

    def run_migrations(self) -> None:
        """Bring the schema up to date"""
        MigrationManager(self).migrate_up()

    def find_account_status(self, name: str) -> AccountStatus:
        rows = self.query(
            "SELECT is_active FROM accounts WHERE source_name = ?",
            (name,), operation="find_account_status"
        )
        if not rows:
            return AccountStatus.NOT_FOUND
        return AccountStatus.ACTIVE if rows[0][0] else AccountStatus.INACTIVE

    def get_account(self, name: str, for_update: bool = False) -> Optional[Account]:
        rows = self.query(
            "SELECT source_name, balance, created_at, is_active FROM accounts "
            "WHERE source_name = ?" + (self.lock_clause if for_update else ""),
            (name,), operation="get_account"
        )
        if not rows:
            return None
        return self._account_from_row(rows[0])

    def get_balance(self, name: str, for_update: bool = False) -> Optional[Decimal]:
        rows = self.query(
            "SELECT balance FROM accounts WHERE source_name = ? AND is_active"
            + (self.lock_clause if for_update else ""),
            (name,), operation="get_balance"
        )
        if not rows:
            return None
        return _to_decimal(rows[0][0])

    def insert_account(self, account: Account) -> None:
        self.execute(
            "INSERT INTO accounts (source_name, balance, created_at, is_active) VALUES (?, ?, ?, ?)",
            (account.source_name, account.balance, account.created_at, account.is_active),
            operation="insert_account"
        )

    def reactivate_account(self, name: str, amount: Decimal) -> bool:
        with self.atomic():
            account = self.get_account(name, for_update=True)
            if account is None or account.is_active:
                return False
            self.execute(
                "UPDATE accounts SET is_active = ?, balance = ? WHERE source_name = ?",
                (True, quantize(account.balance + amount), name),
                operation="reactivate_account"
            )
            return True

    def adjust_balance(self, name: str, delta: Decimal) -> bool:
        with self.atomic():
            balance = self.get_balance(name, for_update=True)
            if balance is None:
                return False
            self.execute(
                "UPDATE accounts SET balance = ? WHERE source_name = ?",
                (quantize(balance + delta), name),
                operation="adjust_balance"
            )
            return True

    def insert_transaction(self, record: Transaction) -> None:
        self.execute(
            "INSERT INTO transactions (transaction_id, category_type, category_name, amount, "
            "description, transaction_date, source_name, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.transaction_id,
                record.category_type.value,
                record.category_name,
                record.amount,
                record.description,
                record.transaction_date,
                record.source_name,
                record.created_at
            ),
            operation="insert_transaction"
        )

    def list_transactions(self) -> List[TransactionInfo]:
        rows = self.query(
            """
            SELECT t.transaction_id, t.amount, t.category_type, t.category_name,
                   t.transaction_date, a.source_name, t.description
            FROM transactions t
                JOIN accounts a ON t.source_name = a.source_name
            ORDER BY t.transaction_date DESC, t.created_at DESC
            """ + self.order_tiebreak,
            operation="list_transactions"
        )
        return [
            TransactionInfo(
                transaction_id=str(row[0]),
                amount=_to_decimal(row[1]),
                category_type=row[2].upper(),
                category_name=row[3],
                transaction_date=_to_date(row[4]),
                source_name=row[5].upper(),
                description=row[6]
            )
            for row in rows
        ]

    def list_active_accounts(self) -> List[Account]:
        rows = self.query(
            "SELECT source_name, balance, created_at, is_active FROM accounts "
            "WHERE is_active ORDER BY source_name",
            operation="list_active_accounts"
        )
        return [self._account_from_row(row) for row in rows]

    def list_active_account_names(self) -> List[str]:
        rows = self.query(
            "SELECT source_name FROM accounts WHERE is_active ORDER BY source_name",
            operation="list_active_account_names"
        )
        return [row[0] for row in rows]

    def compute_summary(self, today: Optional[date] = None) -> Summary:
        start, end = month_bounds(today or date.today())
        with self.atomic():
            balances = self.query(
                "SELECT balance FROM accounts WHERE is_active",
                operation="compute_summary"
            )
            postings = self.query(
                "SELECT category_type, amount FROM transactions "
                "WHERE transaction_date >= ? AND transaction_date < ?",
                (start, end), operation="compute_summary"
            )

        total = sum((_to_decimal(row[0]) for row in balances), ZERO)
        income = expense = ZERO
        for category_type, amount in postings:
            if category_type.lower() == CategoryType.INCOME.value:
                income += _to_decimal(amount)
            else:
                expense += _to_decimal(amount)
        return Summary(total_balance=total, month_income=income, month_expense=expense)

    def deactivate_accounts(self, names: Sequence[str]) -> int:
        names = list(dict.fromkeys(names))
        if not names:
            return 0
        placeholders = ", ".join(["?"] * len(names))
        return self.execute(
            f"UPDATE accounts SET is_active = ? WHERE source_name IN ({placeholders})",
            (False, *names), operation="deactivate_accounts"
        )

    def delete_transactions(self, ids: Sequence[str]) -> int:
        ids = list(dict.fromkeys(str(i) for i in ids))
        if not ids:
            return 0
        placeholders = ", ".join(["?"] * len(ids))
        return self.execute(
            f"DELETE FROM transactions WHERE transaction_id IN ({placeholders})",
            ids, operation="delete_transactions"
        )

    def _account_from_row(self, row: Tuple) -> Account:
        return Account(
            source_name=row[0],
            balance=_to_decimal(row[1]),
            created_at=_to_datetime(row[2]),
            is_active=bool(row[3])
        )


class SQLiteLedgerStore(SQLLedgerStore):
    """SQLite ledger store for persistence"""

    dialect = "sqlite"
    # Tie-break on insertion order for identical timestamps
    order_tiebreak = ", t.rowid DESC"

    def __init__(self, db_path: Union[str, Path] = ":memory:", auto_migrate: bool = True):
        super().__init__()
        self.db_path = str(db_path)
        self._connection = None

        with self._cursor("connect"):
            # isolation_level=None leaves transaction control to begin/commit/rollback
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            self._connection.execute("PRAGMA foreign_keys = ON")

            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

        if auto_migrate:
            self.run_migrations()

    @contextmanager
    def _cursor(self, operation: str):
        with self._lock:
            cursor = None
            try:
                if self._connection is not None:
                    cursor = self._connection.cursor()
                yield cursor
            except sqlite3.Error as e:
                raise StorageFailure(operation) from e
            finally:
                if cursor is not None:
                    cursor.close()

    def _adapt_params(self, params: Sequence[Any]) -> Tuple[Any, ...]:
        adapted = []
        for value in params:
            if isinstance(value, bool):
                value = int(value)
            elif isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, (date, datetime)):
                value = value.isoformat()
            adapted.append(value)
        return tuple(adapted)

    def begin_transaction(self) -> None:
        """Start a write transaction; IMMEDIATE takes the database write lock up front"""
        with self._lock:
            if not self._in_transaction:
                self.execute("BEGIN IMMEDIATE", operation="begin")
                self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self.execute("COMMIT", operation="commit")
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                try:
                    if self._connection.in_transaction:
                        self.execute("ROLLBACK", operation="rollback")
                finally:
                    self._in_transaction = False

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLLedgerStore(SQLLedgerStore):
    """PostgreSQL ledger store with row-level locking"""

    dialect = "postgresql"
    lock_clause = " FOR UPDATE"

    def __init__(self, connection_string: str, auto_migrate: bool = True):
        try:
            import psycopg2
            self.psycopg2 = psycopg2
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        super().__init__()
        self.connection_string = connection_string
        self._connection = None
        self._connect()

        if auto_migrate:
            self.run_migrations()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            try:
                self._connection = self.psycopg2.connect(self.connection_string)
                self._connection.set_session(isolation_level="READ COMMITTED", autocommit=False)
            except self.psycopg2.Error as e:
                raise StorageFailure("connect") from e

    @contextmanager
    def _cursor(self, operation: str):
        with self._lock:
            cursor = None
            try:
                cursor = self._connection.cursor()
                yield cursor
                # Outside a unit of work every statement commits on its own
                if not self._in_transaction:
                    self._connection.commit()
            except self.psycopg2.Error as e:
                if not self._in_transaction:
                    with suppress(self.psycopg2.Error):
                        self._connection.rollback()
                raise StorageFailure(operation) from e
            finally:
                if cursor is not None:
                    cursor.close()

    def _sql(self, sql: str) -> str:
        return sql.replace("?", "%s")

    def compute_summary(self, today: Optional[date] = None) -> Summary:
        start, end = month_bounds(today or date.today())
        with self.atomic():
            balance_rows = self.query(
                "SELECT COALESCE(SUM(balance), 0) FROM accounts WHERE is_active",
                operation="compute_summary"
            )
            monthly_rows = self.query(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN LOWER(category_type) = 'income' THEN amount ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN LOWER(category_type) = 'expense' THEN amount ELSE 0 END), 0)
                FROM transactions
                WHERE transaction_date >= ? AND transaction_date < ?
                """,
                (start, end), operation="compute_summary"
            )
        return Summary(
            total_balance=_to_decimal(balance_rows[0][0]),
            month_income=_to_decimal(monthly_rows[0][0]),
            month_expense=_to_decimal(monthly_rows[0][1])
        )

    def begin_transaction(self) -> None:
        """PostgreSQL transactions start with the first statement"""
        with self._lock:
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                try:
                    self._connection.commit()
                except self.psycopg2.Error as e:
                    raise StorageFailure("commit") from e
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                try:
                    self._connection.rollback()
                except self.psycopg2.Error as e:
                    raise StorageFailure("rollback") from e
                finally:
                    self._in_transaction = False

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                with suppress(self.psycopg2.Error):
                    self._connection.close()
                self._connection = None


def create_store(database_url: str, auto_migrate: bool = True) -> LedgerStore:
    """
    Select a ledger store backend from a database URL.

    Supported forms: ``memory://``, ``sqlite:///path/to/file.db``,
    ``sqlite:///:memory:`` and ``postgresql://...``.
    """
    if database_url in ("memory://", ":memory:"):
        return InMemoryLedgerStore()

    if database_url.startswith("sqlite:///"):
        path = database_url[len("sqlite:///"):] or ":memory:"
        return SQLiteLedgerStore(path, auto_migrate=auto_migrate)

    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLLedgerStore(database_url, auto_migrate=auto_migrate)

    raise ValueError(f"Unsupported database URL: {database_url}")
