"""
Posting Engine Module

Validates and applies income/expense postings against the ledger store.
Updating a source balance and recording the transaction row happen in one
unit of work, so a source balance always equals the sum of its postings.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from typing import Any, Iterable, List, Optional
from contextlib import contextmanager
import re
import uuid

from .errors import (
    LedgerError, StorageFailure, NegativeAmount, InvalidBalance, InvalidDate, InvalidSourceName,
    InvalidIdentifier, InsufficientFunds, UnknownAccount
)
from .models import Account, AccountStatus, CategoryType, Summary, Transaction, TransactionInfo
from .money import parse_amount, parse_decimal, parse_optional_decimal
from .storage import LedgerStore
from .logging_config import get_logger, log_action


_ISO_DATE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


def parse_transaction_date(value: Any) -> date:
    """
    Parse a calendar date in YYYY-MM-DD form.

    Raises:
        InvalidDate: for any other format or an impossible date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not _ISO_DATE.fullmatch(value.strip()):
        raise InvalidDate(value)
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise InvalidDate(value) from None


def parse_transaction_id(value: Any) -> str:
    """Canonical string form of a transaction UUID"""
    if isinstance(value, uuid.UUID):
        return str(value)
    try:
        return str(uuid.UUID(str(value).strip()))
    except ValueError:
        raise InvalidIdentifier(value) from None


class PostingEngine:
    """
    Enforces the money movement rules on top of a ledger store.

    Nothing is cached between calls: every operation re-reads what it
    needs inside its own unit of work.
    """

    def __init__(self, store: LedgerStore):
        self.store = store
        self.logger = get_logger("finance_tracker.posting")

    @contextmanager
    def _logged(self, action: str, resource: Optional[str] = None):
        """Log rejections and storage failures for an operation, then re-raise"""
        try:
            yield
        except StorageFailure as e:
            log_action(
                self.logger, "error", f"{action} failed: {e.message}",
                action=action, resource=resource,
                extra={"operation": e.operation, "cause": repr(e.__cause__)},
                exc_info=True
            )
            raise
        except LedgerError as e:
            log_action(
                self.logger, "warning", f"{action} rejected: {e.message}",
                action=action, resource=resource,
                extra={"error": e.kind.value}
            )
            raise

    def post_transaction(
        self,
        amount: Any,
        category_type: Any,
        category_name: Any,
        description: Any,
        account_name: Any,
        transaction_date: Any
    ) -> Transaction:
        """
        Record an income or expense against a source.

        Args:
            amount: Non-negative decimal amount, usually a string
            category_type: "income" or "expense", any case
            category_name: Free-text category label
            description: Optional free text
            account_name: Source to post against
            transaction_date: Calendar date as YYYY-MM-DD

        Returns:
            The recorded Transaction

        Raises:
            InvalidAmount, NegativeAmount, InvalidCategory, InvalidDate:
                rejected input, nothing touched
            UnknownAccount: no active source with that name
            InsufficientFunds: an expense larger than the source balance
            StorageFailure: storage error, the unit of work was rolled back
        """
        name = account_name if isinstance(account_name, str) else ""
        resource = f"source:{name}"

        with self._logged("post_transaction", resource):
            raw = parse_decimal(amount)
            if raw < 0:
                raise NegativeAmount(raw)
            value = parse_amount(raw)
            kind = CategoryType.parse(category_type)
            posted_on = parse_transaction_date(transaction_date)
            note = str(description).strip() if description is not None else ""

            record = Transaction(
                transaction_id=str(uuid.uuid4()),
                category_type=kind,
                category_name=str(category_name or "").strip(),
                amount=value,
                transaction_date=posted_on,
                source_name=name,
                created_at=datetime.now(timezone.utc),
                description=note or None
            )

            with self.store.atomic():
                if kind == CategoryType.EXPENSE:
                    balance = self.store.get_balance(name, for_update=True)
                    if balance is None:
                        raise UnknownAccount(name)
                    if balance < value:
                        raise InsufficientFunds(name, balance, value)

                if not self.store.adjust_balance(name, record.delta):
                    raise UnknownAccount(name)

                self.store.insert_transaction(record)

        log_action(
            self.logger, "info", f"Transaction posted: {kind.value}",
            action="post_transaction", resource=resource,
            extra={
                "transaction_id": record.transaction_id,
                "category_type": kind.value,
                "category_name": record.category_name,
                "amount": str(value),
                "transaction_date": posted_on.isoformat()
            }
        )
        return record

    def add_source(self, name: Any, initial_balance: Any = "") -> Account:
        """
        Create a source, or reactivate a deactivated one with the same name.

        An empty initial balance means zero. Reactivation adds the initial
        balance to whatever the source kept when it was deactivated.

        Raises:
            InvalidSourceName: blank name
            InvalidAmount: balance is not a number
            InvalidBalance: balance is negative
            DuplicateSource: an active source already has this name
        """
        resource = f"source:{name}"

        with self._logged("add_source", resource):
            if not isinstance(name, str) or not name.strip():
                raise InvalidSourceName(name)
            raw = parse_optional_decimal(initial_balance)
            if raw < 0:
                raise InvalidBalance(raw)
            balance = parse_amount(raw)

            account, reactivated = self.store.create_or_reactivate_account(name, balance)

        log_action(
            self.logger, "info",
            "Source reactivated" if reactivated else "Source created",
            action="add_source", resource=resource,
            extra={"deposit": str(balance), "balance": str(account.balance), "reactivated": reactivated}
        )
        return account

    def remove_transactions(self, ids: Iterable[Any]) -> int:
        """
        Delete transactions by id. Balances are left as they are.

        Returns:
            Number of rows removed; an empty id list is a no-op returning 0
        """
        ids = list(ids or [])
        if not ids:
            return 0

        with self._logged("remove_transactions"):
            normalized = [parse_transaction_id(i) for i in ids]
            count = self.store.delete_transactions(normalized)

        log_action(
            self.logger, "info", f"Deleted {count} transactions",
            action="remove_transactions", extra={"requested": len(normalized), "deleted": count}
        )
        return count

    def deactivate_sources(self, names: Iterable[Any]) -> int:
        """
        Soft-delete sources by name. Already inactive sources are a no-op.

        Returns:
            Number of sources matched; an empty list is a no-op returning 0
        """
        names = [str(n) for n in (names or [])]
        if not names:
            return 0

        with self._logged("deactivate_sources"):
            count = self.store.deactivate_accounts(names)

        log_action(
            self.logger, "info", f"Deactivated {count} sources",
            action="deactivate_sources", extra={"names": names, "matched": count}
        )
        return count

    def account_status(self, name: str) -> AccountStatus:
        with self._logged("account_status", f"source:{name}"):
            return self.store.find_account_status(name)

    def list_transactions(self) -> List[TransactionInfo]:
        with self._logged("list_transactions"):
            return self.store.list_transactions()

    def list_active_accounts(self) -> List[Account]:
        with self._logged("list_active_accounts"):
            return self.store.list_active_accounts()

    def list_active_account_names(self) -> List[str]:
        with self._logged("list_active_account_names"):
            return self.store.list_active_account_names()

    def summary(self, today: Optional[date] = None) -> Summary:
        with self._logged("summary"):
            return self.store.compute_summary(today)

    def get_balance(self, name: str) -> Optional[Decimal]:
        """Current balance of an active source"""
        with self._logged("get_balance", f"source:{name}"):
            return self.store.get_balance(name)
