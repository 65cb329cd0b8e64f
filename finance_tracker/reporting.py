"""
Dashboard Reporting Module

Aggregates the home page data: running balance over active sources,
month-to-date income and expense, recent activity and the sources that
can be posted against.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import ErrorKind
from .models import Account, TransactionInfo
from .posting import PostingEngine


# Form field and user message shown for each error kind
FORM_ERRORS: Dict[ErrorKind, Tuple[str, str]] = {
    ErrorKind.INVALID_AMOUNT: ("amount", "Please enter a valid number."),
    ErrorKind.NEGATIVE_AMOUNT: ("negative_amount", "The transaction amount cannot be negative."),
    ErrorKind.INVALID_CATEGORY: ("category_type", "Category type must be income or expense."),
    ErrorKind.INVALID_DATE: ("transaction_date", "Invalid date format. Please use YYYY-MM-DD."),
    ErrorKind.INVALID_BALANCE: ("balance", "Initial balance cannot be a negative number."),
    ErrorKind.INVALID_SOURCE_NAME: ("source_name", "Please enter a source name."),
    ErrorKind.INVALID_IDENTIFIER: ("transaction_id", "Invalid transaction ID."),
    ErrorKind.DUPLICATE_SOURCE: ("source_name", "This source already exists. Please choose another."),
    ErrorKind.UNKNOWN_ACCOUNT: ("source_name", "The chosen source does not exist."),
    ErrorKind.INSUFFICIENT_FUNDS: ("not_enough_balance", "The chosen source doesn't have enough balance."),
    ErrorKind.STORAGE_FAILURE: ("form", "An internal server error occurred."),
}


def form_error(kind: ErrorKind) -> Tuple[str, str]:
    """Form field and message for an error kind"""
    return FORM_ERRORS[kind]


def form_errors_for_key(error_key: Optional[str]) -> Dict[str, str]:
    """Translate an ``?error=<kind>`` query value into form errors; unknown keys are ignored"""
    if not error_key:
        return {}
    try:
        kind = ErrorKind(error_key)
    except ValueError:
        return {}
    field_name, message = FORM_ERRORS[kind]
    return {field_name: message}


@dataclass
class DashboardView:
    """Everything the home page shows"""
    balance: Decimal
    month_income: Decimal
    month_expense: Decimal
    transactions: List[TransactionInfo]
    available_sources: List[str]
    form_errors: Dict[str, str] = field(default_factory=dict)
    show_all_transactions: bool = False
    all_transactions: List[TransactionInfo] = field(default_factory=list)
    show_all_sources: bool = False
    all_sources: List[Account] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": str(self.balance),
            "month_income": str(self.month_income),
            "month_expense": str(self.month_expense),
            "transactions": [t.to_dict() for t in self.transactions],
            "available_sources": list(self.available_sources),
            "form_errors": dict(self.form_errors),
            "show_all_transactions": self.show_all_transactions,
            "all_transactions": [t.to_dict() for t in self.all_transactions],
            "show_all_sources": self.show_all_sources,
            "all_sources": [a.to_dict() for a in self.all_sources],
        }


class DashboardBuilder:
    """Builds DashboardView snapshots through the posting engine's read operations"""

    def __init__(self, engine: PostingEngine, recent_limit: int = 5):
        if recent_limit < 0:
            raise ValueError("recent_limit cannot be negative")
        self.engine = engine
        self.recent_limit = recent_limit

    def build(
        self,
        show_all_transactions: bool = False,
        show_all_sources: bool = False,
        error_key: Optional[str] = None,
        form_errors: Optional[Dict[str, str]] = None,
        today: Optional[date] = None
    ) -> DashboardView:
        """
        Build the dashboard.

        Args:
            show_all_transactions: Include the full transaction list
            show_all_sources: Include every active source with its balance
            error_key: Error kind value carried over from a redirect
            form_errors: Extra field errors to display
            today: Reference date for the month totals (defaults to today)
        """
        transactions = self.engine.list_transactions()
        summary = self.engine.summary(today)

        errors = form_errors_for_key(error_key)
        if form_errors:
            errors.update(form_errors)

        return DashboardView(
            balance=summary.total_balance,
            month_income=summary.month_income,
            month_expense=summary.month_expense,
            transactions=transactions[:self.recent_limit],
            available_sources=self.engine.list_active_account_names(),
            form_errors=errors,
            show_all_transactions=show_all_transactions,
            all_transactions=transactions if show_all_transactions else [],
            show_all_sources=show_all_sources,
            all_sources=self.engine.list_active_accounts() if show_all_sources else [],
        )
