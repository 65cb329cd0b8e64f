"""
Ledger Data Model

Sources (accounts) with a Decimal balance and an active flag, and the
immutable income/expense transactions posted against them.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
from enum import Enum

from .errors import InvalidCategory


class CategoryType(Enum):
    """Kinds of postings"""
    INCOME = "income"    # Adds to the source balance
    EXPENSE = "expense"  # Subtracts from the source balance

    @classmethod
    def parse(cls, value: Any) -> 'CategoryType':
        """Case-insensitive lookup, raising InvalidCategory on anything else"""
        if not isinstance(value, str):
            raise InvalidCategory(value)
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise InvalidCategory(value) from None

    @property
    def display(self) -> str:
        return self.value.upper()


class AccountStatus(Enum):
    """Lookup result for a source name"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    NOT_FOUND = "not_found"


def _serialize(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert Decimal, date and enum values to JSON friendly strings"""
    result = {}
    for key, value in data.items():
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, (date, datetime)):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        result[key] = value
    return result


@dataclass
class Account:
    """A named money source; source_name is the case-sensitive identity"""
    source_name: str
    balance: Decimal
    created_at: datetime
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass(frozen=True)
class Transaction:
    """
    A posting against one source.
    Immutable once created; only bulk deletion by id removes it.
    """
    transaction_id: str
    category_type: CategoryType
    category_name: str
    amount: Decimal
    transaction_date: date
    source_name: str
    created_at: datetime
    description: Optional[str] = None

    @property
    def delta(self) -> Decimal:
        """Signed balance change this posting applied"""
        if self.category_type == CategoryType.EXPENSE:
            return -self.amount
        return self.amount

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass(frozen=True)
class TransactionInfo:
    """Transaction listing row joined with its source, in display case"""
    transaction_id: str
    amount: Decimal
    category_type: str
    category_name: str
    transaction_date: date
    source_name: str
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass(frozen=True)
class Summary:
    """Dashboard totals"""
    total_balance: Decimal
    month_income: Decimal
    month_expense: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))
