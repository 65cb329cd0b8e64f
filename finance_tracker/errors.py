"""
Ledger Error Taxonomy

Every failure the posting engine reports is one of a closed set of kinds.
Each kind is its own exception class tagged with an ErrorKind, so callers
can branch exhaustively on ``error.kind`` or catch a specific class.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Closed set of error kinds surfaced to callers"""
    INVALID_AMOUNT = "invalid_amount"
    NEGATIVE_AMOUNT = "negative_amount"
    INVALID_CATEGORY = "invalid_category"
    INVALID_DATE = "invalid_date"
    INVALID_BALANCE = "invalid_balance"
    INVALID_SOURCE_NAME = "invalid_source_name"
    INVALID_IDENTIFIER = "invalid_identifier"
    DUPLICATE_SOURCE = "duplicate_source"
    UNKNOWN_ACCOUNT = "unknown_account"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    STORAGE_FAILURE = "storage_failure"

    @property
    def is_validation(self) -> bool:
        """Input problems detected before any storage access"""
        return self in VALIDATION_KINDS


VALIDATION_KINDS = frozenset({
    ErrorKind.INVALID_AMOUNT,
    ErrorKind.NEGATIVE_AMOUNT,
    ErrorKind.INVALID_CATEGORY,
    ErrorKind.INVALID_DATE,
    ErrorKind.INVALID_BALANCE,
    ErrorKind.INVALID_SOURCE_NAME,
    ErrorKind.INVALID_IDENTIFIER,
})


class LedgerError(Exception):
    """Base class for all ledger errors"""

    kind: ErrorKind
    field: Optional[str] = None

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class LedgerValidationError(LedgerError, ValueError):
    """Rejected input; raised before a unit of work is opened"""


class InvalidAmount(LedgerValidationError):
    kind = ErrorKind.INVALID_AMOUNT
    field = "amount"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Amount {value!r} is not a valid decimal number")


class NegativeAmount(LedgerValidationError):
    kind = ErrorKind.NEGATIVE_AMOUNT
    field = "amount"

    def __init__(self, amount: Decimal):
        self.amount = amount
        super().__init__(f"Transaction amount cannot be negative: {amount}")


class InvalidCategory(LedgerValidationError):
    kind = ErrorKind.INVALID_CATEGORY
    field = "category_type"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid category type {value!r}: must be 'income' or 'expense'")


class InvalidDate(LedgerValidationError):
    kind = ErrorKind.INVALID_DATE
    field = "transaction_date"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid date {value!r}: expected YYYY-MM-DD")


class InvalidBalance(LedgerValidationError):
    kind = ErrorKind.INVALID_BALANCE
    field = "balance"

    def __init__(self, balance: Decimal):
        self.balance = balance
        super().__init__(f"Initial balance cannot be negative: {balance}")


class InvalidSourceName(LedgerValidationError):
    kind = ErrorKind.INVALID_SOURCE_NAME
    field = "source_name"

    def __init__(self, value):
        self.value = value
        super().__init__("Source name cannot be empty")


class InvalidIdentifier(LedgerValidationError):
    kind = ErrorKind.INVALID_IDENTIFIER
    field = "transaction_id"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid transaction ID {value!r}")


class DuplicateSource(LedgerError):
    kind = ErrorKind.DUPLICATE_SOURCE
    field = "source_name"

    def __init__(self, source_name: str):
        self.source_name = source_name
        super().__init__(f"Source '{source_name}' already exists")


class UnknownAccount(LedgerError):
    kind = ErrorKind.UNKNOWN_ACCOUNT
    field = "source_name"

    def __init__(self, source_name: str):
        self.source_name = source_name
        super().__init__(f"Source '{source_name}' not found")


class InsufficientFunds(LedgerError):
    kind = ErrorKind.INSUFFICIENT_FUNDS
    field = "amount"

    def __init__(self, source_name: str, balance: Decimal, amount: Decimal):
        self.source_name = source_name
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Source '{source_name}' does not have enough balance: "
            f"balance={balance}, requested={amount}"
        )


class StorageFailure(LedgerError):
    """
    Underlying storage or connectivity error.

    The driver exception is chained as ``__cause__`` for logging; ``message``
    stays generic so storage internals never reach the caller.
    """
    kind = ErrorKind.STORAGE_FAILURE

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Storage operation failed: {operation}")
