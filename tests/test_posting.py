"""
Tests for the posting engine: money movement rules, atomicity and concurrency
"""

import pytest
import logging
import tempfile
import threading
import uuid
from decimal import Decimal
from datetime import date
from pathlib import Path

from finance_tracker.errors import (
    InvalidAmount, NegativeAmount, InvalidCategory, InvalidDate, InvalidBalance,
    InvalidSourceName, InvalidIdentifier, DuplicateSource, UnknownAccount,
    InsufficientFunds, StorageFailure
)
from finance_tracker.models import AccountStatus, CategoryType
from finance_tracker.posting import PostingEngine, parse_transaction_date, parse_transaction_id
from finance_tracker.storage import InMemoryLedgerStore, SQLiteLedgerStore


class FailingInsertMemoryStore(InMemoryLedgerStore):
    """Fails after the balance has been adjusted"""

    def insert_transaction(self, record):
        raise StorageFailure("insert_transaction")


class FailingInsertSQLiteStore(SQLiteLedgerStore):
    """Fails after the balance has been adjusted"""

    def insert_transaction(self, record):
        self.execute("INSERT INTO no_such_table VALUES (1)", operation="insert_transaction")


class RecordingHandler(logging.Handler):

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestParsing:
    """Test date and identifier parsing"""

    def test_iso_dates(self):
        assert parse_transaction_date("2024-01-05") == date(2024, 1, 5)
        assert parse_transaction_date(date(2024, 2, 29)) == date(2024, 2, 29)

    @pytest.mark.parametrize("value", [
        "01/05/2024", "2024-1-5", "2024-02-30", "2024-13-01", "yesterday", "", None,
        "\u0662\u0660\u0662\u0664-01-05", "2024-\u0660\u0661-05"
    ])
    def test_invalid_dates(self, value):
        """Test anything but a real YYYY-MM-DD date raises InvalidDate"""
        with pytest.raises(InvalidDate):
            parse_transaction_date(value)

    def test_transaction_ids(self):
        """Test ids are canonicalized and non-UUIDs rejected"""
        value = uuid.uuid4()
        assert parse_transaction_id(str(value).upper()) == str(value)
        assert parse_transaction_id(value) == str(value)
        with pytest.raises(InvalidIdentifier):
            parse_transaction_id("not-a-uuid")


class PostingEngineContract:
    """Engine behaviour that must hold on every backend"""

    def make_store(self):
        raise NotImplementedError

    def setup_method(self):
        self.store = self.make_store()
        self.engine = PostingEngine(self.store)

    def teardown_method(self):
        self.store.close()

    def test_cash_scenario(self):
        """Test income, a rejected overdraft and a covered expense"""
        self.engine.add_source("Cash", "")
        assert self.engine.get_balance("Cash") == Decimal("0.00")

        income = self.engine.post_transaction("200", "income", "Salary", "", "Cash", "2024-01-05")
        assert income.category_type == CategoryType.INCOME
        assert income.amount == Decimal("200.00")
        assert self.engine.get_balance("Cash") == Decimal("200.00")

        with pytest.raises(InsufficientFunds) as exc_info:
            self.engine.post_transaction("250", "expense", "Rent", "", "Cash", "2024-01-06")
        assert exc_info.value.balance == Decimal("200.00")
        assert exc_info.value.amount == Decimal("250.00")
        assert self.engine.get_balance("Cash") == Decimal("200.00")
        assert len(self.engine.list_transactions()) == 1

        self.engine.post_transaction("150", "expense", "Rent", "", "Cash", "2024-01-06")
        assert self.engine.get_balance("Cash") == Decimal("50.00")
        assert len(self.engine.list_transactions()) == 2

    def test_expense_of_entire_balance(self):
        """Test a balance may reach exactly zero"""
        self.engine.add_source("Cash", "75.10")
        self.engine.post_transaction("75.10", "EXPENSE", "Food", None, "Cash", "2024-01-05")
        assert self.engine.get_balance("Cash") == Decimal("0.00")

    def test_balance_equals_sum_of_postings(self):
        """Test the balance stays the opening deposit plus income minus expenses"""
        self.engine.add_source("Bank", "1000")
        postings = [
            ("income", "250.55"), ("expense", "100.10"), ("expense", "0.45"),
            ("income", "12"), ("expense", "999.99"),
        ]
        expected = Decimal("1000.00")
        for category_type, amount in postings:
            try:
                self.engine.post_transaction(amount, category_type, "Misc", "", "Bank", "2024-03-01")
            except InsufficientFunds:
                continue
            delta = Decimal(amount)
            expected += delta if category_type == "income" else -delta

        assert self.engine.get_balance("Bank") == expected
        assert expected >= 0

    def test_listing_uses_display_case(self):
        """Test listings show upper-case category and source names"""
        self.engine.add_source("Cash", "10")
        self.engine.post_transaction("1", "Income", "Gift", "from gran", "Cash", "2024-01-05")
        info = self.engine.list_transactions()[0]
        assert info.category_type == "INCOME"
        assert info.source_name == "CASH"
        assert info.description == "from gran"
        assert info.category_name == "Gift"

    def test_blank_description_stored_as_none(self):
        self.engine.add_source("Cash", "10")
        record = self.engine.post_transaction("1", "income", "Gift", "   ", "Cash", "2024-01-05")
        assert record.description is None

    def test_validation_happens_before_storage(self):
        """Test rejected input never touches the store"""
        self.engine.add_source("Cash", "10")
        cases = [
            (("abc", "income", "x", "", "Cash", "2024-01-05"), InvalidAmount),
            (("-5", "income", "x", "", "Cash", "2024-01-05"), NegativeAmount),
            (("5", "transfer", "x", "", "Cash", "2024-01-05"), InvalidCategory),
            (("5", "income", "x", "", "Cash", "05-01-2024"), InvalidDate),
            (("5", "income", "x", "", "Cash", "2024-02-30"), InvalidDate),
        ]
        for args, error in cases:
            with pytest.raises(error):
                self.engine.post_transaction(*args)

        assert self.engine.get_balance("Cash") == Decimal("10.00")
        assert self.engine.list_transactions() == []

    def test_unknown_source(self):
        """Test posting against a missing source"""
        for category_type in ("income", "expense"):
            with pytest.raises(UnknownAccount):
                self.engine.post_transaction("5", category_type, "x", "", "Nowhere", "2024-01-05")
        assert self.engine.list_transactions() == []

    def test_inactive_source_cannot_be_posted_to(self):
        """Test a deactivated source is treated as unknown"""
        self.engine.add_source("Wallet", "100")
        self.engine.deactivate_sources(["Wallet"])

        with pytest.raises(UnknownAccount):
            self.engine.post_transaction("5", "income", "x", "", "Wallet", "2024-01-05")
        with pytest.raises(UnknownAccount):
            self.engine.post_transaction("5", "expense", "x", "", "Wallet", "2024-01-05")
        assert self.store.get_account("Wallet").balance == Decimal("100.00")

    def test_add_source_validation(self):
        """Test source name and opening balance checks"""
        with pytest.raises(InvalidSourceName):
            self.engine.add_source("   ", "10")
        with pytest.raises(InvalidAmount):
            self.engine.add_source("Cash", "ten")
        with pytest.raises(InvalidBalance):
            self.engine.add_source("Cash", "-10")
        assert self.engine.account_status("Cash") == AccountStatus.NOT_FOUND

    def test_sub_cent_negative_balance_rejected(self):
        """Test -0.004 is negative even though it rounds to 0.00"""
        with pytest.raises(InvalidBalance) as exc_info:
            self.engine.add_source("Cash", "-0.004")
        assert exc_info.value.balance == Decimal("-0.004")
        assert self.engine.account_status("Cash") == AccountStatus.NOT_FOUND

    def test_sub_cent_negative_amount_rejected(self):
        """Test a negative amount below half a cent is still NegativeAmount"""
        self.engine.add_source("Cash", "10")
        with pytest.raises(NegativeAmount):
            self.engine.post_transaction("-0.004", "income", "x", "", "Cash", "2024-01-05")
        with pytest.raises(NegativeAmount):
            self.engine.post_transaction("-0.001", "expense", "x", "", "Cash", "2024-01-05")
        assert self.engine.list_transactions() == []
        assert self.engine.get_balance("Cash") == Decimal("10.00")

    def test_negative_zero_amount_is_zero(self):
        """Test a literal -0 is a zero posting, not a negative one"""
        self.engine.add_source("Cash", "10")
        record = self.engine.post_transaction("-0", "income", "x", "", "Cash", "2024-01-05")
        assert str(record.amount) == "0.00"
        assert self.engine.get_balance("Cash") == Decimal("10.00")

    def test_duplicate_source_left_untouched(self):
        """Test adding an active name again fails without changing it"""
        self.engine.add_source("Cash", "10")
        with pytest.raises(DuplicateSource):
            self.engine.add_source("Cash", "99")
        assert self.engine.get_balance("Cash") == Decimal("10.00")
        assert self.engine.list_active_account_names() == ["Cash"]

    def test_reactivation(self):
        """Test Wallet (100) deactivated then re-added with 50 holds 150"""
        self.engine.add_source("Wallet", "100")
        assert self.engine.deactivate_sources(["Wallet"]) == 1
        assert self.engine.account_status("Wallet") == AccountStatus.INACTIVE
        assert self.engine.list_active_account_names() == []

        account = self.engine.add_source("Wallet", "50")
        assert account.is_active
        assert account.balance == Decimal("150.00")
        assert self.engine.account_status("Wallet") == AccountStatus.ACTIVE

    def test_remove_transactions_keeps_balances(self):
        """Test deleting a transaction does not reverse its effect"""
        self.engine.add_source("Cash", "0")
        record = self.engine.post_transaction("40", "income", "Gift", "", "Cash", "2024-01-05")

        assert self.engine.remove_transactions([record.transaction_id]) == 1
        assert self.engine.list_transactions() == []
        assert self.engine.get_balance("Cash") == Decimal("40.00")

    def test_remove_transactions_rejects_bad_ids(self):
        """Test a malformed id fails the whole request"""
        self.engine.add_source("Cash", "0")
        record = self.engine.post_transaction("40", "income", "Gift", "", "Cash", "2024-01-05")

        with pytest.raises(InvalidIdentifier):
            self.engine.remove_transactions([record.transaction_id, "bogus"])
        assert len(self.engine.list_transactions()) == 1

    def test_empty_bulk_operations(self):
        """Test empty id and name lists are no-ops"""
        assert self.engine.remove_transactions([]) == 0
        assert self.engine.deactivate_sources([]) == 0
        assert self.engine.remove_transactions(None) == 0
        assert self.engine.deactivate_sources(None) == 0

    def test_summary_pass_through(self):
        self.engine.add_source("Cash", "10")
        self.engine.post_transaction("5", "income", "x", "", "Cash", "2024-01-05")
        summary = self.engine.summary(date(2024, 1, 31))
        assert summary.total_balance == Decimal("15.00")
        assert summary.month_income == Decimal("5.00")

    def test_concurrent_expenses_never_overdraw(self):
        """Test racing expenses against one source cannot go negative"""
        self.engine.add_source("Cash", "100")
        results = []
        results_lock = threading.Lock()

        def spend():
            try:
                self.engine.post_transaction("30", "expense", "Food", "", "Cash", "2024-01-05")
                outcome = "ok"
            except InsufficientFunds:
                outcome = "rejected"
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=spend) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count("ok") == 3
        assert results.count("rejected") == 7
        assert self.engine.get_balance("Cash") == Decimal("10.00")
        assert len(self.engine.list_transactions()) == 3


class TestPostingEngineInMemory(PostingEngineContract):
    """Posting engine over the in-memory store"""

    def make_store(self):
        return InMemoryLedgerStore()

    def test_failed_insert_rolls_back_balance(self):
        """Test a failure after the balance update leaves nothing behind"""
        store = FailingInsertMemoryStore()
        engine = PostingEngine(store)
        engine.add_source("Cash", "100")

        with pytest.raises(StorageFailure):
            engine.post_transaction("30", "expense", "Food", "", "Cash", "2024-01-05")
        assert engine.get_balance("Cash") == Decimal("100.00")
        assert engine.list_transactions() == []

    def test_logs_postings_and_rejections(self):
        """Test successful postings log at INFO and rejections at WARNING"""
        handler = RecordingHandler()
        self.engine.logger.addHandler(handler)
        self.engine.logger.setLevel(logging.DEBUG)
        try:
            self.engine.add_source("Cash", "10")
            self.engine.post_transaction("5", "income", "x", "", "Cash", "2024-01-05")
            with pytest.raises(InsufficientFunds):
                self.engine.post_transaction("50", "expense", "x", "", "Cash", "2024-01-05")
        finally:
            self.engine.logger.removeHandler(handler)

        actions = [(r.levelname, getattr(r, "action", None)) for r in handler.records]
        assert ("INFO", "add_source") in actions
        assert ("INFO", "post_transaction") in actions
        assert ("WARNING", "post_transaction") in actions
        warning = [r for r in handler.records if r.levelname == "WARNING"][0]
        assert warning.resource == "source:Cash"
        assert warning.extra == {"error": "insufficient_funds"}

    def test_logs_reactivation_from_the_store_result(self):
        """Test the source log line reports what the unit of work actually did"""
        handler = RecordingHandler()
        self.engine.logger.addHandler(handler)
        self.engine.logger.setLevel(logging.DEBUG)
        try:
            self.engine.add_source("Wallet", "100")
            self.engine.deactivate_sources(["Wallet"])
            self.engine.add_source("Wallet", "50")
        finally:
            self.engine.logger.removeHandler(handler)

        source_records = [r for r in handler.records if getattr(r, "action", None) == "add_source"]
        assert [r.getMessage() for r in source_records] == ["Source created", "Source reactivated"]
        assert [r.extra["reactivated"] for r in source_records] == [False, True]
        assert source_records[1].extra["balance"] == "150.00"

    def test_logs_storage_failures_with_traceback(self):
        """Test storage failures log at ERROR with the exception attached"""
        store = FailingInsertMemoryStore()
        engine = PostingEngine(store)
        handler = RecordingHandler()
        engine.logger.addHandler(handler)
        engine.logger.setLevel(logging.DEBUG)
        try:
            engine.add_source("Cash", "100")
            with pytest.raises(StorageFailure):
                engine.post_transaction("1", "income", "x", "", "Cash", "2024-01-05")
        finally:
            engine.logger.removeHandler(handler)

        errors = [r for r in handler.records if r.levelname == "ERROR"]
        assert len(errors) == 1
        assert errors[0].exc_info is not None
        assert errors[0].extra["operation"] == "insert_transaction"


class TestPostingEngineSQLite(PostingEngineContract):
    """Posting engine over a SQLite database file"""

    def make_store(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        return SQLiteLedgerStore(Path(self.temp_dir.name) / "ledger.db")

    def teardown_method(self):
        super().teardown_method()
        self.temp_dir.cleanup()

    def test_failed_insert_rolls_back_balance(self):
        """Test a driver error after the balance update is rolled back"""
        store = FailingInsertSQLiteStore(Path(self.temp_dir.name) / "failing.db")
        engine = PostingEngine(store)
        try:
            engine.add_source("Cash", "100")
            with pytest.raises(StorageFailure) as exc_info:
                engine.post_transaction("30", "expense", "Food", "", "Cash", "2024-01-05")
            assert exc_info.value.__cause__ is not None
            assert engine.get_balance("Cash") == Decimal("100.00")
            assert engine.list_transactions() == []
        finally:
            store.close()
