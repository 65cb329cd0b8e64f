"""
Tests for dashboard reporting
"""

import pytest
import logging
from decimal import Decimal
from datetime import date

from finance_tracker.errors import ErrorKind, StorageFailure
from finance_tracker.posting import PostingEngine
from finance_tracker.reporting import (
    FORM_ERRORS, DashboardBuilder, form_error, form_errors_for_key
)
from finance_tracker.storage import InMemoryLedgerStore


class TestFormErrors:
    """Test error kind to form field mapping"""

    def test_every_kind_has_a_message(self):
        assert set(FORM_ERRORS) == set(ErrorKind)
        for kind in ErrorKind:
            field_name, message = form_error(kind)
            assert field_name
            assert message

    def test_known_keys(self):
        """Test redirect error keys translate to field errors"""
        assert form_errors_for_key("duplicate_source") == {
            "source_name": "This source already exists. Please choose another."
        }
        assert form_errors_for_key("invalid_balance") == {
            "balance": "Initial balance cannot be a negative number."
        }
        assert "not_enough_balance" in form_errors_for_key("insufficient_funds")

    def test_unknown_keys_ignored(self):
        assert form_errors_for_key(None) == {}
        assert form_errors_for_key("") == {}
        assert form_errors_for_key("something_else") == {}


class TestDashboardBuilder:
    """Test dashboard aggregation"""

    def setup_method(self):
        self.store = InMemoryLedgerStore()
        self.engine = PostingEngine(self.store)
        self.today = date(2024, 1, 20)

        self.engine.add_source("Cash", "100")
        self.engine.add_source("Bank", "0")
        self.engine.post_transaction("200", "income", "Salary", "", "Bank", "2024-01-05")
        self.engine.post_transaction("50", "expense", "Food", "", "Cash", "2024-01-10")
        self.engine.post_transaction("20", "income", "Gift", "", "Cash", "2023-12-31")

    def test_totals(self):
        """Test running balance and month-to-date totals"""
        view = DashboardBuilder(self.engine).build(today=self.today)
        assert view.balance == Decimal("270.00")
        assert view.month_income == Decimal("200.00")
        assert view.month_expense == Decimal("50.00")

    def test_prior_month_listed_but_not_totalled(self):
        """Test last month's posting is excluded from totals but still shown"""
        view = DashboardBuilder(self.engine).build(today=self.today)
        assert "Gift" in [t.category_name for t in view.transactions]
        assert view.month_income == Decimal("200.00")

    def test_recent_limit(self):
        """Test only the most recent transactions are shown by default"""
        view = DashboardBuilder(self.engine, recent_limit=2).build(today=self.today)
        assert [t.category_name for t in view.transactions] == ["Food", "Salary"]
        assert view.all_transactions == []

        view = DashboardBuilder(self.engine, recent_limit=2).build(
            show_all_transactions=True, today=self.today
        )
        assert len(view.all_transactions) == 3

    def test_negative_recent_limit(self):
        with pytest.raises(ValueError):
            DashboardBuilder(self.engine, recent_limit=-1)

    def test_sources(self):
        """Test postable sources and the optional balance table"""
        view = DashboardBuilder(self.engine).build(today=self.today)
        assert view.available_sources == ["Bank", "Cash"]
        assert view.all_sources == []

        view = DashboardBuilder(self.engine).build(show_all_sources=True, today=self.today)
        assert {a.source_name: a.balance for a in view.all_sources} == {
            "Bank": Decimal("200.00"), "Cash": Decimal("70.00")
        }

    def test_total_counts_active_sources_only(self):
        """Test deactivated balances drop out of the running total"""
        self.engine.add_source("Wallet", "30")
        self.engine.deactivate_sources(["Wallet"])

        view = DashboardBuilder(self.engine).build(today=self.today)
        assert view.balance == Decimal("270.00")
        assert "Wallet" not in view.available_sources

        # Summing every source, inactive included, would disagree
        every_source = sum(
            self.store.get_account(name).balance for name in ("Cash", "Bank", "Wallet")
        )
        assert every_source == Decimal("300.00")
        assert every_source != view.balance

    def test_form_errors(self):
        """Test redirect key and explicit errors are merged"""
        view = DashboardBuilder(self.engine).build(
            error_key="duplicate_source",
            form_errors={"amount": "Please enter a valid number."},
            today=self.today
        )
        assert set(view.form_errors) == {"source_name", "amount"}

    def test_to_dict(self):
        data = DashboardBuilder(self.engine).build(today=self.today).to_dict()
        assert data["balance"] == "270.00"
        assert data["transactions"][0]["category_type"] == "EXPENSE"
        assert data["transactions"][0]["source_name"] == "CASH"
        assert data["form_errors"] == {}


class UnreadableLedgerStore(InMemoryLedgerStore):
    """Store whose transaction listing fails like a lost connection"""

    def list_transactions(self):
        raise StorageFailure("list_transactions")


class RecordingHandler(logging.Handler):

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestDashboardFailures:
    """Test storage failures while building the dashboard"""

    def test_storage_failure_is_logged(self):
        """Test a failed read is logged at ERROR with the exception attached"""
        engine = PostingEngine(UnreadableLedgerStore())
        handler = RecordingHandler()
        engine.logger.addHandler(handler)
        engine.logger.setLevel(logging.DEBUG)
        try:
            with pytest.raises(StorageFailure):
                DashboardBuilder(engine).build(today=date(2024, 1, 20))
        finally:
            engine.logger.removeHandler(handler)

        errors = [r for r in handler.records if r.levelname == "ERROR"]
        assert len(errors) == 1
        assert errors[0].action == "list_transactions"
        assert errors[0].exc_info is not None
        assert errors[0].extra["operation"] == "list_transactions"
