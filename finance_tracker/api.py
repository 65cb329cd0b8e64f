"""
FastAPI REST API Module

Thin HTTP adapter over the posting engine: decodes requests into posting
commands, maps each ledger error kind to its own status code and serves
the dashboard data. Runs on port 8080 by default.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional
from fastapi import FastAPI, HTTPException, Depends, Query, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
import uvicorn

from .config import TrackerConfig, get_config
from .errors import ErrorKind, LedgerError
from .logging_config import setup_logging
from .posting import PostingEngine
from .reporting import DashboardBuilder, form_error
from .storage import LedgerStore, create_store


# Pydantic models for API requests
class AddTransactionRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    category_type: str = Field(..., description="income or expense (any case)")
    category_name: str = ""
    description: Optional[str] = None
    source_name: str
    transaction_date: str = Field(..., description="ISO date string (YYYY-MM-DD)")


class AddSourceRequest(BaseModel):
    source_name: str
    balance: Optional[str] = Field("", description="Initial balance as string, empty means zero")


class DeleteTransactionsRequest(BaseModel):
    transaction_ids: List[str] = Field(default_factory=list)


class DeactivateSourcesRequest(BaseModel):
    source_names: List[str] = Field(default_factory=list)


class FinanceTracker:
    """Finance tracker with all components wired from configuration"""

    def __init__(self, config: Optional[TrackerConfig] = None, store: Optional[LedgerStore] = None):
        self.config = config or get_config()
        self.store = store or create_store(
            self.config.database_url, auto_migrate=self.config.auto_migrate
        )
        self.engine = PostingEngine(self.store)
        self.dashboard = DashboardBuilder(self.engine, self.config.recent_transactions_limit)

    def close(self) -> None:
        self.store.close()


_tracker: Optional[FinanceTracker] = None


def get_tracker() -> FinanceTracker:
    """Dependency returning the process-wide tracker, created on first use"""
    global _tracker
    if _tracker is None:
        _tracker = FinanceTracker()
    return _tracker


HTTP_STATUS = {
    ErrorKind.UNKNOWN_ACCOUNT: status.HTTP_404_NOT_FOUND,
    ErrorKind.DUPLICATE_SOURCE: status.HTTP_409_CONFLICT,
    ErrorKind.INSUFFICIENT_FUNDS: status.HTTP_409_CONFLICT,
    ErrorKind.STORAGE_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def http_error(error: LedgerError) -> HTTPException:
    """Map a ledger error to an HTTPException carrying its kind and form field"""
    if error.kind.is_validation:
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = HTTP_STATUS[error.kind]

    field_name, message = form_error(error.kind)
    detail = {"error": error.kind.value, "field": field_name, "message": message}
    if error.kind != ErrorKind.STORAGE_FAILURE:
        detail["detail"] = error.message
    return HTTPException(status_code=status_code, detail=detail)


def create_app(config: Optional[TrackerConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = config or get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        global _tracker
        if _tracker is not None:
            _tracker.close()
            _tracker = None

    app = FastAPI(
        title="Finance Tracker API",
        description="Personal finance tracker with consistent source balances",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/")
    def root():
        return RedirectResponse(url="/home", status_code=status.HTTP_301_MOVED_PERMANENTLY)

    @app.get("/home")
    def get_dashboard(
        show_all_transactions: bool = Query(False),
        show_all_sources: bool = Query(False),
        error: Optional[str] = Query(None, description="Error kind to show as a form error"),
        tracker: FinanceTracker = Depends(get_tracker)
    ):
        """Dashboard: balance, month totals, recent transactions and sources"""
        try:
            view = tracker.dashboard.build(
                show_all_transactions=show_all_transactions,
                show_all_sources=show_all_sources,
                error_key=error
            )
        except LedgerError as e:
            raise http_error(e)
        return view.to_dict()

    @app.get("/balances")
    def get_balances(tracker: FinanceTracker = Depends(get_tracker)):
        """Active sources with their balances"""
        try:
            sources = tracker.engine.list_active_accounts()
        except LedgerError as e:
            raise http_error(e)
        return [source.to_dict() for source in sources]

    @app.post("/transactions", status_code=status.HTTP_201_CREATED)
    def add_transaction(
        request: AddTransactionRequest,
        tracker: FinanceTracker = Depends(get_tracker)
    ):
        """Post an income or expense against a source"""
        try:
            record = tracker.engine.post_transaction(
                amount=request.amount,
                category_type=request.category_type,
                category_name=request.category_name,
                description=request.description,
                account_name=request.source_name,
                transaction_date=request.transaction_date
            )
        except LedgerError as e:
            raise http_error(e)

        return {
            "transaction": record.to_dict(),
            "message": "Transaction added successfully"
        }

    @app.post("/transactions/delete")
    def delete_transactions(
        request: DeleteTransactionsRequest,
        tracker: FinanceTracker = Depends(get_tracker)
    ):
        """Delete transactions by id (balances are not reversed)"""
        try:
            deleted = tracker.engine.remove_transactions(request.transaction_ids)
        except LedgerError as e:
            raise http_error(e)
        return {"deleted": deleted}

    @app.post("/sources", status_code=status.HTTP_201_CREATED)
    def add_source(
        request: AddSourceRequest,
        tracker: FinanceTracker = Depends(get_tracker)
    ):
        """Create a source or reactivate a deactivated one"""
        try:
            source = tracker.engine.add_source(request.source_name, request.balance)
        except LedgerError as e:
            raise http_error(e)

        return {
            "source": source.to_dict(),
            "message": "Source added successfully"
        }

    @app.post("/sources/deactivate")
    def deactivate_sources(
        request: DeactivateSourcesRequest,
        tracker: FinanceTracker = Depends(get_tracker)
    ):
        """Deactivate sources by name"""
        try:
            deactivated = tracker.engine.deactivate_sources(request.source_names)
        except LedgerError as e:
            raise http_error(e)
        return {"deactivated": deactivated}

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8080, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "finance_tracker.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
