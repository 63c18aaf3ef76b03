import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import (
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from models import TransactionType
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetOut,
    CategoryTotalOut,
    DashboardOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    AggregationService,
    BudgetService,
    MetricsService,
    TransactionFilters,
    TransactionService,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_owner_id(x_user_id: int = Header(...)) -> int:
    # The auth layer in front of this service resolves the user.
    return x_user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
def not_found_handler(_request: Request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(ValidationError)
def validation_handler(_request: Request, exc: ValidationError):
    return _error(400, exc)


@app.exception_handler(ConflictError)
def conflict_handler(_request: Request, exc: ConflictError):
    return _error(409, exc)


@app.exception_handler(StoreUnavailableError)
@app.exception_handler(OperationalError)
def store_unavailable_handler(_request: Request, exc: Exception):
    logger.error(f"store_unavailable: error={exc}")
    return JSONResponse(status_code=503, content={"detail": "Store unavailable"})


def period_from_request(request: Request) -> Optional[Period]:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    type_param = request.query_params.get("type")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param.lower())
        except ValueError as exc:
            raise HTTPException(
                status_code=400, detail="Invalid transaction type"
            ) from exc
    return TransactionFilters(
        type=txn_type, category=request.query_params.get("category") or None
    )


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    request: Request,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    period = period_from_request(request)
    filters = filters_from_request(request)
    return TransactionService(db, owner_id).list(period, filters)


@app.get("/api/transactions/date-range", response_model=list[TransactionOut])
def list_transactions_in_range(
    start: date = Query(..., alias="startDate"),
    end: date = Query(..., alias="endDate"),
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    return TransactionService(db, owner_id).list(Period("custom", start, end))


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    return TransactionService(db, owner_id).create(data)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    return TransactionService(db, owner_id).get(transaction_id)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    return TransactionService(db, owner_id).update(transaction_id, data)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    TransactionService(db, owner_id).delete(transaction_id)
    return Response(status_code=204)


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    db: Session = Depends(get_db), owner_id: int = Depends(get_owner_id)
):
    return BudgetService(db, owner_id).list_all()


@app.get("/api/budgets/month/{month}/year/{year}", response_model=list[BudgetOut])
def list_budgets_for_month(
    month: int,
    year: int,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
    return BudgetService(db, owner_id).list_for_month(month, year)


@app.post("/api/budgets", response_model=BudgetOut)
def upsert_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    return BudgetService(db, owner_id).upsert(data)


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    return BudgetService(db, owner_id).get(budget_id)


@app.put("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetIn,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    return BudgetService(db, owner_id).update(budget_id, data)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    BudgetService(db, owner_id).delete(budget_id)
    return Response(status_code=204)


@app.post("/api/budgets/{budget_id}/recompute", response_model=BudgetOut)
def recompute_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    return BudgetService(db, owner_id).recompute_spent(budget_id)


@app.get("/api/dashboard", response_model=DashboardOut)
def dashboard(
    request: Request,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    period = period_from_request(request)
    return MetricsService(db, owner_id).dashboard(period)


@app.get("/api/dashboard/date-range", response_model=DashboardOut)
def dashboard_for_range(
    start: date = Query(..., alias="startDate"),
    end: date = Query(..., alias="endDate"),
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    return MetricsService(db, owner_id).dashboard(Period("custom", start, end))


@app.get("/api/category-breakdown", response_model=list[CategoryTotalOut])
def category_breakdown(
    request: Request,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
):
    period = period_from_request(request)
    txn_type = filters_from_request(request).type or TransactionType.expense
    return AggregationService(db, owner_id).category_breakdown(txn_type, period)
