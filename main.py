import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import resolve_user_id
from database import SessionLocal
from errors import (
    NotAuthenticatedError,
    NotFoundError,
    PersistenceError,
    RolloverError,
    ValidationError,
)
from models import TransactionType
from recurrence import Clock, local_today
from scheduler import SchedulerManager
from schemas import (
    BatchResultOut,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    MaterializationOut,
    MaterializeIn,
    RecurringExpenseIn,
    RecurringExpenseOut,
    RecurringExpenseUpdate,
    RecurringStatisticsOut,
    TransactionIn,
    TransactionOut,
)
from services import CategoryService, RecurringExpenseService, TransactionService

logger = logging.getLogger(__name__)

scheduler_manager = SchedulerManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler_manager.start()
    try:
        yield
    finally:
        scheduler_manager.stop()


app = FastAPI(title="Recurring Ledger", lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return local_today


def current_user_id(request: Request) -> int:
    token = None
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
    token = token or request.cookies.get("session")
    user_id = resolve_user_id(token)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"data": None, "error": str(exc.detail)},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{location}: {err.get('msg')}" if location else err.get("msg"))
    return JSONResponse({"data": None, "error": "; ".join(messages)}, status_code=422)


def envelope(data: object) -> dict[str, object]:
    return {"data": data, "error": None}


def dump(model) -> dict[str, object]:
    return model.model_dump(mode="json", by_alias=True)


def http_error(exc: RolloverError) -> HTTPException:
    if isinstance(exc, NotAuthenticatedError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PersistenceError):
        logger.error(f"persistence_error: {exc}")
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/api/categories")
def list_categories(
    type: Optional[TransactionType] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    categories = CategoryService(db, user_id).list_all(type=type)
    return envelope([dump(CategoryOut.from_model(c)) for c in categories])


@app.post("/api/categories", status_code=201)
def create_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        category = CategoryService(db, user_id).create(data)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope(dump(CategoryOut.from_model(category)))


@app.patch("/api/categories/{category_id}")
def update_category(
    category_id: int,
    data: CategoryUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        category = CategoryService(db, user_id).update(category_id, data)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope(dump(CategoryOut.from_model(category)))


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        CategoryService(db, user_id).delete(category_id)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope({"success": True})


@app.get("/api/transactions")
def list_transactions(
    start: Optional[date] = None,
    end: Optional[date] = None,
    type: Optional[TransactionType] = None,
    category: Optional[int] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="Start date must be before end date")
    offset = (page - 1) * limit
    items = TransactionService(db, user_id).list(
        start=start,
        end=end,
        type=type,
        category_id=category,
        limit=limit + 1,
        offset=offset,
    )
    has_more = len(items) > limit
    items = items[:limit]
    return envelope(
        {
            "items": [dump(TransactionOut.from_model(txn)) for txn in items],
            "page": page,
            "limit": limit,
            "hasMore": has_more,
        }
    )


@app.post("/api/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    try:
        txn = service.create(data)
        txn = service.get(txn.id)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope(dump(TransactionOut.from_model(txn)))


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        txn = TransactionService(db, user_id).get(transaction_id)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope(dump(TransactionOut.from_model(txn)))


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope({"success": True})


def recurring_service(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    clock: Clock = Depends(get_clock),
) -> RecurringExpenseService:
    return RecurringExpenseService(db, user_id, clock=clock)


@app.get("/api/recurring-expenses")
def list_recurring_expenses(
    service: RecurringExpenseService = Depends(recurring_service),
):
    expenses = service.list_all()
    return envelope([dump(RecurringExpenseOut.from_model(e)) for e in expenses])


@app.post("/api/recurring-expenses", status_code=201)
def create_recurring_expense(
    data: RecurringExpenseIn,
    service: RecurringExpenseService = Depends(recurring_service),
):
    try:
        expense = service.create(data)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope(dump(RecurringExpenseOut.from_model(expense)))


@app.get("/api/recurring-expenses/active")
def list_active_recurring_expenses(
    service: RecurringExpenseService = Depends(recurring_service),
):
    expenses = service.list_active()
    return envelope([dump(RecurringExpenseOut.from_model(e)) for e in expenses])


@app.get("/api/recurring-expenses/due")
def list_due_recurring_expenses(
    auto_add_only: bool = Query(False, alias="autoAddOnly"),
    service: RecurringExpenseService = Depends(recurring_service),
):
    expenses = service.list_due(auto_add_only=auto_add_only)
    return envelope([dump(RecurringExpenseOut.from_model(e)) for e in expenses])


@app.get("/api/recurring-expenses/statistics")
def recurring_statistics(
    service: RecurringExpenseService = Depends(recurring_service),
):
    stats = service.statistics()
    return envelope(dump(RecurringStatisticsOut.from_stats(stats)))


@app.post("/api/recurring-expenses/process-due")
def process_due_recurring_expenses(
    service: RecurringExpenseService = Depends(recurring_service),
):
    try:
        result = service.process_due()
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope(dump(BatchResultOut.from_result(result)))


@app.get("/api/recurring-expenses/{expense_id}")
def get_recurring_expense(
    expense_id: int,
    service: RecurringExpenseService = Depends(recurring_service),
):
    try:
        expense = service.get(expense_id)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope(dump(RecurringExpenseOut.from_model(expense)))


@app.patch("/api/recurring-expenses/{expense_id}")
def update_recurring_expense(
    expense_id: int,
    data: RecurringExpenseUpdate,
    service: RecurringExpenseService = Depends(recurring_service),
):
    try:
        expense = service.update(expense_id, data)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope(dump(RecurringExpenseOut.from_model(expense)))


@app.delete("/api/recurring-expenses/{expense_id}")
def delete_recurring_expense(
    expense_id: int,
    service: RecurringExpenseService = Depends(recurring_service),
):
    try:
        service.delete(expense_id)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope({"success": True})


@app.post("/api/recurring-expenses/{expense_id}/toggle")
def toggle_recurring_expense(
    expense_id: int,
    service: RecurringExpenseService = Depends(recurring_service),
):
    try:
        expense = service.toggle_active(expense_id)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope(dump(RecurringExpenseOut.from_model(expense)))


@app.post("/api/recurring-expenses/{expense_id}/materialize", status_code=201)
def materialize_recurring_expense(
    expense_id: int,
    data: Optional[MaterializeIn] = None,
    service: RecurringExpenseService = Depends(recurring_service),
):
    custom_amount_cents = data.amount_cents if data else None
    try:
        result = service.materialize(expense_id, custom_amount_cents)
    except RolloverError as exc:
        raise http_error(exc) from exc
    return envelope(dump(MaterializationOut.from_result(result)))
