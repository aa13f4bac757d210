import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import SessionLocal
from errors import ConflictError, InvalidRequestError, NotFoundError, UpstreamError
from models import Budget, Category, Transaction, User
from money import cents_to_amount
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetUpdateIn,
    CategoryUpdateIn,
    ProviderSyncIn,
    RegisterIn,
    TransactionBatchIn,
)
from services import (
    BudgetService,
    BudgetView,
    SyncService,
    TransactionService,
    UserService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(
        status_code=400, content={"error": "; ".join(messages) or "Invalid request"}
    )


@app.exception_handler(SQLAlchemyError)
def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"storage_error: path={request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def category_totals_out(totals: Optional[dict[Category, int]]) -> dict[str, float]:
    totals = totals or {}
    return {c.value: cents_to_amount(totals.get(c, 0)) for c in Category}


def budget_out(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "userId": budget.user_id,
        "title": budget.title,
        "amount": cents_to_amount(budget.amount_cents),
        "fromDate": budget.from_date.isoformat(),
        "toDate": budget.to_date.isoformat(),
    }


def aggregate_out(view: BudgetView) -> dict[str, object]:
    return {
        **budget_out(view.budget),
        "budgetId": view.budget.id,
        "categoryTotals": category_totals_out(view.totals),
        "spent": cents_to_amount(view.spent_cents),
        "remaining": cents_to_amount(view.remaining_cents),
    }


def transaction_out(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "userId": txn.user_id,
        "amount": cents_to_amount(txn.amount_cents),
        "description": txn.description,
        "date": txn.date.isoformat(),
        "category": txn.category.value,
        "budgetId": txn.budget_id,
    }


def _required_query(request: Request, name: str) -> str:
    value = (request.query_params.get(name) or "").strip()
    if not value:
        raise HTTPException(status_code=400, detail=f"Missing {name}")
    return value


def _optional_date_query(request: Request, name: str) -> Optional[date]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


@app.get("/")
def index():
    return {"message": "Finance API is running"}


@app.post("/budgets", status_code=201)
def create_budget(data: BudgetIn, db: Session = Depends(get_db)):
    try:
        view = BudgetService(db).create(data)
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        **budget_out(view.budget),
        "categoryTotals": category_totals_out(view.totals),
    }


@app.patch("/budgets/{budget_id}")
def update_budget(budget_id: str, data: BudgetUpdateIn, db: Session = Depends(get_db)):
    try:
        view = BudgetService(db).update(budget_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "message": "Budget updated successfully",
        "budget": aggregate_out(view),
    }


@app.delete("/budgets/{budget_id}")
def delete_budget(budget_id: str, db: Session = Depends(get_db)):
    BudgetService(db).delete(budget_id)
    return {"message": "Budget deleted successfully"}


@app.get("/budgets")
def list_budgets(request: Request, db: Session = Depends(get_db)):
    user_id = _required_query(request, "userId")
    return [budget_out(b) for b in BudgetService(db).list_for_user(user_id)]


@app.get("/budgets/{budget_id}")
def get_budget(budget_id: str, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).get(budget_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return budget_out(budget)


@app.post("/budgets/{budget_id}/recompute")
def recompute_budget(budget_id: str, db: Session = Depends(get_db)):
    try:
        view = BudgetService(db).recompute(budget_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return aggregate_out(view)


@app.get("/budget-transactions")
def list_aggregates(request: Request, db: Session = Depends(get_db)):
    user_id = _required_query(request, "userId")
    return [aggregate_out(v) for v in BudgetService(db).views_for_user(user_id)]


@app.post("/transactions", status_code=201)
def create_transactions(data: TransactionBatchIn, db: Session = Depends(get_db)):
    try:
        result = TransactionService(db).create_many(data.transactions)
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {
        "message": "Transactions synced successfully",
        "created": result.created,
        "updated": result.updated,
    }


@app.get("/transactions")
def list_transactions(request: Request, db: Session = Depends(get_db)):
    user_id = _required_query(request, "userId")
    from_date = _optional_date_query(request, "fromDate")
    to_date = _optional_date_query(request, "toDate")
    items = TransactionService(db).list(user_id, from_date, to_date)
    return [transaction_out(txn) for txn in items]


@app.patch("/transactions/{transaction_id}")
def update_transaction_category(
    transaction_id: str, data: CategoryUpdateIn, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).update_category(transaction_id, data.category)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {
        "message": "Transaction updated successfully",
        "transaction": transaction_out(txn),
    }


@app.delete("/transactions/{transaction_id}")
def delete_transaction(transaction_id: str, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"message": "Transaction deleted successfully"}


@app.post("/plaid/get_transactions")
def sync_provider_transactions(data: ProviderSyncIn, db: Session = Depends(get_db)):
    try:
        result = SyncService(db).sync_from_provider(data.user_id, data.access_token)
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UpstreamError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {
        "success": True,
        "created": result.created,
        "updated": result.updated,
        "budgetsTouched": result.budgets_touched,
    }


def user_out(user: User) -> dict[str, object]:
    return {"id": user.id, "name": user.name, "email": user.email}


@app.post("/register", status_code=201)
def register_user(data: RegisterIn, db: Session = Depends(get_db)):
    try:
        UserService(db).register(data.user_id, data.name, data.email)
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "User registered successfully"}


@app.get("/users/{user_id}")
def get_user(user_id: str, db: Session = Depends(get_db)):
    try:
        user = UserService(db).get(user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return user_out(user)


@app.delete("/users/{user_id}")
def delete_user(user_id: str, db: Session = Depends(get_db)):
    try:
        UserService(db).delete(user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"message": "User account and all associated data deleted successfully."}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
