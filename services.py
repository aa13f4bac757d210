from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from aggregation import AggregationEngine, LedgerEntry, UpsertResult
from classification import Classifier, default_classifier, match_category_name
from config import get_settings
from errors import InvalidRequestError, NotFoundError, UpstreamError
from locks import KeyedLocks
from models import (
    Budget,
    BudgetAggregate,
    BudgetCategoryTotal,
    Category,
    Transaction,
    User,
)
from money import is_missing, to_cents
from periods import lookback_period, resolve_period
from provider import PlaidClient, ProviderError, ProviderTransaction
from schemas import BudgetIn, BudgetUpdateIn, TransactionIn


logger = logging.getLogger(__name__)


@dataclass
class BudgetView:
    budget: Budget
    totals: Optional[dict[Category, int]]

    @property
    def spent_cents(self) -> int:
        return sum((self.totals or {}).values())

    @property
    def remaining_cents(self) -> int:
        return self.budget.amount_cents - self.spent_cents


class BudgetService:
    def __init__(self, session: Session, locks: Optional[KeyedLocks] = None) -> None:
        self.session = session
        self.engine = AggregationEngine(session, locks)

    def create(self, data: BudgetIn) -> BudgetView:
        if (
            is_missing(data.user_id)
            or is_missing(data.amount)
            or is_missing(data.title)
            or data.from_date is None
            or data.to_date is None
        ):
            raise InvalidRequestError("Missing required fields")
        try:
            window = resolve_period(data.from_date, data.to_date)
        except ValueError as exc:
            raise InvalidRequestError(str(exc)) from exc

        budget = Budget(
            id=uuid.uuid4().hex,
            user_id=data.user_id.strip(),
            title=data.title.strip(),
            amount_cents=to_cents(data.amount),
            from_date=window.start,
            to_date=window.end,
        )
        totals = self.engine.on_budget_created(budget)
        return BudgetView(budget, totals)

    def update(self, budget_id: str, data: BudgetUpdateIn) -> BudgetView:
        changes: dict[str, object] = {
            "title": data.title.strip() if data.title else None,
            "amount_cents": None if is_missing(data.amount) else to_cents(data.amount),
            "from_date": data.from_date,
            "to_date": data.to_date,
        }
        budget = self.engine.on_budget_updated(budget_id, changes)
        return BudgetView(budget, self.engine.totals_for(budget.id))

    def delete(self, budget_id: str) -> bool:
        return self.engine.on_budget_deleted(budget_id)

    def get(self, budget_id: str) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def list_for_user(self, user_id: str) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == user_id)
            .order_by(Budget.from_date.desc(), Budget.created_at.desc())
        )
        return self.session.scalars(stmt).all()

    def views_for_user(self, user_id: str) -> list[BudgetView]:
        views: list[BudgetView] = []
        for budget in self.list_for_user(user_id):
            totals = self.engine.totals_for(budget.id)
            if totals is not None:
                views.append(BudgetView(budget, totals))
        return views

    def recompute(self, budget_id: str) -> BudgetView:
        totals = self.engine.recompute_budget(budget_id)
        return BudgetView(self.get(budget_id), totals)


def _require_fields(item: TransactionIn) -> None:
    if (
        is_missing(item.user_id)
        or is_missing(item.transaction_id)
        or is_missing(item.amount)
        or is_missing(item.description)
        or item.date is None
        or is_missing(item.category)
    ):
        payload = item.model_dump_json(by_alias=True)
        raise InvalidRequestError(f"Missing required fields in transaction: {payload}")


class TransactionService:
    def __init__(self, session: Session, locks: Optional[KeyedLocks] = None) -> None:
        self.session = session
        self.engine = AggregationEngine(session, locks)

    def create_many(self, items: Optional[Sequence[TransactionIn]]) -> UpsertResult:
        if not items:
            raise InvalidRequestError("Transactions array is required")
        entries: list[LedgerEntry] = []
        for item in items:
            _require_fields(item)
            entries.append(
                LedgerEntry(
                    transaction_id=item.transaction_id.strip(),
                    user_id=item.user_id.strip(),
                    amount_cents=to_cents(item.amount),
                    description=item.description,
                    date=item.date,
                    category=match_category_name(item.category),
                )
            )
        return self.engine.upsert_transactions(entries)

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update_category(
        self, transaction_id: str, category: Optional[str]
    ) -> Transaction:
        if is_missing(category):
            raise InvalidRequestError("Missing category")
        new_category = match_category_name(category)
        return self.engine.on_transaction_updated(transaction_id, new_category)

    def delete(self, transaction_id: str) -> None:
        self.engine.on_transaction_deleted(transaction_id)

    def list(
        self,
        user_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> list[Transaction]:
        stmt = select(Transaction).where(Transaction.user_id == user_id)
        if from_date is not None:
            stmt = stmt.where(Transaction.date >= from_date)
        if to_date is not None:
            stmt = stmt.where(Transaction.date <= to_date)
        stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.asc())
        return self.session.scalars(stmt).all()


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    budgets_touched: list[str] = field(default_factory=list)


class SyncService:
    def __init__(
        self,
        session: Session,
        *,
        classifier: Optional[Classifier] = None,
        client: Optional[PlaidClient] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.session = session
        self.classifier = classifier or default_classifier
        self.client = client
        self.engine = AggregationEngine(session, locks)

    def sync(
        self, user_id: str, records: Sequence[ProviderTransaction]
    ) -> SyncResult:
        if is_missing(user_id):
            raise InvalidRequestError("Missing userId")
        entries = [
            LedgerEntry(
                transaction_id=record.provider_id,
                user_id=user_id,
                amount_cents=to_cents(record.amount),
                description=record.description,
                date=record.date,
                category=self.classifier.classify(record.raw_category),
            )
            for record in records
        ]
        result = self.engine.upsert_transactions(entries)
        logger.info(
            f"sync_run: user_id={user_id} records={len(entries)} "
            f"created={result.created} updated={result.updated} "
            f"budgets={len(result.budgets_touched)}"
        )
        return SyncResult(
            created=result.created,
            updated=result.updated,
            budgets_touched=result.budgets_touched,
        )

    def sync_from_provider(
        self, user_id: str, access_token: str, *, today: Optional[date] = None
    ) -> SyncResult:
        if is_missing(user_id) or is_missing(access_token):
            raise InvalidRequestError("Missing userId or access_token")
        client = self.client or PlaidClient()
        period = lookback_period(get_settings().plaid_lookback_days, today=today)
        try:
            records = client.fetch_transactions(access_token, period)
        except ProviderError as exc:
            logger.error(f"sync_run: user_id={user_id} provider_error={exc}")
            raise UpstreamError(f"Failed to fetch transactions: {exc}") from exc
        return self.sync(user_id, records)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, user_id: str, name: str, email: str) -> User:
        if is_missing(user_id) or is_missing(name) or is_missing(email):
            raise InvalidRequestError("Missing userId, name, or email")
        user = self.session.get(User, user_id)
        if user is None:
            user = User(id=user_id, name=name, email=email)
            self.session.add(user)
        else:
            user.name = name
            user.email = email
        self.session.commit()
        return user

    def get(self, user_id: str) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def delete(self, user_id: str) -> None:
        user = self.get(user_id)
        budget_ids = select(Budget.id).where(Budget.user_id == user_id)
        try:
            self.session.execute(
                delete(Transaction)
                .where(Transaction.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
            self.session.execute(
                delete(BudgetCategoryTotal)
                .where(BudgetCategoryTotal.budget_id.in_(budget_ids))
                .execution_options(synchronize_session=False)
            )
            self.session.execute(
                delete(BudgetAggregate)
                .where(BudgetAggregate.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
            self.session.execute(
                delete(Budget)
                .where(Budget.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
            self.session.delete(user)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.expunge_all()
        logger.info(f"user_deleted: user_id={user_id}")
