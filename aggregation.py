"""Budget aggregate maintenance.

Every transaction belongs to at most one budget, recorded on
``transactions.budget_id``. A budget's stored totals are the sum of the
transactions stamped to it, whether they are maintained incrementally or
rebuilt by ``full_recompute``.

Ledger rows are written with compare-and-set statements keyed on the values
that were read, so two writers can never both take back the same prior
contribution. Totals only move through atomic SQL increments or wholesale
replacements.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ConflictError, InvalidRequestError, NotFoundError
from locks import KeyedLocks, budget_locks
from models import Budget, BudgetAggregate, BudgetCategoryTotal, Category, Transaction
from periods import Period, resolve_period, union


logger = logging.getLogger(__name__)

DeltaMap = dict[str, dict[Category, int]]
T = TypeVar("T")

WRITE_ATTEMPTS = 5


class StaleLedgerRow(Exception):
    """A ledger row changed between being read and being written."""


@dataclass(frozen=True)
class LedgerEntry:
    transaction_id: str
    user_id: str
    amount_cents: int
    description: Optional[str]
    date: date
    category: Category


@dataclass
class UpsertResult:
    created: int = 0
    updated: int = 0
    deltas: DeltaMap = field(default_factory=dict)

    @property
    def budgets_touched(self) -> list[str]:
        return sorted(
            budget_id
            for budget_id, by_category in self.deltas.items()
            if any(by_category.values())
        )


def pick_budget(budgets: Iterable[Budget], on_date: date) -> Optional[Budget]:
    """
    Shortest window wins, then the most recently created budget, then the
    greatest id.
    """
    candidates = [b for b in budgets if b.from_date <= on_date <= b.to_date]
    if not candidates:
        return None
    candidates.sort(key=lambda b: b.id, reverse=True)
    candidates.sort(key=lambda b: b.created_at, reverse=True)
    candidates.sort(key=lambda b: (b.to_date - b.from_date).days)
    return candidates[0]


def add_delta(
    deltas: DeltaMap, budget_id: Optional[str], category: Category, cents: int
) -> None:
    if budget_id is None:
        return
    by_category = deltas.setdefault(budget_id, {})
    by_category[category] = by_category.get(category, 0) + cents


def _unchanged(row: Row) -> list[Any]:
    if row.budget_id is None:
        stamp = Transaction.budget_id.is_(None)
    else:
        stamp = Transaction.budget_id == row.budget_id
    return [
        Transaction.id == row.id,
        Transaction.amount_cents == row.amount_cents,
        Transaction.category == row.category,
        Transaction.date == row.date,
        stamp,
    ]


class AggregationEngine:
    def __init__(self, session: Session, locks: Optional[KeyedLocks] = None) -> None:
        self.session = session
        self.locks = locks or budget_locks

    def _budgets_for_user(
        self, user_id: str, *, exclude: Iterable[str] = ()
    ) -> list[Budget]:
        excluded = set(exclude)
        budgets = self.session.scalars(
            select(Budget).where(Budget.user_id == user_id)
        ).all()
        return [b for b in budgets if b.id not in excluded]

    def resolve_budget(self, user_id: str, on_date: date) -> Optional[Budget]:
        return pick_budget(self._budgets_for_user(user_id), on_date)

    def full_recompute(self, budget: Budget) -> dict[Category, int]:
        """Sum the ledger rows stamped to ``budget``; every category is present."""
        self.session.flush()
        totals = {category: 0 for category in Category}
        rows = self.session.execute(
            select(
                Transaction.category,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            )
            .where(Transaction.budget_id == budget.id)
            .group_by(Transaction.category)
        )
        for row in rows:
            totals[row.category] += int(row.total or 0)
        return totals

    def _has_aggregate(self, budget_id: str) -> bool:
        return (
            self.session.scalar(
                select(BudgetAggregate.budget_id).where(
                    BudgetAggregate.budget_id == budget_id
                )
            )
            is not None
        )

    def _replace_aggregate(
        self, budget: Budget, totals: Mapping[Category, int]
    ) -> None:
        if not self._has_aggregate(budget.id):
            self.session.execute(
                insert(BudgetAggregate).values(
                    budget_id=budget.id, user_id=budget.user_id
                )
            )
        for category in Category:
            self._set_total(budget.id, category, totals.get(category, 0))

    def _set_total(self, budget_id: str, category: Category, cents: int) -> None:
        result = self.session.execute(
            update(BudgetCategoryTotal)
            .where(
                BudgetCategoryTotal.budget_id == budget_id,
                BudgetCategoryTotal.category == category,
            )
            .values(total_cents=cents)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.execute(
                insert(BudgetCategoryTotal).values(
                    budget_id=budget_id, category=category, total_cents=cents
                )
            )

    def _delete_aggregate(self, budget_id: str) -> None:
        self.session.execute(
            delete(BudgetCategoryTotal)
            .where(BudgetCategoryTotal.budget_id == budget_id)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            delete(BudgetAggregate)
            .where(BudgetAggregate.budget_id == budget_id)
            .execution_options(synchronize_session=False)
        )

    def totals_for(self, budget_id: str) -> Optional[dict[Category, int]]:
        """Current stored totals for a budget, or None when it has no aggregate."""
        if not self._has_aggregate(budget_id):
            return None
        totals = {category: 0 for category in Category}
        rows = self.session.execute(
            select(BudgetCategoryTotal.category, BudgetCategoryTotal.total_cents).where(
                BudgetCategoryTotal.budget_id == budget_id
            )
        )
        for row in rows:
            totals[row.category] = int(row.total_cents)
        return totals

    def _restamp(
        self,
        user_id: str,
        periods: Optional[Sequence[Period]],
        *,
        exclude: Iterable[str] = (),
    ) -> set[str]:
        """Re-resolve membership inside the given windows, or for every row of
        the user when ``periods`` is None. Returns every budget id that gained
        or lost a transaction."""
        budgets = self._budgets_for_user(user_id, exclude=exclude)
        stmt = select(Transaction).where(Transaction.user_id == user_id)
        if periods is not None:
            windows = [
                Transaction.date.between(p.start, p.end) for p in union(*periods)
            ]
            if not windows:
                return set()
            stmt = stmt.where(or_(*windows))
        txns = self.session.scalars(
            stmt.execution_options(populate_existing=True)
        ).all()
        moved: set[str] = set()
        for txn in txns:
            budget = pick_budget(budgets, txn.date)
            budget_id = budget.id if budget else None
            if txn.budget_id != budget_id:
                moved.update(b for b in (txn.budget_id, budget_id) if b)
                txn.budget_id = budget_id
        return moved

    def _increment(self, budget_id: str, category: Category, cents: int) -> None:
        result = self.session.execute(
            update(BudgetCategoryTotal)
            .where(
                BudgetCategoryTotal.budget_id == budget_id,
                BudgetCategoryTotal.category == category,
            )
            .values(total_cents=BudgetCategoryTotal.total_cents + cents)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.execute(
                insert(BudgetCategoryTotal).values(
                    budget_id=budget_id, category=category, total_cents=cents
                )
            )

    def _stored_row(self, transaction_id: str) -> Optional[Row]:
        # plain columns, never the identity map's copy
        return self.session.execute(
            select(
                Transaction.id,
                Transaction.user_id,
                Transaction.amount_cents,
                Transaction.category,
                Transaction.date,
                Transaction.budget_id,
            ).where(Transaction.id == transaction_id)
        ).first()

    def _insert_row(self, transaction_id: str, values: Mapping[str, Any]) -> None:
        try:
            self.session.execute(
                insert(Transaction).values(id=transaction_id, **values)
            )
        except IntegrityError as exc:
            # another writer created the same id first
            raise StaleLedgerRow(transaction_id) from exc

    def _cached(self, transaction_id: str) -> Optional[Transaction]:
        return self.session.identity_map.get(
            self.session.identity_key(Transaction, transaction_id)
        )

    def _compare_and_set(self, row: Row, **values: Any) -> None:
        result = self.session.execute(
            update(Transaction)
            .where(*_unchanged(row))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleLedgerRow(row.id)
        cached = self._cached(row.id)
        if cached is not None:
            self.session.expire(cached)

    def _compare_and_delete(self, row: Row) -> None:
        result = self.session.execute(
            delete(Transaction)
            .where(*_unchanged(row))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleLedgerRow(row.id)
        cached = self._cached(row.id)
        if cached is not None:
            self.session.expunge(cached)

    def _with_retries(self, attempt: Callable[[], T]) -> T:
        for number in range(1, WRITE_ATTEMPTS + 1):
            try:
                return attempt()
            except StaleLedgerRow as exc:
                logger.info(f"ledger_conflict: transaction_id={exc} attempt={number}")
        raise ConflictError("Transaction was changed concurrently; retry the request")

    def _apply_deltas(
        self,
        deltas: DeltaMap,
        *,
        write: Optional[Callable[[], None]] = None,
        repair_missing: bool,
    ) -> None:
        touched = [
            budget_id
            for budget_id, by_category in deltas.items()
            if any(by_category.values())
        ]
        with self.locks.hold(touched):
            try:
                if write is not None:
                    write()
                self.session.flush()
                for budget_id in sorted(touched):
                    if not self._has_aggregate(budget_id):
                        budget = self.session.get(Budget, budget_id)
                        if repair_missing and budget is not None:
                            logger.warning(
                                f"aggregate_missing: budget_id={budget_id} rebuilding"
                            )
                            self._replace_aggregate(budget, self.full_recompute(budget))
                        continue
                    for category, cents in deltas[budget_id].items():
                        if cents:
                            self._increment(budget_id, category, cents)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

    def upsert_transactions(self, entries: Sequence[LedgerEntry]) -> UpsertResult:
        """
        Write ledger rows keyed by transaction id and apply the signed change
        each one makes to its budget's totals. A row that already exists
        first takes back what it contributed before, so re-submitting the same
        data leaves every aggregate unchanged. Ledger rows and aggregate
        increments are committed together. If another writer changes one of
        the rows in the meantime, the whole batch is read and applied again.
        """
        return self._with_retries(lambda: self._upsert_once(entries))

    def _upsert_once(self, entries: Sequence[LedgerEntry]) -> UpsertResult:
        stored: dict[str, Optional[Row]] = {}
        owners: dict[str, str] = {}
        latest: dict[str, LedgerEntry] = {}
        for entry in entries:
            txn_id = entry.transaction_id
            if txn_id not in stored:
                prior = self._stored_row(txn_id)
                stored[txn_id] = prior
                owners[txn_id] = prior.user_id if prior else entry.user_id
            if owners[txn_id] != entry.user_id:
                raise InvalidRequestError(
                    f"Transaction {txn_id} belongs to another user"
                )
            # the last record for an id wins
            latest[txn_id] = entry

        result = UpsertResult()
        budgets_by_user: dict[str, list[Budget]] = {}
        writes: list[tuple[str, Optional[Row], dict[str, Any]]] = []
        for txn_id, entry in latest.items():
            budgets = budgets_by_user.get(entry.user_id)
            if budgets is None:
                budgets = self._budgets_for_user(entry.user_id)
                budgets_by_user[entry.user_id] = budgets
            budget = pick_budget(budgets, entry.date)
            budget_id = budget.id if budget else None

            prior = stored[txn_id]
            if prior is None:
                result.created += 1
            else:
                result.updated += 1
                add_delta(
                    result.deltas, prior.budget_id, prior.category, -prior.amount_cents
                )
            add_delta(result.deltas, budget_id, entry.category, entry.amount_cents)
            values = {
                "user_id": entry.user_id,
                "amount_cents": entry.amount_cents,
                "description": entry.description,
                "date": entry.date,
                "category": entry.category,
                "budget_id": budget_id,
            }
            writes.append((txn_id, prior, values))

        def write() -> None:
            for txn_id, prior, values in writes:
                if prior is None:
                    self._insert_row(txn_id, values)
                else:
                    self._compare_and_set(prior, **values)

        self._apply_deltas(result.deltas, write=write, repair_missing=True)
        return result

    def on_transaction_created(self, entry: LedgerEntry) -> Transaction:
        self.upsert_transactions([entry])
        return self.session.get(
            Transaction, entry.transaction_id, populate_existing=True
        )

    def on_transaction_updated(
        self, transaction_id: str, new_category: Category
    ) -> Transaction:
        def attempt() -> None:
            row = self._stored_row(transaction_id)
            if row is None:
                raise NotFoundError("Transaction not found")
            deltas: DeltaMap = {}
            if row.category != new_category:
                add_delta(deltas, row.budget_id, row.category, -row.amount_cents)
                add_delta(deltas, row.budget_id, new_category, row.amount_cents)
            self._apply_deltas(
                deltas,
                write=lambda: self._compare_and_set(row, category=new_category),
                repair_missing=False,
            )

        self._with_retries(attempt)
        return self.session.get(Transaction, transaction_id, populate_existing=True)

    def on_transaction_deleted(self, transaction_id: str) -> None:
        def attempt() -> None:
            row = self._stored_row(transaction_id)
            if row is None:
                raise NotFoundError("Transaction not found")
            deltas: DeltaMap = {}
            add_delta(deltas, row.budget_id, row.category, -row.amount_cents)
            self._apply_deltas(
                deltas,
                write=lambda: self._compare_and_delete(row),
                repair_missing=False,
            )

        self._with_retries(attempt)

    def on_budget_created(self, budget: Budget) -> dict[Category, int]:
        try:
            self.session.add(budget)
            self.session.flush()
            with self.locks.hold([budget.id]):
                moved = self._restamp(
                    budget.user_id, [Period(budget.from_date, budget.to_date)]
                )
                totals = self.full_recompute(budget)
                self._replace_aggregate(budget, totals)
                self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            f"budget_created: budget_id={budget.id} user_id={budget.user_id}"
        )
        self._recompute_moved(moved - {budget.id})
        return totals

    def on_budget_updated(
        self, budget_id: str, changes: Mapping[str, object]
    ) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if budget is None:
            raise NotFoundError("Budget not found")
        old_window = Period(budget.from_date, budget.to_date)
        try:
            window = resolve_period(
                changes.get("from_date") or budget.from_date,
                changes.get("to_date") or budget.to_date,
            )
        except ValueError as exc:
            raise InvalidRequestError(str(exc)) from exc

        try:
            if changes.get("title") is not None:
                budget.title = str(changes["title"])
            if changes.get("amount_cents") is not None:
                budget.amount_cents = int(changes["amount_cents"])
            budget.from_date = window.start
            budget.to_date = window.end
            self.session.flush()
            with self.locks.hold([budget.id]):
                # user_id never changes; membership follows the new window
                moved = self._restamp(budget.user_id, [old_window, window])
                totals = self.full_recompute(budget)
                self._replace_aggregate(budget, totals)
                self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            f"budget_updated: budget_id={budget.id} window={window.start}..{window.end}"
        )
        self._recompute_moved(moved - {budget.id})
        return budget

    def on_budget_deleted(self, budget_id: str) -> bool:
        budget = self.session.get(Budget, budget_id)
        if budget is None:
            return False
        try:
            with self.locks.hold([budget_id]):
                moved = self._restamp(
                    budget.user_id,
                    [Period(budget.from_date, budget.to_date)],
                    exclude=[budget_id],
                )
                self._delete_aggregate(budget_id)
                self.session.flush()
                self.session.delete(budget)
                self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.locks.discard(budget_id)
        self._recompute_moved(moved - {budget_id})
        logger.info(f"budget_deleted: budget_id={budget_id}")
        return True

    def _recompute_moved(self, budget_ids: Iterable[str]) -> None:
        # budgets that gained or lost stamped transactions
        for other_id in sorted(budget_ids):
            if self.session.get(Budget, other_id) is not None:
                self.recompute_budget(other_id)

    def recompute_budget(self, budget_id: str) -> dict[Category, int]:
        budget = self.session.get(Budget, budget_id)
        if budget is None:
            raise NotFoundError("Budget not found")
        with self.locks.hold([budget_id]):
            try:
                totals = self.full_recompute(budget)
                self._replace_aggregate(budget, totals)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        return totals

    def recompute_all(self, user_id: Optional[str] = None) -> int:
        """Re-resolve every membership stamp, then rebuild every aggregate."""
        stmt = select(Budget.user_id).distinct().order_by(Budget.user_id)
        if user_id is not None:
            stmt = stmt.where(Budget.user_id == user_id)
        owners = list(self.session.scalars(stmt))
        count = 0
        for owner in owners:
            try:
                self._restamp(owner, None)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
            budget_ids = self.session.scalars(
                select(Budget.id).where(Budget.user_id == owner).order_by(Budget.id)
            ).all()
            for budget_id in budget_ids:
                self.recompute_budget(budget_id)
                count += 1
        logger.info(f"recompute_all: budgets={count}")
        return count
