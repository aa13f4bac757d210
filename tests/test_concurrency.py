import threading
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from aggregation import AggregationEngine, LedgerEntry, StaleLedgerRow
from database import Base
from errors import ConflictError
from locks import KeyedLocks
from models import Budget, Category
from schemas import BudgetIn, TransactionIn
from services import BudgetService, TransactionService


def _file_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'budgets.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return engine


def _seed(engine) -> str:
    locks = KeyedLocks()
    with Session(engine) as session:
        budget = BudgetService(session, locks).create(
            BudgetIn(
                user_id="u1",
                amount="500",
                title="October",
                from_date=date(2024, 10, 1),
                to_date=date(2024, 10, 31),
            )
        ).budget
        TransactionService(session, locks).create_many(
            [
                TransactionIn(
                    user_id="u1",
                    transaction_id=f"t{i}",
                    amount="10",
                    description=f"purchase {i}",
                    date=date(2024, 10, 10 + i),
                    category="Shopping",
                )
                for i in range(3)
            ]
        )
        return budget.id


def _assert_consistent(engine, budget_id: str) -> dict[Category, int]:
    with Session(engine) as session:
        aggregation = AggregationEngine(session, KeyedLocks())
        stored = aggregation.totals_for(budget_id)
        assert stored == aggregation.full_recompute(session.get(Budget, budget_id))
        return stored


def test_stale_snapshot_cannot_overwrite_ledger_row(tmp_path) -> None:
    engine = _file_engine(tmp_path)
    budget_id = _seed(engine)

    # each session stands in for a separate process with its own locks
    with Session(engine) as first, Session(engine) as second:
        a = AggregationEngine(first, KeyedLocks())
        b = AggregationEngine(second, KeyedLocks())
        stale = b._stored_row("t0")

        a.on_transaction_updated("t0", Category.other)
        with pytest.raises(StaleLedgerRow):
            b._compare_and_set(stale, category=Category.health_wellness)
        second.rollback()

    totals = _assert_consistent(engine, budget_id)
    assert totals[Category.shopping] == 2000
    assert totals[Category.other] == 1000


def test_interleaved_category_moves_keep_totals_exact(tmp_path, monkeypatch) -> None:
    engine = _file_engine(tmp_path)
    budget_id = _seed(engine)

    with Session(engine) as first, Session(engine) as second:
        a = AggregationEngine(first, KeyedLocks())
        b = AggregationEngine(second, KeyedLocks())
        stale = b._stored_row("t0")
        read_row = b._stored_row
        reads: list[str] = []

        def read_stale_first(transaction_id):
            reads.append(transaction_id)
            return stale if len(reads) == 1 else read_row(transaction_id)

        monkeypatch.setattr(b, "_stored_row", read_stale_first)

        a.on_transaction_updated("t0", Category.other)
        txn = b.on_transaction_updated("t0", Category.health_wellness)
        assert txn.category == Category.health_wellness
        assert len(reads) == 2

    totals = _assert_consistent(engine, budget_id)
    assert totals[Category.shopping] == 2000
    assert totals[Category.other] == 0
    assert totals[Category.health_wellness] == 1000


def test_persistent_conflict_gives_up_without_writing(tmp_path, monkeypatch) -> None:
    engine = _file_engine(tmp_path)
    budget_id = _seed(engine)

    with Session(engine) as first, Session(engine) as second:
        a = AggregationEngine(first, KeyedLocks())
        b = AggregationEngine(second, KeyedLocks())
        stale = b._stored_row("t1")
        a.on_transaction_updated("t1", Category.essentials)

        monkeypatch.setattr(b, "_stored_row", lambda transaction_id: stale)
        with pytest.raises(ConflictError):
            b.on_transaction_deleted("t1")

    totals = _assert_consistent(engine, budget_id)
    assert totals[Category.essentials] == 1000
    assert totals[Category.shopping] == 2000


def test_concurrent_writers_converge_to_full_recompute(tmp_path) -> None:
    engine = _file_engine(tmp_path)
    budget_id = _seed(engine)
    categories = list(Category)
    failures: list[BaseException] = []

    def worker(worker_id: int) -> None:
        with Session(engine) as session:
            aggregation = AggregationEngine(session, KeyedLocks())
            for step in range(12):
                txn_id = f"t{(worker_id + step) % 3}"
                category = categories[(worker_id + step) % len(categories)]
                try:
                    if step % 3 == 2:
                        aggregation.upsert_transactions(
                            [
                                LedgerEntry(
                                    transaction_id=txn_id,
                                    user_id="u1",
                                    amount_cents=100 * (worker_id + 1),
                                    description="edited",
                                    date=date(2024, 10, 5 + worker_id),
                                    category=category,
                                )
                            ]
                        )
                    else:
                        aggregation.on_transaction_updated(txn_id, category)
                except ConflictError:
                    continue
                except Exception as exc:
                    failures.append(exc)
                    return

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=120)

    assert not any(thread.is_alive() for thread in threads)
    assert failures == []
    _assert_consistent(engine, budget_id)
