from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidRequestError, NotFoundError
from locks import KeyedLocks
from models import Budget, BudgetAggregate, BudgetCategoryTotal, Transaction, User
from schemas import BudgetIn, TransactionIn
from services import BudgetService, TransactionService, UserService


def test_register_is_an_upsert() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        users = UserService(session)
        users.register("u1", "Ada", "ada@example.com")
        users.register("u1", "Ada L.", "ada@example.com")
        assert users.get("u1").name == "Ada L."
        assert session.scalar(select(func.count()).select_from(User)) == 1
        with pytest.raises(InvalidRequestError):
            users.register("u2", "", "x@example.com")
        with pytest.raises(NotFoundError):
            users.get("u2")


def test_delete_user_cascades_to_owned_rows() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    locks = KeyedLocks()

    with Session(engine) as session:
        users = UserService(session)
        users.register("u1", "Ada", "ada@example.com")
        users.register("u2", "Bob", "bob@example.com")
        budgets = BudgetService(session, locks)
        for user_id in ("u1", "u2"):
            budgets.create(
                BudgetIn(
                    user_id=user_id,
                    amount=100,
                    title="Monthly",
                    from_date=date(2024, 10, 1),
                    to_date=date(2024, 10, 31),
                )
            )
        TransactionService(session, locks).create_many(
            [
                TransactionIn(
                    user_id=user_id,
                    transaction_id=f"{user_id}-t1",
                    amount=10,
                    description="Lunch",
                    date=date(2024, 10, 2),
                    category="Food & Entertainment",
                )
                for user_id in ("u1", "u2")
            ]
        )

        users.delete("u1")

        def owned(model) -> int:
            return session.scalar(
                select(func.count()).select_from(model).where(model.user_id == "u1")
            )

        assert owned(Transaction) == 0
        assert owned(Budget) == 0
        assert owned(BudgetAggregate) == 0
        assert session.scalar(select(func.count()).select_from(User)) == 1
        assert session.scalar(
            select(func.count()).select_from(BudgetCategoryTotal)
        ) == 5
        assert len(budgets.views_for_user("u2")) == 1
