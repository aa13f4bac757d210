from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class Category(str, Enum):
    essentials = "Essentials"
    food_entertainment = "Food & Entertainment"
    shopping = "Shopping"
    health_wellness = "Health & Wellness"
    other = "Other"


CATEGORY_ENUM = SAEnum(
    Category,
    name="category",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    from_date: Mapped[date] = mapped_column(Date, nullable=False)
    to_date: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        CheckConstraint("from_date <= to_date", name="ck_budget_window_ordered"),
        Index("ix_budgets_user_window", "user_id", "from_date", "to_date"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    category: Mapped[Category] = mapped_column(CATEGORY_ENUM, nullable=False)
    # membership stamp; re-resolved whenever a budget window changes
    budget_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("budgets.id", ondelete="SET NULL")
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_budget", "budget_id"),
    )


class BudgetAggregate(Base, TimestampMixin):
    __tablename__ = "budget_aggregates"

    budget_id: Mapped[str] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    __table_args__ = (Index("ix_budget_aggregates_user", "user_id"),)


# Totals are only ever written with SQL-level increments or replacements,
# never through ORM attribute changes.
class BudgetCategoryTotal(Base):
    __tablename__ = "budget_category_totals"

    budget_id: Mapped[str] = mapped_column(
        ForeignKey("budget_aggregates.budget_id", ondelete="CASCADE"),
        primary_key=True,
    )
    category: Mapped[Category] = mapped_column(CATEGORY_ENUM, primary_key=True)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
