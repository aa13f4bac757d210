import datetime as dt
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BudgetIn(CamelModel):
    user_id: Optional[str] = None
    amount: Any = None
    title: Optional[str] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None


class BudgetUpdateIn(CamelModel):
    title: Optional[str] = Field(default=None, max_length=200)
    amount: Any = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None


class TransactionIn(CamelModel):
    user_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Any = None
    description: Optional[str] = None
    date: Optional[dt.date] = None
    category: Optional[str] = None


class TransactionBatchIn(BaseModel):
    transactions: Optional[list[TransactionIn]] = None


class CategoryUpdateIn(BaseModel):
    category: Optional[str] = None


class ProviderSyncIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    access_token: Optional[str] = None


class RegisterIn(CamelModel):
    user_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
