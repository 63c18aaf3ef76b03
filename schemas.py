from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import TransactionType


def _strip_required(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


class TransactionIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    category: str = Field(..., min_length=1, max_length=100)
    date: date
    type: TransactionType
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("description", "category")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        return _strip_required(value)


class BudgetIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    limit: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)

    @field_validator("category")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        return _strip_required(value)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    amount: Decimal
    category: str
    date: date
    type: TransactionType
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category: str
    limit: Decimal
    spent_amount: Decimal
    remaining: Decimal
    over_budget: bool
    month: int
    year: int
    created_at: datetime
    updated_at: datetime


class DashboardOut(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    balance: Decimal
    savings_rate: float


class CategoryTotalOut(BaseModel):
    category: str
    total: Decimal
    count: int
