from __future__ import annotations

from datetime import date as Date, datetime, time as Time
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import ExpenseCategory

Amount = Annotated[Decimal, Field(ge=0, max_digits=12, decimal_places=2)]

UPDATABLE_FIELDS = ("description", "amount", "category", "date", "time")


class ExpenseIn(BaseModel):
    description: str
    amount: Amount
    category: ExpenseCategory
    date: Date
    time: Time

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("description cannot be empty")
        return v.strip()

    @field_validator("time")
    @classmethod
    def _minute_precision(cls, v: Time) -> Time:
        return v.replace(second=0, microsecond=0, tzinfo=None)


class ExpenseOut(ExpenseIn):
    model_config = ConfigDict(from_attributes=True)

    id: str
    trip_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ExpenseUpdate(BaseModel):
    """Partial update. A field is present iff it appears in `model_fields_set`.

    Absent fields are left untouched by the store; present fields may not be
    null because every expense column is required.
    """

    description: Optional[str] = None
    amount: Optional[Amount] = None
    category: Optional[ExpenseCategory] = None
    date: Optional[Date] = None
    time: Optional[Time] = None

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("description cannot be empty")
        return v.strip() if v is not None else None

    @field_validator("time")
    @classmethod
    def _minute_precision(cls, v: Optional[Time]) -> Optional[Time]:
        return v.replace(second=0, microsecond=0, tzinfo=None) if v is not None else None

    @model_validator(mode="after")
    def _at_least_one_present(self) -> "ExpenseUpdate":
        present = self.model_fields_set & set(UPDATABLE_FIELDS)
        if not present:
            raise ValueError("at least one field must be provided for update")
        nulls = sorted(f for f in present if getattr(self, f) is None)
        if nulls:
            raise ValueError(f"fields cannot be null: {', '.join(nulls)}")
        return self

    def changes(self) -> Dict[str, Any]:
        return {f: getattr(self, f) for f in UPDATABLE_FIELDS if f in self.model_fields_set}

    def apply_to(self, expense: ExpenseOut) -> ExpenseOut:
        return expense.model_copy(update=self.changes())


# Row endpoints -----------------------------------------------------


class ExpenseCreate(ExpenseIn):
    trip_id: str


class ExpenseBulkCreate(BaseModel):
    trip_id: str
    expenses: List[ExpenseIn] = Field(..., min_length=1)


# Atomic procedures -------------------------------------------------


class AddExpenseRequest(BaseModel):
    trip_id: str
    expense: ExpenseIn


class UpdateExpenseRequest(BaseModel):
    expense_id: str
    changes: ExpenseUpdate


class DeleteExpenseRequest(BaseModel):
    expense_id: str


class BatchAddExpensesRequest(BaseModel):
    trip_id: str
    expenses: List[ExpenseIn] = Field(..., min_length=1)


class ExpenseWithTotal(BaseModel):
    expense: ExpenseOut
    new_total: Optional[Decimal] = None


class ExpenseUpdateResult(BaseModel):
    expense: ExpenseOut
    new_total: Optional[Decimal] = None
    trip_id: str


class ExpenseDeleteResult(BaseModel):
    new_total: Optional[Decimal] = None
    trip_id: str


class ExpenseBatchResult(BaseModel):
    expenses: List[ExpenseOut]
    new_total: Optional[Decimal] = None
    count: int


# Read procedures ---------------------------------------------------


class ExpensePage(BaseModel):
    expenses: List[ExpenseOut]
    total_amount: Decimal
    total_count: int
    limit: int
    offset: int
    has_more: bool


class CategoryStat(BaseModel):
    category: ExpenseCategory
    total_amount: Decimal
    count: int
    avg_amount: Decimal


class TripTotal(BaseModel):
    trip_id: str
    total: Decimal
