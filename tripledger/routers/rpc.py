"""Atomic procedures.

Each endpoint performs the expense mutation and reads back the trigger-summed
trip total inside one SQLite transaction, so the caller gets the new state in a
single round trip.
"""

from fastapi import APIRouter, Depends

from tripledger.core.config import Settings, get_settings
from tripledger.core.security import get_current_user_id
from tripledger.db.dal import Database
from tripledger.models.expense import (
    AddExpenseRequest,
    BatchAddExpensesRequest,
    DeleteExpenseRequest,
    ExpenseBatchResult,
    ExpenseDeleteResult,
    ExpenseOut,
    ExpenseUpdateResult,
    ExpenseWithTotal,
    UpdateExpenseRequest,
)

router = APIRouter(prefix="/rpc", tags=["rpc"])


def get_db(settings: Settings = Depends(get_settings)) -> Database:
    return Database(settings.db_path)


@router.post("/add_expense_with_total", response_model=ExpenseWithTotal)
async def add_expense_with_total(
    payload: AddExpenseRequest,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    row, total = db.add_expense_with_total(user_id, payload.trip_id, payload.expense)
    return ExpenseWithTotal(expense=ExpenseOut.model_validate(row), new_total=total)


@router.post("/update_expense_with_total", response_model=ExpenseUpdateResult)
async def update_expense_with_total(
    payload: UpdateExpenseRequest,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    row, total, trip_id = db.update_expense_with_total(
        user_id, payload.expense_id, payload.changes.changes()
    )
    return ExpenseUpdateResult(
        expense=ExpenseOut.model_validate(row), new_total=total, trip_id=trip_id
    )


@router.post("/delete_expense_with_total", response_model=ExpenseDeleteResult)
async def delete_expense_with_total(
    payload: DeleteExpenseRequest,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    total, trip_id = db.delete_expense_with_total(user_id, payload.expense_id)
    return ExpenseDeleteResult(new_total=total, trip_id=trip_id)


@router.post("/batch_add_expenses", response_model=ExpenseBatchResult)
async def batch_add_expenses(
    payload: BatchAddExpensesRequest,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    rows, total = db.batch_add_expenses(user_id, payload.trip_id, payload.expenses)
    return ExpenseBatchResult(
        expenses=[ExpenseOut.model_validate(r) for r in rows],
        new_total=total,
        count=len(rows),
    )
