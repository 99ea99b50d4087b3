from typing import List

from fastapi import APIRouter, Depends, Response, status

from tripledger.core.config import Settings, get_settings
from tripledger.core.errors import NotFound
from tripledger.core.security import get_current_user_id
from tripledger.db.dal import Database
from tripledger.models.expense import (
    ExpenseBulkCreate,
    ExpenseCreate,
    ExpenseIn,
    ExpenseOut,
    ExpenseUpdate,
)

router = APIRouter(prefix="/expenses", tags=["expenses"])

# Row endpoints. These never return the trip total; the manual mutation path
# reads it back with GET /trips/{id}/total.


def get_db(settings: Settings = Depends(get_settings)) -> Database:
    return Database(settings.db_path)


def _fields(payload: ExpenseCreate) -> ExpenseIn:
    return ExpenseIn(**payload.model_dump(exclude={"trip_id"}))


@router.post(
    "/",
    response_model=ExpenseOut,
    status_code=status.HTTP_201_CREATED,
    summary="Insert an expense row",
)
async def create_expense(
    payload: ExpenseCreate,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    row = db.insert_expense(user_id, payload.trip_id, _fields(payload))
    return ExpenseOut.model_validate(row)


@router.post(
    "/bulk",
    response_model=List[ExpenseOut],
    status_code=status.HTTP_201_CREATED,
    summary="Insert several expense rows in one transaction",
)
async def create_expenses_bulk(
    payload: ExpenseBulkCreate,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    rows = db.insert_expenses(user_id, payload.trip_id, payload.expenses)
    return [ExpenseOut.model_validate(r) for r in rows]


@router.get("/{expense_id}", response_model=ExpenseOut, summary="Get an expense")
async def get_expense(
    expense_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    row = db.get_expense(user_id, expense_id)
    if row is None:
        raise NotFound("expense not found")
    return ExpenseOut.model_validate(row)


@router.patch(
    "/{expense_id}", response_model=ExpenseOut, summary="Edit an expense (partial)"
)
async def patch_expense(
    expense_id: str,
    payload: ExpenseUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    row = db.update_expense(user_id, expense_id, payload.changes())
    return ExpenseOut.model_validate(row)


@router.delete(
    "/{expense_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an expense",
)
async def delete_expense(
    expense_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    db.delete_expense(user_id, expense_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
