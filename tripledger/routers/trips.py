from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, Response, status

from tripledger.core.config import Settings, get_settings
from tripledger.core.errors import NotFound
from tripledger.core.security import get_current_user_id
from tripledger.db.dal import Database
from tripledger.models import TripCreate, TripOut, TripStats, TripUpdate
from tripledger.models.expense import CategoryStat, ExpensePage, TripTotal

router = APIRouter(prefix="/trips", tags=["trips"])


def get_db(settings: Settings = Depends(get_settings)) -> Database:
    return Database(
        settings.db_path,
        trip_number_prefix=settings.trip_number_prefix,
        trip_number_width=settings.trip_number_width,
    )


@router.get("/", response_model=List[TripOut], summary="List trips with expenses")
async def list_trips(
    user_id: str = Depends(get_current_user_id), db: Database = Depends(get_db)
):
    return [TripOut.model_validate(row) for row in db.list_trips(user_id)]


@router.post(
    "/",
    response_model=TripOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create trip",
)
async def create_trip(
    payload: TripCreate,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    row = db.create_trip(user_id, **payload.model_dump())
    return TripOut.model_validate(row)


@router.get("/stats", response_model=TripStats, summary="Dashboard statistics")
async def trip_stats(
    user_id: str = Depends(get_current_user_id), db: Database = Depends(get_db)
):
    return TripStats(**db.get_dashboard_stats(user_id))


@router.get("/{trip_id}", response_model=TripOut, summary="Get trip")
async def get_trip(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    row = db.get_trip(user_id, trip_id)
    if row is None:
        raise NotFound("trip not found")
    return TripOut.model_validate(row)


@router.patch("/{trip_id}", response_model=TripOut, summary="Update trip (partial)")
async def update_trip(
    trip_id: str,
    payload: TripUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    return TripOut.model_validate(db.update_trip(user_id, trip_id, payload.changes()))


@router.post("/{trip_id}/start", response_model=TripOut, summary="Start trip")
async def start_trip(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    return TripOut.model_validate(db.set_trip_status(user_id, trip_id, "in_progress"))


@router.post("/{trip_id}/complete", response_model=TripOut, summary="Complete trip")
async def complete_trip(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    return TripOut.model_validate(db.set_trip_status(user_id, trip_id, "completed"))


@router.delete(
    "/{trip_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete trip and its expenses",
)
async def delete_trip(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    db.delete_trip(user_id, trip_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{trip_id}/total", response_model=TripTotal, summary="Persisted trip total")
async def trip_total(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    return TripTotal(trip_id=trip_id, total=db.get_trip_total(user_id, trip_id))


@router.get(
    "/{trip_id}/expenses",
    response_model=ExpensePage,
    summary="Paginated expenses with totals",
)
async def trip_expenses(
    trip_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    page = db.get_trip_expenses_with_stats(user_id, trip_id, limit=limit, offset=offset)
    return ExpensePage.model_validate(page)


@router.get(
    "/{trip_id}/stats/categories",
    response_model=List[CategoryStat],
    summary="Expense statistics by category",
)
async def category_stats(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    return [
        CategoryStat(**row) for row in db.get_expense_stats_by_category(user_id, trip_id)
    ]
