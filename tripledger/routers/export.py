from datetime import date

from fastapi import APIRouter, Depends, Response
from fastapi.responses import PlainTextResponse

from tripledger.core.config import Settings, get_settings
from tripledger.core.security import get_current_user_id
from tripledger.db.dal import Database
from tripledger.models import TripOut
from tripledger.services.import_export import (
    XLSX_MEDIA_TYPE,
    expenses_to_csv,
    sample_trips_csv,
    sample_trips_xlsx,
    trips_to_csv,
    trips_to_xlsx,
)

router = APIRouter(prefix="/export", tags=["export"])


def get_db(settings: Settings = Depends(get_settings)) -> Database:
    return Database(settings.db_path)


def _csv_response(body: str, stem: str) -> PlainTextResponse:
    filename = f"{stem}-{date.today().isoformat()}.csv"
    return PlainTextResponse(
        body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/trips.csv", summary="Export trips as CSV")
async def export_trips(
    user_id: str = Depends(get_current_user_id), db: Database = Depends(get_db)
):
    trips = [TripOut.model_validate(r) for r in db.list_trips(user_id)]
    return _csv_response(trips_to_csv(trips), "trips")


@router.get("/expenses.csv", summary="Export expenses as CSV")
async def export_expenses(
    user_id: str = Depends(get_current_user_id), db: Database = Depends(get_db)
):
    trips = [TripOut.model_validate(r) for r in db.list_trips(user_id)]
    return _csv_response(expenses_to_csv(trips), "expenses")


@router.get("/template.csv", summary="Sample trip import template")
async def export_template():
    return _csv_response(sample_trips_csv(), "trips-template")


def _xlsx_response(body: bytes, stem: str) -> Response:
    filename = f"{stem}-{date.today().isoformat()}.xlsx"
    return Response(
        content=body,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/ledger.xlsx", summary="Export trips, expenses and a summary as an Excel workbook")
async def export_workbook(
    user_id: str = Depends(get_current_user_id), db: Database = Depends(get_db)
):
    trips = [TripOut.model_validate(r) for r in db.list_trips(user_id)]
    return _xlsx_response(trips_to_xlsx(trips), "ledger")


@router.get("/template.xlsx", summary="Sample trip import template (Excel)")
async def export_template_xlsx():
    return _xlsx_response(sample_trips_xlsx(), "trips-template")
