from datetime import date, datetime, time
from decimal import Decimal
import io

from openpyxl import Workbook, load_workbook
import pytest

from conftest import expense_payload
from tripledger.client.importer import import_expenses, import_expenses_xlsx, import_trips
from tripledger.core.errors import TransientUnavailable, ValidationFailed
from tripledger.models import TripOut
from tripledger.services.import_export import (
    TRIP_COLUMNS,
    parse_expenses_csv,
    parse_expenses_xlsx,
    parse_trips_csv,
    parse_trips_xlsx,
    sample_trips_csv,
    sample_trips_xlsx,
    trips_to_xlsx,
)

TRIPS_CSV = """trip_number,origin,destination,travel_mode,date,time,notes,travelers,status
TR001,Mumbai,Delhi,plane,2024-01-15,10:30,Business trip,"John Doe, Jane Smith",completed
,Pune,,car,2024-02-01,08:00,,,planning
TR003,Goa,Hampi,,,,,,
,Agra,Varanasi,rocket,2024-03-01,09:00,,,
"""


def test_parse_trips_defaults_and_rejects():
    report = parse_trips_csv(TRIPS_CSV, today=date(2024, 5, 1))

    assert [r.line for r in report.rows] == [2, 4]
    first, defaulted = report.rows
    assert first.status == "completed"
    assert first.trip.travelers == ["John Doe", "Jane Smith"]

    assert defaulted.trip.travel_mode == "car"
    assert defaulted.trip.date == date(2024, 5, 1)
    assert defaulted.trip.time.strftime("%H:%M") == "09:00"
    assert defaulted.status == "planning"

    reasons = {r.line: r.reason for r in report.rejects}
    assert reasons[3] == "missing destination"
    assert "travel_mode" in reasons[5]


def test_parse_accepts_camel_case_headers():
    text = "tripNumber,origin,destination,travelMode\nTR9,Delhi,Agra,train\n"
    (row,) = parse_trips_csv(text).rows
    assert row.trip_number == "TR9"
    assert row.trip.travel_mode == "train"


def test_sample_template_round_trips_through_parser():
    report = parse_trips_csv(sample_trips_csv())
    assert len(report.rows) == 2
    assert report.rejects == []


def test_parse_expenses_requires_columns():
    text = (
        "trip_number,description,amount,category,date,time\n"
        "TR001,Taxi,12.50,transport,2024-01-15,09:10\n"
        "TR001,,3.00,food,,\n"
        "TR001,Snack,1.005,food,,\n"
    )
    report = parse_expenses_csv(text)
    assert len(report.rows) == 1
    assert report.rows[0].expense.amount == Decimal("12.50")
    assert [r.line for r in report.rejects] == [3, 4]
    assert report.rejects[0].reason == "missing description"


@pytest.mark.asyncio
async def test_import_trips_is_best_effort(ledger):
    ledger.backend.fail_once["create_trip"] = TransientUnavailable("blip")
    text = (
        "origin,destination,status\n"
        "Delhi,Agra,planning\n"
        "Agra,Jaipur,in_progress\n"
        "Jaipur,,planning\n"
    )
    summary = await import_trips(ledger.coordinator, text)

    assert len(summary.created) == 1
    lines = sorted(f.line for f in summary.failures)
    assert lines == [2, 4]
    created = ledger.state.get_trip(summary.created[0])
    assert created.status == "in_progress"


@pytest.mark.asyncio
async def test_import_expenses_maps_trip_numbers(ledger):
    trip = ledger.state.get_trip(ledger.trip_id)
    text = (
        "trip_number,description,amount,category\n"
        f"{trip.trip_number},Taxi,12.50,transport\n"
        "TR999,Hotel,80.00,accommodation\n"
        f"{trip.trip_number},Dinner,30.00,food\n"
    )
    summary = await import_expenses(ledger.coordinator, text)

    assert len(summary.created) == 2
    assert [f.line for f in summary.failures] == [3]
    assert "unknown trip_number" in summary.failures[0].reason
    assert ledger.state.get_trip(ledger.trip_id).total_expenses == Decimal("42.50")


@pytest.mark.asyncio
async def test_identical_expense_rows_are_separate_records(ledger):
    trip = ledger.state.get_trip(ledger.trip_id)
    text = (
        "trip_number,description,amount,category,date,time\n"
        f"{trip.trip_number},Metro ticket,2.50,transport,2024-01-15,09:00\n"
        f"{trip.trip_number},Metro ticket,2.50,transport,2024-01-15,09:00\n"
    )
    summary = await import_expenses(ledger.coordinator, text)

    assert summary.ok
    assert len(set(summary.created)) == 2
    assert len(ledger.backend.expenses) == 2
    assert ledger.state.get_trip(ledger.trip_id).total_expenses == Decimal("5.00")


@pytest.mark.asyncio
async def test_identical_trip_rows_are_separate_trips(ledger):
    text = "origin,destination,date,time\nDelhi,Agra,2024-03-01,07:00\nDelhi,Agra,2024-03-01,07:00\n"
    summary = await import_trips(ledger.coordinator, text)

    assert summary.ok
    assert len(set(summary.created)) == 2
    assert len(ledger.backend.trips) == 3


def _trip_out(**overrides) -> TripOut:
    data = {
        "id": "trip-1",
        "trip_number": "TR001",
        "origin": "Mumbai",
        "destination": "Delhi",
        "travel_mode": "plane",
        "date": "2024-01-15",
        "time": "10:30",
        "travelers": ["Asha", "Ravi"],
        "status": "completed",
        "total_expenses": "165.50",
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-01-02T00:00:00Z",
        "expenses": [
            {"id": "e1", "trip_id": "trip-1", **expense_payload(amount="120.50")},
            {"id": "e2", "trip_id": "trip-1",
             **expense_payload(description="Cab", amount="45.00", category="transport")},
        ],
    }
    data.update(overrides)
    return TripOut.model_validate(data)


def test_workbook_has_trip_expense_and_summary_sheets():
    data = trips_to_xlsx([_trip_out()], exported_on=date(2024, 6, 1))
    workbook = load_workbook(io.BytesIO(data))
    assert workbook.sheetnames == ["Trips", "Expenses", "Summary"]

    trips = list(workbook["Trips"].iter_rows(values_only=True))
    assert list(trips[0]) == TRIP_COLUMNS
    assert trips[1][0] == "TR001"
    assert trips[1][7] == "Asha, Ravi"

    expenses = list(workbook["Expenses"].iter_rows(values_only=True))
    assert len(expenses) == 3
    assert expenses[2][:2] == ("TR001", "Cab")

    summary = dict(list(workbook["Summary"].iter_rows(values_only=True))[1:])
    assert summary["Total Trips"] == 1
    assert summary["Completed Trips"] == 1
    assert Decimal(str(summary["Total Expenses"])) == Decimal("165.50")
    assert summary["Export Date"] == "2024-06-01"


def test_workbook_rows_parse_back():
    data = trips_to_xlsx([_trip_out()])
    (trip_row,) = parse_trips_xlsx(data).rows
    assert trip_row.trip_number == "TR001"
    assert trip_row.status == "completed"
    assert trip_row.trip.travelers == ["Asha", "Ravi"]

    report = parse_expenses_xlsx(data)
    assert [r.expense.amount for r in report.rows] == [Decimal("120.50"), Decimal("45.00")]
    assert report.rejects == []


def test_xlsx_template_parses():
    report = parse_trips_xlsx(sample_trips_xlsx())
    assert [r.trip.destination for r in report.rows] == ["Delhi", "Bangalore"]


def test_user_workbook_cells_are_normalized():
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["origin", "destination", "travelMode", "date", "time", "status"])
    sheet.append(["Pune", "Goa", "bus", datetime(2024, 4, 2), time(6, 45), None])
    sheet.append([None, None, None, None, None, None])
    sheet.append(["Pune", None, "bus", None, None, None])
    buf = io.BytesIO()
    workbook.save(buf)

    report = parse_trips_xlsx(buf.getvalue())
    (row,) = report.rows
    assert row.line == 2
    assert row.trip.date == date(2024, 4, 2)
    assert row.trip.time.strftime("%H:%M") == "06:45"
    assert row.status == "planning"
    assert [(r.line, r.reason) for r in report.rejects] == [(4, "missing destination")]


def test_non_workbook_bytes_are_rejected():
    with pytest.raises(ValidationFailed):
        parse_trips_xlsx(b"origin,destination\nDelhi,Agra\n")


@pytest.mark.asyncio
async def test_import_expenses_from_workbook(ledger):
    trip = ledger.state.get_trip(ledger.trip_id)
    data = trips_to_xlsx([_trip_out(trip_number=trip.trip_number)])
    summary = await import_expenses_xlsx(ledger.coordinator, data)
    assert len(summary.created) == 2
    assert ledger.state.get_trip(ledger.trip_id).total_expenses == Decimal("165.50")
