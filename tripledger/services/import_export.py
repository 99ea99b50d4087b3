"""CSV and Excel export and import for trips and expenses.

Export writes one row per trip (travelers joined with ", ") and one row per
expense keyed by ``trip_number``. The Excel workbook carries both as sheets
plus a summary sheet. Import is best-effort: every row is parsed on its own,
rows missing required columns are rejected with a reason, and missing optional
trip columns fall back to defaults.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
import io
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
import zipfile

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from pydantic import ValidationError

from tripledger.core.errors import ValidationFailed
from tripledger.models import ExpenseIn, TripCreate, TripOut
from tripledger.models.constants import TRIP_STATUSES
from tripledger.services.money import total

TRIP_COLUMNS = [
    "trip_number",
    "origin",
    "destination",
    "travel_mode",
    "date",
    "time",
    "notes",
    "travelers",
    "total_expenses",
    "status",
    "created_at",
    "updated_at",
]
EXPENSE_COLUMNS = ["trip_number", "description", "amount", "category", "date", "time"]

TRIP_REQUIRED = ("origin", "destination")
EXPENSE_REQUIRED = ("trip_number", "description", "amount", "category")

DEFAULT_TRAVEL_MODE = "car"
DEFAULT_TIME = "09:00"
DEFAULT_STATUS = "planning"

TRIPS_SHEET = "Trips"
EXPENSES_SHEET = "Expenses"
SUMMARY_SHEET = "Summary"
TEMPLATE_SHEET = "Trips Template"
EXCEL_EPOCH_END = date(1900, 1, 1)
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Spreadsheets exported by older builds used camelCase headers
_HEADER_ALIASES = {
    "tripnumber": "trip_number",
    "travelmode": "travel_mode",
    "totalexpenses": "total_expenses",
    "createdat": "created_at",
    "updatedat": "updated_at",
}

SAMPLE_TRIPS = [
    {
        "trip_number": "TR001",
        "origin": "Mumbai",
        "destination": "Delhi",
        "travel_mode": "plane",
        "date": "2024-01-15",
        "time": "10:30",
        "notes": "Business trip",
        "travelers": "John Doe, Jane Smith",
        "status": "completed",
    },
    {
        "trip_number": "TR002",
        "origin": "Delhi",
        "destination": "Bangalore",
        "travel_mode": "train",
        "date": "2024-02-20",
        "time": "08:00",
        "notes": "Family vacation",
        "travelers": "Family",
        "status": "planning",
    },
]

Record = Tuple[int, Dict[str, str]]


@dataclass
class RowReject:
    line: int
    reason: str


@dataclass
class TripImportRow:
    line: int
    trip: TripCreate
    status: str = DEFAULT_STATUS
    trip_number: Optional[str] = None


@dataclass
class ExpenseImportRow:
    line: int
    trip_number: str
    expense: ExpenseIn


@dataclass
class ParseReport:
    rows: List = field(default_factory=list)
    rejects: List[RowReject] = field(default_factory=list)


# Export ------------------------------------------------------------


def _format_time(value) -> str:
    return value.strftime("%H:%M")


def _trip_record(trip: TripOut) -> Dict[str, Any]:
    return {
        "trip_number": trip.trip_number,
        "origin": trip.origin,
        "destination": trip.destination,
        "travel_mode": trip.travel_mode,
        "date": trip.date.isoformat(),
        "time": _format_time(trip.time),
        "notes": trip.notes or "",
        "travelers": ", ".join(trip.travelers),
        "total_expenses": trip.total_expenses,
        "status": trip.status,
        "created_at": trip.created_at.isoformat(),
        "updated_at": trip.updated_at.isoformat(),
    }


def _expense_records(trips: Iterable[TripOut]) -> Iterator[Dict[str, Any]]:
    for trip in trips:
        for expense in trip.expenses:
            yield {
                "trip_number": trip.trip_number,
                "description": expense.description,
                "amount": expense.amount,
                "category": expense.category,
                "date": expense.date.isoformat(),
                "time": _format_time(expense.time),
            }


def trips_to_csv(trips: Iterable[TripOut]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=TRIP_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for trip in trips:
        writer.writerow(_trip_record(trip))
    return buf.getvalue()


def expenses_to_csv(trips: Iterable[TripOut]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=EXPENSE_COLUMNS, lineterminator="\n")
    writer.writeheader()
    writer.writerows(_expense_records(trips))
    return buf.getvalue()


def sample_trips_csv() -> str:
    columns = [c for c in TRIP_COLUMNS if c in SAMPLE_TRIPS[0]]
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=columns, lineterminator="\n")
    writer.writeheader()
    writer.writerows(SAMPLE_TRIPS)
    return buf.getvalue()


def _append_records(worksheet, columns: List[str], records: Iterable[Dict[str, Any]]) -> None:
    worksheet.append(columns)
    for record in records:
        worksheet.append([record.get(c, "") for c in columns])


def _workbook_bytes(workbook: Workbook) -> bytes:
    buf = io.BytesIO()
    workbook.save(buf)
    return buf.getvalue()


def trips_to_xlsx(trips: Iterable[TripOut], exported_on: Optional[date] = None) -> bytes:
    """Workbook with Trips, Expenses and Summary sheets."""
    trips = list(trips)
    workbook = Workbook()
    trips_sheet = workbook.active
    trips_sheet.title = TRIPS_SHEET
    _append_records(trips_sheet, TRIP_COLUMNS, (_trip_record(t) for t in trips))
    _append_records(
        workbook.create_sheet(EXPENSES_SHEET), EXPENSE_COLUMNS, _expense_records(trips)
    )

    summary = workbook.create_sheet(SUMMARY_SHEET)
    summary.append(["Metric", "Value"])
    by_status = {s: sum(1 for t in trips if t.status == s) for s in TRIP_STATUSES}
    for metric, value in (
        ("Total Trips", len(trips)),
        ("Total Expenses", total(t.total_expenses for t in trips)),
        ("Active Trips", by_status["in_progress"]),
        ("Completed Trips", by_status["completed"]),
        ("Planned Trips", by_status["planning"]),
        ("Export Date", (exported_on or date.today()).isoformat()),
    ):
        summary.append([metric, value])
    return _workbook_bytes(workbook)


def sample_trips_xlsx() -> bytes:
    columns = [c for c in TRIP_COLUMNS if c in SAMPLE_TRIPS[0]]
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = TEMPLATE_SHEET
    _append_records(sheet, columns, SAMPLE_TRIPS)
    return _workbook_bytes(workbook)


# Import ------------------------------------------------------------


def _normalize(row: Dict[Optional[str], object]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for key, value in row.items():
        if key is None or not isinstance(value, str):
            continue  # overflow cells from ragged rows
        name = key.strip()
        name = _HEADER_ALIASES.get(name.lower(), name.lower())
        out[name] = value.strip()
    return out


def _reason(exc: ValidationError) -> str:
    first = exc.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{loc}: {first['msg']}" if loc else first["msg"]


def _missing(values: Dict[str, str], required) -> List[str]:
    return [name for name in required if not values.get(name)]


def _csv_records(text: str) -> Iterator[Record]:
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    for raw in reader:
        yield reader.line_num, _normalize(raw)


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.date() <= EXCEL_EPOCH_END:
            # a clock time stored on Excel's epoch day
            return value.strftime("%H:%M")
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if isinstance(value, float):
        # spreadsheet numbers come back as floats; keep the short form
        return str(Decimal(repr(value)))
    return str(value)


def _xlsx_records(data: bytes, sheet_name: Optional[str]) -> Iterator[Record]:
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
        raise ValidationFailed("file is not an Excel workbook") from exc
    try:
        if sheet_name is None:
            worksheet = workbook.worksheets[0]
        elif sheet_name in workbook.sheetnames:
            worksheet = workbook[sheet_name]
        else:
            raise ValidationFailed(f"workbook has no '{sheet_name}' sheet")
        rows = worksheet.iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            return
        names = [str(h) if h is not None else None for h in header]
        for line, row in enumerate(rows, start=2):
            raw = {name: _cell_text(value) for name, value in zip(names, row)}
            yield line, _normalize(raw)
    finally:
        workbook.close()


def _parse_trip_records(records: Iterable[Record], today: Optional[date]) -> ParseReport:
    today = today or date.today()
    report = ParseReport()
    for line, values in records:
        if not any(values.values()):
            continue
        missing = _missing(values, TRIP_REQUIRED)
        if missing:
            report.rejects.append(RowReject(line, f"missing {', '.join(missing)}"))
            continue
        status = values.get("status") or DEFAULT_STATUS
        if status not in TRIP_STATUSES:
            report.rejects.append(RowReject(line, f"unknown status '{status}'"))
            continue
        try:
            trip = TripCreate(
                origin=values["origin"],
                destination=values["destination"],
                travel_mode=values.get("travel_mode") or DEFAULT_TRAVEL_MODE,
                date=values.get("date") or today,
                time=values.get("time") or DEFAULT_TIME,
                notes=values.get("notes") or None,
                travelers=(values.get("travelers") or "").split(","),
            )
        except ValidationError as exc:
            report.rejects.append(RowReject(line, _reason(exc)))
            continue
        report.rows.append(
            TripImportRow(
                line=line,
                trip=trip,
                status=status,
                trip_number=values.get("trip_number") or None,
            )
        )
    return report


def _parse_expense_records(records: Iterable[Record]) -> ParseReport:
    report = ParseReport()
    for line, values in records:
        if not any(values.values()):
            continue
        missing = _missing(values, EXPENSE_REQUIRED)
        if missing:
            report.rejects.append(RowReject(line, f"missing {', '.join(missing)}"))
            continue
        try:
            expense = ExpenseIn(
                description=values["description"],
                amount=values["amount"],
                category=values["category"],
                date=values.get("date") or date.today(),
                time=values.get("time") or DEFAULT_TIME,
            )
        except ValidationError as exc:
            report.rejects.append(RowReject(line, _reason(exc)))
            continue
        report.rows.append(
            ExpenseImportRow(line=line, trip_number=values["trip_number"], expense=expense)
        )
    return report


def parse_trips_csv(text: str, today: Optional[date] = None) -> ParseReport:
    return _parse_trip_records(_csv_records(text), today)


def parse_expenses_csv(text: str) -> ParseReport:
    return _parse_expense_records(_csv_records(text))


def parse_trips_xlsx(data: bytes, today: Optional[date] = None) -> ParseReport:
    """Trips from the first sheet of a workbook (export or template layout).

    Raises ValidationFailed when `data` is not a readable workbook.
    """
    return _parse_trip_records(_xlsx_records(data, None), today)


def parse_expenses_xlsx(data: bytes) -> ParseReport:
    return _parse_expense_records(_xlsx_records(data, EXPENSES_SHEET))
