"""CSV and Excel import through the coordinator.

Each parsed row becomes its own mutation so one bad row never blocks the
rest; the summary lists what was created and why each other row was not.
Rows carry a per-import nonce, so two identical rows create two records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
import logging
from typing import List, Optional
import uuid

from tripledger.services.import_export import (
    ParseReport,
    RowReject,
    parse_expenses_csv,
    parse_expenses_xlsx,
    parse_trips_csv,
    parse_trips_xlsx,
)

from .coordinator import OptimisticCoordinator

logger = logging.getLogger("tripledger.client.importer")

_STATUS_STEPS = {
    "planning": (),
    "in_progress": ("start_trip",),
    "completed": ("start_trip", "complete_trip"),
}


@dataclass
class ImportSummary:
    created: List[str] = field(default_factory=list)
    failures: List[RowReject] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


async def _create_trips(coordinator: OptimisticCoordinator, report: ParseReport) -> ImportSummary:
    run = uuid.uuid4().hex
    summary = ImportSummary(failures=list(report.rejects))
    for row in report.rows:
        result = await coordinator.create_trip(row.trip, nonce=f"{run}:{row.line}")
        if not result.ok:
            summary.failures.append(RowReject(row.line, str(result.error)))
            continue
        trip_id = result.trip.id
        summary.created.append(trip_id)
        for step in _STATUS_STEPS[row.status]:
            moved = await getattr(coordinator, step)(trip_id)
            if not moved.ok:
                summary.failures.append(
                    RowReject(row.line, f"created, but {step} failed: {moved.error}")
                )
                break
    logger.info(
        "trip import: %d created, %d failed", len(summary.created), len(summary.failures)
    )
    return summary


async def _add_expenses(coordinator: OptimisticCoordinator, report: ParseReport) -> ImportSummary:
    run = uuid.uuid4().hex
    summary = ImportSummary(failures=list(report.rejects))
    for row in report.rows:
        trip = coordinator.state.trip_by_number(row.trip_number)
        if trip is None:
            summary.failures.append(RowReject(row.line, f"unknown trip_number '{row.trip_number}'"))
            continue
        result = await coordinator.add_expense(trip.id, row.expense, nonce=f"{run}:{row.line}")
        if not result.ok:
            summary.failures.append(RowReject(row.line, str(result.error)))
            continue
        summary.created.append(result.expense.id)
    logger.info(
        "expense import: %d created, %d failed", len(summary.created), len(summary.failures)
    )
    return summary


async def import_trips(
    coordinator: OptimisticCoordinator, text: str, today: Optional[date] = None
) -> ImportSummary:
    return await _create_trips(coordinator, parse_trips_csv(text, today=today))


async def import_trips_xlsx(
    coordinator: OptimisticCoordinator, data: bytes, today: Optional[date] = None
) -> ImportSummary:
    return await _create_trips(coordinator, parse_trips_xlsx(data, today=today))


async def import_expenses(coordinator: OptimisticCoordinator, text: str) -> ImportSummary:
    return await _add_expenses(coordinator, parse_expenses_csv(text))


async def import_expenses_xlsx(coordinator: OptimisticCoordinator, data: bytes) -> ImportSummary:
    return await _add_expenses(coordinator, parse_expenses_xlsx(data))
