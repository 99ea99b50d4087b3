"""Client-side ledger cache.

`LedgerState` owns the trips (with nested expenses) of the signed-in user.
Every change goes through `apply()`, which takes one or more commands and
applies them in order. Expense commands keep the trip total in step with the
records by adding or subtracting the amounts they move, so an inverse command
restores the previous total exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import List, Optional, Sequence, Tuple, Union

from tripledger.models import ExpenseOut, TripOut
from tripledger.models.constants import PLACEHOLDER_PREFIX
from tripledger.services.money import ZERO, round2, total

logger = logging.getLogger("tripledger.client.state")


@dataclass(frozen=True)
class ReplaceAll:
    trips: Sequence[TripOut]


@dataclass(frozen=True)
class UpsertTrip:
    trip: TripOut


@dataclass(frozen=True)
class RemoveTrip:
    trip_id: str


@dataclass(frozen=True)
class InsertExpense:
    """Insert at the display position, or at `index` when given."""

    trip_id: str
    expense: ExpenseOut
    index: Optional[int] = None


@dataclass(frozen=True)
class ReplaceExpense:
    """Swap the record with id `old_id` for `expense`.

    If `expense.id` is already present that record is the one replaced and any
    `old_id` record is dropped. If neither is present the record is inserted.
    A record whose date or time changed moves to its display position.
    """

    trip_id: str
    old_id: str
    expense: ExpenseOut


@dataclass(frozen=True)
class RemoveExpense:
    trip_id: str
    expense_id: str


@dataclass(frozen=True)
class RestoreExpense:
    """Put a captured record back at its captured index."""

    trip_id: str
    expense: ExpenseOut
    index: int


@dataclass(frozen=True)
class SetTotal:
    trip_id: str
    total: Decimal


Command = Union[
    ReplaceAll,
    UpsertTrip,
    RemoveTrip,
    InsertExpense,
    ReplaceExpense,
    RemoveExpense,
    RestoreExpense,
    SetTotal,
]


@dataclass(frozen=True)
class ExpenseSnapshot:
    """Where a record sat before a mutation.

    No total is kept: restoring the record with `RestoreExpense` moves the trip
    total back by the same delta, which is exact.
    """

    trip_id: str
    index: int
    expense: ExpenseOut


def is_placeholder(expense_id: str) -> bool:
    return expense_id.startswith(PLACEHOLDER_PREFIX)


def _display_key(expense: ExpenseOut) -> Tuple:
    return (expense.date, expense.time)


class LedgerState:
    def __init__(self) -> None:
        self._trips: List[TripOut] = []
        # bumped on every wholesale replacement
        self.generation = 0
        # bumped on every applied command
        self.revision = 0

    # ------------------------------------------------------------------
    # Reads
    @property
    def trips(self) -> List[TripOut]:
        return list(self._trips)

    def get_trip(self, trip_id: str) -> Optional[TripOut]:
        for trip in self._trips:
            if trip.id == trip_id:
                return trip
        return None

    def trip_by_number(self, trip_number: str) -> Optional[TripOut]:
        for trip in self._trips:
            if trip.trip_number == trip_number:
                return trip
        return None

    def total(self, trip_id: str) -> Optional[Decimal]:
        trip = self.get_trip(trip_id)
        return trip.total_expenses if trip else None

    def local_sum(self, trip_id: str) -> Decimal:
        trip = self.get_trip(trip_id)
        return total(e.amount for e in trip.expenses) if trip else ZERO

    def find_expense(self, expense_id: str) -> Optional[Tuple[TripOut, int, ExpenseOut]]:
        for trip in self._trips:
            for index, expense in enumerate(trip.expenses):
                if expense.id == expense_id:
                    return trip, index, expense
        return None

    def snapshot(self, expense_id: str) -> Optional[ExpenseSnapshot]:
        found = self.find_expense(expense_id)
        if found is None:
            return None
        trip, index, expense = found
        return ExpenseSnapshot(trip.id, index, expense)

    def is_consistent(self) -> bool:
        """True when every trip total equals the sum of its records."""
        return all(t.total_expenses == self.local_sum(t.id) for t in self._trips)

    # ------------------------------------------------------------------
    # Writes
    def apply(self, *commands: Command) -> None:
        for command in commands:
            handler = getattr(self, f"_apply_{type(command).__name__}", None)
            if handler is None:
                raise TypeError(f"unsupported state command {command!r}")
            handler(command)
            self.revision += 1

    def _apply_ReplaceAll(self, cmd: ReplaceAll) -> None:
        self._trips = [t.model_copy(deep=True) for t in cmd.trips]
        self.generation += 1

    def _apply_UpsertTrip(self, cmd: UpsertTrip) -> None:
        trip = cmd.trip.model_copy(deep=True)
        for index, existing in enumerate(self._trips):
            if existing.id == trip.id:
                self._trips[index] = trip
                return
        self._trips.insert(0, trip)

    def _apply_RemoveTrip(self, cmd: RemoveTrip) -> None:
        self._trips = [t for t in self._trips if t.id != cmd.trip_id]

    def _apply_InsertExpense(self, cmd: InsertExpense) -> None:
        trip = self.get_trip(cmd.trip_id)
        if trip is None:
            logger.debug("insert into unknown trip %s ignored", cmd.trip_id)
            return
        index = cmd.index if cmd.index is not None else self._display_index(trip, cmd.expense)
        index = max(0, min(index, len(trip.expenses)))
        trip.expenses.insert(index, cmd.expense)
        trip.total_expenses = round2(trip.total_expenses + cmd.expense.amount)

    def _apply_ReplaceExpense(self, cmd: ReplaceExpense) -> None:
        trip = self.get_trip(cmd.trip_id)
        if trip is None:
            return
        target = cmd.expense.id if self._index_of(trip, cmd.expense.id) is not None else cmd.old_id
        if target != cmd.old_id:
            self._apply_RemoveExpense(RemoveExpense(cmd.trip_id, cmd.old_id))
        index = self._index_of(trip, target)
        if index is None:
            self._apply_InsertExpense(InsertExpense(cmd.trip_id, cmd.expense))
            return
        previous = trip.expenses[index]
        if _display_key(previous) != _display_key(cmd.expense):
            trip.expenses.pop(index)
            index = self._display_index(trip, cmd.expense)
            trip.expenses.insert(index, cmd.expense)
        else:
            trip.expenses[index] = cmd.expense
        trip.total_expenses = round2(trip.total_expenses - previous.amount + cmd.expense.amount)

    def _apply_RemoveExpense(self, cmd: RemoveExpense) -> None:
        trip = self.get_trip(cmd.trip_id)
        if trip is None:
            return
        index = self._index_of(trip, cmd.expense_id)
        if index is None:
            return
        removed = trip.expenses.pop(index)
        trip.total_expenses = round2(trip.total_expenses - removed.amount)

    def _apply_RestoreExpense(self, cmd: RestoreExpense) -> None:
        self._apply_RemoveExpense(RemoveExpense(cmd.trip_id, cmd.expense.id))
        self._apply_InsertExpense(InsertExpense(cmd.trip_id, cmd.expense, cmd.index))

    def _apply_SetTotal(self, cmd: SetTotal) -> None:
        trip = self.get_trip(cmd.trip_id)
        if trip is not None:
            trip.total_expenses = round2(cmd.total)

    # ------------------------------------------------------------------
    @staticmethod
    def _index_of(trip: TripOut, expense_id: str) -> Optional[int]:
        for index, expense in enumerate(trip.expenses):
            if expense.id == expense_id:
                return index
        return None

    @staticmethod
    def _display_index(trip: TripOut, expense: ExpenseOut) -> int:
        # newest first; a new record goes ahead of records with the same date/time
        key = _display_key(expense)
        for index, existing in enumerate(trip.expenses):
            if _display_key(existing) <= key:
                return index
        return len(trip.expenses)

