"""Data Access Layer for the trip ledger.

Responsibilities
----------------
- Provide owner-scoped CRUD helpers for trips and expenses. A row that exists
  but belongs to someone else is reported exactly like a missing row
  (`NotFound`).
- Offer the atomic procedures (mutate expense + read re-summed total in one
  transaction) next to the plain row operations the manual path uses.
- Never write `trips.total_expenses_cents` directly; the schema triggers own it.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date, time
from decimal import Decimal
import json
from pathlib import Path
import sqlite3
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple
import uuid

from tripledger.core.errors import NotFound, ValidationFailed
from tripledger.models import ExpenseIn
from tripledger.models.constants import TRIP_STATUS_RANK
from tripledger.services.money import from_cents, to_cents

UTC_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ','now')"
EXPENSE_ORDER_SQL = "ORDER BY date DESC, time DESC, created_at DESC, id DESC"

_EXPENSE_COLUMNS = {
    "description": "description",
    "amount": "amount_cents",
    "category": "category",
    "date": "date",
    "time": "time",
}
_TRIP_COLUMNS = (
    "origin",
    "destination",
    "travel_mode",
    "date",
    "time",
    "notes",
    "travelers",
    "status",
)


def _new_id() -> str:
    return uuid.uuid4().hex


def _db_value(field: str, value: Any) -> Any:
    if field == "amount":
        return to_cents(value)
    if field == "travelers":
        return json.dumps(list(value or []))
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if isinstance(value, date):
        return value.isoformat()
    return value


def expense_from_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "trip_id": row["trip_id"],
        "description": row["description"],
        "amount": from_cents(row["amount_cents"]),
        "category": row["category"],
        "date": row["date"],
        "time": row["time"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def trip_from_row(
    row: Mapping[str, Any], expenses: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    try:
        travelers = json.loads(row["travelers"]) if row["travelers"] else []
    except (json.JSONDecodeError, TypeError):
        travelers = []
    return {
        "id": row["id"],
        "trip_number": row["trip_number"],
        "origin": row["origin"],
        "destination": row["destination"],
        "travel_mode": row["travel_mode"],
        "date": row["date"],
        "time": row["time"],
        "notes": row["notes"],
        "travelers": travelers,
        "status": row["status"],
        "total_expenses": from_cents(row["total_expenses_cents"]),
        "expenses": expenses if expenses is not None else [],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


class Database:
    def __init__(
        self,
        db_path: Path,
        trip_number_prefix: str = "TR",
        trip_number_width: int = 3,
    ):
        self.db_path = db_path
        self.trip_number_prefix = trip_number_prefix
        self.trip_number_width = trip_number_width

    # ------------------------------------------------------------------
    # Connection helpers
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Write transaction; takes the write lock up front so the mutation and
        the trigger-driven re-sum are serialized against other writers."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn.cursor()
            except sqlite3.IntegrityError as exc:
                conn.execute("ROLLBACK")
                raise ValidationFailed(f"rejected by ledger constraints: {exc}") from exc
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Cursor]:
        conn = self._connect()
        try:
            yield conn.cursor()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Ownership checks
    def _require_trip(self, cur: sqlite3.Cursor, owner_id: str, trip_id: str) -> sqlite3.Row:
        cur.execute(
            "SELECT * FROM trips WHERE id = ? AND owner_id = ?",
            (trip_id, owner_id),
        )
        row = cur.fetchone()
        if row is None:
            raise NotFound("trip not found")
        return row

    def _require_expense(
        self, cur: sqlite3.Cursor, owner_id: str, expense_id: str
    ) -> sqlite3.Row:
        cur.execute(
            "SELECT * FROM expenses WHERE id = ? AND owner_id = ?",
            (expense_id, owner_id),
        )
        row = cur.fetchone()
        if row is None:
            raise NotFound("expense not found")
        return row

    def _trip_total(self, cur: sqlite3.Cursor, trip_id: str) -> Decimal:
        cur.execute("SELECT total_expenses_cents FROM trips WHERE id = ?", (trip_id,))
        row = cur.fetchone()
        if row is None:
            raise NotFound("trip not found")
        return from_cents(row[0])

    def _trip_expenses(
        self,
        cur: sqlite3.Cursor,
        trip_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        sql = f"SELECT * FROM expenses WHERE trip_id = ? {EXPENSE_ORDER_SQL}"
        params: List[Any] = [trip_id]
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        cur.execute(sql, params)
        return [expense_from_row(r) for r in cur.fetchall()]

    # ------------------------------------------------------------------
    # Trip numbering
    def _next_trip_number(self, cur: sqlite3.Cursor, owner_id: str) -> str:
        cur.execute(
            """
            INSERT INTO trip_sequences (owner_id, last_number) VALUES (?, 1)
            ON CONFLICT(owner_id) DO UPDATE SET last_number = last_number + 1
            """,
            (owner_id,),
        )
        cur.execute(
            "SELECT last_number FROM trip_sequences WHERE owner_id = ?", (owner_id,)
        )
        number = int(cur.fetchone()[0])
        return f"{self.trip_number_prefix}{number:0{self.trip_number_width}d}"

    # ------------------------------------------------------------------
    # Trip CRUD
    def create_trip(
        self,
        owner_id: str,
        *,
        origin: str,
        destination: str,
        travel_mode: str,
        date: date,
        time: time,
        notes: Optional[str] = None,
        travelers: Sequence[str] = (),
    ) -> Dict[str, Any]:
        trip_id = _new_id()
        with self._transaction() as cur:
            trip_number = self._next_trip_number(cur, owner_id)
            cur.execute(
                f"""
                INSERT INTO trips (
                    id, owner_id, trip_number, origin, destination, travel_mode,
                    date, time, notes, travelers, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'planning', ({UTC_NOW_SQL}), ({UTC_NOW_SQL}))
                """,
                (
                    trip_id,
                    owner_id,
                    trip_number,
                    origin,
                    destination,
                    travel_mode,
                    _db_value("date", date),
                    _db_value("time", time),
                    notes,
                    _db_value("travelers", travelers),
                ),
            )
            row = self._require_trip(cur, owner_id, trip_id)
            return trip_from_row(row)

    def get_trip(
        self, owner_id: str, trip_id: str, with_expenses: bool = True
    ) -> Optional[Dict[str, Any]]:
        with self._reader() as cur:
            cur.execute(
                "SELECT * FROM trips WHERE id = ? AND owner_id = ?",
                (trip_id, owner_id),
            )
            row = cur.fetchone()
            if row is None:
                return None
            expenses = self._trip_expenses(cur, trip_id) if with_expenses else []
            return trip_from_row(row, expenses)

    def list_trips(self, owner_id: str) -> List[Dict[str, Any]]:
        """All trips for the owner with nested expenses, newest trip first."""
        with self._reader() as cur:
            cur.execute(
                """
                SELECT * FROM trips WHERE owner_id = ?
                ORDER BY created_at DESC, trip_number DESC
                """,
                (owner_id,),
            )
            trips = cur.fetchall()
            cur.execute(
                f"SELECT * FROM expenses WHERE owner_id = ? {EXPENSE_ORDER_SQL}",
                (owner_id,),
            )
            by_trip: Dict[str, List[Dict[str, Any]]] = {}
            for r in cur.fetchall():
                by_trip.setdefault(r["trip_id"], []).append(expense_from_row(r))
            return [trip_from_row(t, by_trip.get(t["id"], [])) for t in trips]

    def update_trip(
        self, owner_id: str, trip_id: str, changes: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Apply a partial update; status may only move forward."""
        unknown = set(changes) - set(_TRIP_COLUMNS)
        if unknown:
            raise ValidationFailed(f"unknown trip fields: {', '.join(sorted(unknown))}")
        with self._transaction() as cur:
            row = self._require_trip(cur, owner_id, trip_id)
            new_status = changes.get("status")
            if new_status is not None:
                if new_status not in TRIP_STATUS_RANK:
                    raise ValidationFailed(f"unsupported trip status '{new_status}'")
                if TRIP_STATUS_RANK[new_status] < TRIP_STATUS_RANK[row["status"]]:
                    raise ValidationFailed(
                        f"cannot move trip from '{row['status']}' back to '{new_status}'"
                    )
            if changes:
                assignments = ", ".join(f"{col} = ?" for col in changes)
                cur.execute(
                    f"UPDATE trips SET {assignments} WHERE id = ? AND owner_id = ?",
                    (
                        *(_db_value(col, val) for col, val in changes.items()),
                        trip_id,
                        owner_id,
                    ),
                )
            row = self._require_trip(cur, owner_id, trip_id)
            return trip_from_row(row, self._trip_expenses(cur, trip_id))

    def set_trip_status(self, owner_id: str, trip_id: str, status: str) -> Dict[str, Any]:
        return self.update_trip(owner_id, trip_id, {"status": status})

    def delete_trip(self, owner_id: str, trip_id: str) -> None:
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM trips WHERE id = ? AND owner_id = ?", (trip_id, owner_id)
            )
            if cur.rowcount == 0:
                raise NotFound("trip not found")

    def get_trip_total(self, owner_id: str, trip_id: str) -> Decimal:
        with self._reader() as cur:
            self._require_trip(cur, owner_id, trip_id)
            return self._trip_total(cur, trip_id)

    # ------------------------------------------------------------------
    # Expense rows (manual path building blocks)
    def _insert_expense_row(
        self, cur: sqlite3.Cursor, owner_id: str, trip_id: str, expense: ExpenseIn
    ) -> Dict[str, Any]:
        expense_id = _new_id()
        cur.execute(
            f"""
            INSERT INTO expenses (
                id, trip_id, owner_id, description, amount_cents, category, date, time,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ({UTC_NOW_SQL}), ({UTC_NOW_SQL}))
            """,
            (
                expense_id,
                trip_id,
                owner_id,
                expense.description,
                _db_value("amount", expense.amount),
                expense.category,
                _db_value("date", expense.date),
                _db_value("time", expense.time),
            ),
        )
        return expense_from_row(self._require_expense(cur, owner_id, expense_id))

    def _update_expense_row(
        self,
        cur: sqlite3.Cursor,
        owner_id: str,
        expense_id: str,
        changes: Mapping[str, Any],
    ) -> Dict[str, Any]:
        unknown = set(changes) - set(_EXPENSE_COLUMNS)
        if unknown:
            raise ValidationFailed(f"unknown expense fields: {', '.join(sorted(unknown))}")
        self._require_expense(cur, owner_id, expense_id)
        if changes:
            assignments = ", ".join(f"{_EXPENSE_COLUMNS[f]} = ?" for f in changes)
            cur.execute(
                f"UPDATE expenses SET {assignments} WHERE id = ? AND owner_id = ?",
                (
                    *(_db_value(f, v) for f, v in changes.items()),
                    expense_id,
                    owner_id,
                ),
            )
        return expense_from_row(self._require_expense(cur, owner_id, expense_id))

    def get_expense(self, owner_id: str, expense_id: str) -> Optional[Dict[str, Any]]:
        with self._reader() as cur:
            cur.execute(
                "SELECT * FROM expenses WHERE id = ? AND owner_id = ?",
                (expense_id, owner_id),
            )
            row = cur.fetchone()
            return expense_from_row(row) if row else None

    def list_expenses(self, owner_id: str, trip_id: str) -> List[Dict[str, Any]]:
        with self._reader() as cur:
            self._require_trip(cur, owner_id, trip_id)
            return self._trip_expenses(cur, trip_id)

    def insert_expense(
        self, owner_id: str, trip_id: str, expense: ExpenseIn
    ) -> Dict[str, Any]:
        with self._transaction() as cur:
            self._require_trip(cur, owner_id, trip_id)
            return self._insert_expense_row(cur, owner_id, trip_id, expense)

    def insert_expenses(
        self, owner_id: str, trip_id: str, expenses: Sequence[ExpenseIn]
    ) -> List[Dict[str, Any]]:
        with self._transaction() as cur:
            self._require_trip(cur, owner_id, trip_id)
            return [self._insert_expense_row(cur, owner_id, trip_id, e) for e in expenses]

    def update_expense(
        self, owner_id: str, expense_id: str, changes: Mapping[str, Any]
    ) -> Dict[str, Any]:
        with self._transaction() as cur:
            return self._update_expense_row(cur, owner_id, expense_id, changes)

    def delete_expense(self, owner_id: str, expense_id: str) -> str:
        """Delete one expense row and return the id of the trip it belonged to."""
        with self._transaction() as cur:
            row = self._require_expense(cur, owner_id, expense_id)
            cur.execute(
                "DELETE FROM expenses WHERE id = ? AND owner_id = ?",
                (expense_id, owner_id),
            )
            return row["trip_id"]

    # ------------------------------------------------------------------
    # Atomic procedures: mutation + re-summed total in one transaction
    def add_expense_with_total(
        self, owner_id: str, trip_id: str, expense: ExpenseIn
    ) -> Tuple[Dict[str, Any], Decimal]:
        with self._transaction() as cur:
            self._require_trip(cur, owner_id, trip_id)
            created = self._insert_expense_row(cur, owner_id, trip_id, expense)
            return created, self._trip_total(cur, trip_id)

    def update_expense_with_total(
        self, owner_id: str, expense_id: str, changes: Mapping[str, Any]
    ) -> Tuple[Dict[str, Any], Decimal, str]:
        with self._transaction() as cur:
            updated = self._update_expense_row(cur, owner_id, expense_id, changes)
            trip_id = updated["trip_id"]
            return updated, self._trip_total(cur, trip_id), trip_id

    def delete_expense_with_total(
        self, owner_id: str, expense_id: str
    ) -> Tuple[Decimal, str]:
        with self._transaction() as cur:
            row = self._require_expense(cur, owner_id, expense_id)
            trip_id = row["trip_id"]
            cur.execute(
                "DELETE FROM expenses WHERE id = ? AND owner_id = ?",
                (expense_id, owner_id),
            )
            return self._trip_total(cur, trip_id), trip_id

    def batch_add_expenses(
        self, owner_id: str, trip_id: str, expenses: Sequence[ExpenseIn]
    ) -> Tuple[List[Dict[str, Any]], Decimal]:
        """Insert every row or none; one total read at the end."""
        if not expenses:
            raise ValidationFailed("batch must contain at least one expense")
        with self._transaction() as cur:
            self._require_trip(cur, owner_id, trip_id)
            created = []
            for index, expense in enumerate(expenses):
                try:
                    created.append(self._insert_expense_row(cur, owner_id, trip_id, expense))
                except sqlite3.IntegrityError as exc:
                    raise ValidationFailed(
                        f"batch row {index} rejected: {exc}", detail={"row": index}
                    ) from exc
            return created, self._trip_total(cur, trip_id)

    # ------------------------------------------------------------------
    # Read procedures
    def get_trip_expenses_with_stats(
        self, owner_id: str, trip_id: str, limit: int = 50, offset: int = 0
    ) -> Dict[str, Any]:
        with self._reader() as cur:
            self._require_trip(cur, owner_id, trip_id)
            cur.execute("SELECT COUNT(*) FROM expenses WHERE trip_id = ?", (trip_id,))
            count = int(cur.fetchone()[0])
            return {
                "expenses": self._trip_expenses(cur, trip_id, limit=limit, offset=offset),
                "total_amount": self._trip_total(cur, trip_id),
                "total_count": count,
                "limit": limit,
                "offset": offset,
                "has_more": count > offset + limit,
            }

    def get_expense_stats_by_category(
        self, owner_id: str, trip_id: str
    ) -> List[Dict[str, Any]]:
        with self._reader() as cur:
            self._require_trip(cur, owner_id, trip_id)
            cur.execute(
                """
                SELECT category, SUM(amount_cents) AS total_cents, COUNT(*) AS n
                FROM expenses
                WHERE trip_id = ?
                GROUP BY category
                ORDER BY total_cents DESC, category
                """,
                (trip_id,),
            )
            stats = []
            for r in cur.fetchall():
                total = from_cents(r["total_cents"])
                stats.append(
                    {
                        "category": r["category"],
                        "total_amount": total,
                        "count": int(r["n"]),
                        "avg_amount": from_cents(round(r["total_cents"] / r["n"])),
                    }
                )
            return stats

    def get_dashboard_stats(self, owner_id: str) -> Dict[str, Any]:
        with self._reader() as cur:
            cur.execute(
                """
                SELECT status, COUNT(*) AS n, COALESCE(SUM(total_expenses_cents), 0) AS cents
                FROM trips WHERE owner_id = ? GROUP BY status
                """,
                (owner_id,),
            )
            counts = {"planning": 0, "in_progress": 0, "completed": 0}
            cents = 0
            for r in cur.fetchall():
                counts[r["status"]] = int(r["n"])
                cents += int(r["cents"])
            return {
                "total_trips": sum(counts.values()),
                "total_expenses": from_cents(cents),
                **counts,
            }


__all__ = ["Database", "expense_from_row", "trip_from_row"]
