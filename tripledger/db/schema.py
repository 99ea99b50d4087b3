"""Database schema DDL definitions and initialization utilities.

Tables:
  - trips: per-owner trip records with a derived total_expenses_cents column
  - expenses: individual expense records (integer cents)
  - trip_sequences: per-owner trip number counter (never reused)
  - metadata: key/value store (schema version)

The total on a trip is never written by application code: triggers on the
expenses table re-sum the owning trip after every insert, update and delete.
"""

from __future__ import annotations
import sqlite3
from typing import Sequence
from pathlib import Path

BASIC_UTC_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ','now')"

TRIPS_DDL = f"""
CREATE TABLE IF NOT EXISTS trips (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    trip_number TEXT NOT NULL,
    origin TEXT NOT NULL,
    destination TEXT NOT NULL,
    travel_mode TEXT NOT NULL
        CHECK (travel_mode IN ('car','plane','train','bus','walking','other')),
    date TEXT NOT NULL, -- ISO date (YYYY-MM-DD)
    time TEXT NOT NULL, -- HH:MM
    notes TEXT,
    travelers TEXT NOT NULL DEFAULT '[]', -- JSON array of names
    total_expenses_cents INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'planning'
        CHECK (status IN ('planning','in_progress','completed')),
    created_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    updated_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    UNIQUE (owner_id, trip_number)
);
"""

EXPENSES_DDL = f"""
CREATE TABLE IF NOT EXISTS expenses (
    id TEXT PRIMARY KEY,
    trip_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    description TEXT NOT NULL,
    amount_cents INTEGER NOT NULL CHECK (amount_cents >= 0),
    category TEXT NOT NULL
        CHECK (category IN ('transport','food','accommodation','entertainment','other')),
    date TEXT NOT NULL,
    time TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    updated_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    FOREIGN KEY (trip_id) REFERENCES trips(id) ON DELETE CASCADE
);
"""

TRIP_SEQUENCES_DDL = """
CREATE TABLE IF NOT EXISTS trip_sequences (
    owner_id TEXT PRIMARY KEY,
    last_number INTEGER NOT NULL DEFAULT 0
);
"""

METADATA_DDL = f"""
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW})
);
"""

_RESUM_TRIP = """
    UPDATE trips
    SET total_expenses_cents = (
        SELECT COALESCE(SUM(amount_cents), 0) FROM expenses WHERE trip_id = {ref}.trip_id
    )
    WHERE id = {ref}.trip_id;
"""

TRIGGERS_DDL: Sequence[str] = (
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_expenses_total_insert
    AFTER INSERT ON expenses
    BEGIN {_RESUM_TRIP.format(ref="NEW")} END;
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_expenses_total_update
    AFTER UPDATE OF amount_cents ON expenses
    BEGIN {_RESUM_TRIP.format(ref="NEW")} END;
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_expenses_total_delete
    AFTER DELETE ON expenses
    BEGIN {_RESUM_TRIP.format(ref="OLD")} END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_expenses_trip_immutable
    BEFORE UPDATE OF trip_id ON expenses
    WHEN NEW.trip_id IS NOT OLD.trip_id
    BEGIN SELECT RAISE(ABORT, 'expense trip_id is immutable'); END;
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_expenses_touch
    AFTER UPDATE OF description, amount_cents, category, date, time ON expenses
    BEGIN
        UPDATE expenses SET updated_at = ({BASIC_UTC_NOW}) WHERE id = NEW.id;
    END;
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_trips_touch
    AFTER UPDATE OF origin, destination, travel_mode, date, time, notes, travelers,
        status, total_expenses_cents ON trips
    BEGIN
        UPDATE trips SET updated_at = ({BASIC_UTC_NOW}) WHERE id = NEW.id;
    END;
    """,
)

TRIPS_OWNER_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_trips_owner_created ON trips(owner_id, created_at);"
)
TRIPS_STATUS_INDEX_DDL = "CREATE INDEX IF NOT EXISTS idx_trips_status ON trips(status);"
EXPENSES_TRIP_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_expenses_trip_owner ON expenses(trip_id, owner_id);"
)
EXPENSES_CATEGORY_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_expenses_category ON expenses(category);"
)

DDL_ORDER: Sequence[str] = (
    TRIPS_DDL,
    EXPENSES_DDL,
    TRIP_SEQUENCES_DDL,
    METADATA_DDL,
)


def init_db(path: Path) -> None:
    """Create all tables, triggers and indexes idempotently.

    Parameters
    ----------
    path: Path to SQLite database file.
    """
    conn = sqlite3.connect(path)
    try:
        cur = conn.cursor()
        for ddl in DDL_ORDER:
            cur.execute(ddl)
        for ddl in TRIGGERS_DDL:
            cur.execute(ddl)
        for ddl in (
            TRIPS_OWNER_INDEX_DDL,
            TRIPS_STATUS_INDEX_DDL,
            EXPENSES_TRIP_INDEX_DDL,
            EXPENSES_CATEGORY_INDEX_DDL,
        ):
            cur.execute(ddl)
        conn.commit()
    finally:
        conn.close()
