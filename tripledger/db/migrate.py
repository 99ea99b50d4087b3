"""Database migration utilities.

Handles schema evolution by applying idempotent migrations keyed by an integer
`schema_version` stored in the metadata table. Each migration upgrades the
SQLite schema in-place while preserving user data.
"""

from __future__ import annotations
from pathlib import Path
import logging
import re
import sqlite3
from typing import Optional

from . import schema as schema_def
from .schema import init_db

CURRENT_SCHEMA_VERSION = 2
SCHEMA_VERSION_KEY = "schema_version"
_TRIP_NUMBER_DIGITS = re.compile(r"(\d+)$")

logger = logging.getLogger("tripledger.db.migrate")


def _get_schema_version(conn: sqlite3.Connection) -> Optional[int]:
    try:
        cur = conn.cursor()
        cur.execute("SELECT value FROM metadata WHERE key=?", (SCHEMA_VERSION_KEY,))
        row = cur.fetchone()
        if row:
            return int(row[0])
    except sqlite3.OperationalError:
        # metadata table may not exist yet (first run before init_db)
        return None
    return None


def get_schema_version(db_path: Path) -> Optional[int]:
    conn = sqlite3.connect(db_path)
    try:
        return _get_schema_version(conn)
    finally:
        conn.close()


def apply_migrations(db_path: Path) -> int:
    """Apply required migrations and return resulting schema version."""
    init_db(db_path)
    conn = sqlite3.connect(db_path)
    try:
        version = _get_schema_version(conn) or 1
        if version < 2:
            _migrate_to_v2(conn)
            version = 2
        _set_schema_version(conn, version)
        conn.commit()
        return version
    finally:
        conn.close()


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO metadata (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value, "
        f"updated_at=({schema_def.BASIC_UTC_NOW})",
        (SCHEMA_VERSION_KEY, str(version)),
    )


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    """Upgrade schema to version 2 (per-owner trip sequences, total repair).

    Version 1 numbered trips as count+1, which repeats numbers after a delete.
    Seed each owner's sequence with the highest number already issued, then
    re-sum every trip total so stored totals match their expense rows.
    """
    cur = conn.cursor()
    try:
        _seed_trip_sequences(cur)
        repaired = recompute_totals(cur)
        if repaired:
            logger.info("repaired %d trip totals during migration", repaired)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _seed_trip_sequences(cur: sqlite3.Cursor) -> None:
    cur.execute("SELECT owner_id, trip_number FROM trips")
    highest: dict[str, int] = {}
    for owner_id, trip_number in cur.fetchall():
        match = _TRIP_NUMBER_DIGITS.search(trip_number or "")
        if not match:
            continue
        highest[owner_id] = max(highest.get(owner_id, 0), int(match.group(1)))
    for owner_id, number in highest.items():
        cur.execute(
            """
            INSERT INTO trip_sequences (owner_id, last_number) VALUES (?, ?)
            ON CONFLICT(owner_id) DO UPDATE SET
                last_number = MAX(last_number, excluded.last_number)
            """,
            (owner_id, number),
        )


def recompute_totals(cur: sqlite3.Cursor) -> int:
    """Re-sum every trip total from its expenses; return the number of trips fixed."""
    cur.execute(
        """
        UPDATE trips
        SET total_expenses_cents = (
            SELECT COALESCE(SUM(amount_cents), 0) FROM expenses WHERE expenses.trip_id = trips.id
        )
        WHERE total_expenses_cents != (
            SELECT COALESCE(SUM(amount_cents), 0) FROM expenses WHERE expenses.trip_id = trips.id
        )
        """
    )
    return cur.rowcount
