"""Pydantic domain models for the trip ledger."""

from .constants import (
    CATEGORIES,
    TRAVEL_MODES,
    TRIP_STATUSES,
    TRIP_STATUS_ORDER,
)  # re-export
from .expense import ExpenseIn, ExpenseOut, ExpenseUpdate
from .trip import TripCreate, TripOut, TripStats, TripUpdate

__all__ = [
    "CATEGORIES",
    "TRAVEL_MODES",
    "TRIP_STATUSES",
    "TRIP_STATUS_ORDER",
    "ExpenseIn",
    "ExpenseOut",
    "ExpenseUpdate",
    "TripCreate",
    "TripOut",
    "TripStats",
    "TripUpdate",
]
