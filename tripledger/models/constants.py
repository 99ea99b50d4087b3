"""Domain constants and enumerations for validation.

Kept as plain string sets plus `Literal` aliases so the same values drive the
pydantic models and the SQLite CHECK constraints.
"""

from typing import Dict, Literal, Set, Tuple

TravelMode = Literal["car", "plane", "train", "bus", "walking", "other"]
ExpenseCategory = Literal["transport", "food", "accommodation", "entertainment", "other"]
TripStatus = Literal["planning", "in_progress", "completed"]

TRAVEL_MODES: Set[str] = {"car", "plane", "train", "bus", "walking", "other"}
CATEGORIES: Set[str] = {"transport", "food", "accommodation", "entertainment", "other"}

# Lifecycle order; transitions may only move forward
TRIP_STATUS_ORDER: Tuple[str, ...] = ("planning", "in_progress", "completed")
TRIP_STATUS_RANK: Dict[str, int] = {s: i for i, s in enumerate(TRIP_STATUS_ORDER)}
TRIP_STATUSES: Set[str] = set(TRIP_STATUS_ORDER)

# Prefix for client-side placeholder expense ids
PLACEHOLDER_PREFIX = "temp-"
