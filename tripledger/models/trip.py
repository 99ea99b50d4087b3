from __future__ import annotations

from datetime import date as Date, datetime, time as Time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import TravelMode, TripStatus
from .expense import ExpenseOut

TRIP_UPDATABLE_FIELDS = (
    "origin",
    "destination",
    "travel_mode",
    "date",
    "time",
    "notes",
    "travelers",
    "status",
)


def _clean_travelers(travelers: Optional[List[str]]) -> Optional[List[str]]:
    if travelers is None:
        return None
    # Keep order, drop blanks
    return [name.strip() for name in travelers if name and name.strip()]


class TripBase(BaseModel):
    origin: str
    destination: str
    travel_mode: TravelMode = "car"
    date: Date
    time: Time
    notes: Optional[str] = None
    travelers: List[str] = Field(default_factory=list)

    @field_validator("origin", "destination")
    @classmethod
    def _place_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("origin and destination cannot be empty")
        return value.strip()

    @field_validator("travelers")
    @classmethod
    def _travelers(cls, travelers: List[str]) -> List[str]:
        return _clean_travelers(travelers) or []

    @field_validator("time")
    @classmethod
    def _minute_precision(cls, v: Time) -> Time:
        return v.replace(second=0, microsecond=0, tzinfo=None)


class TripCreate(TripBase):
    pass


class TripUpdate(BaseModel):
    origin: Optional[str] = None
    destination: Optional[str] = None
    travel_mode: Optional[TravelMode] = None
    date: Optional[Date] = None
    time: Optional[Time] = None
    notes: Optional[str] = None
    travelers: Optional[List[str]] = None
    status: Optional[TripStatus] = None

    @field_validator("origin", "destination")
    @classmethod
    def _place_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("origin and destination cannot be empty")
        return value.strip() if value is not None else None

    @field_validator("travelers")
    @classmethod
    def _travelers(cls, travelers: Optional[List[str]]) -> Optional[List[str]]:
        return _clean_travelers(travelers)

    @model_validator(mode="after")
    def _at_least_one(self) -> "TripUpdate":
        present = self.model_fields_set & set(TRIP_UPDATABLE_FIELDS)
        if not present:
            raise ValueError("at least one field must be provided")
        # notes may be cleared; everything else is a required column
        nulls = sorted(f for f in present if f != "notes" and getattr(self, f) is None)
        if nulls:
            raise ValueError(f"fields cannot be null: {', '.join(nulls)}")
        return self

    def changes(self) -> Dict[str, Any]:
        return {f: getattr(self, f) for f in TRIP_UPDATABLE_FIELDS if f in self.model_fields_set}


class TripOut(TripBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    trip_number: str
    status: TripStatus
    total_expenses: Decimal
    expenses: List[ExpenseOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class TripStats(BaseModel):
    total_trips: int
    total_expenses: Decimal
    planning: int
    in_progress: int
    completed: int
