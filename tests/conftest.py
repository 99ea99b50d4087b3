import asyncio
from dataclasses import dataclass
import os
import tempfile
from decimal import Decimal
from typing import Dict, List, Optional

# Importing tripledger.main builds a module-level app; keep its database out of the repo.
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="tripledger-test-"))

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from tripledger.client.coordinator import OptimisticCoordinator
from tripledger.client.procedures import MutationProcedures
from tripledger.client.session import LedgerSession
from tripledger.client.state import LedgerState, ReplaceAll
from tripledger.core.config import Settings
from tripledger.core.errors import NotFound, ValidationFailed
from tripledger.core.security import create_access_token
from tripledger.db.dal import Database
from tripledger.main import create_app
from tripledger.models import ExpenseIn, ExpenseOut, TripCreate, TripOut
from tripledger.models.expense import (
    ExpenseBatchResult,
    ExpenseDeleteResult,
    ExpenseUpdateResult,
    ExpenseWithTotal,
)
from tripledger.routers.health import ATOMIC_PROCEDURES
from tripledger.services.money import total

USER_A = "user-a"
USER_B = "user-b"


@pytest.fixture
def settings(tmp_path) -> Settings:
    s = Settings(
        data_dir=tmp_path,
        db_path=tmp_path / "ledger.sqlite3",
        jwt_secret="test-secret",
        api_base_url="http://testserver",
        refresh_debounce_seconds=60.0,
        refresh_interval_seconds=3600.0,
    )
    s.init_post_load()
    return s


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def db(settings, app) -> Database:
    # `app` applies migrations on the temp database
    return Database(settings.db_path)


@pytest.fixture
def token(settings) -> str:
    return create_access_token(USER_A, settings)


@pytest.fixture
def auth_headers(token) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_headers(settings) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(USER_B, settings)}"}


def trip_payload(**overrides) -> dict:
    payload = {
        "origin": "Mumbai",
        "destination": "Delhi",
        "travel_mode": "plane",
        "date": "2024-01-15",
        "time": "10:30",
        "notes": "Business trip",
        "travelers": ["Asha", "Ravi"],
    }
    payload.update(overrides)
    return payload


def expense_payload(**overrides) -> dict:
    payload = {
        "description": "Lunch",
        "amount": "120.50",
        "category": "food",
        "date": "2024-01-15",
        "time": "13:00",
    }
    payload.update(overrides)
    return payload


def expense_in(**overrides) -> ExpenseIn:
    return ExpenseIn(**expense_payload(**overrides))


# In-memory backend -------------------------------------------------


class FakeBackend:
    """LedgerBackend kept in memory, with hooks to fail or stall calls.

    - ``fail[name] = exc`` makes every call to ``name`` raise ``exc``
    - ``fail_once[name] = exc`` raises once, then behaves normally
    - ``gate`` (an asyncio.Event) holds mutating calls until it is set
    """

    def __init__(self):
        self.token: Optional[str] = None
        self.procedures: List[str] = list(ATOMIC_PROCEDURES)
        self.trips: Dict[str, TripOut] = {}
        self.expenses: Dict[str, ExpenseOut] = {}
        self.calls: List[str] = []
        self.fail: Dict[str, Exception] = {}
        self.fail_once: Dict[str, Exception] = {}
        self.gate: Optional[asyncio.Event] = None
        self._seq = 0
        self._ids = 0

    def set_token(self, token):
        self.token = token

    async def _enter(self, name: str, mutating: bool = True) -> None:
        self.calls.append(name)
        if mutating and self.gate is not None:
            await self.gate.wait()
        if name in self.fail_once:
            raise self.fail_once.pop(name)
        if name in self.fail:
            raise self.fail[name]

    def _next_id(self, prefix: str) -> str:
        self._ids += 1
        return f"{prefix}{self._ids:04d}"

    def _trip(self, trip_id: str) -> TripOut:
        if trip_id not in self.trips:
            raise NotFound("trip not found")
        return self.trips[trip_id]

    def _resum(self, trip_id: str) -> Decimal:
        trip = self.trips[trip_id]
        trip.expenses = sorted(
            (e for e in self.expenses.values() if e.trip_id == trip_id),
            key=lambda e: (e.date, e.time),
            reverse=True,
        )
        trip.total_expenses = total(e.amount for e in trip.expenses)
        return trip.total_expenses

    def seed_trip(self, **overrides) -> TripOut:
        self._seq += 1
        data = TripCreate(**trip_payload(**overrides)).model_dump()
        trip = TripOut(
            id=self._next_id("trip"),
            trip_number=f"TR{self._seq:03d}",
            status="planning",
            total_expenses=Decimal("0.00"),
            created_at="2024-01-01T00:00:00Z",
            updated_at="2024-01-01T00:00:00Z",
            **data,
        )
        self.trips[trip.id] = trip
        return trip

    def seed_expense(self, trip_id: str, **overrides) -> ExpenseOut:
        expense = ExpenseOut(
            id=self._next_id("exp"),
            trip_id=trip_id,
            **expense_in(**overrides).model_dump(),
        )
        self.expenses[expense.id] = expense
        self._resum(trip_id)
        return expense

    # reads
    async def capabilities(self):
        await self._enter("capabilities", mutating=False)
        return list(self.procedures)

    async def list_trips(self):
        await self._enter("list_trips", mutating=False)
        return [t.model_copy(deep=True) for t in self.trips.values()]

    async def get_trip_total(self, trip_id):
        await self._enter("get_trip_total", mutating=False)
        return self._trip(trip_id).total_expenses

    async def get_expense(self, expense_id):
        await self._enter("get_expense", mutating=False)
        if expense_id not in self.expenses:
            raise NotFound("expense not found")
        return self.expenses[expense_id]

    # trips
    async def create_trip(self, trip):
        await self._enter("create_trip")
        return self.seed_trip(**trip.model_dump(mode="json")).model_copy(deep=True)

    async def update_trip(self, trip_id, changes):
        await self._enter("update_trip")
        trip = self._trip(trip_id)
        for name, value in changes.changes().items():
            setattr(trip, name, value)
        return trip.model_copy(deep=True)

    async def _set_status(self, trip_id, status):
        trip = self._trip(trip_id)
        order = ("planning", "in_progress", "completed")
        if order.index(status) < order.index(trip.status):
            raise ValidationFailed("status cannot move backwards")
        trip.status = status
        return trip.model_copy(deep=True)

    async def start_trip(self, trip_id):
        await self._enter("start_trip")
        return await self._set_status(trip_id, "in_progress")

    async def complete_trip(self, trip_id):
        await self._enter("complete_trip")
        return await self._set_status(trip_id, "completed")

    async def delete_trip(self, trip_id):
        await self._enter("delete_trip")
        self._trip(trip_id)
        del self.trips[trip_id]
        for eid in [e.id for e in self.expenses.values() if e.trip_id == trip_id]:
            del self.expenses[eid]

    # expense rows
    async def insert_expense(self, trip_id, expense):
        await self._enter("insert_expense")
        self._trip(trip_id)
        return self.seed_expense(trip_id, **expense.model_dump(mode="json"))

    async def insert_expenses(self, trip_id, expenses):
        await self._enter("insert_expenses")
        self._trip(trip_id)
        return [self.seed_expense(trip_id, **e.model_dump(mode="json")) for e in expenses]

    async def update_expense(self, expense_id, changes):
        await self._enter("update_expense")
        if expense_id not in self.expenses:
            raise NotFound("expense not found")
        updated = changes.apply_to(self.expenses[expense_id])
        self.expenses[expense_id] = updated
        self._resum(updated.trip_id)
        return updated

    async def delete_expense(self, expense_id):
        await self._enter("delete_expense")
        if expense_id not in self.expenses:
            raise NotFound("expense not found")
        trip_id = self.expenses.pop(expense_id).trip_id
        self._resum(trip_id)

    # atomic procedures
    async def add_expense_with_total(self, trip_id, expense):
        await self._enter("add_expense_with_total")
        self._trip(trip_id)
        created = self.seed_expense(trip_id, **expense.model_dump(mode="json"))
        return ExpenseWithTotal(expense=created, new_total=self._resum(trip_id))

    async def update_expense_with_total(self, expense_id, changes):
        await self._enter("update_expense_with_total")
        if expense_id not in self.expenses:
            raise NotFound("expense not found")
        updated = changes.apply_to(self.expenses[expense_id])
        self.expenses[expense_id] = updated
        return ExpenseUpdateResult(
            expense=updated, new_total=self._resum(updated.trip_id), trip_id=updated.trip_id
        )

    async def delete_expense_with_total(self, expense_id):
        await self._enter("delete_expense_with_total")
        if expense_id not in self.expenses:
            raise NotFound("expense not found")
        trip_id = self.expenses.pop(expense_id).trip_id
        return ExpenseDeleteResult(new_total=self._resum(trip_id), trip_id=trip_id)

    async def batch_add_expenses(self, trip_id, expenses):
        await self._enter("batch_add_expenses")
        self._trip(trip_id)
        created = [self.seed_expense(trip_id, **e.model_dump(mode="json")) for e in expenses]
        return ExpenseBatchResult(
            expenses=created, new_total=self._resum(trip_id), count=len(created)
        )


class RecordingRefresh:
    def __init__(self):
        self.requests = 0

    def request_refresh(self):
        self.requests += 1


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@dataclass
class Ledger:
    coordinator: OptimisticCoordinator
    state: LedgerState
    backend: FakeBackend
    trip_id: str
    refresh: RecordingRefresh
    clock: FakeClock


@pytest.fixture
def ledger(fake_backend) -> Ledger:
    """Coordinator over a fake backend with one seeded trip already loaded."""
    trip = fake_backend.seed_trip()
    state = LedgerState()
    state.apply(ReplaceAll([t.model_copy(deep=True) for t in fake_backend.trips.values()]))
    refresh = RecordingRefresh()
    clock = FakeClock()
    coordinator = OptimisticCoordinator(
        state,
        MutationProcedures(fake_backend, mode="auto"),
        fake_backend,
        is_authenticated=lambda: True,
        refresh=refresh,
        timeout=0.5,
        dedupe_window=1.0,
        clock=clock,
    )
    return Ledger(coordinator, state, fake_backend, trip.id, refresh, clock)


@pytest_asyncio.fixture
async def session(app, settings, token):
    """Real client stack talking to the in-process app."""
    transport = httpx.ASGITransport(app=app)
    s = LedgerSession(settings, transport=transport)
    await s.sign_in(token)
    try:
        yield s
    finally:
        await s.aclose()
