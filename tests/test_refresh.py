import asyncio
from decimal import Decimal

import pytest

from conftest import expense_in
from tripledger.client.refresh import RefreshScheduler
from tripledger.client.state import LedgerState, ReplaceAll
from tripledger.core.errors import TransientUnavailable


@pytest.mark.asyncio
async def test_refresh_replaces_state_wholesale(fake_backend):
    trip = fake_backend.seed_trip()
    fake_backend.seed_expense(trip.id, amount="5.00")
    state = LedgerState()
    scheduler = RefreshScheduler(fake_backend, state)

    assert await scheduler.refresh_now() is True
    assert state.get_trip(trip.id).total_expenses == Decimal("5.00")
    assert state.generation == 1


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_reload(fake_backend):
    fake_backend.seed_trip()
    scheduler = RefreshScheduler(fake_backend, LedgerState())
    results = await asyncio.gather(*(scheduler.refresh_now() for _ in range(3)))
    assert results == [True, True, True]
    assert fake_backend.calls.count("list_trips") == 1
    assert scheduler.reload_count == 1


@pytest.mark.asyncio
async def test_failed_refresh_keeps_state(fake_backend):
    trip = fake_backend.seed_trip()
    state = LedgerState()
    scheduler = RefreshScheduler(fake_backend, state)
    await scheduler.refresh_now()

    fake_backend.fail["list_trips"] = TransientUnavailable("offline")
    assert await scheduler.refresh_now() is False
    assert isinstance(scheduler.last_error, TransientUnavailable)
    assert state.get_trip(trip.id) is not None


@pytest.mark.asyncio
async def test_requests_are_debounced(fake_backend):
    fake_backend.seed_trip()
    scheduler = RefreshScheduler(fake_backend, LedgerState(), debounce=0.05)
    for _ in range(5):
        scheduler.request_refresh()
    await asyncio.sleep(0.2)
    assert scheduler.reload_count == 1
    await scheduler.stop()


@pytest.mark.asyncio
async def test_periodic_refresh_runs_until_stopped(fake_backend):
    fake_backend.seed_trip()
    scheduler = RefreshScheduler(fake_backend, LedgerState(), interval=0.02)
    scheduler.start()
    await asyncio.sleep(0.11)
    await scheduler.stop()
    count = scheduler.reload_count
    assert count >= 2
    await asyncio.sleep(0.05)
    assert scheduler.reload_count == count


@pytest.mark.asyncio
async def test_confirmation_reinserts_record_dropped_by_refresh(ledger):
    ledger.backend.gate = asyncio.Event()
    task = asyncio.ensure_future(
        ledger.coordinator.add_expense(ledger.trip_id, expense_in(amount="8.00"))
    )
    await asyncio.sleep(0)
    # a reload lands while the add is in flight and drops the placeholder
    ledger.state.apply(ReplaceAll([t.model_copy(deep=True) for t in ledger.backend.trips.values()]))
    assert ledger.state.get_trip(ledger.trip_id).expenses == []

    ledger.backend.gate.set()
    result = await task
    trip = ledger.state.get_trip(ledger.trip_id)
    assert [e.id for e in trip.expenses] == [result.expense.id]
    assert trip.total_expenses == Decimal("8.00")


@pytest.mark.asyncio
async def test_rollback_is_noop_when_placeholder_already_gone(ledger):
    ledger.backend.gate = asyncio.Event()
    ledger.backend.fail["add_expense_with_total"] = TransientUnavailable("offline")
    ledger.backend.fail["insert_expense"] = TransientUnavailable("offline")
    task = asyncio.ensure_future(
        ledger.coordinator.add_expense(ledger.trip_id, expense_in(amount="8.00"))
    )
    await asyncio.sleep(0)
    ledger.state.apply(ReplaceAll([t.model_copy(deep=True) for t in ledger.backend.trips.values()]))

    ledger.backend.gate.set()
    result = await task
    assert result.status == "rolled_back"
    trip = ledger.state.get_trip(ledger.trip_id)
    assert trip.expenses == []
    assert trip.total_expenses == Decimal("0.00")
