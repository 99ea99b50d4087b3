"""Client stack against the in-process FastAPI app over httpx.ASGITransport."""

from decimal import Decimal

import httpx
import pytest

from conftest import expense_in, trip_payload
from tripledger.client.session import LedgerSession
from tripledger.core.errors import NotAuthenticated, OperationFailed


@pytest.mark.asyncio
async def test_sign_in_loads_trips(session):
    assert session.authenticated
    assert session.trips == []
    created = await session.coordinator.create_trip(trip_payload())
    assert created.ok
    assert created.trip.trip_number == "TR001"
    assert await session.refresh.refresh_now()
    assert [t.id for t in session.trips] == [created.trip.id]


@pytest.mark.asyncio
async def test_scenario_against_real_store(session):
    c = session.coordinator
    trip = (await c.create_trip(trip_payload())).trip

    a = await c.add_expense(trip.id, expense_in(description="A", amount="120.50"))
    assert a.total == Decimal("120.50")
    b = await c.add_expense(trip.id, expense_in(description="B", amount="45.00", category="transport"))
    assert b.total == Decimal("165.50")
    u = await c.update_expense(a.expense.id, {"amount": "200.00"})
    assert u.total == Decimal("245.00")
    d = await c.delete_expense(b.expense.id)
    assert d.total == Decimal("200.00")

    await session.refresh.refresh_now()
    reloaded = session.state.get_trip(trip.id)
    assert reloaded.total_expenses == Decimal("200.00")
    assert [e.description for e in reloaded.expenses] == ["A"]


@pytest.mark.asyncio
async def test_manual_path_when_atomic_disabled(app, settings, token):
    settings.atomic_mode = "off"
    transport = httpx.ASGITransport(app=app)
    async with LedgerSession(settings, transport=transport) as s:
        await s.sign_in(token)
        trip = (await s.coordinator.create_trip(trip_payload())).trip
        added = await s.coordinator.add_expense(trip.id, expense_in(amount="3.30"))
        assert added.ok and added.total == Decimal("3.30")
        removed = await s.coordinator.delete_expense(added.expense.id)
        assert removed.total == Decimal("0.00")


@pytest.mark.asyncio
async def test_strict_batch_over_http(session):
    c = session.coordinator
    trip = (await c.create_trip(trip_payload())).trip
    ok = await c.add_expenses_batch(trip.id, [expense_in(amount="1.00"), expense_in(amount="2.00")])
    assert ok.ok and ok.total == Decimal("3.00")
    assert len(session.state.get_trip(trip.id).expenses) == 2


@pytest.mark.asyncio
async def test_signed_out_session_refuses_mutations(app, settings):
    transport = httpx.ASGITransport(app=app)
    async with LedgerSession(settings, transport=transport) as s:
        with pytest.raises(NotAuthenticated):
            await s.coordinator.create_trip(trip_payload())


@pytest.mark.asyncio
async def test_sign_out_clears_state(session):
    await session.coordinator.create_trip(trip_payload())
    await session.sign_out()
    assert not session.authenticated
    assert session.trips == []


class DropResponseTransport(httpx.AsyncBaseTransport):
    """Lets the app handle `path` once, then loses the response."""

    def __init__(self, inner: httpx.AsyncBaseTransport, path: str):
        self.inner = inner
        self.path = path
        self.dropped = 0

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        response = await self.inner.handle_async_request(request)
        if request.url.path == self.path and not self.dropped:
            self.dropped += 1
            await response.aclose()
            raise httpx.ReadTimeout("response lost", request=request)
        return response

    async def aclose(self) -> None:
        await self.inner.aclose()


@pytest.mark.asyncio
async def test_lost_rpc_response_is_not_retried_manually(app, settings, token):
    transport = DropResponseTransport(
        httpx.ASGITransport(app=app), "/rpc/add_expense_with_total"
    )
    async with LedgerSession(settings, transport=transport) as s:
        await s.sign_in(token)
        trip = (await s.coordinator.create_trip(trip_payload())).trip

        result = await s.coordinator.add_expense(trip.id, expense_in(amount="10.00"))
        assert result.status == "rolled_back"
        assert isinstance(result.error, OperationFailed)
        assert transport.dropped == 1
        assert s.state.get_trip(trip.id).expenses == []

        assert await s.refresh.refresh_now()
        reloaded = s.state.get_trip(trip.id)
        assert len(reloaded.expenses) == 1
        assert reloaded.total_expenses == Decimal("10.00")
