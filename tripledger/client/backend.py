"""Backend access for the client session.

`LedgerBackend` is the surface the procedures and the refresh scheduler talk
to. `HttpLedgerBackend` implements it over `httpx.AsyncClient` and turns error
responses back into the exception classes raised on the server, so a
`NotFound` from the DAL is a `NotFound` here too.
"""

from __future__ import annotations

from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from tripledger.core.errors import (
    ERROR_CLASSES,
    LedgerError,
    NotAuthenticated,
    NotFound,
    OperationFailed,
    TransientUnavailable,
    ValidationFailed,
)
from tripledger.models import ExpenseIn, ExpenseOut, ExpenseUpdate, TripCreate, TripOut, TripUpdate
from tripledger.models.expense import (
    ExpenseBatchResult,
    ExpenseDeleteResult,
    ExpenseUpdateResult,
    ExpenseWithTotal,
    TripTotal,
)

logger = logging.getLogger("tripledger.client.backend")

# The request never reached the ledger, so another path may safely be tried.
# Anything else (read timeouts, dropped responses, 502/504 from a proxy) may
# have committed and is reported as OperationFailed.
UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)
TRANSIENT_STATUSES = {503}


class LedgerBackend(Protocol):
    def set_token(self, token: Optional[str]) -> None: ...
    async def capabilities(self) -> List[str]: ...

    # trips
    async def list_trips(self) -> List[TripOut]: ...
    async def create_trip(self, trip: TripCreate) -> TripOut: ...
    async def update_trip(self, trip_id: str, changes: TripUpdate) -> TripOut: ...
    async def start_trip(self, trip_id: str) -> TripOut: ...
    async def complete_trip(self, trip_id: str) -> TripOut: ...
    async def delete_trip(self, trip_id: str) -> None: ...
    async def get_trip_total(self, trip_id: str) -> Decimal: ...

    # expense rows
    async def get_expense(self, expense_id: str) -> ExpenseOut: ...
    async def insert_expense(self, trip_id: str, expense: ExpenseIn) -> ExpenseOut: ...
    async def insert_expenses(
        self, trip_id: str, expenses: Sequence[ExpenseIn]
    ) -> List[ExpenseOut]: ...
    async def update_expense(self, expense_id: str, changes: ExpenseUpdate) -> ExpenseOut: ...
    async def delete_expense(self, expense_id: str) -> None: ...

    # atomic procedures
    async def add_expense_with_total(
        self, trip_id: str, expense: ExpenseIn
    ) -> ExpenseWithTotal: ...
    async def update_expense_with_total(
        self, expense_id: str, changes: ExpenseUpdate
    ) -> ExpenseUpdateResult: ...
    async def delete_expense_with_total(self, expense_id: str) -> ExpenseDeleteResult: ...
    async def batch_add_expenses(
        self, trip_id: str, expenses: Sequence[ExpenseIn]
    ) -> ExpenseBatchResult: ...


def _expense_json(expense: ExpenseIn) -> Dict[str, Any]:
    return expense.model_dump(mode="json")


def _changes_json(changes: ExpenseUpdate) -> Dict[str, Any]:
    # exclude_unset keeps the present/absent distinction on the wire
    return changes.model_dump(mode="json", exclude_unset=True)


class HttpLedgerBackend:
    """`LedgerBackend` over the JSON HTTP API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        self.token = token

    async def __aenter__(self) -> "HttpLedgerBackend":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def set_token(self, token: Optional[str]) -> None:
        self.token = token

    # ------------------------------------------------------------------
    async def _request(
        self, method: str, path: str, *, json: Any = None, auth: bool = True
    ) -> httpx.Response:
        headers = {}
        if auth:
            if not self.token:
                raise NotAuthenticated("no active session")
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except UNSENT_ERRORS as exc:
            raise TransientUnavailable(f"{method} {path}: {exc.__class__.__name__}") from exc
        except httpx.TransportError as exc:
            raise OperationFailed(
                f"{method} {path}: outcome unknown ({exc.__class__.__name__})"
            ) from exc
        if response.is_success:
            return response
        raise self._error_for(method, path, response)

    def _error_for(self, method: str, path: str, response: httpx.Response) -> LedgerError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        code = body.get("error") if isinstance(body, dict) else None
        detail = body.get("detail") if isinstance(body, dict) else None
        message = f"{method} {path} -> {response.status_code}"
        if response.status_code in TRANSIENT_STATUSES or code == "no_route":
            return TransientUnavailable(message, detail=detail)
        if code in ERROR_CLASSES:
            return ERROR_CLASSES[code](message, detail=detail)
        if response.status_code == 404:
            return NotFound(message, detail=detail)
        if response.status_code == 401:
            return NotAuthenticated(message, detail=detail)
        if response.status_code in (400, 409, 422):
            return ValidationFailed(message, detail=detail)
        return OperationFailed(message, detail=detail)

    # ------------------------------------------------------------------
    async def capabilities(self) -> List[str]:
        response = await self._request("GET", "/capabilities", auth=False)
        return list(response.json().get("procedures", []))

    async def list_trips(self) -> List[TripOut]:
        response = await self._request("GET", "/trips/")
        return [TripOut.model_validate(t) for t in response.json()]

    async def create_trip(self, trip: TripCreate) -> TripOut:
        response = await self._request("POST", "/trips/", json=trip.model_dump(mode="json"))
        return TripOut.model_validate(response.json())

    async def update_trip(self, trip_id: str, changes: TripUpdate) -> TripOut:
        response = await self._request(
            "PATCH", f"/trips/{trip_id}", json=changes.model_dump(mode="json", exclude_unset=True)
        )
        return TripOut.model_validate(response.json())

    async def start_trip(self, trip_id: str) -> TripOut:
        response = await self._request("POST", f"/trips/{trip_id}/start")
        return TripOut.model_validate(response.json())

    async def complete_trip(self, trip_id: str) -> TripOut:
        response = await self._request("POST", f"/trips/{trip_id}/complete")
        return TripOut.model_validate(response.json())

    async def delete_trip(self, trip_id: str) -> None:
        await self._request("DELETE", f"/trips/{trip_id}")

    async def get_trip_total(self, trip_id: str) -> Decimal:
        response = await self._request("GET", f"/trips/{trip_id}/total")
        return TripTotal.model_validate(response.json()).total

    async def get_expense(self, expense_id: str) -> ExpenseOut:
        response = await self._request("GET", f"/expenses/{expense_id}")
        return ExpenseOut.model_validate(response.json())

    async def insert_expense(self, trip_id: str, expense: ExpenseIn) -> ExpenseOut:
        payload = {"trip_id": trip_id, **_expense_json(expense)}
        response = await self._request("POST", "/expenses/", json=payload)
        return ExpenseOut.model_validate(response.json())

    async def insert_expenses(
        self, trip_id: str, expenses: Sequence[ExpenseIn]
    ) -> List[ExpenseOut]:
        payload = {"trip_id": trip_id, "expenses": [_expense_json(e) for e in expenses]}
        response = await self._request("POST", "/expenses/bulk", json=payload)
        return [ExpenseOut.model_validate(e) for e in response.json()]

    async def update_expense(self, expense_id: str, changes: ExpenseUpdate) -> ExpenseOut:
        response = await self._request(
            "PATCH", f"/expenses/{expense_id}", json=_changes_json(changes)
        )
        return ExpenseOut.model_validate(response.json())

    async def delete_expense(self, expense_id: str) -> None:
        await self._request("DELETE", f"/expenses/{expense_id}")

    async def add_expense_with_total(
        self, trip_id: str, expense: ExpenseIn
    ) -> ExpenseWithTotal:
        payload = {"trip_id": trip_id, "expense": _expense_json(expense)}
        response = await self._request("POST", "/rpc/add_expense_with_total", json=payload)
        return ExpenseWithTotal.model_validate(response.json())

    async def update_expense_with_total(
        self, expense_id: str, changes: ExpenseUpdate
    ) -> ExpenseUpdateResult:
        payload = {"expense_id": expense_id, "changes": _changes_json(changes)}
        response = await self._request("POST", "/rpc/update_expense_with_total", json=payload)
        return ExpenseUpdateResult.model_validate(response.json())

    async def delete_expense_with_total(self, expense_id: str) -> ExpenseDeleteResult:
        response = await self._request(
            "POST", "/rpc/delete_expense_with_total", json={"expense_id": expense_id}
        )
        return ExpenseDeleteResult.model_validate(response.json())

    async def batch_add_expenses(
        self, trip_id: str, expenses: Sequence[ExpenseIn]
    ) -> ExpenseBatchResult:
        payload = {"trip_id": trip_id, "expenses": [_expense_json(e) for e in expenses]}
        response = await self._request("POST", "/rpc/batch_add_expenses", json=payload)
        return ExpenseBatchResult.model_validate(response.json())
