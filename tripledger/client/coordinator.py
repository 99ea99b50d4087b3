"""Optimistic mutation coordinator.

Expense mutations are applied to `LedgerState` right away, then made durable
through `MutationProcedures`. On success the tentative record and total are
replaced by the server's; on failure the captured pre-mutation record, index
and total come back. Trip mutations are confirmed first and applied after.

Identical calls are collapsed: a call whose operation key is in flight waits
for the first one, and a call whose key was confirmed within the dedupe window
gets the cached result. Durable calls on the same target run one at a time in
the order they were issued.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field, replace
from decimal import Decimal
import hashlib
import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from tripledger.core.errors import LedgerError, NotAuthenticated, NotFound, OperationFailed, ValidationFailed
from tripledger.core.logging import operation_ctx
from tripledger.models import ExpenseIn, ExpenseOut, ExpenseUpdate, TripCreate, TripOut, TripUpdate
from tripledger.models.constants import PLACEHOLDER_PREFIX

from .backend import LedgerBackend
from .procedures import MutationProcedures
from .state import (
    InsertExpense,
    LedgerState,
    RemoveExpense,
    RemoveTrip,
    ReplaceExpense,
    RestoreExpense,
    SetTotal,
    UpsertTrip,
    is_placeholder,
)

logger = logging.getLogger("tripledger.client.coordinator")

M = TypeVar("M", bound=BaseModel)
OperationKey = Tuple[str, str, str]

CONFIRMED = "confirmed"
ROLLED_BACK = "rolled_back"
REJECTED = "rejected"


@dataclass
class MutationResult:
    op: str
    target: str
    status: str
    expense: Optional[ExpenseOut] = None
    expenses: List[ExpenseOut] = field(default_factory=list)
    trip: Optional[TripOut] = None
    total: Optional[Decimal] = None
    error: Optional[LedgerError] = None
    deduplicated: bool = False

    @property
    def ok(self) -> bool:
        return self.status == CONFIRMED


def _digest(payload: Any, nonce: Optional[str] = None) -> str:
    if nonce is not None:
        payload = [payload, nonce]
    raw = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def _coerce(model: Type[M], value: Union[M, Mapping[str, Any]]) -> M:
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as exc:
        raise ValidationFailed(
            f"invalid {model.__name__}", detail=exc.errors(include_url=False)
        ) from exc


class OptimisticCoordinator:
    def __init__(
        self,
        state: LedgerState,
        procedures: MutationProcedures,
        backend: LedgerBackend,
        is_authenticated: Callable[[], bool],
        refresh=None,
        timeout: float = 10.0,
        dedupe_window: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state
        self.procedures = procedures
        self.backend = backend
        self.is_authenticated = is_authenticated
        self.refresh = refresh
        self.timeout = timeout
        self.dedupe_window = dedupe_window
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._inflight: Dict[OperationKey, asyncio.Future] = {}
        self._recent: Dict[OperationKey, Tuple[float, MutationResult]] = {}

    # ------------------------------------------------------------------
    # Plumbing
    def _require_session(self) -> None:
        if not self.is_authenticated():
            raise NotAuthenticated("sign in before changing the ledger")

    def _prune(self, now: float) -> None:
        expired = [k for k, (at, _) in self._recent.items() if now - at > self.dedupe_window]
        for key in expired:
            del self._recent[key]

    async def _once(
        self, key: OperationKey, run: Callable[[], Awaitable[MutationResult]]
    ) -> MutationResult:
        self._prune(self.clock())
        cached = self._recent.get(key)
        if cached is not None:
            logger.info("duplicate %s on %s served from recent result", key[0], key[1])
            return replace(cached[1], deduplicated=True)
        pending = self._inflight.get(key)
        if pending is not None:
            logger.info("duplicate %s on %s joined in-flight call", key[0], key[1])
            result = await asyncio.shield(pending)
            return replace(result, deduplicated=True)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        token = operation_ctx.set(":".join(key))
        try:
            result = await run()
            future.set_result(result)
            if result.ok:
                self._recent[key] = (self.clock(), result)
            return result
        finally:
            operation_ctx.reset(token)
            del self._inflight[key]
            if not future.done():
                # first caller was cancelled or crashed; joiners see a rollback
                future.set_result(
                    MutationResult(
                        op=key[0],
                        target=key[1],
                        status=ROLLED_BACK,
                        error=OperationFailed("mutation did not complete"),
                    )
                )

    async def _durable(self, target: str, call: Callable[[], Awaitable[Any]]) -> Any:
        async with self._locks[target]:
            try:
                return await asyncio.wait_for(call(), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                raise OperationFailed(f"no response within {self.timeout:g}s") from exc

    def _settled(self) -> None:
        if self.refresh is not None:
            self.refresh.request_refresh()

    def _rolled_back(self, op: str, target: str, exc: LedgerError, **fields) -> MutationResult:
        logger.warning("%s on %s rolled back: %s", op, target, exc)
        self._settled()
        return MutationResult(op=op, target=target, status=ROLLED_BACK, error=exc, **fields)

    @staticmethod
    def _rejected(op: str, target: str, exc: LedgerError) -> MutationResult:
        logger.info("%s on %s rejected: %s", op, target, exc)
        return MutationResult(op=op, target=target, status=REJECTED, error=exc)

    def _total_after(self, trip_id: str, server_total: Optional[Decimal]) -> Decimal:
        if server_total is not None:
            return server_total
        if self.refresh is not None:
            self.refresh.request_refresh()
        return self.state.local_sum(trip_id)

    # ------------------------------------------------------------------
    # Expenses
    async def add_expense(
        self,
        trip_id: str,
        expense: Union[ExpenseIn, Mapping[str, Any]],
        nonce: Optional[str] = None,
    ) -> MutationResult:
        """Optimistically add `expense` to `trip_id`.

        Identical calls collapse into one unless they carry different `nonce`
        values, which callers creating distinct but equal records must pass.
        """
        self._require_session()
        try:
            expense = _coerce(ExpenseIn, expense)
            if self.state.get_trip(trip_id) is None:
                raise NotFound("trip not found")
        except (ValidationFailed, NotFound) as exc:
            return self._rejected("add_expense", trip_id, exc)
        key = ("add_expense", trip_id, _digest(expense.model_dump(mode="json"), nonce))
        return await self._once(key, lambda: self._add(trip_id, expense))

    async def _add(self, trip_id: str, expense: ExpenseIn) -> MutationResult:
        placeholder = ExpenseOut(
            id=f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex}",
            trip_id=trip_id,
            **expense.model_dump(),
        )
        self.state.apply(InsertExpense(trip_id, placeholder))
        try:
            outcome = await self._durable(
                trip_id, lambda: self.procedures.add_expense(trip_id, expense)
            )
        except LedgerError as exc:
            # no-op when a refresh already dropped the placeholder
            self.state.apply(RemoveExpense(trip_id, placeholder.id))
            return self._rolled_back("add_expense", trip_id, exc)
        except asyncio.CancelledError:
            self.state.apply(RemoveExpense(trip_id, placeholder.id))
            raise
        self.state.apply(ReplaceExpense(trip_id, placeholder.id, outcome.expense))
        new_total = self._total_after(trip_id, outcome.new_total)
        self.state.apply(SetTotal(trip_id, new_total))
        self._settled()
        return MutationResult(
            op="add_expense",
            target=trip_id,
            status=CONFIRMED,
            expense=outcome.expense,
            total=new_total,
        )

    async def update_expense(
        self, expense_id: str, changes: Union[ExpenseUpdate, Mapping[str, Any]]
    ) -> MutationResult:
        self._require_session()
        try:
            changes = _coerce(ExpenseUpdate, changes)
            if is_placeholder(expense_id):
                raise ValidationFailed("expense is not saved yet")
            if self.state.find_expense(expense_id) is None:
                raise NotFound("expense not found")
        except (ValidationFailed, NotFound) as exc:
            return self._rejected("update_expense", expense_id, exc)
        key = (
            "update_expense",
            expense_id,
            _digest(changes.model_dump(mode="json", exclude_unset=True)),
        )
        return await self._once(key, lambda: self._update(expense_id, changes))

    async def _update(self, expense_id: str, changes: ExpenseUpdate) -> MutationResult:
        snapshot = self.state.snapshot(expense_id)
        if snapshot is None:
            return self._rejected("update_expense", expense_id, NotFound("expense not found"))
        trip_id = snapshot.trip_id
        self.state.apply(
            ReplaceExpense(trip_id, expense_id, changes.apply_to(snapshot.expense))
        )
        try:
            outcome = await self._durable(
                expense_id, lambda: self.procedures.update_expense(expense_id, changes)
            )
        except LedgerError as exc:
            self.state.apply(RestoreExpense(trip_id, snapshot.expense, snapshot.index))
            return self._rolled_back("update_expense", expense_id, exc)
        except asyncio.CancelledError:
            self.state.apply(RestoreExpense(trip_id, snapshot.expense, snapshot.index))
            raise
        self.state.apply(ReplaceExpense(trip_id, expense_id, outcome.expense))
        new_total = self._total_after(trip_id, outcome.new_total)
        self.state.apply(SetTotal(trip_id, new_total))
        self._settled()
        return MutationResult(
            op="update_expense",
            target=expense_id,
            status=CONFIRMED,
            expense=outcome.expense,
            total=new_total,
        )

    async def delete_expense(self, expense_id: str) -> MutationResult:
        self._require_session()
        try:
            if is_placeholder(expense_id):
                raise ValidationFailed("expense is not saved yet")
            if self.state.find_expense(expense_id) is None:
                raise NotFound("expense not found")
        except (ValidationFailed, NotFound) as exc:
            return self._rejected("delete_expense", expense_id, exc)
        key = ("delete_expense", expense_id, "")
        return await self._once(key, lambda: self._delete(expense_id))

    async def _delete(self, expense_id: str) -> MutationResult:
        snapshot = self.state.snapshot(expense_id)
        if snapshot is None:
            return self._rejected("delete_expense", expense_id, NotFound("expense not found"))
        trip_id = snapshot.trip_id
        self.state.apply(RemoveExpense(trip_id, expense_id))
        try:
            outcome = await self._durable(
                expense_id, lambda: self.procedures.delete_expense(expense_id)
            )
        except LedgerError as exc:
            self.state.apply(RestoreExpense(trip_id, snapshot.expense, snapshot.index))
            return self._rolled_back("delete_expense", expense_id, exc)
        except asyncio.CancelledError:
            self.state.apply(RestoreExpense(trip_id, snapshot.expense, snapshot.index))
            raise
        # a refresh may have brought the row back while the delete was in flight
        self.state.apply(RemoveExpense(trip_id, expense_id))
        new_total = self._total_after(trip_id, outcome.new_total)
        self.state.apply(SetTotal(trip_id, new_total))
        self._settled()
        return MutationResult(
            op="delete_expense",
            target=expense_id,
            status=CONFIRMED,
            expense=snapshot.expense,
            total=new_total,
        )

    async def add_expenses_batch(
        self, trip_id: str, expenses: Sequence[Union[ExpenseIn, Mapping[str, Any]]]
    ) -> MutationResult:
        """All-or-nothing insert; applied to local state only once confirmed."""
        self._require_session()
        try:
            if not expenses:
                raise ValidationFailed("batch must contain at least one expense")
            items = [_coerce(ExpenseIn, e) for e in expenses]
            if self.state.get_trip(trip_id) is None:
                raise NotFound("trip not found")
        except (ValidationFailed, NotFound) as exc:
            return self._rejected("add_expenses_batch", trip_id, exc)
        key = (
            "add_expenses_batch",
            trip_id,
            _digest([e.model_dump(mode="json") for e in items]),
        )
        return await self._once(key, lambda: self._batch(trip_id, items))

    async def _batch(self, trip_id: str, items: List[ExpenseIn]) -> MutationResult:
        try:
            outcome = await self._durable(
                trip_id, lambda: self.procedures.add_expenses_batch(trip_id, items)
            )
        except LedgerError as exc:
            return self._rolled_back("add_expenses_batch", trip_id, exc)
        for created in outcome.expenses:
            self.state.apply(ReplaceExpense(trip_id, created.id, created))
        new_total = self._total_after(trip_id, outcome.new_total)
        self.state.apply(SetTotal(trip_id, new_total))
        self._settled()
        return MutationResult(
            op="add_expenses_batch",
            target=trip_id,
            status=CONFIRMED,
            expenses=list(outcome.expenses),
            total=new_total,
        )

    # ------------------------------------------------------------------
    # Trips (confirmed, then applied)
    async def _trip_call(
        self, op: str, target: str, key_payload: Any, call: Callable[[], Awaitable[Any]], apply
    ) -> MutationResult:
        async def run() -> MutationResult:
            try:
                outcome = await self._durable(f"trip:{target}", call)
            except LedgerError as exc:
                return self._rolled_back(op, target, exc)
            trip = apply(outcome)
            self._settled()
            return MutationResult(
                op=op,
                target=target,
                status=CONFIRMED,
                trip=trip,
                total=trip.total_expenses if trip is not None else None,
            )

        return await self._once((op, target, _digest(key_payload)), run)

    def _upsert(self, trip: TripOut) -> TripOut:
        self.state.apply(UpsertTrip(trip))
        return trip

    async def create_trip(
        self, trip: Union[TripCreate, Mapping[str, Any]], nonce: Optional[str] = None
    ) -> MutationResult:
        self._require_session()
        try:
            trip = _coerce(TripCreate, trip)
        except ValidationFailed as exc:
            return self._rejected("create_trip", "new", exc)
        return await self._trip_call(
            "create_trip",
            "new",
            [trip.model_dump(mode="json"), nonce],
            lambda: self.backend.create_trip(trip),
            self._upsert,
        )

    async def update_trip(
        self, trip_id: str, changes: Union[TripUpdate, Mapping[str, Any]]
    ) -> MutationResult:
        self._require_session()
        try:
            changes = _coerce(TripUpdate, changes)
            if self.state.get_trip(trip_id) is None:
                raise NotFound("trip not found")
        except (ValidationFailed, NotFound) as exc:
            return self._rejected("update_trip", trip_id, exc)
        return await self._trip_call(
            "update_trip",
            trip_id,
            changes.model_dump(mode="json", exclude_unset=True),
            lambda: self.backend.update_trip(trip_id, changes),
            self._upsert,
        )

    async def _lifecycle(self, op: str, trip_id: str, call) -> MutationResult:
        self._require_session()
        if self.state.get_trip(trip_id) is None:
            return self._rejected(op, trip_id, NotFound("trip not found"))
        return await self._trip_call(op, trip_id, op, call, self._upsert)

    async def start_trip(self, trip_id: str) -> MutationResult:
        return await self._lifecycle(
            "start_trip", trip_id, lambda: self.backend.start_trip(trip_id)
        )

    async def complete_trip(self, trip_id: str) -> MutationResult:
        return await self._lifecycle(
            "complete_trip", trip_id, lambda: self.backend.complete_trip(trip_id)
        )

    async def delete_trip(self, trip_id: str) -> MutationResult:
        self._require_session()
        if self.state.get_trip(trip_id) is None:
            return self._rejected("delete_trip", trip_id, NotFound("trip not found"))

        def _remove(_: Any) -> None:
            self.state.apply(RemoveTrip(trip_id))

        return await self._trip_call(
            "delete_trip",
            trip_id,
            "",
            lambda: self.backend.delete_trip(trip_id),
            _remove,
        )
