"""Expense mutation procedures with an atomic and a manual strategy.

The atomic strategy calls one RPC per mutation and gets the re-summed trip
total in the same response. The manual strategy composes row endpoints and
reads the total back afterwards. `MutationProcedures` prefers the atomic one
(per `atomic_mode`) and falls back to manual exactly once when the atomic call
raises `TransientUnavailable`.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
import logging
from typing import Awaitable, Callable, Optional, Sequence, Set, TypeVar

from tripledger.core.errors import LedgerError, OperationFailed, TransientUnavailable
from tripledger.models import ExpenseIn, ExpenseUpdate
from tripledger.models.expense import (
    ExpenseBatchResult,
    ExpenseDeleteResult,
    ExpenseUpdateResult,
    ExpenseWithTotal,
)

from .backend import LedgerBackend

logger = logging.getLogger("tripledger.client.procedures")

T = TypeVar("T")

ATOMIC_MODES = ("auto", "on", "off")


class AtomicStrategy:
    name = "atomic"

    def __init__(self, backend: LedgerBackend):
        self.backend = backend

    async def add_expense(self, trip_id: str, expense: ExpenseIn) -> ExpenseWithTotal:
        return await self.backend.add_expense_with_total(trip_id, expense)

    async def update_expense(
        self, expense_id: str, changes: ExpenseUpdate
    ) -> ExpenseUpdateResult:
        return await self.backend.update_expense_with_total(expense_id, changes)

    async def delete_expense(self, expense_id: str) -> ExpenseDeleteResult:
        return await self.backend.delete_expense_with_total(expense_id)

    async def add_expenses_batch(
        self, trip_id: str, expenses: Sequence[ExpenseIn]
    ) -> ExpenseBatchResult:
        return await self.backend.batch_add_expenses(trip_id, expenses)


class ManualStrategy:
    """Row operations followed by a separate total read.

    A failed total read does not fail the mutation: the result carries
    ``new_total=None`` and the caller falls back to its local sum.
    """

    name = "manual"

    def __init__(self, backend: LedgerBackend):
        self.backend = backend

    async def _total_or_none(self, trip_id: str) -> Optional[Decimal]:
        try:
            return await self.backend.get_trip_total(trip_id)
        except LedgerError as exc:
            logger.warning("total read for trip %s failed after mutation: %s", trip_id, exc)
            return None

    async def add_expense(self, trip_id: str, expense: ExpenseIn) -> ExpenseWithTotal:
        created = await self.backend.insert_expense(trip_id, expense)
        return ExpenseWithTotal(expense=created, new_total=await self._total_or_none(trip_id))

    async def update_expense(
        self, expense_id: str, changes: ExpenseUpdate
    ) -> ExpenseUpdateResult:
        updated = await self.backend.update_expense(expense_id, changes)
        return ExpenseUpdateResult(
            expense=updated,
            new_total=await self._total_or_none(updated.trip_id),
            trip_id=updated.trip_id,
        )

    async def delete_expense(self, expense_id: str) -> ExpenseDeleteResult:
        existing = await self.backend.get_expense(expense_id)
        await self.backend.delete_expense(expense_id)
        return ExpenseDeleteResult(
            new_total=await self._total_or_none(existing.trip_id),
            trip_id=existing.trip_id,
        )

    async def add_expenses_batch(
        self, trip_id: str, expenses: Sequence[ExpenseIn]
    ) -> ExpenseBatchResult:
        created = await self.backend.insert_expenses(trip_id, expenses)
        return ExpenseBatchResult(
            expenses=created,
            new_total=await self._total_or_none(trip_id),
            count=len(created),
        )


class MutationProcedures:
    def __init__(self, backend: LedgerBackend, mode: str = "auto"):
        if mode not in ATOMIC_MODES:
            raise ValueError(f"atomic mode must be one of {ATOMIC_MODES}, got {mode!r}")
        self.mode = mode
        self.backend = backend
        self.atomic = AtomicStrategy(backend)
        self.manual = ManualStrategy(backend)
        self._available: Optional[Set[str]] = None
        self._probe_lock = asyncio.Lock()

    async def atomic_available(self, procedure: str) -> bool:
        if self.mode == "off":
            return False
        if self.mode == "on":
            return True
        async with self._probe_lock:
            if self._available is None:
                try:
                    self._available = set(await self.backend.capabilities())
                except LedgerError as exc:
                    # not cached; the next mutation probes again
                    logger.warning("capability probe failed: %s", exc)
                    return False
                logger.info("atomic procedures available: %s", sorted(self._available))
        return procedure in self._available

    async def _run(
        self,
        procedure: str,
        atomic_call: Callable[[], Awaitable[T]],
        manual_call: Callable[[], Awaitable[T]],
    ) -> T:
        if await self.atomic_available(procedure):
            try:
                return await atomic_call()
            except TransientUnavailable as exc:
                logger.warning("%s unavailable (%s); using manual path", procedure, exc)
                if self.mode == "auto":
                    self._available = None
        try:
            return await manual_call()
        except TransientUnavailable as exc:
            raise OperationFailed(f"{procedure} failed: {exc}", detail=exc.detail) from exc

    async def add_expense(self, trip_id: str, expense: ExpenseIn) -> ExpenseWithTotal:
        return await self._run(
            "add_expense_with_total",
            lambda: self.atomic.add_expense(trip_id, expense),
            lambda: self.manual.add_expense(trip_id, expense),
        )

    async def update_expense(
        self, expense_id: str, changes: ExpenseUpdate
    ) -> ExpenseUpdateResult:
        return await self._run(
            "update_expense_with_total",
            lambda: self.atomic.update_expense(expense_id, changes),
            lambda: self.manual.update_expense(expense_id, changes),
        )

    async def delete_expense(self, expense_id: str) -> ExpenseDeleteResult:
        return await self._run(
            "delete_expense_with_total",
            lambda: self.atomic.delete_expense(expense_id),
            lambda: self.manual.delete_expense(expense_id),
        )

    async def add_expenses_batch(
        self, trip_id: str, expenses: Sequence[ExpenseIn]
    ) -> ExpenseBatchResult:
        return await self._run(
            "batch_add_expenses",
            lambda: self.atomic.add_expenses_batch(trip_id, expenses),
            lambda: self.manual.add_expenses_batch(trip_id, expenses),
        )
