"""Async client session: optimistic mutations over the ledger HTTP API."""

from .backend import HttpLedgerBackend, LedgerBackend
from .coordinator import MutationResult, OptimisticCoordinator
from .procedures import MutationProcedures
from .refresh import RefreshScheduler
from .session import LedgerSession
from .state import LedgerState

__all__ = [
    "HttpLedgerBackend",
    "LedgerBackend",
    "LedgerSession",
    "LedgerState",
    "MutationProcedures",
    "MutationResult",
    "OptimisticCoordinator",
    "RefreshScheduler",
]
