from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from tripledger.core.config import Settings, get_settings
from tripledger.models import TripOut

from .backend import HttpLedgerBackend, LedgerBackend
from .coordinator import OptimisticCoordinator
from .procedures import MutationProcedures
from .refresh import RefreshScheduler
from .state import LedgerState, ReplaceAll

logger = logging.getLogger("tripledger.client.session")


class LedgerSession:
    """One signed-in user's view of the ledger.

    Wires the backend, procedures, state, coordinator and refresh scheduler.
    Pass `transport` to run against an in-process app (httpx.ASGITransport) or
    `backend` to substitute the whole backend.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        backend: Optional[LedgerBackend] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        self.settings = settings
        self.backend = backend or HttpLedgerBackend(
            str(settings.api_base_url),
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )
        self.state = LedgerState()
        self.procedures = MutationProcedures(self.backend, mode=settings.atomic_mode)
        self.refresh = RefreshScheduler(
            self.backend,
            self.state,
            interval=settings.refresh_interval_seconds,
            debounce=settings.refresh_debounce_seconds,
        )
        self.coordinator = OptimisticCoordinator(
            self.state,
            self.procedures,
            self.backend,
            is_authenticated=lambda: self.authenticated,
            refresh=self.refresh,
            timeout=settings.mutation_timeout_seconds,
            dedupe_window=settings.dedupe_window_seconds,
        )
        self.authenticated = False

    async def __aenter__(self) -> "LedgerSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def trips(self) -> List[TripOut]:
        return self.state.trips

    async def sign_in(self, token: str) -> bool:
        """Adopt `token`, load the user's trips and start periodic refresh."""
        self.backend.set_token(token)
        self.authenticated = True
        loaded = await self.refresh.refresh_now()
        self.refresh.start()
        logger.info("session signed in (initial load %s)", "ok" if loaded else "failed")
        return loaded

    async def sign_out(self) -> None:
        await self.refresh.stop()
        self.authenticated = False
        self.backend.set_token(None)
        self.state.apply(ReplaceAll([]))

    async def aclose(self) -> None:
        if self.authenticated:
            await self.sign_out()
        close = getattr(self.backend, "aclose", None)
        if close is not None:
            await close()
