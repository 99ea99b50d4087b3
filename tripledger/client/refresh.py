"""Full reloads of the client state.

One reload runs at a time; callers that ask while one is running wait for it.
Reloads happen on sign-in, on a fixed interval while signed in, and shortly
after mutations settle (debounced so a burst of edits costs one reload).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Optional

from tripledger.core.errors import LedgerError

from .backend import LedgerBackend
from .state import LedgerState, ReplaceAll

logger = logging.getLogger("tripledger.client.refresh")


class RefreshScheduler:
    def __init__(
        self,
        backend: LedgerBackend,
        state: LedgerState,
        interval: float = 30.0,
        debounce: float = 2.0,
    ):
        self.backend = backend
        self.state = state
        self.interval = interval
        self.debounce = debounce
        self.last_refreshed: Optional[float] = None
        self.last_error: Optional[LedgerError] = None
        self.reload_count = 0
        self._running: Optional[asyncio.Task] = None
        self._debounced: Optional[asyncio.Task] = None
        self._periodic: Optional[asyncio.Task] = None

    async def refresh_now(self) -> bool:
        """Reload every trip; True on success. Failures leave the state as is."""
        if self._running is None or self._running.done():
            self._running = asyncio.ensure_future(self._reload())
        return await asyncio.shield(self._running)

    async def _reload(self) -> bool:
        revision = self.state.revision
        try:
            trips = await self.backend.list_trips()
        except LedgerError as exc:
            self.last_error = exc
            logger.warning("refresh failed: %s", exc)
            return False
        if self.state.revision != revision:
            # a mutation settled while the snapshot was in flight; it may predate it
            logger.debug("discarding stale refresh snapshot")
            self.request_refresh()
            return False
        self.state.apply(ReplaceAll(trips))
        self.reload_count += 1
        self.last_error = None
        self.last_refreshed = time.monotonic()
        logger.debug("refreshed %d trips", len(trips))
        return True

    def request_refresh(self) -> None:
        """Schedule a reload `debounce` seconds from now, resetting any pending one."""
        if self._debounced is not None and not self._debounced.done():
            self._debounced.cancel()
        self._debounced = asyncio.ensure_future(self._after_debounce())

    async def _after_debounce(self) -> None:
        await asyncio.sleep(self.debounce)
        await self.refresh_now()

    def start(self) -> None:
        if self._periodic is None or self._periodic.done():
            self._periodic = asyncio.ensure_future(self._every_interval())

    async def _every_interval(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.refresh_now()

    async def stop(self) -> None:
        tasks = [t for t in (self._periodic, self._debounced) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._periodic = None
        self._debounced = None
        if self._running is not None and not self._running.done():
            with contextlib.suppress(asyncio.CancelledError):
                await self._running
