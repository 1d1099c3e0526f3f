"""Client-side keep-alive for an admin session.

While the user is active the beacon calls ``POST /api/auth/extend`` to
slide the idle deadline; while idle it only calls ``GET /api/auth/status``
so that inactivity still ends the session. A ``401`` from either call means
the session is gone: ``on_unauthenticated`` runs once and the beacon stops.

The session cookie is expected to live in the ``httpx.AsyncClient`` cookie
jar (or be set on it by the caller).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum

import httpx

logger = logging.getLogger(__name__)

EXTEND_PATH = "/api/auth/extend"
STATUS_PATH = "/api/auth/status"


class BeaconResult(str, Enum):
    EXTENDED = "extended"
    CHECKED = "checked"
    UNAUTHENTICATED = "unauthenticated"
    ERROR = "error"


class ActivityBeacon:
    DEFAULT_INTERVAL = 300.0  # seconds between ticks
    DEFAULT_ACTIVE_WINDOW = 60.0  # activity this recent counts as "active"

    def __init__(
        self,
        client: httpx.AsyncClient,
        on_unauthenticated: Callable[[], None | Awaitable[None]],
        active_window: float = DEFAULT_ACTIVE_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._on_unauthenticated = on_unauthenticated
        self._active_window = active_window
        self._clock = clock
        self._last_activity: float | None = None
        self._stopped = asyncio.Event()
        self._notified = False

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def record_activity(self) -> None:
        """Call on user input (keypress, click, scroll)."""
        self._last_activity = self._clock()

    def is_active(self) -> bool:
        if self._last_activity is None:
            return False
        return self._clock() - self._last_activity <= self._active_window

    def stop(self) -> None:
        self._stopped.set()

    async def tick(self) -> BeaconResult:
        """One keep-alive round: extend if active, otherwise just check."""
        if self.is_active():
            request = self._client.post(EXTEND_PATH)
            ok_result = BeaconResult.EXTENDED
        else:
            request = self._client.get(STATUS_PATH)
            ok_result = BeaconResult.CHECKED

        try:
            response = await request
        except httpx.HTTPError as exc:
            # Transient; try again next tick
            logger.warning("Keep-alive request failed: %s", exc)
            return BeaconResult.ERROR

        if response.status_code == 401:
            await self._session_ended()
            return BeaconResult.UNAUTHENTICATED
        if response.is_success:
            return ok_result

        logger.warning("Keep-alive got unexpected status %d", response.status_code)
        return BeaconResult.ERROR

    async def run(self, interval: float = DEFAULT_INTERVAL) -> None:
        """Tick immediately, then every *interval* seconds until stopped."""
        while not self.stopped:
            await self.tick()
            if self.stopped:
                break
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def _session_ended(self) -> None:
        self.stop()
        if self._notified:
            return
        self._notified = True
        logger.info("Session ended; leaving the admin area")
        result = self._on_unauthenticated()
        if inspect.isawaitable(result):
            await result
