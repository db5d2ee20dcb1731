from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional


LOGGER = logging.getLogger("relayworker.sweeper")


class MaintenanceSweeper:
    """Periodically reaps sessions stranded outside the active states."""

    def __init__(self, reap: Callable[[], Awaitable[int]], *, interval: float) -> None:
        self._reap = reap
        self._interval = interval
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="relay-sweeper")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def sweep_once(self) -> int:
        try:
            reaped = await self._reap()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("event=sweep_failed")
            return 0
        if reaped:
            LOGGER.info("event=sweep_done reaped=%s", reaped)
        else:
            LOGGER.debug("event=sweep_done reaped=0")
        return reaped

    async def _run(self) -> None:
        LOGGER.info("event=sweeper_start interval=%s", self._interval)
        try:
            while True:
                await asyncio.sleep(self._interval)
                await self.sweep_once()
        except asyncio.CancelledError:
            LOGGER.info("event=sweeper_stop status=cancelled")
            raise


__all__ = ["MaintenanceSweeper"]
