"""Background timers: upload sweep, realtime poll and network monitor."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable

from weighsync.sync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

PingFunc = Callable[[], Awaitable[bool]]


class BackgroundScheduler:
    """
    Drives periodic sync work for one session.

    - upload sweep: ``upload_only`` every ``upload_interval`` seconds
    - realtime poll: mismatch check every ``realtime_interval`` seconds; on a
      mismatch a silent download, at most once per ``mismatch_debounce``
      seconds of ``clock`` time
    - network monitor: ping every ``network_interval`` seconds; on an
      offline to online transition upload pending records, then check for
      a mismatch and pull if needed

    Ticks never raise. Stopping cancels future firings; a tick that is already
    running is allowed to finish.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        ping: PingFunc | None = None,
        upload_interval: float = 300.0,
        realtime_interval: float = 30.0,
        network_interval: float = 30.0,
        mismatch_debounce: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._ping = ping
        self._upload_interval = upload_interval
        self._realtime_interval = realtime_interval
        self._network_interval = network_interval
        self._mismatch_debounce = mismatch_debounce
        self._clock = clock

        self._loops: list[asyncio.Task[None]] = []
        self._inflight: set[asyncio.Task[None]] = set()
        self._last_realtime_pull: float | None = None
        self._online: bool | None = None

    @property
    def running(self) -> bool:
        return bool(self._loops)

    @property
    def online(self) -> bool | None:
        """Last observed connectivity, None before the first ping."""
        return self._online

    def start(self) -> None:
        if self._loops:
            return
        self._loops.append(
            asyncio.create_task(self._loop("upload", self._upload_interval, self.run_upload_tick))
        )
        if self._engine.cloud_available:
            self._loops.append(
                asyncio.create_task(
                    self._loop("realtime", self._realtime_interval, self.run_realtime_tick)
                )
            )
        if self._ping is not None:
            self._loops.append(
                asyncio.create_task(
                    self._loop("network", self._network_interval, self.run_network_tick)
                )
            )
        logger.info("Background sync started (%d timers)", len(self._loops))

    async def stop(self, wait: bool = True) -> None:
        loops, self._loops = self._loops, []
        for task in loops:
            task.cancel()
        for task in loops:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if wait and self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Background sync stopped")

    # ========== Ticks ==========

    async def run_upload_tick(self) -> None:
        if not self._engine.cloud_available:
            return
        result = await self._engine.upload_only(silent=True)
        if not result.success and not result.skipped:
            logger.info("Scheduled upload failed: %s", result.message)

    async def run_realtime_tick(self) -> None:
        if not self._engine.cloud_available:
            return
        report = await self._engine.check_mismatch()
        if not report.mismatched:
            return
        await self._debounced_pull()

    async def run_network_tick(self) -> None:
        if self._ping is None:
            return
        online = await self._ping()
        previous, self._online = self._online, online
        if previous is None:
            logger.debug("Network monitor baseline: %s", "online" if online else "offline")
            return
        if previous == online:
            return
        if not online:
            logger.info("Cloud server unreachable")
            return

        logger.info("Network restored, uploading pending changes")
        await self._engine.upload_only(silent=True)
        report = await self._engine.check_mismatch()
        if report.mismatched:
            await self._debounced_pull()

    async def _debounced_pull(self) -> None:
        now = self._clock()
        if (
            self._last_realtime_pull is not None
            and now - self._last_realtime_pull < self._mismatch_debounce
        ):
            logger.debug("Mismatch pull debounced")
            return
        self._last_realtime_pull = now
        await self._engine.download_only(silent=True)

    # ========== Loop plumbing ==========

    async def _loop(self, name: str, interval: float, tick: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(interval)
            task = asyncio.create_task(self._safe_tick(name, tick))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            await asyncio.shield(task)

    async def _safe_tick(self, name: str, tick: Callable[[], Awaitable[None]]) -> None:
        try:
            await tick()
        except Exception:
            logger.error("Scheduled %s tick failed", name, exc_info=True)
