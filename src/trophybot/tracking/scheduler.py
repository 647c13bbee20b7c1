"""Periodic trophy sync runner.

Fires ``SyncEngine.sync_all`` on a fixed interval. At most one full sync
runs at a time: a tick that lands while a run is still in flight is skipped.
Each run has a hard ceiling; on timeout the run is abandoned and whatever it
already committed stays committed.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timezone

import structlog

from trophybot.tracking.sync_engine import SyncEngine, SyncRunSummary

logger = structlog.get_logger()


class SyncScheduler:
    """Timer plus overlap guard around ``SyncEngine.sync_all``."""

    def __init__(
        self,
        engine: SyncEngine,
        interval_seconds: float = 30 * 60,
        run_timeout: float = 10 * 60,
    ) -> None:
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.run_timeout = run_timeout
        self._run_lock = asyncio.Lock()
        self._ticker: asyncio.Task[None] | None = None
        self._runs: set[asyncio.Task[SyncRunSummary | None]] = set()
        self.last_started_at: datetime | None = None
        self.last_summary: SyncRunSummary | None = None
        self.last_error: str | None = None
        self.skipped_runs = 0

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def is_started(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    async def run_once(self) -> SyncRunSummary | None:
        """Run one full sync unless one is already in flight. Never raises."""
        if self._run_lock.locked():
            self.skipped_runs += 1
            logger.warning("sync_run_skipped", reason="previous run still in progress")
            return None

        async with self._run_lock:
            self.last_started_at = datetime.now(timezone.utc)
            try:
                summary = await asyncio.wait_for(self.engine.sync_all(), timeout=self.run_timeout)
            except asyncio.TimeoutError:
                self.last_error = f"sync run exceeded {self.run_timeout:g}s"
                logger.error("sync_run_timeout", timeout=self.run_timeout)
                return None
            except Exception as exc:
                self.last_error = str(exc)
                logger.exception("sync_run_failed")
                return None

            self.last_summary = summary
            self.last_error = None
            return summary

    def trigger(self) -> asyncio.Task[SyncRunSummary | None]:
        """Start a run in the background; the overlap guard still applies."""
        task = asyncio.create_task(self.run_once())
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return task

    async def _tick_forever(self) -> None:
        while True:
            self.trigger()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._ticker is not None:
            return
        self._ticker = asyncio.create_task(self._tick_forever())
        logger.info("sync_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._ticker
            self._ticker = None
        for task in list(self._runs):
            task.cancel()
        for task in list(self._runs):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("sync_scheduler_stopped")

    def status(self) -> dict[str, object]:
        summary = self.last_summary
        return {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_error": self.last_error,
            "skipped_runs": self.skipped_runs,
            "last_run": None
            if summary is None
            else {
                "started_at": summary.started_at.isoformat(),
                "finished_at": summary.finished_at.isoformat() if summary.finished_at else None,
                "users": summary.users,
                "checked": summary.checked,
                "skipped": summary.skipped,
                "failed": summary.failed,
                "new_trophies": summary.new_trophies,
            },
        }
