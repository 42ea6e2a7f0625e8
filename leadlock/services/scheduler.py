from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from leadlock.services.hold_settings import HoldSettingsStore
from leadlock.services.reconciler import Reconciler
from leadlock.store import ServiceState

logger = logging.getLogger("leadlock")


def run_task(state: ServiceState, name: str, work: Callable[[], object]) -> bool:
    """Run one periodic step; failures are logged and kept as the last error."""
    try:
        work()
        return True
    except Exception as exc:
        logger.exception("periodic_task_failed task=%s", name)
        state.metrics.record_error(name, exc)
        return False


def flush_tick(state: ServiceState, reconciler: Reconciler) -> bool:
    return run_task(state, "flush", reconciler.flush_pending)


def unlock_tick(state: ServiceState, reconciler: Reconciler) -> bool:
    return run_task(state, "unlock", reconciler.sweep)


def index_tick(state: ServiceState) -> bool:
    return run_task(state, "index", state.leads_index.refresh)


def warm_up(state: ServiceState, hold_settings: HoldSettingsStore) -> None:
    """Load cooldown settings and the leads index; neither failure blocks startup."""
    if not run_task(state, "settings", hold_settings.load):
        logger.warning("hold_settings_load_failed using_default=%s", state.holds.default_minutes)
    if index_tick(state):
        logger.info("leads_index_loaded phones=%s", len(state.leads_index))
    else:
        logger.warning("leads_index_load_failed")


class Scheduler:
    """
    Runs flush, unlock sweep, and index refresh on their own intervals.

    The optional ``warm_up`` runs once in a worker thread after ``start``; the
    interval loops begin when it returns, so startup never waits on the sheet.
    """

    def __init__(
        self,
        state: ServiceState,
        reconciler: Reconciler,
        *,
        flush_interval_ms: int,
        unlock_sweep_interval_ms: int,
        index_refresh_interval_ms: int,
        warm_up: Optional[Callable[[], None]] = None,
    ) -> None:
        self.state = state
        self.reconciler = reconciler
        self._warm_up = warm_up
        self._warmed: Optional[asyncio.Event] = None
        self._intervals = {
            "flush": flush_interval_ms / 1000.0,
            "unlock": unlock_sweep_interval_ms / 1000.0,
            "index": index_refresh_interval_ms / 1000.0,
        }
        self._tasks: list[asyncio.Task] = []

    def _step(self, name: str) -> Callable[[], bool]:
        if name == "flush":
            return lambda: flush_tick(self.state, self.reconciler)
        if name == "unlock":
            return lambda: unlock_tick(self.state, self.reconciler)
        return lambda: index_tick(self.state)

    async def _warm(self) -> None:
        try:
            if self._warm_up is not None:
                await asyncio.to_thread(self._warm_up)
        finally:
            self._warmed.set()

    async def _loop(self, name: str) -> None:
        interval = self._intervals[name]
        step = self._step(name)
        await self._warmed.wait()
        while True:
            await asyncio.sleep(interval)
            # Spreadsheet calls block; keep them off the event loop.
            await asyncio.to_thread(step)

    def start(self) -> None:
        if self._tasks:
            return
        self._warmed = asyncio.Event()
        self._tasks.append(asyncio.create_task(self._warm(), name="leadlock-warm-up"))
        for name in self._intervals:
            self._tasks.append(asyncio.create_task(self._loop(name), name=f"leadlock-{name}"))
        logger.info(
            "scheduler_started flush_s=%.1f unlock_s=%.1f index_s=%.1f",
            self._intervals["flush"],
            self._intervals["unlock"],
            self._intervals["index"],
        )

    async def stop(self, timeout: Optional[float] = 5.0) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        logger.info("scheduler_stopped")
