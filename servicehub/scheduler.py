"""Periodic reconciliation scheduling."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from servicehub.models import iso_ts
from servicehub.reconcile import CycleReport, ReconciliationCycle


logger = structlog.get_logger(__name__)


class MonitorScheduler:
    """
    Runs the reconciliation cycle on a fixed interval using APScheduler.

    Cycles run as their own asyncio tasks (single-flight). Stopping the scheduler only
    cancels future ticks; a cycle that is already running completes.
    """

    JOB_ID = "reconcile_services"

    def __init__(self, cycle: ReconciliationCycle, *, interval_seconds: int) -> None:
        self.cycle = cycle
        self.interval_seconds = int(interval_seconds)
        self.scheduler: AsyncIOScheduler | None = None
        self.running = False
        self.last_report: CycleReport | None = None
        self.last_reason: str | None = None
        self.cycles_completed = 0
        self._stopped = False
        self._cycle_running = False
        self._rerun_requested = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def cycle_in_flight(self) -> bool:
        return self._cycle_running

    async def start(self) -> None:
        """Run one cycle now, then every `interval_seconds`."""
        if self.running:
            logger.warning("Monitor scheduler already running")
            return
        if self._stopped:
            logger.warning("Monitor scheduler was stopped; not restarting")
            return

        self.scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self.scheduler.add_job(
            self._on_tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Reconcile services",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        self.running = True
        logger.info("Monitor scheduler started", interval_seconds=self.interval_seconds)
        self.trigger("startup")

    async def stop(self) -> None:
        """Cancel future ticks. Safe to call without a prior start()."""
        self._stopped = True
        if not self.running:
            return
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Monitor scheduler stopped", cycle_in_flight=self._cycle_running)

    async def _on_tick(self) -> None:
        self.trigger("interval", coalesce=False)

    def trigger(self, reason: str = "manual", *, coalesce: bool = True) -> bool:
        """
        Start a cycle in the background without waiting for it.

        While a cycle is in flight, a coalescing trigger queues exactly one follow-up
        run; a non-coalescing trigger (interval tick) is dropped. Returns True when a
        new cycle task was started.
        """
        if self._stopped:
            logger.info("Cycle trigger ignored after stop", reason=reason)
            return False
        if self._cycle_running:
            if coalesce:
                self._rerun_requested = True
                logger.info("Cycle in flight, follow-up queued", reason=reason)
            else:
                logger.info("Cycle in flight, tick skipped", reason=reason)
            return False

        self._cycle_running = True
        task = asyncio.get_running_loop().create_task(self._run(reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, reason: str) -> None:
        try:
            while True:
                try:
                    report = await self.cycle.run_once()
                    self.last_report = report
                    self.last_reason = reason
                    self.cycles_completed += 1
                except Exception as e:
                    logger.exception("Reconciliation cycle crashed", reason=reason, error=f"{type(e).__name__}: {e}")
                if not self._rerun_requested or self._stopped:
                    break
                self._rerun_requested = False
                reason = "follow_up"
        finally:
            self._cycle_running = False
            self._rerun_requested = False

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for in-flight cycles. Returns False if some were still running at the timeout."""
        pending = {t for t in self._tasks if not t.done()}
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning("Cycle still running after grace period", timeout=timeout)
        return not still_pending

    def next_run_ts(self) -> float | None:
        if self.scheduler is None or not self.running:
            return None
        job = self.scheduler.get_job(self.JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.timestamp()

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "intervalSeconds": self.interval_seconds,
            "cycleInFlight": self._cycle_running,
            "nextRun": iso_ts(self.next_run_ts()),
            "cyclesCompleted": self.cycles_completed,
            "lastReason": self.last_reason,
            "lastReport": self.last_report.as_dict() if self.last_report else None,
        }
