"""
seaguard/control_plane/scheduler.py
────────────────────────────────────
FleetScheduler: runs the two periodic sweeps over the fleet.

Sweeps
───────
  classification  every batch_processing_interval_ms (default 5 min)
                  for every non-recovered net: service.run_classification()
  drift           every drift_prediction_interval_ms (default 1 h)
                  for every ghost_suspected / ghost_confirmed net:
                  service.forecast_drift()

Each sweep fans out one task per net behind asyncio.Semaphore(max_concurrency).
A net that raises is logged and reported as a failed NetOutcome; the other
nets carry on. The finished SweepReport is published on `results`, a
bounded asyncio.Queue that drops its oldest report when full, so a
consumer that never reads cannot grow memory.

Ticks
──────
Each loop calls tick(kind) once per interval. A tick that fires while the
previous sweep of the same kind is still running is dropped (counted in
ticks_skipped), never queued. The two kinds never block each other.

Shutdown
─────────
stop(grace_period_s) stops the loops first (no new sweeps), then waits up
to the grace period for running sweeps. Whatever is still running after
that is cancelled; cancellation reaches the in-flight oracle calls. Work
already persisted (predictions, transitions, alerts) is kept.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from seaguard.shared.config import SeaGuardSettings

logger = logging.getLogger(__name__)

DEFAULT_RESULT_QUEUE_SIZE: int = 32
"""Reports kept for consumers of FleetScheduler.results before the oldest is dropped."""


class SweepKind(str, Enum):
    CLASSIFICATION = "classification"
    DRIFT = "drift"


class NetOutcome(BaseModel):
    """What one sweep did for one net. result is "ok", "skipped" or "failed"."""
    net_id: str
    result: str
    detail: Optional[str] = None


class SweepReport(BaseModel):
    sweep_id: int
    kind: SweepKind
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[NetOutcome] = Field(default_factory=list)
    cancelled: bool = False

    def count(self, result: str) -> int:
        return sum(1 for o in self.outcomes if o.result == result)

    @property
    def ok(self) -> int:
        return self.count("ok")

    @property
    def skipped(self) -> int:
        return self.count("skipped")

    @property
    def failed(self) -> int:
        return self.count("failed")


class FleetScheduler:
    """
    Periodic driver for a MonitoringService.

    Usage:
        scheduler = FleetScheduler(service, settings)
        scheduler.start()
        ...
        report = await scheduler.results.get()
        ...
        await scheduler.stop()

    Args:
        service:           MonitoringService (anything exposing
                           run_classification / forecast_drift and the two
                           list_nets_for_* helpers).
        settings:          SeaGuardSettings; intervals, max_concurrency,
                           shutdown_grace_period_s.
        result_queue_size: Capacity of `results`.
    """

    def __init__(
        self,
        service: "MonitoringService",  # type: ignore[name-defined]
        settings: SeaGuardSettings,
        result_queue_size: int = DEFAULT_RESULT_QUEUE_SIZE,
    ) -> None:
        self._service = service
        self._settings = settings
        self._intervals: Dict[SweepKind, float] = {
            SweepKind.CLASSIFICATION: settings.batch_processing_interval_s,
            SweepKind.DRIFT: settings.drift_prediction_interval_s,
        }
        self._max_concurrency = settings.max_concurrency

        self.results: "asyncio.Queue[SweepReport]" = asyncio.Queue(maxsize=result_queue_size)

        self._loops: Dict[SweepKind, asyncio.Task] = {}
        self._sweeps: Dict[SweepKind, asyncio.Task] = {}
        self._next_sweep_id = 0

        self._ticks: Dict[SweepKind, int] = {k: 0 for k in SweepKind}
        self._ticks_skipped: Dict[SweepKind, int] = {k: 0 for k in SweepKind}
        self._sweeps_completed: Dict[SweepKind, int] = {k: 0 for k in SweepKind}
        self._reports_dropped = 0

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._loops.values())

    def start(self) -> None:
        """Start both loops. Calling start() on a running scheduler is a no-op."""
        if self.is_running:
            return
        loop = asyncio.get_running_loop()
        for kind, interval in self._intervals.items():
            self._loops[kind] = loop.create_task(self._run_loop(kind, interval), name=f"seaguard-{kind.value}-loop")
        logger.info(
            "FleetScheduler started (classification every %.1fs, drift every %.1fs, concurrency=%d)",
            self._intervals[SweepKind.CLASSIFICATION],
            self._intervals[SweepKind.DRIFT],
            self._max_concurrency,
        )

    async def stop(self, grace_period_s: Optional[float] = None) -> None:
        """
        Stop the loops, give running sweeps `grace_period_s` (default from
        settings) to finish, then cancel the rest.
        """
        grace = self._settings.shutdown_grace_period_s if grace_period_s is None else grace_period_s

        loops = list(self._loops.values())
        for task in loops:
            task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        self._loops.clear()

        running = [t for t in self._sweeps.values() if not t.done()]
        if running:
            logger.info("Waiting up to %.1fs for %d running sweep(s)", grace, len(running))
            _, pending = await asyncio.wait(running, timeout=grace)
            if pending:
                logger.warning("Cancelling %d sweep(s) still running after the grace period", len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._sweeps.clear()
        logger.info("FleetScheduler stopped")

    # ── Ticks and sweeps ───────────────────────────────────────────────────────

    def tick(self, kind: SweepKind) -> bool:
        """
        Start a sweep of `kind` unless one is already running.

        Returns True if a sweep was started, False if the tick was dropped.
        """
        self._ticks[kind] += 1
        current = self._sweeps.get(kind)
        if current is not None and not current.done():
            self._ticks_skipped[kind] += 1
            logger.warning(
                "%s sweep still running; dropping tick (%d dropped so far)",
                kind.value, self._ticks_skipped[kind],
            )
            return False
        self._sweeps[kind] = asyncio.get_running_loop().create_task(
            self._sweep(kind), name=f"seaguard-{kind.value}-sweep"
        )
        return True

    async def run_sweep_once(self, kind: SweepKind) -> SweepReport:
        """Run one sweep now and return its report (also published on `results`)."""
        return await self._sweep(kind)

    def get_metrics(self) -> dict:
        return {
            "running": self.is_running,
            "ticks": {k.value: v for k, v in self._ticks.items()},
            "ticks_skipped": {k.value: v for k, v in self._ticks_skipped.items()},
            "sweeps_completed": {k.value: v for k, v in self._sweeps_completed.items()},
            "reports_dropped": self._reports_dropped,
        }

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _run_loop(self, kind: SweepKind, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.tick(kind)

    async def _sweep(self, kind: SweepKind) -> SweepReport:
        self._next_sweep_id += 1
        report = SweepReport(sweep_id=self._next_sweep_id, kind=kind, started_at=datetime.utcnow())

        try:
            if kind is SweepKind.CLASSIFICATION:
                net_ids = await self._service.list_nets_for_classification()
            else:
                net_ids = await self._service.list_nets_for_drift()
        except Exception:
            logger.exception("%s sweep #%d could not list nets", kind.value, report.sweep_id)
            self._finish(report, [], [])
            return report

        semaphore = asyncio.Semaphore(self._max_concurrency)
        loop = asyncio.get_running_loop()
        tasks = [loop.create_task(self._process(kind, net_id, semaphore)) for net_id in net_ids]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            report.cancelled = True
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._finish(report, net_ids, tasks)
            raise

        self._finish(report, net_ids, tasks)
        return report

    async def _process(self, kind: SweepKind, net_id: str, semaphore: asyncio.Semaphore) -> NetOutcome:
        async with semaphore:
            try:
                if kind is SweepKind.CLASSIFICATION:
                    return await self._classify(net_id)
                return await self._forecast(net_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("%s sweep failed for net %s", kind.value, net_id)
                return NetOutcome(net_id=net_id, result="failed", detail=f"{e.__class__.__name__}: {e}")

    async def _classify(self, net_id: str) -> NetOutcome:
        report = await self._service.run_classification(net_id)
        if report.outcome == "classified":
            transition = report.transition
            detail = f"confidence={report.confidence:.3f}"
            if transition is not None and transition.changed:
                detail += f" {transition.previous_status.value}->{transition.new_status.value}"
            return NetOutcome(net_id=net_id, result="ok", detail=detail)
        if report.outcome == "failed":
            return NetOutcome(net_id=net_id, result="failed", detail=report.reason)
        return NetOutcome(net_id=net_id, result="skipped", detail=report.reason)

    async def _forecast(self, net_id: str) -> NetOutcome:
        prediction = await self._service.forecast_drift(net_id)
        if prediction is None:
            return NetOutcome(net_id=net_id, result="skipped", detail="not anomalous")
        return NetOutcome(
            net_id=net_id,
            result="ok",
            detail=f"{len(prediction.horizon_forecasts)} horizons ({prediction.prediction_id})",
        )

    def _finish(self, report: SweepReport, net_ids: List[str], tasks: List[asyncio.Task]) -> None:
        for net_id, task in zip(net_ids, tasks):
            if task.cancelled():
                report.outcomes.append(NetOutcome(net_id=net_id, result="failed", detail="cancelled"))
            elif task.exception() is not None:
                report.outcomes.append(NetOutcome(net_id=net_id, result="failed", detail=repr(task.exception())))
            else:
                report.outcomes.append(task.result())
        report.finished_at = datetime.utcnow()
        if not report.cancelled:
            self._sweeps_completed[report.kind] += 1
        logger.info(
            "%s sweep #%d %s: %d ok, %d skipped, %d failed",
            report.kind.value, report.sweep_id,
            "cancelled" if report.cancelled else "finished",
            report.ok, report.skipped, report.failed,
        )
        self._publish(report)

    def _publish(self, report: SweepReport) -> None:
        try:
            self.results.put_nowait(report)
        except asyncio.QueueFull:
            self.results.get_nowait()
            self._reports_dropped += 1
            self.results.put_nowait(report)
