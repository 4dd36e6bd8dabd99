"""
tests/test_scheduler.py
────────────────────────
Test suite for seaguard/control_plane/scheduler.py

Testing strategy
─────────────────
Sweeps run against a real MonitoringService over the in-memory store and
the scripted FakeOracle. The oracle gate holds calls in flight so the
tests can observe overlap (bounded concurrency, dropped ticks, shutdown)
deterministically instead of racing the clock.

Test groups
────────────
Group 1: Classification sweep  — eligibility, outcomes, per-net isolation
Group 2: Drift sweep           — only anomalous nets
Group 3: Concurrency and ticks — semaphore bound, dropped ticks
Group 4: Result queue          — bounded, drops oldest
Group 5: Lifecycle             — start/stop, cancellation on shutdown
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import seed_net
from seaguard.control_plane.monitoring_service import MonitoringService
from seaguard.control_plane.oracle import OracleRejectedError
from seaguard.control_plane.scheduler import FleetScheduler, SweepKind
from seaguard.shared.config import SeaGuardSettings
from seaguard.shared.models import NetStatus


async def _until(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true; fail the test after `timeout` seconds."""
    async def wait():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(wait(), timeout)


def _by_net(report) -> dict:
    return {o.net_id: o for o in report.outcomes}


@pytest.fixture
def scheduler(service, settings):
    return FleetScheduler(service, settings)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Classification sweep
# ─────────────────────────────────────────────────────────────────────────────

class TestClassificationSweep:

    async def test_outcomes_per_net(self, scheduler, store, oracle, now):
        await seed_net(store, "NET-1", now)
        await seed_net(store, "NET-2", now, pings=2)
        await seed_net(store, "NET-3", now)
        await store.set_net_status("NET-3", NetStatus.ACTIVE, NetStatus.RECOVERED)
        oracle.script("NET-1", 0.9)

        report = await scheduler.run_sweep_once(SweepKind.CLASSIFICATION)

        outcomes = _by_net(report)
        assert set(outcomes) == {"NET-1", "NET-2"}
        assert outcomes["NET-1"].result == "ok"
        assert "active->ghost_confirmed" in outcomes["NET-1"].detail
        assert outcomes["NET-2"].result == "skipped"
        assert "insufficient data" in outcomes["NET-2"].detail
        assert (report.ok, report.skipped, report.failed) == (1, 1, 0)
        assert not report.cancelled and report.finished_at is not None

    async def test_oracle_failure_is_failed_outcome(self, scheduler, store, oracle, now):
        await seed_net(store, "NET-1", now)
        oracle.script("NET-1", OracleRejectedError("schema mismatch"))

        report = await scheduler.run_sweep_once(SweepKind.CLASSIFICATION)
        assert report.outcomes[0].result == "failed"
        assert "schema mismatch" in report.outcomes[0].detail

    async def test_one_net_raising_does_not_stop_the_others(self, scheduler, store, oracle, now):
        await seed_net(store, "NET-1", now)
        await seed_net(store, "NET-2", now)
        await seed_net(store, "NET-3", now)
        oracle.script("NET-2", RuntimeError("boom"))

        report = await scheduler.run_sweep_once(SweepKind.CLASSIFICATION)

        outcomes = _by_net(report)
        assert outcomes["NET-2"].result == "failed"
        assert "RuntimeError" in outcomes["NET-2"].detail
        assert outcomes["NET-1"].result == outcomes["NET-3"].result == "ok"
        assert (await store.get_latest_prediction("NET-3")) is not None

    async def test_listing_failure_gives_empty_report(self, scheduler, service, monkeypatch):
        async def broken():
            raise RuntimeError("store offline")

        monkeypatch.setattr(service, "list_nets_for_classification", broken)
        report = await scheduler.run_sweep_once(SweepKind.CLASSIFICATION)
        assert report.outcomes == []
        assert not report.cancelled

    async def test_empty_fleet(self, scheduler):
        report = await scheduler.run_sweep_once(SweepKind.CLASSIFICATION)
        assert report.outcomes == []
        assert scheduler.get_metrics()["sweeps_completed"]["classification"] == 1


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Drift sweep
# ─────────────────────────────────────────────────────────────────────────────

class TestDriftSweep:

    async def test_only_anomalous_nets_are_forecast(self, scheduler, store, oracle, now):
        await seed_net(store, "NET-1", now)
        await seed_net(store, "NET-2", now)
        await seed_net(store, "NET-3", now)
        await store.set_net_status("NET-2", NetStatus.ACTIVE, NetStatus.GHOST_CONFIRMED)
        await store.set_net_status("NET-3", NetStatus.ACTIVE, NetStatus.GHOST_SUSPECTED)

        report = await scheduler.run_sweep_once(SweepKind.DRIFT)

        assert report.kind is SweepKind.DRIFT
        assert set(_by_net(report)) == {"NET-2", "NET-3"}
        assert report.ok == 2
        assert {r.net_id for r in oracle.drift_calls} == {"NET-2", "NET-3"}
        assert (await store.get_net("NET-2")).status is NetStatus.GHOST_CONFIRMED


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Concurrency and ticks
# ─────────────────────────────────────────────────────────────────────────────

class TestConcurrencyAndTicks:

    async def test_concurrency_is_bounded(self, store, oracle, retry_policy, now):
        settings = SeaGuardSettings(max_concurrency=2)
        service = MonitoringService(store, oracle, settings, retry_policy=retry_policy, channels=[])
        scheduler = FleetScheduler(service, settings)
        for i in range(5):
            await seed_net(store, f"NET-{i}", now)
        oracle.gate = asyncio.Event()

        sweep = asyncio.create_task(scheduler.run_sweep_once(SweepKind.CLASSIFICATION))
        await _until(lambda: len(oracle.calls) == 2)
        await asyncio.sleep(0.02)
        assert len(oracle.calls) == 2
        assert service.classifier.in_flight_count == 2

        oracle.gate.set()
        report = await asyncio.wait_for(sweep, 2.0)
        assert report.ok == 5
        assert len(oracle.calls) == 5

    async def test_tick_dropped_while_sweep_running(self, scheduler, store, oracle, now):
        await seed_net(store, "NET-1", now)
        oracle.gate = asyncio.Event()

        assert scheduler.tick(SweepKind.CLASSIFICATION) is True
        await _until(lambda: len(oracle.calls) == 1)
        assert scheduler.tick(SweepKind.CLASSIFICATION) is False

        metrics = scheduler.get_metrics()
        assert metrics["ticks"]["classification"] == 2
        assert metrics["ticks_skipped"]["classification"] == 1

        oracle.gate.set()
        report = await asyncio.wait_for(scheduler.results.get(), 2.0)
        assert report.ok == 1
        assert len(oracle.calls) == 1

    async def test_kinds_do_not_block_each_other(self, scheduler, store, oracle, now):
        await seed_net(store, "NET-1", now)
        await store.set_net_status("NET-1", NetStatus.ACTIVE, NetStatus.GHOST_SUSPECTED)
        oracle.gate = asyncio.Event()
        oracle.gated_nets = {"NET-1"}

        assert scheduler.tick(SweepKind.CLASSIFICATION)
        assert scheduler.tick(SweepKind.DRIFT)
        await _until(lambda: oracle.calls and oracle.drift_calls)
        assert scheduler.get_metrics()["ticks_skipped"] == {"classification": 0, "drift": 0}

        oracle.gate.set()
        kinds = {(await asyncio.wait_for(scheduler.results.get(), 2.0)).kind for _ in range(2)}
        assert kinds == {SweepKind.CLASSIFICATION, SweepKind.DRIFT}

    async def test_next_tick_runs_after_sweep_finishes(self, scheduler):
        assert scheduler.tick(SweepKind.CLASSIFICATION)
        await asyncio.wait_for(scheduler.results.get(), 2.0)
        await asyncio.sleep(0)
        assert scheduler.tick(SweepKind.CLASSIFICATION)
        await asyncio.wait_for(scheduler.results.get(), 2.0)


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Result queue
# ─────────────────────────────────────────────────────────────────────────────

class TestResultQueue:

    async def test_full_queue_drops_oldest(self, service, settings):
        scheduler = FleetScheduler(service, settings, result_queue_size=2)
        for _ in range(3):
            await scheduler.run_sweep_once(SweepKind.CLASSIFICATION)

        assert scheduler.results.qsize() == 2
        assert [scheduler.results.get_nowait().sweep_id for _ in range(2)] == [2, 3]
        assert scheduler.get_metrics()["reports_dropped"] == 1


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: Lifecycle
# ─────────────────────────────────────────────────────────────────────────────

class TestLifecycle:

    async def test_start_runs_sweeps_and_stop_ends_loops(self, scheduler):
        scheduler.start()
        assert scheduler.is_running

        report = await asyncio.wait_for(scheduler.results.get(), 2.0)
        assert report.kind in (SweepKind.CLASSIFICATION, SweepKind.DRIFT)

        await scheduler.stop()
        assert not scheduler.is_running
        assert scheduler.get_metrics()["running"] is False

    async def test_start_twice_is_noop(self, scheduler):
        scheduler.start()
        loops = dict(scheduler._loops)
        scheduler.start()
        assert scheduler._loops == loops
        await scheduler.stop()

    async def test_stop_cancels_hung_sweep_after_grace(self, scheduler, service, store, oracle, now):
        await seed_net(store, "NET-1", now)
        await seed_net(store, "NET-2", now)
        oracle.gate = asyncio.Event()
        oracle.gated_nets = {"NET-1"}
        oracle.script("NET-2", 0.9)

        scheduler.tick(SweepKind.CLASSIFICATION)
        await _until(lambda: (
            len(oracle.calls) == 2 and service.classifier.in_flight_count == 1
        ))
        await scheduler.stop(grace_period_s=0.05)
        await asyncio.sleep(0.01)

        report = scheduler.results.get_nowait()
        assert report.cancelled
        outcomes = _by_net(report)
        assert (outcomes["NET-1"].result, outcomes["NET-1"].detail) == ("failed", "cancelled")
        assert outcomes["NET-2"].result == "ok"

        # cancellation reached the oracle call; completed work is kept
        assert oracle.cancelled == 1
        assert service.classifier.in_flight_count == 0
        assert (await store.get_net("NET-1")).status is NetStatus.ACTIVE
        assert (await store.get_net("NET-2")).status is NetStatus.GHOST_CONFIRMED
        assert await store.get_open_alert("NET-2") is not None
        assert scheduler.get_metrics()["sweeps_completed"]["classification"] == 0

    async def test_stop_waits_for_sweep_within_grace(self, scheduler, store, oracle, now):
        await seed_net(store, "NET-1", now)
        oracle.gate = asyncio.Event()

        scheduler.tick(SweepKind.CLASSIFICATION)
        await _until(lambda: len(oracle.calls) == 1)
        asyncio.get_running_loop().call_later(0.02, oracle.gate.set)
        await scheduler.stop(grace_period_s=2.0)

        report = scheduler.results.get_nowait()
        assert not report.cancelled
        assert report.ok == 1
        assert oracle.cancelled == 0
