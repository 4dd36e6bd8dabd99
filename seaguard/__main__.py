"""
seaguard/__main__.py
─────────────────────
`python -m seaguard`: run the monitoring core until SIGINT / SIGTERM.

Builds the in-memory store, the HTTP oracle client, the MonitoringService
and the FleetScheduler from environment settings (SEAGUARD_*), starts both
sweeps, and on a stop signal shuts down within shutdown_grace_period_s.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from seaguard.control_plane.monitoring_service import MonitoringService
from seaguard.control_plane.oracle import HttpPredictionOracle
from seaguard.control_plane.scheduler import FleetScheduler
from seaguard.shared.config import get_settings
from seaguard.telemetry.store import InMemoryTelemetryStore

logger = logging.getLogger("seaguard")


async def _consume_reports(scheduler: FleetScheduler) -> None:
    while True:
        report = await scheduler.results.get()
        logger.debug(
            "Report %s #%d: %d ok / %d skipped / %d failed",
            report.kind.value, report.sweep_id, report.ok, report.skipped, report.failed,
        )


async def main() -> None:
    settings = get_settings()
    store = InMemoryTelemetryStore()
    oracle = HttpPredictionOracle(settings.oracle)
    service = MonitoringService(store, oracle, settings)
    scheduler = FleetScheduler(service, settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt
            pass

    health = await service.health_check()
    logger.info("Start-up health: %s (oracle at %s)", health["status"], settings.oracle.url)

    scheduler.start()
    consumer = loop.create_task(_consume_reports(scheduler))
    try:
        await stop_event.wait()
        logger.info("Stop signal received; shutting down")
    finally:
        await scheduler.stop(settings.shutdown_grace_period_s)
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)
        await service.aclose(timeout=settings.shutdown_grace_period_s)
        logger.info("SeaGuard stopped")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    asyncio.run(main())
