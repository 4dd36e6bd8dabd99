"""
seaguard/control_plane/monitoring_service.py
─────────────────────────────────────────────
MonitoringService: the core's front door. Wires the store, oracle,
feature extractor, classifier, state machine, alert dispatcher and drift
forecaster together and exposes the operations callers actually use.

Public API
───────────
    Ingestion
        submit_ping(net_id, latitude, longitude, timestamp, source) → Dict
        submit_pings(batch)                                         → Dict
        register_net(net_id, qr_code_id, owner_id, location, time)  → Dict

    Monitoring cycle (driven by the FleetScheduler)
        run_classification(net_id)  → ClassificationReport
        forecast_drift(net_id)      → Optional[Prediction]

    Operator actions
        confirm_recovery(net_id, recovered_by, notes) → RecoveryRecord
        acknowledge_alert(alert_id)                   → Optional[Alert]

    Reads
        get_net_status(net_id)          → Optional[NetStatusView]
        get_net_by_qr_code(qr_code_id)  → Optional[NetStatusView]
        get_latest_pings(net_id, limit) → List[Ping]
        get_dashboard_summary()         → Dict
        health_check()                  → Dict

Ingestion methods return status dicts ("ACCEPTED" / "DUPLICATE" /
"REJECTED" / "REGISTERED" / "ERROR") and never raise for bad input. The
monitoring-cycle methods let StoreError propagate; the scheduler isolates
it per net.

One classification cycle
─────────────────────────
  1. net recovered                  → skipped, nothing written
  2. extract features               → InsufficientData: skipped, nothing written
  3. classifier.classify(features)
       prediction → save_prediction, advance last_prediction_id,
                    apply PredictionEvent(confidence)
       failure    → apply ClassificationFailedEvent (status unchanged)
  4. committed transitions reach the AlertDispatcher as a listener
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from seaguard.control_plane.alerts import AlertDispatcher, NotificationChannel
from seaguard.control_plane.classifier import ClassificationFailure, ClassificationOrchestrator
from seaguard.control_plane.drift import DriftForecaster
from seaguard.control_plane.oracle import PredictionOracle
from seaguard.control_plane.retry import RetryPolicy
from seaguard.control_plane.state_machine import (
    ClassificationFailedEvent,
    DetectionThresholds,
    NetStateMachine,
    PredictionEvent,
    RecoveryEvent,
    TransitionResult,
)
from seaguard.shared.config import SeaGuardSettings
from seaguard.shared.models import (
    Alert,
    InsufficientData,
    Net,
    NetStatus,
    NetStatusView,
    Ping,
    Prediction,
    PredictionSummary,
    RecoveryRecord,
)
from seaguard.telemetry.features import FeatureExtractor
from seaguard.telemetry.ingestion import (
    IngestResult,
    IngestionGate,
    PingRejectedError,
    RegistrationRejectedError,
    admit_registration,
)
from seaguard.telemetry.store import DuplicateNetError, TelemetryStore, UnknownNetError

logger = logging.getLogger(__name__)


class ClassificationReport(BaseModel):
    """
    Result of one run_classification() call.

    outcome:
        "classified" → a Prediction was stored (prediction_id set) and the
                       state machine was applied (transition set).
        "skipped"    → recovered net or not enough pings; nothing written.
        "failed"     → oracle failure; status unchanged (failure set).
        "joined"     → another caller's in-flight classification for the
                       same net answered; that caller persisted it.
    """
    net_id: str
    outcome: str
    reason: Optional[str] = None
    prediction_id: Optional[str] = None
    confidence: Optional[float] = None
    failure: Optional[ClassificationFailure] = None
    transition: Optional[TransitionResult] = None

    @property
    def status_changed(self) -> bool:
        return self.transition is not None and self.transition.changed


class MonitoringService:
    """
    Args:
        store:        TelemetryStore shared by every component.
        oracle:       PredictionOracle used for classification and drift.
        settings:     SeaGuardSettings.
        retry_policy: Optional override for both oracle call sites (tests
                      inject one with a recording sleep).
        channels:     Optional explicit notification channels. None → from
                      the settings toggles.
    """

    def __init__(
        self,
        store: TelemetryStore,
        oracle: PredictionOracle,
        settings: SeaGuardSettings,
        retry_policy: Optional[RetryPolicy] = None,
        channels: Optional[List[NotificationChannel]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.oracle = oracle

        self.gate = IngestionGate(store)
        self.extractor = FeatureExtractor(store, settings)
        self.classifier = ClassificationOrchestrator(oracle, settings, retry_policy=retry_policy)
        self.state_machine = NetStateMachine(store, DetectionThresholds.from_settings(settings))
        self.dispatcher = AlertDispatcher(store, settings, channels=channels)
        self.drift = DriftForecaster(store, oracle, self.extractor, settings, retry_policy=retry_policy)

        self.state_machine.add_listener(self.dispatcher.on_transition)

        self._pings_accepted = 0
        self._pings_duplicate = 0
        self._pings_rejected = 0
        self._recovery_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        logger.info(
            "MonitoringService initialised (confirmed>=%.2f, suspected>=%.2f, window=%sh, min_points=%d)",
            settings.confidence_threshold,
            settings.suspected_threshold,
            settings.feature_time_window_hours,
            settings.min_data_points_for_ml,
        )

    # ── Ingestion ──────────────────────────────────────────────────────────────

    async def submit_ping(
        self,
        net_id: str,
        latitude: Any,
        longitude: Any,
        timestamp: Any = None,
        source: Any = "lora",
    ) -> Dict[str, Any]:
        """
        Validate and append one ping.

        Returns:
            {"status": "ACCEPTED"|"DUPLICATE"|"REJECTED"|"ERROR", "net_id", "message"}
        """
        try:
            result = await self.gate.submit(net_id, latitude, longitude, timestamp, source)
        except PingRejectedError as e:
            self._pings_rejected += 1
            logger.warning("Ping rejected for %s: %s", net_id, e.reason)
            return {"status": "REJECTED", "net_id": net_id, "message": e.reason}
        except Exception as e:
            logger.exception("Unexpected error in submit_ping for %s", net_id)
            return {
                "status": "ERROR",
                "net_id": net_id,
                "message": f"Unexpected error: {e.__class__.__name__}: {e}",
            }

        if result is IngestResult.ACCEPTED:
            self._pings_accepted += 1
            message = "Ping recorded"
        else:
            self._pings_duplicate += 1
            message = "Ping already recorded"
        return {"status": result.value, "net_id": net_id, "message": message}

    async def submit_pings(self, batch: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Submit 1..batch_max_size pings. Each item is a dict with
        net_id/netId, latitude, longitude and optional timestamp, source.

        Items are processed independently: one bad ping never rejects the
        rest of the batch.
        """
        limit = self.settings.batch_max_size
        if not isinstance(batch, list) or not 1 <= len(batch) <= limit:
            size = len(batch) if isinstance(batch, list) else "invalid"
            return {
                "status": "REJECTED",
                "message": f"Batch must contain between 1 and {limit} pings (got {size})",
                "results": [],
            }

        results = []
        for item in batch:
            if not isinstance(item, dict):
                results.append({"status": "REJECTED", "net_id": None, "message": "Ping must be an object"})
                continue
            results.append(
                await self.submit_ping(
                    item.get("net_id", item.get("netId")),
                    item.get("latitude"),
                    item.get("longitude"),
                    item.get("timestamp"),
                    item.get("source") or "lora",
                )
            )

        counts = Counter(r["status"] for r in results)
        return {
            "status": "PROCESSED",
            "accepted": counts.get("ACCEPTED", 0),
            "duplicates": counts.get("DUPLICATE", 0),
            "rejected": counts.get("REJECTED", 0) + counts.get("ERROR", 0),
            "results": results,
        }

    async def register_net(
        self,
        net_id: str,
        qr_code_id: str,
        owner_id: str,
        deployment_location: Dict[str, Any],
        deployment_time: Any = None,
    ) -> Dict[str, Any]:
        """
        Returns:
            {"status": "REGISTERED"|"REJECTED"|"ERROR", "net_id", "message"}
        """
        try:
            net = admit_registration(net_id, qr_code_id, owner_id, deployment_location, deployment_time)
            await self.store.register_net(net)
        except (RegistrationRejectedError, DuplicateNetError) as e:
            logger.warning("Registration of %s rejected: %s", net_id, e.reason)
            return {"status": "REJECTED", "net_id": net_id, "message": e.reason}
        except Exception as e:
            logger.exception("Unexpected error in register_net for %s", net_id)
            return {
                "status": "ERROR",
                "net_id": net_id,
                "message": f"Unexpected error: {e.__class__.__name__}: {e}",
            }

        logger.info("Net %s registered (qr=%s, owner=%s)", net_id, qr_code_id, owner_id)
        return {"status": "REGISTERED", "net_id": net_id, "message": "Net registered and active"}

    # ── Monitoring cycle ───────────────────────────────────────────────────────

    async def run_classification(self, net_id: str, now: Optional[datetime] = None) -> ClassificationReport:
        """
        One classification cycle for one net. See the module docstring.

        Raises:
            UnknownNetError: net_id is not registered.
            StoreError:      the store failed mid-cycle.
        """
        net = await self.store.get_net(net_id)
        if net is None:
            raise UnknownNetError(net_id)
        if net.status.is_terminal:
            return ClassificationReport(net_id=net_id, outcome="skipped", reason="recovered")

        features = await self.extractor.extract(net_id, now)
        if isinstance(features, InsufficientData):
            return ClassificationReport(
                net_id=net_id,
                outcome="skipped",
                reason=f"insufficient data ({features.ping_count}/{features.required} pings)",
            )

        outcome = await self.classifier.classify(features)
        if outcome.deduplicated:
            return ClassificationReport(
                net_id=net_id,
                outcome="joined",
                reason="joined an in-flight classification",
                prediction_id=outcome.prediction.prediction_id if outcome.prediction else None,
                confidence=outcome.prediction.confidence if outcome.prediction else None,
                failure=outcome.failure,
            )

        if not outcome.ok:
            transition = await self.state_machine.apply(net_id, ClassificationFailedEvent())
            return ClassificationReport(
                net_id=net_id,
                outcome="failed",
                reason=outcome.failure.message,
                failure=outcome.failure,
                transition=transition,
            )

        prediction = outcome.prediction
        await self.store.save_prediction(prediction)
        await self.store.update_net(net_id, last_prediction_id=prediction.prediction_id)
        transition = await self.state_machine.apply(net_id, PredictionEvent(prediction.confidence))
        return ClassificationReport(
            net_id=net_id,
            outcome="classified",
            prediction_id=prediction.prediction_id,
            confidence=prediction.confidence,
            transition=transition,
        )

    async def forecast_drift(self, net_id: str, now: Optional[datetime] = None) -> Optional[Prediction]:
        return await self.drift.forecast(net_id, now)

    async def list_nets_for_classification(self) -> List[str]:
        nets = await self.store.list_nets(
            [NetStatus.ACTIVE, NetStatus.GHOST_SUSPECTED, NetStatus.GHOST_CONFIRMED]
        )
        return [n.net_id for n in nets]

    async def list_nets_for_drift(self) -> List[str]:
        nets = await self.store.list_nets([NetStatus.GHOST_SUSPECTED, NetStatus.GHOST_CONFIRMED])
        return [n.net_id for n in nets]

    # ── Operator actions ───────────────────────────────────────────────────────

    async def confirm_recovery(
        self,
        net_id: str,
        recovered_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> RecoveryRecord:
        """
        Mark a net recovered, whatever it is doing right now.

        Wins against any classification in flight for the same net: the
        stale transition loses its compare-and-set. Confirming an already
        recovered net returns the existing record; confirmations for one
        net are serialised, so the first one's record is the one kept.
        The record is written only once the net is actually recovered.

        Raises:
            UnknownNetError: net_id is not registered.
        """
        async with self._recovery_locks[net_id]:
            net = await self.store.get_net(net_id)
            if net is None:
                raise UnknownNetError(net_id)
            existing = await self.store.get_recovery(net_id)
            if net.status.is_terminal and existing is not None:
                return existing

            result = await self.state_machine.force_recovery(
                net_id, RecoveryEvent(recovered_by=recovered_by)
            )
            if not result.changed and existing is not None:
                return existing

            previous = result.previous_status if result.changed else net.status
            record = RecoveryRecord(
                net_id=net_id,
                recovered_by=recovered_by,
                recovery_notes=notes,
                previous_status=previous,
            )
            await self.store.save_recovery(record)
        logger.info("Net %s recovered (by=%s, was %s)", net_id, recovered_by, previous.value)
        return record

    async def acknowledge_alert(self, alert_id: str) -> Optional[Alert]:
        return await self.dispatcher.acknowledge(alert_id)

    # ── Reads ──────────────────────────────────────────────────────────────────

    async def get_net_status(self, net_id: str) -> Optional[NetStatusView]:
        net = await self.store.get_net(net_id)
        if net is None:
            return None
        return await self._view(net)

    async def get_net_by_qr_code(self, qr_code_id: str) -> Optional[NetStatusView]:
        net = await self.store.get_net_by_qr_code(qr_code_id)
        if net is None:
            return None
        return await self._view(net)

    async def get_latest_pings(self, net_id: str, limit: int = 10) -> List[Ping]:
        return await self.store.get_latest_pings(net_id, limit)

    async def get_dashboard_summary(self) -> Dict[str, Any]:
        """
        Fleet overview for the dashboard.

        Keys:
            total_nets:   Count of registered nets.
            by_status:    Count per NetStatus value (every status present).
            open_alerts:  Count of unresolved alerts.
            ingestion:    accepted / duplicate / rejected ping counters.
            classifier:   ClassificationOrchestrator metrics.
            alerts:       AlertDispatcher metrics.
            drift:        DriftForecaster metrics.
        """
        nets = await self.store.list_nets()
        by_status = Counter(n.status.value for n in nets)
        open_alerts = await self.store.list_alerts(open_only=True)
        return {
            "total_nets": len(nets),
            "by_status": {s.value: by_status.get(s.value, 0) for s in NetStatus},
            "open_alerts": len(open_alerts),
            "ingestion": {
                "accepted": self._pings_accepted,
                "duplicate": self._pings_duplicate,
                "rejected": self._pings_rejected,
            },
            "classifier": self.classifier.get_metrics(),
            "alerts": self.dispatcher.get_metrics(),
            "drift": self.drift.get_metrics(),
        }

    async def health_check(self) -> Dict[str, Any]:
        """
        "healthy" when the store answers and the oracle reports healthy;
        "degraded" when only the oracle is down (monitoring continues, no
        fresh classifications); "unhealthy" when the store is down.
        """
        try:
            store_ok = await self.store.ping()
        except Exception as e:
            logger.error("Store health check failed: %s", e)
            store_ok = False
        oracle = await self.oracle.health_check()

        if not store_ok:
            status = "unhealthy"
        elif oracle.get("status") != "healthy":
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "store": "healthy" if store_ok else "unhealthy",
            "oracle": oracle,
            "timestamp": datetime.utcnow().isoformat(),
        }

    async def aclose(self, timeout: Optional[float] = None) -> None:
        """Flush alert deliveries and release the oracle client."""
        await self.dispatcher.drain(timeout)
        await self.oracle.aclose()

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _view(self, net: Net) -> NetStatusView:
        latest = await self.store.get_latest_prediction(net.net_id)
        return NetStatusView(
            net=net,
            latest_prediction=PredictionSummary.from_prediction(latest) if latest else None,
            open_alert=await self.store.get_open_alert(net.net_id),
            recovery=await self.store.get_recovery(net.net_id),
        )

    def __repr__(self) -> str:
        return f"MonitoringService(store={self.store!r}, oracle={self.oracle!r})"
