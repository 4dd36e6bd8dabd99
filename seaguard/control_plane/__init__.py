"""
seaguard/control_plane — the monitoring brain.

Public API:

    Oracle:
        PredictionOracle / HttpPredictionOracle  — classification + drift endpoints
        OracleError and its Timeout / Unavailable / Rejected subclasses
        RetryPolicy                              — bounded exponential backoff

    Lifecycle:
        ClassificationOrchestrator  — timeout, retries, one in-flight call per net
        NetStateMachine / next_status — transition table + compare-and-set commit
        AlertDispatcher             — one open alert per net, channel delivery

    Forecasting and scheduling:
        DriftForecaster / TrajectoryPredictor  — oracle drift, LSTM fallback
        MonitoringService                      — wires everything together
        FleetScheduler                         — periodic sweeps, bounded fan-out
"""

from seaguard.control_plane.alerts import AlertDispatcher, LoggingChannel, NotificationChannel
from seaguard.control_plane.classifier import (
    ClassificationFailure,
    ClassificationOrchestrator,
    ClassificationOutcome,
)
from seaguard.control_plane.drift import DriftForecastError, DriftForecaster
from seaguard.control_plane.monitoring_service import ClassificationReport, MonitoringService
from seaguard.control_plane.oracle import (
    HttpPredictionOracle,
    OracleError,
    OracleRejectedError,
    OracleTimeoutError,
    OracleUnavailableError,
    PredictionOracle,
)
from seaguard.control_plane.retry import RetryPolicy
from seaguard.control_plane.scheduler import FleetScheduler, NetOutcome, SweepKind, SweepReport
from seaguard.control_plane.state_machine import (
    ClassificationFailedEvent,
    DetectionThresholds,
    NetStateMachine,
    PredictionEvent,
    RecoveryEvent,
    next_status,
)
from seaguard.control_plane.trajectory import TrajectoryPredictor

__all__ = [
    "AlertDispatcher",
    "LoggingChannel",
    "NotificationChannel",
    "ClassificationFailure",
    "ClassificationOrchestrator",
    "ClassificationOutcome",
    "DriftForecastError",
    "DriftForecaster",
    "ClassificationReport",
    "MonitoringService",
    "HttpPredictionOracle",
    "OracleError",
    "OracleRejectedError",
    "OracleTimeoutError",
    "OracleUnavailableError",
    "PredictionOracle",
    "RetryPolicy",
    "FleetScheduler",
    "NetOutcome",
    "SweepKind",
    "SweepReport",
    "ClassificationFailedEvent",
    "DetectionThresholds",
    "NetStateMachine",
    "PredictionEvent",
    "RecoveryEvent",
    "next_status",
    "TrajectoryPredictor",
]
