"""
seaguard/telemetry — where pings come in and features come out.

Public API:
    TelemetryStore / InMemoryTelemetryStore  — persistence boundary (CAS on status)
    IngestionGate / admit_ping               — ping validation + append
    admit_registration                       — net registration validation
    FeatureExtractor / compute_features      — trailing-window feature vector
"""

from seaguard.telemetry.features import FeatureExtractor, compute_features
from seaguard.telemetry.ingestion import (
    IngestionGate,
    IngestResult,
    PingRejectedError,
    RegistrationRejectedError,
    admit_ping,
    admit_registration,
)
from seaguard.telemetry.store import (
    DuplicateNetError,
    InMemoryTelemetryStore,
    StoreError,
    TelemetryStore,
    UnknownNetError,
)

__all__ = [
    "FeatureExtractor",
    "compute_features",
    "IngestionGate",
    "IngestResult",
    "PingRejectedError",
    "RegistrationRejectedError",
    "admit_ping",
    "admit_registration",
    "DuplicateNetError",
    "InMemoryTelemetryStore",
    "StoreError",
    "TelemetryStore",
    "UnknownNetError",
]
