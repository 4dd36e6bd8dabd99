"""
seaguard/shared/models.py
─────────────────────────
The single source of truth for every data structure in SeaGuard.

Design philosophy
-----------------
Every model answers one question: "What does the system *need to know*
about this net in order to decide whether it has gone ghost?"

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
  Section 1 — enumerations (status, ping source, alert closure)
  Section 2 — telemetry (GeoPoint, Ping)
  Section 3 — the Net itself and its recovery record
  Section 4 — classification inputs/outputs (FeatureVector, Prediction)
  Section 5 — alerting (StatusTransition, Alert)
  Section 6 — read views returned by the service
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class NetStatus(str, Enum):
    """
    Lifecycle of a monitored net.

    ACTIVE           → Deployed and behaving like a fished net. Initial state.
    GHOST_SUSPECTED  → Oracle confidence crossed the suspected threshold.
                       Can fall back to ACTIVE on a fresh low reading.
    GHOST_CONFIRMED  → Oracle confidence crossed the confirmed threshold.
                       Sticky: only a recovery confirmation leaves it.
    RECOVERED        → Physically recovered. Terminal; sweeps skip it forever.
    """
    ACTIVE = "active"
    GHOST_SUSPECTED = "ghost_suspected"
    GHOST_CONFIRMED = "ghost_confirmed"
    RECOVERED = "recovered"

    @property
    def is_anomalous(self) -> bool:
        """True for the two ghost states (the drift sweep's eligibility test)."""
        return self in (NetStatus.GHOST_SUSPECTED, NetStatus.GHOST_CONFIRMED)

    @property
    def is_terminal(self) -> bool:
        return self is NetStatus.RECOVERED


# Severity order used to tell escalations from de-escalations.
# RECOVERED has no severity: it is neither.
STATUS_SEVERITY = {
    NetStatus.ACTIVE: 0,
    NetStatus.GHOST_SUSPECTED: 1,
    NetStatus.GHOST_CONFIRMED: 2,
}


class PingSource(str, Enum):
    """Radio link a ping arrived over."""
    LORA = "lora"
    GSM = "gsm"
    SATELLITE = "satellite"


class AlertClosure(str, Enum):
    """
    How an open alert is closed on de-escalation or recovery.

    ACKNOWLEDGE → flip the `acknowledged` flag, as if an operator had seen it.
    RESOLVE     → keep `acknowledged` untouched and mark the alert resolved.
    """
    ACKNOWLEDGE = "acknowledge"
    RESOLVE = "resolve"


class TransitionTrigger(str, Enum):
    PREDICTION = "prediction"
    RECOVERY = "recovery"


class ForecastSource(str, Enum):
    """Where a horizon forecast came from."""
    ORACLE = "oracle"
    TRAJECTORY = "trajectory"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: TELEMETRY MODELS
# What a tracker reports about itself.
# ─────────────────────────────────────────────────────────────────────────────

class GeoPoint(BaseModel):
    """A WGS84 position. Bounds are enforced at construction."""
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)


class Ping(BaseModel):
    """
    A single GPS fix from a net's tracker.

    Immutable once appended to the telemetry log. The identity used for
    duplicate suppression is (net_id, timestamp, source): the same fix
    relayed twice over the same link is a no-op, but the same fix relayed
    over LoRa and satellite is two pings.

    Fields:
        net_id    → Which net this fix belongs to.
        latitude  → Degrees, [-90, 90].
        longitude → Degrees, [-180, 180].
        timestamp → When the tracker took the fix (UTC, naive).
        source    → Link the fix arrived over.
    """
    model_config = ConfigDict(frozen=True)

    net_id: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    source: PingSource = PingSource.LORA

    @property
    def dedup_key(self) -> tuple:
        return (self.net_id, self.timestamp, self.source)

    @property
    def location(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: NET
# ─────────────────────────────────────────────────────────────────────────────

class Net(BaseModel):
    """
    A registered fishing net.

    `status` is owned by the state machine: the only writers are the
    store's compare-and-set (driven by the transition function) and the
    recovery confirmation. Everything else on the model is descriptive
    and may be refreshed freely (last known location, latest prediction).

    Nets are created by registration and never deleted.
    """
    net_id: str = Field(..., min_length=1)
    qr_code_id: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    status: NetStatus = NetStatus.ACTIVE

    deployment_location: GeoPoint
    deployment_time: datetime = Field(default_factory=datetime.utcnow)

    last_known_location: Optional[GeoPoint] = None
    last_ping_at: Optional[datetime] = None
    last_prediction_id: Optional[str] = None

    registered_at: datetime = Field(default_factory=datetime.utcnow)
    status_changed_at: Optional[datetime] = None


class RecoveryRecord(BaseModel):
    """Written when someone confirms a net has been physically recovered."""
    net_id: str
    recovered_by: Optional[str] = None
    recovery_notes: Optional[str] = None
    recovered_at: datetime = Field(default_factory=datetime.utcnow)
    previous_status: Optional[NetStatus] = None


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: CLASSIFICATION MODELS
# ─────────────────────────────────────────────────────────────────────────────

FEATURE_NAMES: List[str] = [
    "ping_count",
    "displacement_km",
    "path_length_km",
    "mean_speed_kmh",
    "speed_variance",
    "mean_heading_deg",
    "heading_variance",
    "ping_density_per_hour",
    "hours_since_last_ping",
    "distance_from_deployment_km",
]
"""Column order of FeatureVector.as_array(). The oracle contract depends on it."""


class FeatureVector(BaseModel):
    """
    Fixed-shape summary of a net's trailing telemetry window.

    Computed on demand by the FeatureExtractor and sent to the oracle.
    Not persisted as a first-class entity (a copy rides along on the
    Prediction it produced, for audit).

    Fields:
        displacement_km             → Straight-line distance first → last ping.
        path_length_km              → Sum of segment distances.
        mean_speed_kmh / speed_variance
                                    → Over segments with non-zero duration.
        mean_heading_deg            → Circular mean of segment bearings [0, 360).
        heading_variance            → Circular variance, 0 (steady) … 1 (random).
                                      Anchored nets wobble randomly; drifting
                                      nets hold a heading.
        ping_density_per_hour       → Pings in window / window hours.
        hours_since_last_ping       → Silence since the newest ping.
        distance_from_deployment_km → Newest ping vs deployment location.
    """
    net_id: str
    window_start: datetime
    window_end: datetime
    ping_count: int = Field(..., ge=0)

    displacement_km: float = Field(0.0, ge=0.0)
    path_length_km: float = Field(0.0, ge=0.0)
    mean_speed_kmh: float = Field(0.0, ge=0.0)
    speed_variance: float = Field(0.0, ge=0.0)
    mean_heading_deg: float = Field(0.0, ge=0.0, lt=360.0)
    heading_variance: float = Field(0.0, ge=0.0, le=1.0)
    ping_density_per_hour: float = Field(0.0, ge=0.0)
    hours_since_last_ping: float = Field(0.0, ge=0.0)
    distance_from_deployment_km: float = Field(0.0, ge=0.0)

    def as_array(self) -> np.ndarray:
        """Numeric vector in FEATURE_NAMES order (float64, shape (10,))."""
        return np.array([float(getattr(self, name)) for name in FEATURE_NAMES], dtype=np.float64)

    def as_feature_dict(self) -> dict:
        return {name: float(getattr(self, name)) for name in FEATURE_NAMES}


class InsufficientData(BaseModel):
    """
    Returned by the extractor when the window holds too few pings.

    Not an error: the caller skips classification for this cycle and the
    net's status is left alone.
    """
    net_id: str
    ping_count: int
    required: int


class HorizonForecast(BaseModel):
    """Predicted position `horizon_hours` after the forecast was made."""
    horizon_hours: float = Field(..., gt=0)
    location: GeoPoint
    source: ForecastSource = ForecastSource.ORACLE


class Prediction(BaseModel):
    """
    One oracle verdict for one net. Append-only history.

    The newest Prediction for a net is its "latest"; older ones stay in the
    store. Drift forecasts are recorded as Predictions too (label
    "drift_forecast") with their horizon_forecasts populated.
    """
    prediction_id: str = Field(default_factory=lambda: _new_id("pred"))
    net_id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    confidence: float = Field(..., ge=0.0, le=1.0)
    label: str
    horizon_forecasts: List[HorizonForecast] = Field(default_factory=list)
    features: Optional[FeatureVector] = None


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: ALERTING MODELS
# ─────────────────────────────────────────────────────────────────────────────

class StatusTransition(BaseModel):
    """What the state machine tells the alert dispatcher after a committed change."""
    net_id: str
    previous_status: NetStatus
    new_status: NetStatus
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    trigger: TransitionTrigger = TransitionTrigger.PREDICTION
    occurred_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_escalation(self) -> bool:
        """
        active → ghost_suspected, active → ghost_confirmed,
        ghost_suspected → ghost_confirmed. Nothing involving RECOVERED.
        """
        before = STATUS_SEVERITY.get(self.previous_status)
        after = STATUS_SEVERITY.get(self.new_status)
        if before is None or after is None:
            return False
        return after > before


class Alert(BaseModel):
    """
    A notification-worthy escalation for one net.

    At most one *open* alert exists per net. A second escalation while one
    is open updates `new_status` / `confidence` / `updated_at` in place.
    `previous_status` keeps the status the net escalated *from* when the
    alert was first raised.
    """
    alert_id: str = Field(default_factory=lambda: _new_id("alert"))
    net_id: str
    triggered_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    previous_status: NetStatus
    new_status: NetStatus
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)

    acknowledged: bool = False
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    escalation_count: int = Field(1, ge=1)

    @property
    def is_open(self) -> bool:
        return not (self.acknowledged or self.resolved)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: READ VIEWS
# ─────────────────────────────────────────────────────────────────────────────

class PredictionSummary(BaseModel):
    prediction_id: str
    timestamp: datetime
    confidence: float
    label: str
    horizon_forecasts: List[HorizonForecast] = Field(default_factory=list)

    @classmethod
    def from_prediction(cls, prediction: Prediction) -> "PredictionSummary":
        return cls(
            prediction_id=prediction.prediction_id,
            timestamp=prediction.timestamp,
            confidence=prediction.confidence,
            label=prediction.label,
            horizon_forecasts=list(prediction.horizon_forecasts),
        )


class NetStatusView(BaseModel):
    """Result of MonitoringService.get_net_status()."""
    net: Net
    latest_prediction: Optional[PredictionSummary] = None
    open_alert: Optional[Alert] = None
    recovery: Optional[RecoveryRecord] = None
