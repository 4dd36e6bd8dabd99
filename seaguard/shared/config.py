"""
seaguard/shared/config.py
─────────────────────────
Immutable configuration for every SeaGuard component.

Settings are read once (environment variables with the SEAGUARD_ prefix,
nested sections separated by "__", e.g. SEAGUARD_ORACLE__TIMEOUT_MS=5000)
and then passed explicitly into each component's constructor. No component
reads ambient process state after start-up.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from seaguard.shared.models import AlertClosure


class OracleSettings(BaseModel):
    """Where the prediction oracle lives and how patiently we call it."""
    model_config = ConfigDict(frozen=True)

    url: str = "http://localhost:5001"
    timeout_ms: int = Field(10_000, gt=0)
    retries: int = Field(3, ge=0)
    backoff_base_ms: int = Field(500, ge=0)
    backoff_max_ms: int = Field(8_000, ge=0)

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


class AlertChannelSettings(BaseModel):
    """Per-channel delivery toggles. All off by default."""
    model_config = ConfigDict(frozen=True)

    email_enabled: bool = False
    sms_enabled: bool = False
    push_enabled: bool = False


class SeaGuardSettings(BaseSettings):
    """
    Every tunable the core recognises.

    Thresholds:
        confidence_threshold  → c ≥ this escalates to ghost_confirmed.
        suspected_threshold   → c ≥ this (and below confirmed) → ghost_suspected.

    Feature extraction:
        min_data_points_for_ml    → fewer pings in the window = skip the cycle.
        feature_time_window_hours → trailing window length.

    Scheduling:
        batch_processing_interval_ms → classification sweep period.
        drift_prediction_interval_ms → drift sweep period.
        max_concurrency              → per-sweep bound on nets in flight.
        shutdown_grace_period_s      → how long stop() waits for in-flight work.
    """
    model_config = SettingsConfigDict(
        env_prefix="SEAGUARD_",
        env_nested_delimiter="__",
        frozen=True,
    )

    confidence_threshold: float = Field(0.75, ge=0.0, le=1.0)
    suspected_threshold: float = Field(0.50, ge=0.0, le=1.0)

    min_data_points_for_ml: int = Field(5, ge=1)
    feature_time_window_hours: float = Field(24.0, gt=0)

    batch_processing_interval_ms: int = Field(300_000, gt=0)
    drift_prediction_interval_ms: int = Field(3_600_000, gt=0)
    drift_horizons_hours: List[float] = Field(default_factory=lambda: [6.0, 24.0, 72.0])

    max_concurrency: int = Field(8, ge=1)
    shutdown_grace_period_s: float = Field(15.0, ge=0)

    alert_closure: AlertClosure = AlertClosure.RESOLVE
    batch_max_size: int = Field(100, ge=1)

    oracle: OracleSettings = Field(default_factory=OracleSettings)
    alerts: AlertChannelSettings = Field(default_factory=AlertChannelSettings)

    @field_validator("drift_horizons_hours")
    @classmethod
    def _horizons_positive(cls, value: List[float]) -> List[float]:
        if not value:
            raise ValueError("drift_horizons_hours must name at least one horizon")
        if any(h <= 0 for h in value):
            raise ValueError(f"drift horizons must be positive, got {value}")
        return sorted(set(value))

    @model_validator(mode="after")
    def _thresholds_ordered(self) -> "SeaGuardSettings":
        if self.suspected_threshold >= self.confidence_threshold:
            raise ValueError(
                f"suspected_threshold ({self.suspected_threshold}) must be below "
                f"confidence_threshold ({self.confidence_threshold})"
            )
        return self

    @property
    def batch_processing_interval_s(self) -> float:
        return self.batch_processing_interval_ms / 1000.0

    @property
    def drift_prediction_interval_s(self) -> float:
        return self.drift_prediction_interval_ms / 1000.0


@lru_cache
def get_settings() -> SeaGuardSettings:
    """Process-wide settings for the entry point. Components take them as arguments."""
    return SeaGuardSettings()
