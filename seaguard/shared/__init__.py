"""
seaguard/shared — types and configuration used by every other package.

Public API:
    SeaGuardSettings / get_settings  — immutable, environment-backed settings
    NetStatus, Net, Ping, Prediction, Alert, ...  — see shared/models.py
"""

from seaguard.shared.config import AlertChannelSettings, OracleSettings, SeaGuardSettings, get_settings
from seaguard.shared.models import (
    Alert,
    AlertClosure,
    FeatureVector,
    GeoPoint,
    HorizonForecast,
    InsufficientData,
    Net,
    NetStatus,
    NetStatusView,
    Ping,
    PingSource,
    Prediction,
    RecoveryRecord,
    StatusTransition,
)

__all__ = [
    "AlertChannelSettings",
    "OracleSettings",
    "SeaGuardSettings",
    "get_settings",
    "Alert",
    "AlertClosure",
    "FeatureVector",
    "GeoPoint",
    "HorizonForecast",
    "InsufficientData",
    "Net",
    "NetStatus",
    "NetStatusView",
    "Ping",
    "PingSource",
    "Prediction",
    "RecoveryRecord",
    "StatusTransition",
]
