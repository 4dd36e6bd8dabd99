"""
seaguard/telemetry/features.py
───────────────────────────────
FeatureExtractor: turns a net's trailing ping window into the fixed-shape
FeatureVector the prediction oracle scores.

Why these features
───────────────────
A net that is being fished sits on its anchor: pings scatter around one
spot, headings are random, the straight-line displacement is small even
if GPS jitter makes the path length non-trivial. A ghost net drifts: it
holds a heading (low circular variance), keeps a steady speed, and its
displacement approaches its path length. The vector exposes exactly those
contrasts and leaves the decision to the oracle.

Ordering
─────────
Pings are sorted by timestamp before anything is computed, so the result
does not depend on the order pings arrived in, only on when they were taken.

Insufficient data
──────────────────
Fewer than `min_data_points_for_ml` pings in the window → InsufficientData.
That is a normal outcome (new deployment, tracker out of coverage) and the
caller skips classification for this cycle.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Union

import numpy as np

from seaguard.shared.config import SeaGuardSettings
from seaguard.shared.geo import circular_stats, haversine_km, initial_bearing_deg
from seaguard.shared.models import FeatureVector, InsufficientData, Ping
from seaguard.telemetry.store import TelemetryStore, UnknownNetError

logger = logging.getLogger(__name__)

MIN_SEGMENT_KM: float = 0.001
"""Segments shorter than a metre carry no usable bearing; they are left out
of the heading statistics (they still count towards speed)."""

ExtractionResult = Union[FeatureVector, InsufficientData]


def sort_pings(pings: List[Ping]) -> List[Ping]:
    """Timestamp order, ties broken by source so the result is deterministic."""
    return sorted(pings, key=lambda p: (p.timestamp, p.source.value))


class FeatureExtractor:
    """
    Reads the trailing window from the store and computes features.

    Side-effect free: one store read of the net and one of its pings.

    Usage:
        extractor = FeatureExtractor(store, settings)
        result = await extractor.extract("NET-001")
        if isinstance(result, InsufficientData):
            ...  # skip this cycle
    """

    def __init__(self, store: TelemetryStore, settings: SeaGuardSettings) -> None:
        self._store = store
        self._window = timedelta(hours=settings.feature_time_window_hours)
        self._min_points = settings.min_data_points_for_ml

    @property
    def min_points(self) -> int:
        return self._min_points

    async def trajectory(self, net_id: str, now: Optional[datetime] = None) -> List[Ping]:
        """Pings in the trailing window, oldest first."""
        now = now or datetime.utcnow()
        pings = await self._store.get_pings_in_window(net_id, now - self._window, now)
        return sort_pings(pings)

    async def extract(self, net_id: str, now: Optional[datetime] = None) -> ExtractionResult:
        """
        Compute the FeatureVector for `net_id` over [now - window, now].

        Raises:
            UnknownNetError: net_id is not registered.
        """
        now = now or datetime.utcnow()
        net = await self._store.get_net(net_id)
        if net is None:
            raise UnknownNetError(net_id)

        pings = await self.trajectory(net_id, now)
        if len(pings) < self._min_points:
            logger.debug(
                "Insufficient data for %s: %d pings in window (need %d)",
                net_id, len(pings), self._min_points,
            )
            return InsufficientData(net_id=net_id, ping_count=len(pings), required=self._min_points)

        return compute_features(
            net_id=net_id,
            pings=pings,
            window_start=now - self._window,
            window_end=now,
            deployment=(net.deployment_location.latitude, net.deployment_location.longitude),
        )


def compute_features(
    net_id: str,
    pings: List[Ping],
    window_start: datetime,
    window_end: datetime,
    deployment: tuple,
) -> FeatureVector:
    """
    Pure computation over timestamp-sorted pings. Exposed for tests.

    Algorithm:
        seg_km[i]  = haversine(p[i], p[i+1])
        seg_h[i]   = (t[i+1] - t[i]) in hours
        speed[i]   = seg_km[i] / seg_h[i]          for seg_h[i] > 0
        bearing[i] = initial_bearing(p[i], p[i+1]) for seg_km[i] >= MIN_SEGMENT_KM
        heading mean / variance = circular statistics over bearing[]
    """
    pings = sort_pings(pings)
    lats = np.array([p.latitude for p in pings], dtype=np.float64)
    lons = np.array([p.longitude for p in pings], dtype=np.float64)
    times = np.array([(p.timestamp - window_start).total_seconds() / 3600.0 for p in pings])

    if len(pings) >= 2:
        seg_km = haversine_km(lats[:-1], lons[:-1], lats[1:], lons[1:])
        seg_h = np.diff(times)
        moving = seg_h > 0
        speeds = seg_km[moving] / seg_h[moving]
        bearings = initial_bearing_deg(lats[:-1], lons[:-1], lats[1:], lons[1:])
        bearings = bearings[seg_km >= MIN_SEGMENT_KM]
    else:
        seg_km = np.zeros(0)
        speeds = np.zeros(0)
        bearings = np.zeros(0)

    mean_heading, heading_var = circular_stats(bearings)
    window_hours = max((window_end - window_start).total_seconds() / 3600.0, 1e-9)
    last = pings[-1]

    features = FeatureVector(
        net_id=net_id,
        window_start=window_start,
        window_end=window_end,
        ping_count=len(pings),
        displacement_km=float(haversine_km(lats[0], lons[0], lats[-1], lons[-1])),
        path_length_km=float(seg_km.sum()),
        mean_speed_kmh=float(speeds.mean()) if speeds.size else 0.0,
        speed_variance=float(speeds.var()) if speeds.size else 0.0,
        mean_heading_deg=mean_heading,
        heading_variance=heading_var,
        ping_density_per_hour=len(pings) / window_hours,
        hours_since_last_ping=max(0.0, (window_end - last.timestamp).total_seconds() / 3600.0),
        distance_from_deployment_km=float(
            haversine_km(deployment[0], deployment[1], last.latitude, last.longitude)
        ),
    )
    logger.debug("Features for %s: %s", net_id, features.as_feature_dict())
    return features
