"""
seaguard/shared/geo.py
──────────────────────
Great-circle helpers, vectorised with numpy so a whole trajectory is
processed in one call.

Distances are kilometres, bearings are degrees clockwise from true north
in [0, 360).
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

EARTH_RADIUS_KM: float = 6371.0088
"""Mean Earth radius (IUGG). Good to ~0.5% for haversine distances."""


def haversine_km(lat1, lon1, lat2, lon2) -> np.ndarray:
    """Great-circle distance between point arrays (or scalars) in km."""
    lat1, lon1, lat2, lon2 = map(np.radians, (lat1, lon1, lat2, lon2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = np.sin(dlat / 2.0) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def initial_bearing_deg(lat1, lon1, lat2, lon2) -> np.ndarray:
    """Forward azimuth from point 1 towards point 2."""
    lat1, lon1, lat2, lon2 = map(np.radians, (lat1, lon1, lat2, lon2))
    dlon = lon2 - lon1
    x = np.sin(dlon) * np.cos(lat2)
    y = np.cos(lat1) * np.sin(lat2) - np.sin(lat1) * np.cos(lat2) * np.cos(dlon)
    return (np.degrees(np.arctan2(x, y)) + 360.0) % 360.0


def circular_stats(bearings_deg: np.ndarray) -> Tuple[float, float]:
    """
    Circular mean and circular variance of a set of bearings.

    Returns (mean_deg in [0, 360), variance in [0, 1]). Variance is 1 - R,
    where R is the mean resultant length: 0 when every bearing agrees,
    approaching 1 when they cancel out. Empty input → (0.0, 0.0).
    """
    if len(bearings_deg) == 0:
        return 0.0, 0.0
    rad = np.radians(np.asarray(bearings_deg, dtype=np.float64))
    sin_mean = float(np.mean(np.sin(rad)))
    cos_mean = float(np.mean(np.cos(rad)))
    resultant = float(np.hypot(sin_mean, cos_mean))
    mean_deg = float((np.degrees(np.arctan2(sin_mean, cos_mean)) + 360.0) % 360.0)
    variance = float(np.clip(1.0 - resultant, 0.0, 1.0))
    # 359.9999999 rounds to 360.0 in float; keep it in range
    if mean_deg >= 360.0:
        mean_deg = 0.0
    return mean_deg, variance


def project_position(lat: float, lon: float, north_km: float, east_km: float) -> Tuple[float, float]:
    """
    Move a point by a local north/east offset.

    Equirectangular approximation: fine for the tens-of-kilometres drifts we
    forecast. Latitude is clamped to the valid range and longitude wrapped
    to [-180, 180).
    """
    dlat = np.degrees(north_km / EARTH_RADIUS_KM)
    cos_lat = max(np.cos(np.radians(lat)), 1e-6)
    dlon = np.degrees(east_km / (EARTH_RADIUS_KM * cos_lat))
    new_lat = float(np.clip(lat + dlat, -90.0, 90.0))
    new_lon = float(((lon + dlon + 180.0) % 360.0) - 180.0)
    return new_lat, new_lon


def local_offsets_km(lats: np.ndarray, lons: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    North/east displacement (km) of each point relative to the first one.

    Inverse of project_position() under the same approximation; longitude
    differences are unwrapped across the antimeridian.
    """
    lats = np.asarray(lats, dtype=np.float64)
    lons = np.asarray(lons, dtype=np.float64)
    dlon = ((lons - lons[0] + 180.0) % 360.0) - 180.0
    north = np.radians(lats - lats[0]) * EARTH_RADIUS_KM
    east = np.radians(dlon) * EARTH_RADIUS_KM * np.cos(np.radians(lats[0]))
    return north, east
