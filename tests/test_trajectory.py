"""
tests/test_trajectory.py
─────────────────────────
Test suite for seaguard/control_plane/trajectory.py

Testing strategy
─────────────────
As with any small LSTM, exact outputs depend on weight initialisation, so
trained-path tests assert structure and direction (right number of
horizons, moving the right way, speed clamped), not exact positions. The
cold-start path is plain numpy and is asserted exactly.

Test groups
────────────
Group 1: Segment velocities  — conversion from pings to km/h
Group 2: Cold start          — constant-velocity extrapolation
Group 3: Trained path        — LSTM fit and forecast structure
"""

from __future__ import annotations

from datetime import timedelta

import numpy as np
import pytest

from conftest import drifting_pings
from seaguard.control_plane.trajectory import (
    LOOKBACK,
    MAX_DRIFT_KMH,
    TrajectoryPredictor,
    segment_velocities,
)
from seaguard.shared.geo import haversine_km
from seaguard.shared.models import ForecastSource, Ping


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Segment velocities
# ─────────────────────────────────────────────────────────────────────────────

class TestSegmentVelocities:

    def test_constant_drift(self, now):
        pings = drifting_pings("NET-1", end=now, count=5, north_kmh=1.0, east_kmh=-2.0)
        v = segment_velocities(pings)
        assert v.shape == (4, 2)
        assert v[:, 0] == pytest.approx([1.0] * 4, rel=0.01)
        assert v[:, 1] == pytest.approx([-2.0] * 4, rel=0.01)

    def test_sub_minute_segments_dropped(self, now):
        a = Ping(net_id="N", latitude=54.0, longitude=7.0, timestamp=now)
        b = Ping(net_id="N", latitude=54.001, longitude=7.0, timestamp=now + timedelta(seconds=10))
        assert segment_velocities([a, b]).shape == (0, 2)

    def test_single_ping(self, now):
        assert segment_velocities([Ping(net_id="N", latitude=0, longitude=0, timestamp=now)]).shape == (0, 2)


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Cold start
# ─────────────────────────────────────────────────────────────────────────────

class TestColdStart:

    def test_empty_track_gives_nothing(self):
        assert TrajectoryPredictor().forecast([], [6, 24]) == []

    def test_single_ping_stays_put(self, now):
        ping = Ping(net_id="N", latitude=54.0, longitude=7.0, timestamp=now)
        forecasts = TrajectoryPredictor().forecast([ping], [6, 24, 72])
        assert [f.horizon_hours for f in forecasts] == [6, 24, 72]
        assert all(f.location.latitude == 54.0 and f.location.longitude == 7.0 for f in forecasts)
        assert all(f.source is ForecastSource.TRAJECTORY for f in forecasts)

    def test_short_track_extrapolates_linearly(self, now):
        pings = drifting_pings("N", end=now, count=4, north_kmh=1.0, east_kmh=0.0)
        predictor = TrajectoryPredictor()
        forecasts = predictor.forecast(pings, [6, 24])

        assert not predictor.is_trained
        last = pings[-1]
        moved_6 = float(haversine_km(last.latitude, last.longitude,
                                     forecasts[0].location.latitude, forecasts[0].location.longitude))
        moved_24 = float(haversine_km(last.latitude, last.longitude,
                                      forecasts[1].location.latitude, forecasts[1].location.longitude))
        assert moved_6 == pytest.approx(6.0, rel=0.02)
        assert moved_24 == pytest.approx(24.0, rel=0.02)
        assert forecasts[1].location.latitude > last.latitude

    def test_fit_refuses_short_series(self):
        assert TrajectoryPredictor().fit(np.ones((LOOKBACK, 2))) is False


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Trained path
# ─────────────────────────────────────────────────────────────────────────────

class TestTrainedPath:

    def test_long_track_trains(self, now):
        pings = drifting_pings("N", end=now, count=LOOKBACK + 10, north_kmh=0.8, east_kmh=0.8)
        predictor = TrajectoryPredictor(seed=0)
        forecasts = predictor.forecast(pings, [24, 6, 72])

        assert predictor.is_trained
        assert [f.horizon_hours for f in forecasts] == [6, 24, 72]

    def test_speed_is_clamped(self, now):
        pings = drifting_pings("N", end=now, count=LOOKBACK + 4, north_kmh=60.0, east_kmh=0.0)
        forecasts = TrajectoryPredictor(seed=0).forecast(pings, [1])
        last = pings[-1]
        moved = float(haversine_km(last.latitude, last.longitude,
                                   forecasts[0].location.latitude, forecasts[0].location.longitude))
        assert moved <= MAX_DRIFT_KMH * 1.01

    def test_forecasts_are_valid_coordinates(self, now):
        pings = drifting_pings("N", end=now, count=LOOKBACK + 6, start=(89.9, 179.9), north_kmh=5.0, east_kmh=5.0)
        for f in TrajectoryPredictor(seed=1).forecast(pings, [72]):
            assert -90.0 <= f.location.latitude <= 90.0
            assert -180.0 <= f.location.longitude <= 180.0
