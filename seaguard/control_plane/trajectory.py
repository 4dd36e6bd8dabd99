"""
seaguard/control_plane/trajectory.py
─────────────────────────────────────
TrajectoryPredictor: local drift-velocity forecaster used when the oracle
cannot supply horizon forecasts.

What this is
─────────────
The drift forecaster's first choice is the oracle's dedicated drift call.
When that call fails, or answers without some of the requested horizons,
the missing positions are filled from the net's own recent track:

    pings → per-segment velocity (north, east) in km/h
          → LSTM over the last LOOKBACK velocities → next velocity
          → position(h) = last position + velocity × h

Architecture
─────────────
  Input:   (batch, LOOKBACK=6, 2)   z-scored (v_north, v_east)
  LSTM:    hidden_size=16, one layer, batch_first=True
  Linear:  16 → 2
  Output:  next z-scored velocity → denormalise → clamp to MAX_DRIFT_KMH

16 hidden units is plenty: a day of pings yields a few dozen segments at
most, and drift under wind and current is close to constant over hours.

Cold start
───────────
With fewer than LOOKBACK + 1 usable segments there is nothing to train on.
The fallback is constant-velocity extrapolation of the recency-weighted
mean velocity (numpy only). The same fallback is used if training produces
a non-finite output.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import numpy as np
import torch
import torch.nn as nn
from torch.optim import Adam

from seaguard.shared.geo import local_offsets_km, project_position
from seaguard.shared.models import ForecastSource, GeoPoint, HorizonForecast, Ping

logger = logging.getLogger(__name__)

# ── Hyperparameters ────────────────────────────────────────────────────────────
# Module-level so tests can import and assert against them directly.

LOOKBACK: int = 6
"""Number of past velocity observations in one input sequence."""

HIDDEN_SIZE: int = 16
TRAIN_EPOCHS: int = 40
LEARNING_RATE: float = 0.01

MIN_SEGMENT_HOURS: float = 1.0 / 60.0
"""Segments shorter than a minute are dropped: GPS jitter over seconds
turns into absurd speeds."""

MAX_DRIFT_KMH: float = 15.0
"""Upper bound on any forecast drift speed (~8 knots). Surface currents
rarely exceed 3 knots; anything faster is a tow, not a drift."""


class _DriftLSTM(nn.Module):
    """Single-layer LSTM with a linear readout. Owned by TrajectoryPredictor."""

    def __init__(self) -> None:
        super().__init__()
        self.lstm = nn.LSTM(input_size=2, hidden_size=HIDDEN_SIZE, num_layers=1, batch_first=True)
        self.linear = nn.Linear(HIDDEN_SIZE, 2)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        out, _ = self.lstm(x)
        return self.linear(out[:, -1, :])


def segment_velocities(pings: List[Ping]) -> np.ndarray:
    """
    Velocity of each usable segment as an (n, 2) array of (north, east) km/h.

    Pings must already be timestamp-sorted.
    """
    if len(pings) < 2:
        return np.zeros((0, 2))
    lats = np.array([p.latitude for p in pings])
    lons = np.array([p.longitude for p in pings])
    hours = np.array([(p.timestamp - pings[0].timestamp).total_seconds() / 3600.0 for p in pings])
    north, east = local_offsets_km(lats, lons)

    dt = np.diff(hours)
    usable = dt >= MIN_SEGMENT_HOURS
    if not usable.any():
        return np.zeros((0, 2))
    v_north = np.diff(north)[usable] / dt[usable]
    v_east = np.diff(east)[usable] / dt[usable]
    return np.stack([v_north, v_east], axis=1)


class TrajectoryPredictor:
    """
    Forecasts positions for one net from its own track.

    Lifecycle:
        predictor = TrajectoryPredictor()
        forecasts = predictor.forecast(pings, horizons_hours=[6, 24, 72])

    forecast() fits on the supplied track each time; the drift sweep runs
    hourly and a fit on a few dozen windows takes milliseconds.

    Attributes (readable by tests):
        is_trained : bool — True if the last forecast() used the LSTM path.
    """

    def __init__(self, seed: Optional[int] = None) -> None:
        self._seed = seed
        self._model: Optional[_DriftLSTM] = None
        self._trained: bool = False
        self._mean = np.zeros(2)
        self._std = np.ones(2)

    @property
    def is_trained(self) -> bool:
        return self._trained

    # ── Core methods ──────────────────────────────────────────────────────────

    def fit(self, velocities: np.ndarray) -> bool:
        """
        Train on an (n, 2) velocity series. Returns True if a model was fitted.

        Needs at least LOOKBACK + 1 rows (one training window).
        """
        self._trained = False
        if len(velocities) <= LOOKBACK:
            return False

        mean = velocities.mean(axis=0)
        std = np.maximum(velocities.std(axis=0), 1e-6)
        self._mean, self._std = mean, std
        z = (velocities - mean) / std

        # X[i] = z[i : i+LOOKBACK], y[i] = z[i+LOOKBACK]
        X_np = np.stack([z[i:i + LOOKBACK] for i in range(len(z) - LOOKBACK)])
        y_np = z[LOOKBACK:]
        X = torch.tensor(X_np, dtype=torch.float32)
        y = torch.tensor(y_np, dtype=torch.float32)

        if self._seed is not None:
            torch.manual_seed(self._seed)
        model = _DriftLSTM()
        model.train()
        optimiser = Adam(model.parameters(), lr=LEARNING_RATE)
        loss_fn = nn.MSELoss()
        for _ in range(TRAIN_EPOCHS):
            optimiser.zero_grad()
            loss = loss_fn(model(X), y)
            loss.backward()
            optimiser.step()

        model.eval()
        self._model = model
        self._trained = True
        return True

    def predict_velocity(self, velocities: np.ndarray) -> np.ndarray:
        """Next (north, east) velocity in km/h, clamped to MAX_DRIFT_KMH."""
        if len(velocities) == 0:
            return np.zeros(2)

        velocity = None
        if self._trained and self._model is not None and len(velocities) >= LOOKBACK:
            z_seq = (velocities[-LOOKBACK:] - self._mean) / self._std
            x = torch.tensor(z_seq, dtype=torch.float32).unsqueeze(0)
            with torch.no_grad():
                z_pred = self._model(x).squeeze(0).numpy().astype(np.float64)
            candidate = z_pred * self._std + self._mean
            if np.all(np.isfinite(candidate)):
                velocity = candidate

        if velocity is None:
            velocity = _recency_weighted_mean(velocities)

        speed = float(np.hypot(*velocity))
        if speed > MAX_DRIFT_KMH:
            velocity = velocity * (MAX_DRIFT_KMH / speed)
        return velocity

    def forecast(self, pings: List[Ping], horizons_hours: List[float]) -> List[HorizonForecast]:
        """
        Positions at each horizon from the newest ping. Empty track → [].

        A single ping (no velocity information) forecasts "stays put".
        """
        if not pings:
            return []
        velocities = segment_velocities(pings)
        self.fit(velocities)
        velocity = self.predict_velocity(velocities)

        last = pings[-1]
        forecasts = []
        for h in sorted(horizons_hours):
            lat, lon = project_position(
                last.latitude, last.longitude,
                north_km=float(velocity[0]) * h,
                east_km=float(velocity[1]) * h,
            )
            forecasts.append(
                HorizonForecast(
                    horizon_hours=h,
                    location=GeoPoint(latitude=lat, longitude=lon),
                    source=ForecastSource.TRAJECTORY,
                )
            )
        logger.debug(
            "Trajectory forecast from %d pings: v=(%.3f, %.3f) km/h trained=%s",
            len(pings), velocity[0], velocity[1], self._trained,
        )
        return forecasts

    def __repr__(self) -> str:
        return f"TrajectoryPredictor(trained={self._trained}, lookback={LOOKBACK})"


def _recency_weighted_mean(velocities: np.ndarray) -> np.ndarray:
    """Linearly increasing weights: the newest segment counts the most."""
    weights = np.arange(1, len(velocities) + 1, dtype=np.float64)
    return (velocities * weights[:, None]).sum(axis=0) / weights.sum()
