"""
seaguard/control_plane/drift.py
────────────────────────────────
DriftForecaster: where will an anomalous net be in 6, 24 and 72 hours?

Flow for one net
─────────────────
  1. Net not ghost_suspected / ghost_confirmed → None (nothing to do).
  2. Read the trailing window (same window as the feature extractor).
  3. Ask the oracle's drift endpoint, under the same timeout and
     RetryPolicy as classification.
  4. Any horizon the oracle did not answer (or every horizon, if the call
     failed) is filled by the local TrajectoryPredictor.
  5. Persist a Prediction labelled "drift_forecast" and advance the net's
     last_prediction_id.

Status is never touched here. A forecast is advisory; only classification
and recovery move a net through its lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from seaguard.control_plane.oracle import (
    OracleDriftRequest,
    OracleError,
    OracleRejectedError,
    OracleTimeoutError,
    PredictionOracle,
)
from seaguard.control_plane.retry import RetryPolicy
from seaguard.control_plane.trajectory import TrajectoryPredictor
from seaguard.shared.config import SeaGuardSettings
from seaguard.shared.models import FeatureVector, HorizonForecast, Prediction
from seaguard.telemetry.features import FeatureExtractor
from seaguard.telemetry.store import TelemetryStore, UnknownNetError

logger = logging.getLogger(__name__)

DRIFT_LABEL: str = "drift_forecast"


class DriftForecastError(Exception):
    """
    Raised when no forecast at all could be produced for an anomalous net.

    Attributes:
        net_id: The net the forecast was for.
        reason: Human-readable explanation.
    """

    def __init__(self, net_id: str, reason: str) -> None:
        super().__init__(f"Drift forecast for {net_id} failed: {reason}")
        self.net_id = net_id
        self.reason = reason


class DriftForecaster:
    """
    Args:
        store:              TelemetryStore (net reads, prediction writes).
        oracle:             PredictionOracle; forecast_drift() is the first choice.
        extractor:          FeatureExtractor; supplies the trajectory window
                            and the feature vector sent alongside it.
        settings:           SeaGuardSettings; reads drift_horizons_hours and
                            the oracle timeout / retry settings.
        retry_policy:       Override the policy derived from settings.
        trajectory_factory: Builds the local fallback predictor per forecast.
    """

    def __init__(
        self,
        store: TelemetryStore,
        oracle: PredictionOracle,
        extractor: FeatureExtractor,
        settings: SeaGuardSettings,
        retry_policy: Optional[RetryPolicy] = None,
        trajectory_factory: Callable[[], TrajectoryPredictor] = TrajectoryPredictor,
    ) -> None:
        self._store = store
        self._oracle = oracle
        self._extractor = extractor
        self._horizons: List[float] = list(settings.drift_horizons_hours)
        self._timeout_s = settings.oracle.timeout_s
        self._retry = retry_policy or RetryPolicy.from_settings(settings.oracle)
        self._trajectory_factory = trajectory_factory

        self._forecasts = 0
        self._oracle_failures = 0
        self._fallback_horizons = 0

    @property
    def horizons_hours(self) -> List[float]:
        return list(self._horizons)

    async def forecast(self, net_id: str, now: Optional[datetime] = None) -> Optional[Prediction]:
        """
        Forecast drift for one net and persist the result.

        Returns:
            The saved Prediction, or None if the net is not anomalous.

        Raises:
            UnknownNetError:    net_id is not registered.
            DriftForecastError: neither the oracle nor the local track could
                                produce a single horizon.
        """
        now = now or datetime.utcnow()
        net = await self._store.get_net(net_id)
        if net is None:
            raise UnknownNetError(net_id)
        if not net.status.is_anomalous:
            logger.debug("Skipping drift forecast for %s (status=%s)", net_id, net.status.value)
            return None

        pings = await self._extractor.trajectory(net_id, now)
        extracted = await self._extractor.extract(net_id, now)
        features = extracted if isinstance(extracted, FeatureVector) else None

        by_horizon: Dict[float, HorizonForecast] = {}
        oracle_label: Optional[str] = None
        try:
            response = await self._ask_oracle(net_id, features, pings, now)
        except OracleError as e:
            self._oracle_failures += 1
            log = logger.error if isinstance(e, OracleRejectedError) else logger.warning
            log("Oracle drift forecast for %s failed (%s): %s", net_id, e.kind.value, e.reason)
        else:
            oracle_label = response.label
            wanted = set(self._horizons)
            for hf in response.horizon_forecasts:
                if hf.horizon_hours in wanted:
                    by_horizon[hf.horizon_hours] = hf

        missing = [h for h in self._horizons if h not in by_horizon]
        if missing:
            local = self._trajectory_factory().forecast(pings, missing)
            for hf in local:
                by_horizon[hf.horizon_hours] = hf
            self._fallback_horizons += len(local)
            if local:
                logger.info(
                    "Filled %d/%d drift horizons for %s from the local trajectory model",
                    len(local), len(self._horizons), net_id,
                )

        if not by_horizon:
            raise DriftForecastError(net_id, "oracle unavailable and no pings in the trajectory window")

        latest = await self._store.get_latest_prediction(net_id)
        prediction = Prediction(
            net_id=net_id,
            timestamp=now,
            confidence=latest.confidence if latest is not None else 0.0,
            label=DRIFT_LABEL,
            horizon_forecasts=[by_horizon[h] for h in sorted(by_horizon)],
            features=features,
        )
        await self._store.save_prediction(prediction)
        await self._store.update_net(net_id, last_prediction_id=prediction.prediction_id)
        self._forecasts += 1
        logger.info(
            "Drift forecast %s for %s: %d horizons (oracle label=%s)",
            prediction.prediction_id, net_id, len(prediction.horizon_forecasts), oracle_label,
        )
        return prediction

    def get_metrics(self) -> dict:
        return {
            "drift_forecasts": self._forecasts,
            "drift_oracle_failures": self._oracle_failures,
            "drift_fallback_horizons": self._fallback_horizons,
        }

    async def _ask_oracle(self, net_id, features, pings, now):
        request = OracleDriftRequest(
            net_id=net_id,
            features=features,
            trajectory=pings,
            horizons_hours=self._horizons,
            issued_at=now,
        )

        async def attempt():
            try:
                return await asyncio.wait_for(self._oracle.forecast_drift(request), self._timeout_s)
            except asyncio.TimeoutError:
                raise OracleTimeoutError(
                    f"oracle.forecast_drift for {net_id} exceeded {self._timeout_s:.1f}s"
                ) from None

        return await self._retry.call(attempt, label=f"oracle.forecast_drift[{net_id}]")

    def __repr__(self) -> str:
        return f"DriftForecaster(horizons={self._horizons})"
