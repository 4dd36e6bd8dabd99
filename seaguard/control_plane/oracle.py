"""
seaguard/control_plane/oracle.py
─────────────────────────────────
The prediction oracle: the external ML service that scores feature vectors.

The core never looks inside the oracle. It sends
    {netId, featureVector}
and receives
    {confidence ∈ [0, 1], label, horizonForecasts?}
or one of three failures:

    OracleTimeoutError      → the call did not answer in time.     RETRYABLE
    OracleUnavailableError  → connection refused, 5xx, 429, or a
                              response body we could not read.     RETRYABLE
    OracleRejectedError     → the oracle refused the request as
                              malformed (400 / 422). A contract
                              bug on our side; retrying cannot help. NOT RETRYABLE

PredictionOracle is the abstract interface. HttpPredictionOracle talks to
the SeaGuard ML service over HTTP with httpx:

    POST {url}/predict        classification
    POST {url}/predict-drift  drift forecast at given horizons
    GET  {url}/health         liveness
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from seaguard.shared.config import OracleSettings
from seaguard.shared.models import FeatureVector, ForecastSource, GeoPoint, HorizonForecast, Ping

logger = logging.getLogger(__name__)


# ── Failure taxonomy ──────────────────────────────────────────────────────────

class OracleFailureKind(str, Enum):
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    REJECTED = "rejected"

    @property
    def retryable(self) -> bool:
        return self is not OracleFailureKind.REJECTED


class OracleError(Exception):
    """
    Base class for every oracle failure.

    Attributes:
        kind:   OracleFailureKind — drives the retry decision.
        reason: Human-readable detail for logs.
    """
    kind: OracleFailureKind = OracleFailureKind.UNAVAILABLE

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class OracleTimeoutError(OracleError):
    kind = OracleFailureKind.TIMEOUT


class OracleUnavailableError(OracleError):
    kind = OracleFailureKind.UNAVAILABLE


class OracleRejectedError(OracleError):
    kind = OracleFailureKind.REJECTED


def is_retryable(exc: BaseException) -> bool:
    """Retry predicate: transient oracle failures only."""
    return isinstance(exc, OracleError) and exc.retryable


# ── Wire models ───────────────────────────────────────────────────────────────

class OracleRequest(BaseModel):
    net_id: str
    features: FeatureVector

    def to_payload(self) -> Dict[str, Any]:
        return {
            "netId": self.net_id,
            "featureVector": self.features.as_feature_dict(),
            "windowStart": self.features.window_start.isoformat(),
            "windowEnd": self.features.window_end.isoformat(),
        }


class OracleDriftRequest(BaseModel):
    net_id: str
    features: Optional[FeatureVector] = None
    trajectory: List[Ping] = Field(default_factory=list)
    horizons_hours: List[float]
    issued_at: datetime = Field(default_factory=datetime.utcnow)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "netId": self.net_id,
            "featureVector": self.features.as_feature_dict() if self.features else None,
            "trajectory": [
                {
                    "latitude": p.latitude,
                    "longitude": p.longitude,
                    "timestamp": p.timestamp.isoformat(),
                }
                for p in self.trajectory
            ],
            "horizonsHours": list(self.horizons_hours),
            "issuedAt": self.issued_at.isoformat(),
        }


class OracleResponse(BaseModel):
    confidence: float = Field(..., ge=0.0, le=1.0)
    label: str = "unknown"
    horizon_forecasts: List[HorizonForecast] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "OracleResponse":
        """
        Parse the oracle's JSON body.

        Accepted horizon shapes (the ML service has shipped both):
            {"horizon": 6, "latitude": .., "longitude": ..}
            {"horizonHours": 6, "location": {"latitude": .., "longitude": ..}}
        """
        horizons = []
        for item in payload.get("horizonForecasts") or []:
            if not isinstance(item, dict):
                raise TypeError(f"horizon forecast must be an object, got {type(item).__name__}")
            hours = item.get("horizonHours", item.get("horizon"))
            loc = item.get("location") or item
            horizons.append(
                HorizonForecast(
                    horizon_hours=hours,
                    location=GeoPoint(latitude=loc["latitude"], longitude=loc["longitude"]),
                    source=ForecastSource.ORACLE,
                )
            )
        return cls(
            confidence=payload["confidence"],
            label=payload.get("label") or "unknown",
            horizon_forecasts=horizons,
        )


# ── Interface ─────────────────────────────────────────────────────────────────

class PredictionOracle(abc.ABC):
    """What the core needs from any oracle implementation."""

    @abc.abstractmethod
    async def classify(self, request: OracleRequest) -> OracleResponse:
        """Score one feature vector. Raises OracleError subclasses on failure."""

    @abc.abstractmethod
    async def forecast_drift(self, request: OracleDriftRequest) -> OracleResponse:
        """Predict positions at request.horizons_hours. Raises OracleError."""

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "unknown"}

    async def aclose(self) -> None:
        return None


# ── HTTP implementation ───────────────────────────────────────────────────────

class HttpPredictionOracle(PredictionOracle):
    """
    httpx-based client for the SeaGuard ML service.

    The client-level timeout mirrors settings.timeout_ms. The
    ClassificationOrchestrator additionally enforces the same bound with
    asyncio, so a wedged transport cannot outlive it either.

    Args:
        settings: OracleSettings (url, timeout_ms, ...).
        client:   Optional pre-built AsyncClient (tests pass one with a
                  MockTransport). When omitted, one is created and owned here.
    """

    def __init__(self, settings: OracleSettings, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.url,
            timeout=httpx.Timeout(settings.timeout_s),
        )

    async def classify(self, request: OracleRequest) -> OracleResponse:
        body = await self._post("/predict", request.to_payload())
        return self._parse(body)

    async def forecast_drift(self, request: OracleDriftRequest) -> OracleResponse:
        body = await self._post("/predict-drift", request.to_payload())
        return self._parse(body)

    async def health_check(self) -> Dict[str, Any]:
        """Never raises: a down oracle is a degraded status, not a crash."""
        try:
            response = await self._client.get("/health")
            response.raise_for_status()
            return {"status": "healthy"}
        except httpx.HTTPError as e:
            logger.warning("Oracle health check failed: %s", e)
            return {"status": "unhealthy", "error": f"{e.__class__.__name__}: {e}"}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise OracleTimeoutError(f"POST {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise OracleUnavailableError(f"POST {path} failed: {e.__class__.__name__}: {e}") from e

        status = response.status_code
        if status in (400, 422):
            raise OracleRejectedError(f"POST {path} rejected ({status}): {response.text[:200]}")
        if status == 429 or status >= 500:
            raise OracleUnavailableError(f"POST {path} returned {status}")
        if status >= 400:
            raise OracleRejectedError(f"POST {path} returned {status}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as e:
            raise OracleUnavailableError(f"POST {path} returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise OracleUnavailableError(f"POST {path} returned {type(body).__name__}, expected object")
        return body

    @staticmethod
    def _parse(body: Dict[str, Any]) -> OracleResponse:
        try:
            return OracleResponse.from_payload(body)
        except (KeyError, TypeError, ValidationError) as e:
            raise OracleUnavailableError(f"Unreadable oracle response: {e}") from e

    def __repr__(self) -> str:
        return f"HttpPredictionOracle(url={self._settings.url!r}, timeout_ms={self._settings.timeout_ms})"
