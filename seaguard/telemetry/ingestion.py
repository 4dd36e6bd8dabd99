"""
seaguard/telemetry/ingestion.py
────────────────────────────────
Ingestion gate: semantic validation of pings and net registrations before
anything reaches the telemetry store.

What it checks (pings)
───────────────────────
  1. net_id is present.
  2. Coordinates are finite numbers inside [-90, 90] / [-180, 180].
  3. Source is one of lora / gsm / satellite.
  4. Timestamp parses and is not more than MAX_FUTURE_SKEW ahead of now
     (a tracker with a broken clock would otherwise pin the window).
  5. The net is registered (checked against the store).

A rejected ping raises PingRejectedError and changes nothing. A duplicate
(net_id, timestamp, source) is not an error: it is reported as DUPLICATE.

What it does NOT check
───────────────────────
  • Physical plausibility of the track (teleporting pings): that is a
    signal for the classifier, not a reason to drop data.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from seaguard.shared.models import GeoPoint, Net, Ping, PingSource
from seaguard.telemetry.store import TelemetryStore, UnknownNetError

logger = logging.getLogger(__name__)

MAX_FUTURE_SKEW = timedelta(minutes=5)
"""How far into the future a ping timestamp may be before it is refused."""

TimestampLike = Union[datetime, str, None]


class PingRejectedError(Exception):
    """
    Raised when a ping fails validation.

    Attributes:
        reason: Human-readable explanation of why the ping was rejected.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class RegistrationRejectedError(Exception):
    """Raised when a net registration fails validation."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class IngestResult(str, Enum):
    ACCEPTED = "ACCEPTED"
    DUPLICATE = "DUPLICATE"


# ── Timestamp normalisation ───────────────────────────────────────────────────

def normalise_timestamp(value: TimestampLike, now: Optional[datetime] = None) -> datetime:
    """
    Coerce an ISO string or datetime to a naive UTC datetime.

    None means "now" (trackers relaying live fixes may omit it).
    Timezone-aware values are converted to UTC and stripped of tzinfo,
    matching the naive-UTC convention used throughout the models.
    """
    if value is None:
        return now or datetime.utcnow()
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError as e:
            raise PingRejectedError(f"timestamp {value!r} is not ISO-8601") from e
    if not isinstance(value, datetime):
        raise PingRejectedError(f"timestamp must be a datetime or ISO string, got {type(value).__name__}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ── Ping admission ────────────────────────────────────────────────────────────

def admit_ping(
    net_id: str,
    latitude: Any,
    longitude: Any,
    timestamp: TimestampLike = None,
    source: Any = PingSource.LORA,
    now: Optional[datetime] = None,
) -> Ping:
    """
    Run every stateless check and build the Ping.

    Raises:
        PingRejectedError: with a descriptive reason string.
    """
    now = now or datetime.utcnow()
    if not net_id or not isinstance(net_id, str):
        raise PingRejectedError("netId is required")

    lat = _check_coordinate("latitude", latitude, 90.0)
    lon = _check_coordinate("longitude", longitude, 180.0)
    ping_source = _check_source(source)
    ts = normalise_timestamp(timestamp, now)

    if ts - now > MAX_FUTURE_SKEW:
        raise PingRejectedError(
            f"timestamp {ts.isoformat()} is more than "
            f"{int(MAX_FUTURE_SKEW.total_seconds())}s in the future"
        )

    try:
        return Ping(net_id=net_id, latitude=lat, longitude=lon, timestamp=ts, source=ping_source)
    except ValidationError as e:
        raise PingRejectedError(str(e)) from e


def _check_coordinate(name: str, value: Any, bound: float) -> float:
    if isinstance(value, bool):
        raise PingRejectedError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise PingRejectedError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(number):
        raise PingRejectedError(f"{name} must be finite, got {value!r}")
    if not -bound <= number <= bound:
        raise PingRejectedError(f"{name} {number} outside [-{bound:g}, {bound:g}]")
    return number


def _check_source(value: Any) -> PingSource:
    if value is None:
        return PingSource.LORA
    try:
        return PingSource(value)
    except ValueError:
        valid = ", ".join(s.value for s in PingSource)
        raise PingRejectedError(f"source {value!r} must be one of: {valid}")


class IngestionGate:
    """
    Validates pings and appends them to the telemetry log.

    Writes for the same net may interleave freely: the store keeps each
    net's log ordered by timestamp, so arrival order never matters.
    """

    def __init__(self, store: TelemetryStore) -> None:
        self._store = store

    async def submit(
        self,
        net_id: str,
        latitude: Any,
        longitude: Any,
        timestamp: TimestampLike = None,
        source: Any = PingSource.LORA,
    ) -> IngestResult:
        """
        Raises:
            PingRejectedError: the ping failed validation or names an unknown net.
        """
        ping = admit_ping(net_id, latitude, longitude, timestamp, source)
        try:
            appended = await self._store.append_ping(ping)
        except UnknownNetError as e:
            raise PingRejectedError(f"Unknown net {net_id!r}") from e

        if not appended:
            logger.debug("Duplicate ping ignored: net=%s ts=%s src=%s",
                         net_id, ping.timestamp.isoformat(), ping.source.value)
            return IngestResult.DUPLICATE
        return IngestResult.ACCEPTED


# ── Net registration ──────────────────────────────────────────────────────────

def admit_registration(
    net_id: str,
    qr_code_id: str,
    owner_id: str,
    deployment_location: Dict[str, Any],
    deployment_time: TimestampLike = None,
) -> Net:
    """
    Validate a registration request and build the Net (status=active).

    Raises:
        RegistrationRejectedError: with a descriptive reason string.
    """
    for field_name, value in (("netId", net_id), ("qrCodeId", qr_code_id), ("ownerId", owner_id)):
        if not value or not isinstance(value, str):
            raise RegistrationRejectedError(f"{field_name} is required")

    if not isinstance(deployment_location, dict):
        raise RegistrationRejectedError("deploymentLocation must be an object with latitude/longitude")
    try:
        lat = _check_coordinate("latitude", deployment_location.get("latitude"), 90.0)
        lon = _check_coordinate("longitude", deployment_location.get("longitude"), 180.0)
        deployed_at = normalise_timestamp(deployment_time)
    except PingRejectedError as e:
        raise RegistrationRejectedError(e.reason) from e

    return Net(
        net_id=net_id,
        qr_code_id=qr_code_id,
        owner_id=owner_id,
        deployment_location=GeoPoint(latitude=lat, longitude=lon),
        deployment_time=deployed_at,
    )
