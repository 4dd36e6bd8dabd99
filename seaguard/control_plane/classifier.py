"""
seaguard/control_plane/classifier.py
─────────────────────────────────────
ClassificationOrchestrator: one FeatureVector in, one Prediction (or a
classification failure) out.

What it enforces
─────────────────
  1. Per-call timeout (oracle.timeout_ms, default 10s) via asyncio.wait_for.
     A call that overruns is abandoned and counted as OracleTimeoutError.
  2. RetryPolicy around the call: transient failures (timeout, unavailable)
     are retried with exponential backoff; a malformed-request rejection is
     surfaced on the spot and logged as a contract error.
  3. At most one in-flight oracle call per net. A second classify() for a
     net whose call is still outstanding joins the existing call instead of
     issuing another. The in-flight entry is released when the call
     finishes, fails or is cancelled.

What a failure means
─────────────────────
A ClassificationOutcome with `failure` set carries NO information about the
net. Callers must leave the net's status alone. It is never a low-confidence
reading.

Cancellation
─────────────
Each caller waits on the shared task through asyncio.shield(). If a caller
is cancelled, it withdraws; when the last waiter withdraws the underlying
oracle call is cancelled too. So a sweep-wide cancel reaches the oracle,
while one impatient waiter cannot cancel a call somebody else still needs.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from pydantic import BaseModel

from seaguard.control_plane.oracle import (
    OracleError,
    OracleFailureKind,
    OracleRejectedError,
    OracleRequest,
    OracleTimeoutError,
    PredictionOracle,
)
from seaguard.control_plane.retry import RetryPolicy
from seaguard.shared.config import SeaGuardSettings
from seaguard.shared.models import FeatureVector, Prediction

logger = logging.getLogger(__name__)


class ClassificationFailure(BaseModel):
    net_id: str
    kind: OracleFailureKind
    attempts: int
    message: str


class ClassificationOutcome(BaseModel):
    """Exactly one of `prediction` / `failure` is set."""
    net_id: str
    prediction: Optional[Prediction] = None
    failure: Optional[ClassificationFailure] = None
    attempts: int = 0
    deduplicated: bool = False

    @property
    def ok(self) -> bool:
        return self.prediction is not None


@dataclass
class _InFlight:
    task: "asyncio.Task[ClassificationOutcome]"
    waiters: int = 0


class ClassificationOrchestrator:
    """
    Args:
        oracle:       The PredictionOracle to call.
        settings:     SeaGuardSettings; reads oracle.timeout_ms / retries / backoff.
        retry_policy: Override the policy derived from settings (tests inject
                      one with a recording sleep).
    """

    def __init__(
        self,
        oracle: PredictionOracle,
        settings: SeaGuardSettings,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._oracle = oracle
        self._timeout_s = settings.oracle.timeout_s
        self._retry = retry_policy or RetryPolicy.from_settings(settings.oracle)
        self._in_flight: Dict[str, _InFlight] = {}

        self._calls = 0
        self._deduplicated = 0
        self._failures = 0

    # ── Public API ─────────────────────────────────────────────────────────────

    async def classify(self, features: FeatureVector) -> ClassificationOutcome:
        """
        Classify one feature vector, joining an outstanding call for the same
        net if there is one.
        """
        net_id = features.net_id
        entry = self._in_flight.get(net_id)
        joined = entry is not None and not entry.task.done()

        if joined:
            self._deduplicated += 1
            logger.debug("Joining in-flight classification for %s", net_id)
        else:
            task = asyncio.get_running_loop().create_task(self._run(features))
            entry = _InFlight(task=task)
            self._in_flight[net_id] = entry
            task.add_done_callback(lambda t, n=net_id: self._release(n, t))

        entry.waiters += 1
        try:
            outcome = await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            # last one out cancels the oracle call
            if entry.waiters <= 1 and not entry.task.done():
                entry.task.cancel()
            raise
        finally:
            entry.waiters -= 1

        if joined:
            return outcome.model_copy(update={"deduplicated": True})
        return outcome

    def is_in_flight(self, net_id: str) -> bool:
        entry = self._in_flight.get(net_id)
        return entry is not None and not entry.task.done()

    @property
    def in_flight_count(self) -> int:
        return sum(1 for e in self._in_flight.values() if not e.task.done())

    def get_metrics(self) -> dict:
        return {
            "oracle_calls": self._calls,
            "deduplicated_requests": self._deduplicated,
            "failed_classifications": self._failures,
            "in_flight": self.in_flight_count,
        }

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _run(self, features: FeatureVector) -> ClassificationOutcome:
        net_id = features.net_id
        request = OracleRequest(net_id=net_id, features=features)
        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            self._calls += 1
            try:
                return await asyncio.wait_for(self._oracle.classify(request), self._timeout_s)
            except asyncio.TimeoutError:
                raise OracleTimeoutError(
                    f"oracle.classify for {net_id} exceeded {self._timeout_s:.1f}s"
                ) from None

        try:
            response = await self._retry.call(attempt, label=f"oracle.classify[{net_id}]")
        except OracleRejectedError as e:
            self._failures += 1
            logger.error(
                "Oracle rejected classification request for %s as malformed: %s",
                net_id, e.reason,
            )
            return self._failed(net_id, e, attempts)
        except OracleError as e:
            self._failures += 1
            logger.warning(
                "Classification for %s failed after %d attempt(s) (%s): %s. "
                "Monitoring degraded; status left unchanged.",
                net_id, attempts, e.kind.value, e.reason,
            )
            return self._failed(net_id, e, attempts)

        prediction = Prediction(
            net_id=net_id,
            confidence=response.confidence,
            label=response.label,
            horizon_forecasts=response.horizon_forecasts,
            features=features,
        )
        logger.info(
            "Classified %s: confidence=%.3f label=%s (attempts=%d)",
            net_id, prediction.confidence, prediction.label, attempts,
        )
        return ClassificationOutcome(net_id=net_id, prediction=prediction, attempts=attempts)

    @staticmethod
    def _failed(net_id: str, error: OracleError, attempts: int) -> ClassificationOutcome:
        return ClassificationOutcome(
            net_id=net_id,
            failure=ClassificationFailure(
                net_id=net_id, kind=error.kind, attempts=attempts, message=error.reason
            ),
            attempts=attempts,
        )

    def _release(self, net_id: str, task: asyncio.Task) -> None:
        entry = self._in_flight.get(net_id)
        if entry is not None and entry.task is task:
            del self._in_flight[net_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Classification task for %s crashed: %r", net_id, task.exception())

    def __repr__(self) -> str:
        return (
            f"ClassificationOrchestrator("
            f"timeout_s={self._timeout_s}, "
            f"max_attempts={self._retry.max_attempts}, "
            f"in_flight={self.in_flight_count})"
        )
