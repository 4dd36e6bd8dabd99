"""
seaguard/control_plane/state_machine.py
────────────────────────────────────────
The net lifecycle: a pure transition function plus the compare-and-set
that commits its result.

Transition table
─────────────────
    current \\ event   Prediction c≥conf   susp≤c<conf        c<susp        Failed   Recovery
    active             ghost_confirmed     ghost_suspected    active        active   recovered
    ghost_suspected    ghost_confirmed     ghost_suspected    active        (same)   recovered
    ghost_confirmed    ghost_confirmed     ghost_confirmed    ghost_confirmed (same) recovered
    recovered          recovered           recovered          recovered     (same)   recovered

ghost_confirmed is sticky: no prediction de-escalates it, only a recovery
confirmation leaves it. A single fresh low reading is enough to take
ghost_suspected back to active (no hysteresis window).

Committing
───────────
NetStateMachine.apply() reads the status, computes next_status(), and
writes with store.set_net_status(net_id, expected_prior=<what it read>).
If somebody else changed the status in between (typically a recovery
confirmation racing a sweep), the write is refused and the stale transition
is dropped. It is not retried: the other writer's decision stands.

Recovery is the exception. It must win unconditionally, so
force_recovery() re-reads and retries its CAS until the net is recovered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union

from pydantic import BaseModel

from seaguard.shared.config import SeaGuardSettings
from seaguard.shared.models import NetStatus, StatusTransition, TransitionTrigger
from seaguard.telemetry.store import TelemetryStore, UnknownNetError

logger = logging.getLogger(__name__)

MAX_RECOVERY_CAS_ATTEMPTS: int = 16
"""Bound on force_recovery()'s re-read/CAS loop. Each lost race means another
writer committed in between; sixteen in a row indicates a bug, not load."""


# ── Events ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PredictionEvent:
    confidence: float


@dataclass(frozen=True)
class ClassificationFailedEvent:
    """The oracle gave no fresh information this cycle."""


@dataclass(frozen=True)
class RecoveryEvent:
    recovered_by: Optional[str] = None


NetEvent = Union[PredictionEvent, ClassificationFailedEvent, RecoveryEvent]


@dataclass(frozen=True)
class DetectionThresholds:
    confirmed: float = 0.75
    suspected: float = 0.50

    def __post_init__(self) -> None:
        if not 0.0 <= self.suspected < self.confirmed <= 1.0:
            raise ValueError(
                f"thresholds must satisfy 0 <= suspected < confirmed <= 1, "
                f"got suspected={self.suspected} confirmed={self.confirmed}"
            )

    @classmethod
    def from_settings(cls, settings: SeaGuardSettings) -> "DetectionThresholds":
        return cls(confirmed=settings.confidence_threshold, suspected=settings.suspected_threshold)


# ── Pure transition function ──────────────────────────────────────────────────

def next_status(
    current: NetStatus,
    event: NetEvent,
    thresholds: DetectionThresholds = DetectionThresholds(),
) -> NetStatus:
    """Deterministic next status. See the module docstring for the table."""
    if current is NetStatus.RECOVERED:
        return NetStatus.RECOVERED

    if isinstance(event, RecoveryEvent):
        return NetStatus.RECOVERED

    if isinstance(event, ClassificationFailedEvent):
        return current

    if isinstance(event, PredictionEvent):
        c = event.confidence
        if c >= thresholds.confirmed:
            return NetStatus.GHOST_CONFIRMED
        if current is NetStatus.GHOST_CONFIRMED:
            return NetStatus.GHOST_CONFIRMED
        if c >= thresholds.suspected:
            return NetStatus.GHOST_SUSPECTED
        if current is NetStatus.GHOST_SUSPECTED:
            return NetStatus.ACTIVE
        if current is NetStatus.ACTIVE:
            return NetStatus.ACTIVE
        raise ValueError(f"Unhandled status {current!r}")

    raise TypeError(f"Unknown net event {event!r}")


# ── Committing transitions ────────────────────────────────────────────────────

class TransitionResult(BaseModel):
    """
    What apply() did.

    changed   → the CAS committed previous_status → new_status.
    discarded → the transition was computed but lost the CAS race.
    Neither   → the transition function returned the current status.
    """
    net_id: str
    previous_status: NetStatus
    new_status: NetStatus
    changed: bool = False
    discarded: bool = False
    transition: Optional[StatusTransition] = None


TransitionListener = Callable[[StatusTransition], Awaitable[None]]


class NetStateMachine:
    """
    Applies events to stored nets and reports committed transitions.

    Listeners (the alert dispatcher) are awaited after the CAS commits.
    A listener failure is logged and swallowed: it never rolls back or
    blocks the status change.
    """

    def __init__(self, store: TelemetryStore, thresholds: DetectionThresholds) -> None:
        self._store = store
        self._thresholds = thresholds
        self._listeners: List[TransitionListener] = []

    @property
    def thresholds(self) -> DetectionThresholds:
        return self._thresholds

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    async def apply(self, net_id: str, event: NetEvent) -> TransitionResult:
        """
        Compute and commit the transition for one event.

        Raises:
            UnknownNetError: net_id is not registered.
        """
        net = await self._store.get_net(net_id)
        if net is None:
            raise UnknownNetError(net_id)

        current = net.status
        new = next_status(current, event, self._thresholds)
        if new is current:
            return TransitionResult(net_id=net_id, previous_status=current, new_status=current)

        committed = await self._store.set_net_status(net_id, current, new)
        if not committed:
            logger.debug(
                "Discarding stale transition for %s: %s -> %s (status changed concurrently)",
                net_id, current.value, new.value,
            )
            return TransitionResult(
                net_id=net_id, previous_status=current, new_status=new, discarded=True
            )

        transition = StatusTransition(
            net_id=net_id,
            previous_status=current,
            new_status=new,
            confidence=event.confidence if isinstance(event, PredictionEvent) else None,
            trigger=(
                TransitionTrigger.RECOVERY if isinstance(event, RecoveryEvent)
                else TransitionTrigger.PREDICTION
            ),
        )
        logger.info("Net %s: %s -> %s", net_id, current.value, new.value)
        await self._notify(transition)
        return TransitionResult(
            net_id=net_id,
            previous_status=current,
            new_status=new,
            changed=True,
            transition=transition,
        )

    async def force_recovery(self, net_id: str, event: Optional[RecoveryEvent] = None) -> TransitionResult:
        """
        Move the net to RECOVERED from whatever status it is in.

        Re-reads and retries the CAS while concurrent writers keep winning.
        Already recovered → no-op result.
        """
        event = event or RecoveryEvent()
        for _ in range(MAX_RECOVERY_CAS_ATTEMPTS):
            result = await self.apply(net_id, event)
            if not result.discarded:
                return result
        raise RuntimeError(
            f"force_recovery({net_id!r}) lost the status CAS {MAX_RECOVERY_CAS_ATTEMPTS} times"
        )

    async def _notify(self, transition: StatusTransition) -> None:
        for listener in self._listeners:
            try:
                await listener(transition)
            except Exception:
                logger.exception(
                    "Transition listener failed for %s (%s -> %s); status change stands",
                    transition.net_id, transition.previous_status.value, transition.new_status.value,
                )
