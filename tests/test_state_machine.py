"""
tests/test_state_machine.py
────────────────────────────
Test suite for seaguard/control_plane/state_machine.py

What we are testing
────────────────────
next_status() is a pure function, so most of it is checked as a grid over
every (status, event) pair. NetStateMachine.apply() adds the
compare-and-set commit and listener notification on top; those tests run
against the in-memory store.

Test groups
────────────
Group 1: Transition table     — next_status() over the full grid
Group 2: Thresholds           — boundary values and validation
Group 3: Commit               — apply() writes, reports, notifies
Group 4: CAS races            — stale transitions discarded, recovery wins
"""

from __future__ import annotations

import pytest

from conftest import make_net
from seaguard.control_plane.state_machine import (
    ClassificationFailedEvent,
    DetectionThresholds,
    NetStateMachine,
    PredictionEvent,
    RecoveryEvent,
    next_status,
)
from seaguard.shared.models import NetStatus, TransitionTrigger
from seaguard.telemetry.store import UnknownNetError

A = NetStatus.ACTIVE
S = NetStatus.GHOST_SUSPECTED
C = NetStatus.GHOST_CONFIRMED
R = NetStatus.RECOVERED


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Transition table
# ─────────────────────────────────────────────────────────────────────────────

class TestTransitionTable:

    @pytest.mark.parametrize(
        "current, confidence, expected",
        [
            (A, 0.90, C), (A, 0.60, S), (A, 0.10, A),
            (S, 0.90, C), (S, 0.60, S), (S, 0.10, A),
            (C, 0.90, C), (C, 0.60, C), (C, 0.10, C),
            (R, 0.90, R), (R, 0.60, R), (R, 0.10, R),
        ],
    )
    def test_prediction_grid(self, current, confidence, expected):
        assert next_status(current, PredictionEvent(confidence)) is expected

    @pytest.mark.parametrize("current", list(NetStatus))
    def test_classification_failure_never_changes_status(self, current):
        assert next_status(current, ClassificationFailedEvent()) is current

    @pytest.mark.parametrize("current", list(NetStatus))
    def test_recovery_always_ends_recovered(self, current):
        assert next_status(current, RecoveryEvent()) is R

    def test_confirmed_is_sticky_under_any_prediction(self):
        for tenth in range(11):
            assert next_status(C, PredictionEvent(tenth / 10)) is C

    def test_unknown_event_type_raises(self):
        with pytest.raises(TypeError):
            next_status(A, object())


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Thresholds
# ─────────────────────────────────────────────────────────────────────────────

class TestThresholds:

    def test_confirmed_boundary_is_inclusive(self):
        assert next_status(A, PredictionEvent(0.75)) is C
        assert next_status(A, PredictionEvent(0.7499)) is S

    def test_suspected_boundary_is_inclusive(self):
        assert next_status(A, PredictionEvent(0.50)) is S
        assert next_status(A, PredictionEvent(0.4999)) is A

    def test_custom_thresholds(self):
        strict = DetectionThresholds(confirmed=0.95, suspected=0.80)
        assert next_status(A, PredictionEvent(0.90), strict) is S
        assert next_status(A, PredictionEvent(0.70), strict) is A

    def test_inverted_thresholds_rejected(self):
        with pytest.raises(ValueError):
            DetectionThresholds(confirmed=0.5, suspected=0.6)

    def test_from_settings(self, settings):
        t = DetectionThresholds.from_settings(settings)
        assert (t.confirmed, t.suspected) == (0.75, 0.50)


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Commit
# ─────────────────────────────────────────────────────────────────────────────

class TestCommit:

    @pytest.fixture
    def machine(self, store):
        return NetStateMachine(store, DetectionThresholds())

    async def test_apply_commits_and_reports_transition(self, store, machine):
        await store.register_net(make_net("NET-1"))
        result = await machine.apply("NET-1", PredictionEvent(0.9))

        assert result.changed and not result.discarded
        assert result.transition.previous_status is A
        assert result.transition.new_status is C
        assert result.transition.confidence == 0.9
        assert result.transition.trigger is TransitionTrigger.PREDICTION
        assert (await store.get_net("NET-1")).status is C

    async def test_no_op_transition_writes_nothing(self, store, machine):
        await store.register_net(make_net("NET-1"))
        result = await machine.apply("NET-1", PredictionEvent(0.1))
        assert not result.changed and result.transition is None
        assert (await store.get_net("NET-1")).status_changed_at is None

    async def test_listener_receives_committed_transitions(self, store, machine):
        await store.register_net(make_net("NET-1"))
        seen = []

        async def listener(transition):
            seen.append(transition)

        machine.add_listener(listener)
        await machine.apply("NET-1", PredictionEvent(0.6))
        await machine.apply("NET-1", PredictionEvent(0.6))   # no change, no call
        assert [(t.previous_status, t.new_status) for t in seen] == [(A, S)]

    async def test_listener_failure_does_not_roll_back(self, store, machine):
        await store.register_net(make_net("NET-1"))

        async def broken(transition):
            raise RuntimeError("dispatcher down")

        machine.add_listener(broken)
        result = await machine.apply("NET-1", PredictionEvent(0.9))
        assert result.changed
        assert (await store.get_net("NET-1")).status is C

    async def test_unknown_net_raises(self, machine):
        with pytest.raises(UnknownNetError):
            await machine.apply("NOPE", PredictionEvent(0.9))

    async def test_recovery_transition_has_recovery_trigger(self, store, machine):
        await store.register_net(make_net("NET-1"))
        result = await machine.force_recovery("NET-1", RecoveryEvent(recovered_by="crew-7"))
        assert result.transition.trigger is TransitionTrigger.RECOVERY
        assert result.transition.confidence is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: CAS races
# ─────────────────────────────────────────────────────────────────────────────

class _RacingStore:
    """Wraps a store; the first set_net_status call is preceded by a rival write."""

    def __init__(self, inner, rival_status):
        self._inner = inner
        self._rival_status = rival_status
        self._raced = False

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def set_net_status(self, net_id, expected_prior, new_status):
        if not self._raced:
            self._raced = True
            current = (await self._inner.get_net(net_id)).status
            await self._inner.set_net_status(net_id, current, self._rival_status)
        return await self._inner.set_net_status(net_id, expected_prior, new_status)


class TestCasRaces:

    async def test_stale_prediction_is_discarded(self, store):
        await store.register_net(make_net("NET-1"))
        machine = NetStateMachine(_RacingStore(store, R), DetectionThresholds())
        seen = []

        async def listener(t):
            seen.append(t)

        machine.add_listener(listener)

        result = await machine.apply("NET-1", PredictionEvent(0.9))
        assert result.discarded and not result.changed
        assert seen == []
        assert (await store.get_net("NET-1")).status is R

    async def test_force_recovery_retries_until_it_wins(self, store):
        await store.register_net(make_net("NET-1"))
        machine = NetStateMachine(_RacingStore(store, C), DetectionThresholds())

        result = await machine.force_recovery("NET-1")
        assert result.changed
        assert result.previous_status is C
        assert (await store.get_net("NET-1")).status is R

    async def test_force_recovery_on_recovered_net_is_noop(self, store):
        await store.register_net(make_net("NET-1"))
        machine = NetStateMachine(store, DetectionThresholds())
        await machine.force_recovery("NET-1")
        again = await machine.force_recovery("NET-1")
        assert not again.changed and again.new_status is R
