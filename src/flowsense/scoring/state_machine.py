"""Hysteretic flow-state classifier.

Turns the noisy per-cycle total score into a stable categorical state.  A
state must be held for a minimum dwell time (60 s by default) before any
transition is considered; after that the rules below are tried in order and
the first match wins:

    1. overload    hr_ratio > 1.5 and hrv_ratio < 0.5
    2. flow        avg_score >= 70 and not already in flow
    3. postFlow    avg_score < 60 while in flow
    4. disengaged  avg_score < 30
    5. preFlow     first 3 minutes of a session, from baseline/calibrating
    6. unchanged

``avg_score`` is the integer mean of the last five totals.  Overload has no
dedicated exit rule: once the ratios normalise the next eligible evaluation
simply falls through the same list.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

from flowsense.config import EngineConfig
from flowsense.models import FlowState, HapticCue

logger = logging.getLogger(__name__)

_HAPTIC_CUES = {
    FlowState.FLOW: HapticCue.SUCCESS,
    FlowState.OVERLOAD: HapticCue.FAILURE,
    FlowState.POST_FLOW: HapticCue.NOTIFICATION,
    FlowState.DISENGAGED: HapticCue.NOTIFICATION,
}


def cue_for_state(state: FlowState) -> HapticCue:
    """Haptic cue to play when *state* is entered."""
    return _HAPTIC_CUES.get(state, HapticCue.CLICK)


@dataclass(frozen=True)
class StateTransition:
    previous: FlowState
    current: FlowState
    at: float

    @property
    def cue(self) -> HapticCue:
        return cue_for_state(self.current)


class FlowStateMachine:
    """Session-scoped flow classifier with minimum dwell time."""

    def __init__(self, config: EngineConfig | None = None, now: float = 0.0) -> None:
        self.config = config or EngineConfig()
        self.state = FlowState.CALIBRATING
        self.entered_at = now
        self._history: deque[int] = deque(maxlen=self.config.score_history_size)

    @property
    def history(self) -> list[int]:
        return list(self._history)

    @property
    def average_score(self) -> int:
        if not self._history:
            return 0
        return sum(self._history) // len(self._history)

    def time_in_state(self, now: float) -> float:
        return now - self.entered_at

    def record(self, total: int) -> int:
        """Append a total to the rolling history and return the new average."""
        self._history.append(total)
        return self.average_score

    def force_calibrating(self, now: float) -> StateTransition | None:
        """Pin the machine to ``calibrating`` while the baseline is not ready."""
        if self.state is FlowState.CALIBRATING:
            return None
        return self._enter(FlowState.CALIBRATING, now)

    def evaluate(
        self,
        total: int,
        hrv_ratio: float,
        hr_ratio: float,
        minutes_in_session: int,
        now: float,
        calibrated: bool = True,
    ) -> StateTransition | None:
        """Record *total* and pick the next state.

        Returns the transition taken, or None if the state is unchanged.
        """
        if not calibrated:
            return self.force_calibrating(now)

        cfg = self.config
        avg = self.record(total)

        if self.time_in_state(now) < cfg.min_state_duration_sec:
            return None

        current = self.state
        new_state = current

        if hr_ratio > cfg.overload_hr_ratio and hrv_ratio < cfg.overload_hrv_ratio:
            new_state = FlowState.OVERLOAD
        elif avg >= cfg.flow_threshold and current is not FlowState.FLOW:
            new_state = FlowState.FLOW
        elif avg < cfg.flow_exit_threshold and current is FlowState.FLOW:
            new_state = FlowState.POST_FLOW
        elif avg < cfg.disengaged_threshold:
            new_state = FlowState.DISENGAGED
        elif minutes_in_session < cfg.preflow_window_min and current in (
            FlowState.BASELINE,
            FlowState.CALIBRATING,
        ):
            new_state = FlowState.PRE_FLOW

        if new_state is current:
            return None
        return self._enter(new_state, now)

    def reset(self, now: float) -> None:
        """Return to ``baseline`` with an empty history (session end)."""
        self.state = FlowState.BASELINE
        self.entered_at = now
        self._history.clear()

    def _enter(self, state: FlowState, now: float) -> StateTransition:
        transition = StateTransition(previous=self.state, current=state, at=now)
        self.state = state
        self.entered_at = now
        logger.info("State: %s -> %s", transition.previous.value, state.value)
        return transition
