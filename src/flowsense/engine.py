"""Session-scoped flow engine.

:class:`FlowEngine` owns every piece of mutable session state: the beat
processor, the session context, the state machine with its score history,
and the running aggregates reported at session end.  It is synchronous and
not thread-safe; :class:`flowsense.session.FlowSession` serialises access to
it from concurrent producers, while replay and tests drive it directly.

A recompute cycle:

    1. calibration guard  -> publish a ``calibrating`` score and stop
    2. heart-rate guard   -> no HR yet, keep the previous result
    3. gather RMSSD/HR, circadian-adjusted baseline, sleep, substances
    4. four subscores -> total (clamped) -> confidence
    5. state machine (records the total in the 5-score history)
    6. build the FlowScore and forward it to the collaborators
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime
from typing import Callable

from flowsense.beats import BeatIntervalProcessor
from flowsense.config import EngineConfig
from flowsense.models import (
    FlowScore,
    FlowState,
    HapticCue,
    PersonalBaseline,
    SessionContext,
    SessionSnapshot,
    SessionSummary,
)
from flowsense.scoring.state_machine import FlowStateMachine, StateTransition
from flowsense.scoring.subscores import compute_subscores, confidence, total_score

logger = logging.getLogger(__name__)

ScoreSink = Callable[[FlowScore], None]
HapticSink = Callable[[HapticCue], None]
SessionStateSink = Callable[[SessionSnapshot], None]


def _local_hour(timestamp: float) -> int:
    return datetime.fromtimestamp(timestamp).hour


def _clean_substances(levels: dict[str, float]) -> dict[str, float]:
    cleaned: dict[str, float] = {}
    for name, mg in levels.items():
        try:
            value = float(mg)
        except (TypeError, ValueError):
            continue
        if math.isfinite(value) and value > 0:
            cleaned[str(name).lower()] = value
    return cleaned


class FlowEngine:
    """Computes FlowScores for one session at a time.

    Args:
        baseline: The user's calibration record (read-only).
        config: Engine settings.
        clock: Returns the current time in seconds.  Readings that go
            backwards are clamped to the last one seen.
        hour_of_day: Maps a clock reading to the local hour (0-23) used for
            the circadian baseline adjustment.
        on_score: Receives every published FlowScore (sync channel).
        on_haptic: Receives the cue for every state transition.
        on_session_state: Receives a SessionSnapshot after every cycle.
    """

    def __init__(
        self,
        baseline: PersonalBaseline,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.time,
        hour_of_day: Callable[[float], int] = _local_hour,
        on_score: ScoreSink | None = None,
        on_haptic: HapticSink | None = None,
        on_session_state: SessionStateSink | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.baseline = baseline
        self._clock = clock
        self._hour_of_day = hour_of_day
        self.on_score = on_score
        self.on_haptic = on_haptic
        self.on_session_state = on_session_state

        self._last_now = float("-inf")
        now = self._now()
        self.processor = BeatIntervalProcessor(self.config)
        self.machine = FlowStateMachine(self.config, now=now)
        self.machine.reset(now)
        self.context = SessionContext(sleep_quality=self.config.default_sleep_quality)

        self.is_active = False
        self.started_at: float | None = None
        self.task_description = ""
        self.target_duration_minutes = 25
        self.current_score: FlowScore | None = None

        self._version = 0
        self._computed_version = -1
        self._last_computed_at: float | None = None
        self._reset_aggregates()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        sleep_quality: float | None = None,
        substances: dict[str, float] | None = None,
        task_description: str = "",
        target_duration_minutes: int = 25,
    ) -> None:
        """Begin a session with fresh state."""
        now = self._now()
        self._clear(now)
        self.machine = FlowStateMachine(self.config, now=now)
        self.is_active = True
        self.started_at = now
        self.task_description = task_description
        self.target_duration_minutes = target_duration_minutes
        if sleep_quality is not None:
            self.set_sleep_quality(sleep_quality)
        if substances:
            self.set_substances(substances)
        logger.info("Session started (calibrated=%s)", self.baseline.is_calibrated)

    def stop(self) -> SessionSummary:
        """End the session, clear all session state and return its summary."""
        now = self._now()
        summary = self.summary(now)
        self._clear(now)
        self.is_active = False
        self.started_at = None
        logger.info(
            "Session stopped: %d cycles, peak %d, %.0fs in flow",
            summary.cycles,
            summary.peak_flow_score,
            summary.time_in_flow_seconds,
        )
        return summary

    def _clear(self, now: float) -> None:
        self.processor.reset()
        self.machine.reset(now)
        self.context = SessionContext(sleep_quality=self.config.default_sleep_quality)
        self.current_score = None
        self._version += 1
        self._computed_version = -1
        self._last_computed_at = None
        self._reset_aggregates()

    def _reset_aggregates(self) -> None:
        self._cycles = 0
        self._peak = 0
        self._flow_seconds = 0.0
        self._hr_sum = 0.0
        self._rmssd_sum = 0.0
        self._rmssd_count = 0
        self._last_published: FlowScore | None = None

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def add_beat(self, timestamp: float) -> bool:
        """Feed a heartbeat timestamp; True if a new interval was accepted."""
        if not self.is_active:
            return False
        return self._after_beat(self.processor.add_beat(timestamp) is not None)

    def add_interval(self, rr_ms: float, observed_at: float | None = None) -> bool:
        """Feed a sensor-measured RR interval; True if accepted."""
        if not self.is_active:
            return False
        if observed_at is None:
            observed_at = self._now()
        return self._after_beat(
            self.processor.add_interval(rr_ms, observed_at) is not None
        )

    def _after_beat(self, accepted: bool) -> bool:
        if accepted:
            self.context.rmssd = self.processor.rmssd
            self._version += 1
        return accepted

    def add_heart_rate(self, bpm: float, timestamp: float | None = None) -> bool:
        """Feed an instantaneous HR sample; True if accepted."""
        if not self.is_active:
            return False
        if timestamp is None:
            timestamp = self._now()
        if not self.processor.add_heart_rate(bpm, timestamp):
            return False
        self.context.heart_rate = self.processor.heart_rate
        self._version += 1
        return True

    def set_sleep_quality(self, score: float) -> None:
        try:
            value = float(score)
        except (TypeError, ValueError):
            return
        if not math.isfinite(value):
            return
        self.context.sleep_quality = max(0.0, min(100.0, value))
        self._version += 1

    def set_substances(self, levels: dict[str, float]) -> None:
        self.context.substances = _clean_substances(levels)
        self._version += 1

    def set_baseline(self, baseline: PersonalBaseline) -> None:
        self.baseline = baseline
        self._version += 1

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def recompute(self) -> FlowScore | None:
        """Run one scoring cycle.

        Safe to call from any number of triggers: a call that finds the
        inputs unchanged since a cycle completed less than ``debounce_sec``
        ago returns that cycle's score without touching any state.
        """
        now = self._now()
        if not self.is_active:
            return self.current_score

        if (
            self._computed_version == self._version
            and self._last_computed_at is not None
            and now - self._last_computed_at < self.config.debounce_sec
        ):
            return self.current_score

        self.context.elapsed_seconds = now - (self.started_at or now)

        if not self.baseline.is_calibrated:
            self.machine.force_calibrating(now)
            logger.debug(
                "Still calibrating (%d/%d days)",
                self.baseline.data_point_count,
                self.baseline.calibration_days,
            )
            score = FlowScore.calibrating(now)
            self._mark_computed(now)
            self.current_score = score
            self._emit(self.on_score, score)
            self._emit(self.on_session_state, self.snapshot())
            return score

        ctx = self.context
        if ctx.heart_rate is None:
            logger.debug("No HR data yet")
            return self.current_score

        adjusted_rmssd = self.baseline.adjusted_baseline_rmssd(self._hour_of_day(now))
        subscores = compute_subscores(
            current_rmssd=ctx.rmssd,
            baseline_rmssd=adjusted_rmssd,
            current_hr=ctx.heart_rate,
            resting_hr=self.baseline.resting_hr,
            sleep_quality=ctx.sleep_quality,
            substances=ctx.substances,
        )
        total = total_score(subscores)
        conf = confidence(
            self.baseline.data_point_count, self.config.confidence_data_points
        )

        hrv_ratio = (ctx.rmssd or 0.0) / max(1.0, adjusted_rmssd)
        hr_ratio = ctx.heart_rate / max(1.0, self.baseline.resting_hr)

        transition = self.machine.evaluate(
            total,
            hrv_ratio=hrv_ratio,
            hr_ratio=hr_ratio,
            minutes_in_session=ctx.minutes_in_session,
            now=now,
        )

        score = FlowScore(
            total=total,
            hrv_subscore=subscores.hrv,
            hr_subscore=subscores.hr,
            sleep_subscore=subscores.sleep,
            substance_subscore=subscores.substance,
            confidence=conf,
            state=self.machine.state,
            timestamp=now,
        )
        self._mark_computed(now)
        self._accumulate(score, ctx)
        self.current_score = score

        logger.info(
            "Score: %d | HRV:%d HR:%d Sleep:%d Sub:%d | State: %s",
            total,
            int(subscores.hrv),
            int(subscores.hr),
            int(subscores.sleep),
            int(subscores.substance),
            score.state.value,
        )

        self._emit(self.on_score, score)
        if transition is not None:
            self._on_transition(transition)
        self._emit(self.on_session_state, self.snapshot())
        return score

    def _mark_computed(self, now: float) -> None:
        self._computed_version = self._version
        self._last_computed_at = now

    def _accumulate(self, score: FlowScore, ctx: SessionContext) -> None:
        previous = self._last_published
        if previous is not None and previous.state is FlowState.FLOW:
            self._flow_seconds += score.timestamp - previous.timestamp
        self._cycles += 1
        self._peak = max(self._peak, score.total)
        self._hr_sum += ctx.heart_rate or 0.0
        if ctx.rmssd is not None:
            self._rmssd_sum += ctx.rmssd
            self._rmssd_count += 1
        self._last_published = score

    def _on_transition(self, transition: StateTransition) -> None:
        self._emit(self.on_haptic, transition.cue)

    def _emit(self, sink: Callable | None, payload: object) -> None:
        if sink is None:
            return
        try:
            sink(payload)
        except Exception:
            logger.exception("Collaborator %r failed", sink)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @property
    def state(self) -> FlowState:
        return self.machine.state

    @property
    def elapsed_seconds(self) -> float:
        if not self.is_active or self.started_at is None:
            return 0.0
        return max(0.0, self._last_now - self.started_at)

    def snapshot(self) -> SessionSnapshot:
        if not self.is_active:
            return SessionSnapshot.inactive()
        score = self.current_score
        return SessionSnapshot(
            is_active=True,
            elapsed_seconds=int(self.elapsed_seconds),
            heart_rate=self.context.heart_rate or 0.0,
            flow_score=score.total if score else 0,
            flow_state=score.state if score else self.machine.state,
            task_description=self.task_description,
            target_duration_minutes=self.target_duration_minutes,
        )

    def summary(self, now: float | None = None) -> SessionSummary:
        if now is None:
            now = self._now()
        flow_seconds = self._flow_seconds
        last = self._last_published
        if last is not None and last.state is FlowState.FLOW:
            flow_seconds += now - last.timestamp
        duration = now - self.started_at if self.started_at is not None else 0.0
        return SessionSummary(
            duration_seconds=max(0.0, duration),
            cycles=self._cycles,
            peak_flow_score=self._peak,
            time_in_flow_seconds=flow_seconds,
            average_heart_rate=self._hr_sum / self._cycles if self._cycles else 0.0,
            average_rmssd=(
                self._rmssd_sum / self._rmssd_count if self._rmssd_count else 0.0
            ),
            final_state=self.machine.state,
        )

    def _now(self) -> float:
        t = float(self._clock())
        if t < self._last_now:
            t = self._last_now
        self._last_now = t
        return t
