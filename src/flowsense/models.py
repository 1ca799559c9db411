"""Data records shared by the flow engine and its collaborators.

Session-scoped records (:class:`SessionContext`, :class:`FlowScore`, ...) are
created at session start and discarded at session end.  The only
cross-session record is :class:`PersonalBaseline`, which is owned by an
external calibration subsystem and treated as read-only here.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any

from flowsense.config import CALIBRATION_DAYS, DEFAULT_SLEEP_QUALITY

# Substance keys understood by the substance subscore
CAFFEINE = "caffeine"
THEANINE = "theanine"


class FlowState(str, Enum):
    CALIBRATING = "calibrating"  # baseline still collecting (< 14 days)
    BASELINE = "baseline"  # not in session / ready
    PRE_FLOW = "preFlow"  # warming up, first minutes of a session
    FLOW = "flow"  # optimal zone (avg score 70+)
    POST_FLOW = "postFlow"  # average dropped below 60 after flow
    DISENGAGED = "disengaged"  # low arousal (avg score < 30)
    OVERLOAD = "overload"  # HR > 150% of resting AND RMSSD < 50% of baseline

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    FlowState.CALIBRATING: "Calibrating",
    FlowState.BASELINE: "Ready",
    FlowState.PRE_FLOW: "Warming Up",
    FlowState.FLOW: "In Flow",
    FlowState.POST_FLOW: "Winding Down",
    FlowState.DISENGAGED: "Unfocused",
    FlowState.OVERLOAD: "Overloaded",
}


class HapticCue(str, Enum):
    """Feedback cue played by the haptic collaborator on a state change."""

    SUCCESS = "success"
    FAILURE = "failure"
    NOTIFICATION = "notification"
    CLICK = "click"


@dataclass(frozen=True)
class RRInterval:
    """A single validated inter-beat interval."""

    rr_ms: float
    observed_at: float  # seconds, same clock as the beat timestamps

    @property
    def bpm(self) -> float:
        return 60_000.0 / self.rr_ms


@dataclass(frozen=True)
class PersonalBaseline:
    """A user's resting reference values, produced by multi-day calibration."""

    resting_hr: float  # bpm
    baseline_rmssd: float  # ms
    data_point_count: int = 0  # daily samples collected
    resting_hr_std: float = 0.0
    baseline_rmssd_std: float = 0.0
    sleep_score: float = DEFAULT_SLEEP_QUALITY
    circadian_hrv_modifiers: dict[int, float] = field(default_factory=dict)
    calibration_days: int = CALIBRATION_DAYS

    @classmethod
    def default(cls) -> PersonalBaseline:
        """Population averages for a user with no calibration data yet."""
        return cls(
            resting_hr=70.0,
            baseline_rmssd=50.0,
            data_point_count=0,
            resting_hr_std=10.0,
            baseline_rmssd_std=15.0,
        )

    @property
    def is_calibrated(self) -> bool:
        return self.data_point_count >= self.calibration_days

    def adjusted_baseline_rmssd(self, hour: int) -> float:
        """Baseline RMSSD scaled by the circadian multiplier for *hour* (0-23)."""
        return self.baseline_rmssd * self.circadian_hrv_modifiers.get(hour, 1.0)

    def with_daily_sample(
        self,
        resting_hr: float,
        rmssd: float,
        sleep_score: float,
        alpha: float = 0.1,
    ) -> PersonalBaseline:
        """Return a new baseline folded with one day of data (EMA).

        Used by the calibration subsystem; the engine never calls it.
        """
        return replace(
            self,
            resting_hr=alpha * resting_hr + (1 - alpha) * self.resting_hr,
            baseline_rmssd=alpha * rmssd + (1 - alpha) * self.baseline_rmssd,
            sleep_score=alpha * sleep_score + (1 - alpha) * self.sleep_score,
            data_point_count=self.data_point_count + 1,
        )


@dataclass
class SessionContext:
    """Live inputs for the current session, refreshed every cycle."""

    elapsed_seconds: float = 0.0
    heart_rate: float | None = None
    rmssd: float | None = None
    substances: dict[str, float] = field(default_factory=dict)  # mg by name
    sleep_quality: float = DEFAULT_SLEEP_QUALITY  # 0-100

    @property
    def minutes_in_session(self) -> int:
        return int(self.elapsed_seconds // 60)

    @property
    def caffeine_mg(self) -> float:
        return self.substances.get(CAFFEINE, 0.0)

    @property
    def theanine_mg(self) -> float:
        return self.substances.get(THEANINE, 0.0)


@dataclass(frozen=True)
class HRVMetrics:
    """Time-domain HRV metrics over a window of artifact-filtered intervals."""

    rmssd: float  # ms
    sdnn: float  # ms
    sdsd: float  # ms
    pnn50: float  # %
    nn50: int
    mean_rr: float  # ms
    mean_hr: float  # bpm
    sample_count: int  # clean intervals used
    artifact_count: int
    artifact_fraction: float  # 0-1
    window_duration_sec: float
    is_valid: bool

    @classmethod
    def insufficient(cls, artifact_count: int, window_duration_sec: float) -> HRVMetrics:
        """Placeholder for a window with too few clean intervals."""
        return cls(
            rmssd=0.0,
            sdnn=0.0,
            sdsd=0.0,
            pnn50=0.0,
            nn50=0,
            mean_rr=0.0,
            mean_hr=0.0,
            sample_count=0,
            artifact_count=artifact_count,
            artifact_fraction=1.0,
            window_duration_sec=window_duration_sec,
            is_valid=False,
        )

    @property
    def confidence_level(self) -> str:
        """'low', 'medium' or 'high' from artifact load and window length."""
        if self.artifact_fraction > 0.05 or self.sample_count < 30:
            return "low"
        if self.window_duration_sec < 30:
            return "medium"
        if self.window_duration_sec >= 60 and self.artifact_fraction < 0.02:
            return "high"
        return "medium"

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["confidence_level"] = self.confidence_level
        return d


@dataclass(frozen=True)
class Subscores:
    """The four weighted components of a flow score (max 40/30/20/10)."""

    hrv: float
    hr: float
    sleep: float
    substance: float

    @property
    def raw_total(self) -> float:
        return self.hrv + self.hr + self.sleep + self.substance


@dataclass(frozen=True)
class FlowScore:
    """Result of one recompute cycle."""

    total: int  # 0-100
    hrv_subscore: float  # 0-40
    hr_subscore: float  # 0-30
    sleep_subscore: float  # 0-20
    substance_subscore: float  # 0-10
    confidence: float  # 0-1
    state: FlowState
    timestamp: float

    @classmethod
    def calibrating(cls, timestamp: float) -> FlowScore:
        """Placeholder emitted while the baseline is not calibrated."""
        return cls(
            total=0,
            hrv_subscore=0.0,
            hr_subscore=0.0,
            sleep_subscore=0.0,
            substance_subscore=0.0,
            confidence=0.0,
            state=FlowState.CALIBRATING,
            timestamp=timestamp,
        )

    @property
    def subscores(self) -> Subscores:
        return Subscores(
            hrv=self.hrv_subscore,
            hr=self.hr_subscore,
            sleep=self.sleep_subscore,
            substance=self.substance_subscore,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def __repr__(self) -> str:
        return (
            f"FlowScore({self.total} | HRV:{self.hrv_subscore:.0f} "
            f"HR:{self.hr_subscore:.0f} Sleep:{self.sleep_subscore:.0f} "
            f"Sub:{self.substance_subscore:.0f} | {self.state.value}, "
            f"conf={self.confidence:.2f})"
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """Session summary pushed to display/sync collaborators."""

    is_active: bool
    elapsed_seconds: int
    heart_rate: float
    flow_score: int
    flow_state: FlowState
    task_description: str = ""
    target_duration_minutes: int = 25

    @classmethod
    def inactive(cls) -> SessionSnapshot:
        return cls(
            is_active=False,
            elapsed_seconds=0,
            heart_rate=0.0,
            flow_score=0,
            flow_state=FlowState.BASELINE,
            target_duration_minutes=0,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["flow_state"] = self.flow_state.value
        return d


@dataclass(frozen=True)
class SessionSummary:
    """Aggregates reported when a session stops."""

    duration_seconds: float
    cycles: int
    peak_flow_score: int
    time_in_flow_seconds: float
    average_heart_rate: float
    average_rmssd: float
    final_state: FlowState

    @property
    def flow_time_percent(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return self.time_in_flow_seconds / self.duration_seconds * 100.0

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["final_state"] = self.final_state.value
        return d
