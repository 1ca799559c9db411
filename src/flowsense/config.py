"""Tunable constants for the flow engine.

Every value used by the beat processor, the subscore calculators, the state
machine and the session scheduler is declared here once.  Engine objects do
not read these module globals directly; they are handed an
:class:`EngineConfig`, so two sessions with different settings can run side
by side.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Beat intervals
# ---------------------------------------------------------------------------

RR_MIN_MS = 300.0  # 200 bpm
RR_MAX_MS = 2000.0  # 30 bpm

# Most recent intervals used for RMSSD (~30 s at 60 bpm)
RMSSD_WINDOW = 30

# Rolling beat buffer: ~2 min at 60 bpm
BUFFER_CAPACITY = 120
BUFFER_RETENTION_SEC = 120.0

# Successive RR jump treated as an artifact when grading signal quality
ARTIFACT_DELTA_MS = 300.0
SIGNAL_QUALITY_MIN_INTERVALS = 10

# Artifact filter for the HRV metrics set: a beat is also rejected when it
# differs from the previous clean beat by more than 20%
ARTIFACT_CHANGE_RATIO = 0.20
HRV_MIN_INTERVALS = 10
MAX_ARTIFACT_FRACTION = 0.05  # above this the segment is not trusted
NN50_THRESHOLD_MS = 50.0

# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

CALIBRATION_DAYS = 14
CONFIDENCE_DATA_POINTS = 30
DEFAULT_SLEEP_QUALITY = 70.0

# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

MIN_STATE_DURATION_SEC = 60.0
SCORE_HISTORY_SIZE = 5
FLOW_THRESHOLD = 70
FLOW_EXIT_MARGIN = 10  # flow is left once the average drops below 60
DISENGAGED_THRESHOLD = 30
OVERLOAD_HR_RATIO = 1.5  # 50% above resting
OVERLOAD_HRV_RATIO = 0.5  # below 50% of baseline
PREFLOW_WINDOW_MIN = 3

# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

TICK_INTERVAL_SEC = 60.0
DEBOUNCE_SEC = 5.0
INITIAL_DELAY_SEC = 5.0
QUEUE_MAXSIZE = 1024


@dataclass(frozen=True)
class EngineConfig:
    """Immutable bundle of engine settings."""

    rr_min_ms: float = RR_MIN_MS
    rr_max_ms: float = RR_MAX_MS
    rmssd_window: int = RMSSD_WINDOW
    buffer_capacity: int = BUFFER_CAPACITY
    buffer_retention_sec: float = BUFFER_RETENTION_SEC
    artifact_delta_ms: float = ARTIFACT_DELTA_MS
    calibration_days: int = CALIBRATION_DAYS
    confidence_data_points: int = CONFIDENCE_DATA_POINTS
    default_sleep_quality: float = DEFAULT_SLEEP_QUALITY
    min_state_duration_sec: float = MIN_STATE_DURATION_SEC
    score_history_size: int = SCORE_HISTORY_SIZE
    flow_threshold: int = FLOW_THRESHOLD
    flow_exit_margin: int = FLOW_EXIT_MARGIN
    disengaged_threshold: int = DISENGAGED_THRESHOLD
    overload_hr_ratio: float = OVERLOAD_HR_RATIO
    overload_hrv_ratio: float = OVERLOAD_HRV_RATIO
    preflow_window_min: int = PREFLOW_WINDOW_MIN
    tick_interval_sec: float = TICK_INTERVAL_SEC
    debounce_sec: float = DEBOUNCE_SEC
    initial_delay_sec: float = INITIAL_DELAY_SEC
    queue_maxsize: int = QUEUE_MAXSIZE

    def __post_init__(self) -> None:
        if self.rr_min_ms <= 0 or self.rr_min_ms >= self.rr_max_ms:
            raise ValueError(
                f"invalid RR range [{self.rr_min_ms}, {self.rr_max_ms}] ms"
            )
        if self.rmssd_window < 2:
            raise ValueError("rmssd_window must be at least 2")
        if self.buffer_capacity < self.rmssd_window:
            raise ValueError("buffer_capacity must hold at least rmssd_window intervals")
        if self.score_history_size < 1:
            raise ValueError("score_history_size must be at least 1")
        if self.confidence_data_points <= 0:
            raise ValueError("confidence_data_points must be positive")
        for name in (
            "buffer_retention_sec",
            "tick_interval_sec",
            "debounce_sec",
            "queue_maxsize",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.min_state_duration_sec < 0 or self.initial_delay_sec < 0:
            raise ValueError("durations must not be negative")

    @property
    def flow_exit_threshold(self) -> int:
        return self.flow_threshold - self.flow_exit_margin

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> EngineConfig:
        """Build a config from a mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(unknown)}")
        return cls(**values)

    @classmethod
    def from_json(cls, path: str | Path) -> EngineConfig:
        """Load a config from a JSON object stored at *path*."""
        with open(path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a JSON object")
        return cls.from_dict(data)
