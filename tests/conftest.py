"""Shared fixtures and helpers for the flowsense test suite."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from flowsense.config import EngineConfig
from flowsense.engine import FlowEngine
from flowsense.models import PersonalBaseline


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class Recorder:
    """Collects everything an engine publishes."""

    def __init__(self) -> None:
        self.scores = []
        self.cues = []
        self.snapshots = []

    def score(self, s) -> None:
        self.scores.append(s)

    def cue(self, c) -> None:
        self.cues.append(c)

    def snapshot(self, s) -> None:
        self.snapshots.append(s)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_baseline(
    resting_hr: float = 60.0,
    baseline_rmssd: float = 50.0,
    data_point_count: int = 30,
    **kwargs,
) -> PersonalBaseline:
    """A calibrated baseline by default (30 daily samples)."""
    return PersonalBaseline(
        resting_hr=resting_hr,
        baseline_rmssd=baseline_rmssd,
        data_point_count=data_point_count,
        **kwargs,
    )


def beat_times(rr_ms: list[float], start: float = 0.0) -> list[float]:
    """Heartbeat timestamps (s) producing the given RR intervals."""
    times = [start]
    for rr in rr_ms:
        times.append(times[-1] + rr / 1000.0)
    return times


def alternating_rr(count: int, low: float = 800.0, high: float = 840.0) -> list[float]:
    """RR series with a constant successive difference -> RMSSD == high-low."""
    return [low if i % 2 == 0 else high for i in range(count)]


def write_jsonl(path: Path, entries: list[dict]) -> Path:
    """Write a list of dicts as JSONL to the given path."""
    with open(path, "w") as f:
        for entry in entries:
            f.write(json.dumps(entry) + "\n")
    return path


def session_capture() -> list[dict]:
    """Calibrated user, steady HR 72 and RMSSD 40, one manual tick at 120 s."""
    entries = [
        {"t": 0.0, "type": "baseline", "resting_hr": 60, "baseline_rmssd": 50,
         "data_point_count": 30},
        {"t": 0.0, "type": "sleep", "score": 80},
        {"t": 1.0, "type": "hr", "bpm": 72},
    ]
    for i, rr in enumerate(alternating_rr(30)):
        entries.append({"t": 1.0 + i, "type": "rr", "rr_ms": rr})
    entries.append({"t": 120.0, "type": "tick"})
    return entries


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_engine(clock, recorder):
    """Factory for an engine wired to the fake clock and recorder."""

    def _make(baseline: PersonalBaseline | None = None, **config) -> FlowEngine:
        return FlowEngine(
            baseline or make_baseline(),
            config=EngineConfig(**config),
            clock=clock,
            hour_of_day=lambda _t: 10,
            on_score=recorder.score,
            on_haptic=recorder.cue,
            on_session_state=recorder.snapshot,
        )

    return _make
