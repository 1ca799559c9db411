"""Replay captured sensor events through the flow engine for offline analysis.

A capture is a JSONL file, one event per line, each with a timestamp ``t``
in seconds:

    {"t": 0.0,  "type": "baseline", "resting_hr": 62, "baseline_rmssd": 48,
                "data_point_count": 21, "circadian": {"9": 1.1}}
    {"t": 0.8,  "type": "beat"}
    {"t": 1.0,  "type": "rr", "rr_ms": 812}
    {"t": 1.0,  "type": "hr", "bpm": 74}
    {"t": 0.0,  "type": "sleep", "score": 82}
    {"t": 0.0,  "type": "substances", "levels": {"caffeine": 100, "theanine": 200}}
    {"t": 90.0, "type": "tick"}

The engine runs on a synthetic clock that follows the event timestamps.
The periodic tick and the heart-rate debounce are simulated at the times they
would have fired live, so a replay reproduces a live session exactly.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from flowsense.config import EngineConfig
from flowsense.engine import FlowEngine
from flowsense.models import FlowScore, HapticCue, PersonalBaseline, SessionSummary

EVENT_TYPES = {"baseline", "beat", "rr", "hr", "sleep", "substances", "tick"}


class _ReplayClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _utc_hour(timestamp: float) -> int:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).hour


@dataclass
class ReplayResult:
    """Score timeline produced by a replay."""

    scores: list[FlowScore] = field(default_factory=list)
    cues: list[tuple[float, HapticCue]] = field(default_factory=list)
    summary: SessionSummary | None = None
    events: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": self.events,
            "skipped": self.skipped,
            "scores": [s.to_dict() for s in self.scores],
            "cues": [{"t": t, "cue": c.value} for t, c in self.cues],
            "summary": self.summary.to_dict() if self.summary else None,
        }


def baseline_from_event(event: dict) -> PersonalBaseline:
    """Build a PersonalBaseline from a ``baseline`` capture record."""
    circadian = {
        int(hour): float(mult) for hour, mult in (event.get("circadian") or {}).items()
    }
    return PersonalBaseline(
        resting_hr=float(event.get("resting_hr", 0.0)),
        baseline_rmssd=float(event.get("baseline_rmssd", 0.0)),
        data_point_count=int(event.get("data_point_count", 0)),
        circadian_hrv_modifiers=circadian,
    )


def load_events(capture_path: str | Path, verbose: bool = False) -> tuple[list[dict], int]:
    """Read and time-sort capture events. Returns (events, skipped_lines)."""
    events: list[dict] = []
    skipped = 0
    with open(capture_path) as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                skipped += 1
                if verbose:
                    print(f"  [line {line_num}] Invalid JSON, skipping")
                continue
            if not isinstance(entry, dict) or entry.get("type") not in EVENT_TYPES:
                skipped += 1
                if verbose:
                    print(f"  [line {line_num}] Unknown event, skipping")
                continue
            try:
                entry["t"] = float(entry.get("t", 0.0))
            except (TypeError, ValueError):
                skipped += 1
                continue
            events.append(entry)
    events.sort(key=lambda e: e["t"])
    return events, skipped


def replay_events(
    events: list[dict],
    baseline: PersonalBaseline | None = None,
    config: EngineConfig | None = None,
    verbose: bool = False,
) -> ReplayResult:
    """Run time-sorted events through a fresh engine session."""
    config = config or EngineConfig()
    result = ReplayResult(events=len(events))
    if not events:
        return result

    start = events[0]["t"]
    clock = _ReplayClock(start)

    def _on_score(score: FlowScore) -> None:
        result.scores.append(score)
        if verbose:
            print(f"  [{score.timestamp - start:8.1f}s] {score!r}")

    def _on_haptic(cue: HapticCue) -> None:
        result.cues.append((clock.now, cue))
        if verbose:
            print(f"  [{clock.now - start:8.1f}s] haptic: {cue.value}")

    engine = FlowEngine(
        baseline or PersonalBaseline.default(),
        config=config,
        clock=clock,
        hour_of_day=_utc_hour,
        on_score=_on_score,
        on_haptic=_on_haptic,
    )
    engine.start()

    next_tick = start + config.initial_delay_sec
    debounce_due: float | None = None

    def _run_due(until: float) -> None:
        nonlocal next_tick, debounce_due
        while True:
            due = [t for t in (next_tick, debounce_due) if t is not None and t <= until]
            if not due:
                return
            clock.now = min(due)
            if debounce_due is not None and debounce_due <= clock.now:
                debounce_due = None
            if next_tick <= clock.now:
                next_tick += config.tick_interval_sec
            engine.recompute()

    for event in events:
        t = event["t"]
        _run_due(t)
        clock.now = max(clock.now, t)
        kind = event["type"]

        try:
            if kind == "baseline":
                engine.set_baseline(baseline_from_event(event))
            elif kind == "beat":
                engine.add_beat(t)
            elif kind == "rr":
                engine.add_interval(float(event.get("rr_ms", 0.0)), t)
            elif kind == "hr":
                if engine.add_heart_rate(float(event.get("bpm", 0.0)), t):
                    debounce_due = t + config.debounce_sec
            elif kind == "sleep":
                engine.set_sleep_quality(event.get("score"))
            elif kind == "substances":
                engine.set_substances(dict(event.get("levels") or {}))
            elif kind == "tick":
                engine.recompute()
        except (TypeError, ValueError, AttributeError) as e:
            result.skipped += 1
            if verbose:
                print(f"  [{t - start:8.1f}s] Bad {kind} event, skipping: {e}")

    if debounce_due is not None:
        _run_due(debounce_due)

    result.summary = engine.stop()
    return result


def replay_file(
    capture_path: str,
    output_path: str | None = None,
    baseline: PersonalBaseline | None = None,
    config: EngineConfig | None = None,
    verbose: bool = False,
) -> ReplayResult:
    """Replay a .jsonl capture file through the flow engine.

    Args:
        capture_path: Path to the .jsonl capture file.
        output_path: Optional path to write the score timeline as JSON.
        baseline: Baseline to start from; a ``baseline`` event in the
            capture replaces it.
        config: Engine settings.
        verbose: If True, print every score and haptic cue.

    Returns:
        The replay result.
    """
    path = Path(capture_path)
    if not path.exists():
        print(f"File not found: {capture_path}")
        return ReplayResult()

    print(f"Replaying {path.name}...\n")
    events, skipped = load_events(path, verbose)
    result = replay_events(events, baseline=baseline, config=config, verbose=verbose)
    result.skipped += skipped

    states = [s.state.value for s in result.scores]
    print(f"\nSummary: {len(events)} events, {result.skipped} skipped, "
          f"{len(result.scores)} scores, {len(result.cues)} state changes")
    if result.scores:
        print(f"Final: {result.scores[-1]!r}")
        print(f"States visited: {', '.join(dict.fromkeys(states))}")

    if output_path:
        with open(output_path, "w") as out:
            json.dump(result.to_dict(), out, indent=2)
        print(f"Output written to {output_path}")

    return result


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: python -m flowsense.replay <capture_file.jsonl> [output.json]")
        sys.exit(1)

    capture_path = sys.argv[1]
    output_path = sys.argv[2] if len(sys.argv) > 2 and not sys.argv[2].startswith("-") else None
    verbose = "--verbose" in sys.argv or "-v" in sys.argv

    replay_file(capture_path, output_path, verbose=verbose)


if __name__ == "__main__":
    main()
