"""Time-domain HRV features over a window of RR intervals.

Shared by the beat processor (live RMSSD) and the replay tooling:
  - RMSSD over the most recent intervals
  - SDNN, SDSD, pNN50/NN50
  - Mean RR and the heart rate it implies
  - Artifact filtering and artifact-rate signal quality
  - The combined HRVMetrics record
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

from flowsense.config import (
    ARTIFACT_CHANGE_RATIO,
    ARTIFACT_DELTA_MS,
    HRV_MIN_INTERVALS,
    MAX_ARTIFACT_FRACTION,
    NN50_THRESHOLD_MS,
    RR_MAX_MS,
    RR_MIN_MS,
)
from flowsense.models import HRVMetrics


def recent(rr_intervals: Sequence[float], window: int) -> np.ndarray:
    """Return the last *window* intervals as a float array."""
    arr = np.asarray(rr_intervals, dtype=np.float64)
    if window > 0 and len(arr) > window:
        arr = arr[-window:]
    return arr


def compute_rmssd(rr_intervals: Sequence[float], window: int = 0) -> float | None:
    """Root mean square of successive RR-interval differences (ms).

    Only the last *window* intervals are used when *window* is positive.
    Returns None if fewer than 2 intervals remain.
    """
    arr = recent(rr_intervals, window)
    if len(arr) < 2:
        return None
    diffs = np.diff(arr)
    return float(np.sqrt(np.mean(diffs ** 2)))


def mean_rr(rr_intervals: Sequence[float], window: int = 0) -> float | None:
    """Mean RR interval (ms), or None for an empty series."""
    arr = recent(rr_intervals, window)
    if len(arr) == 0:
        return None
    return float(np.mean(arr))


def rr_to_bpm(rr_ms: float) -> float:
    """Instantaneous heart rate implied by one RR interval."""
    if rr_ms <= 0:
        return 0.0
    return 60_000.0 / rr_ms


def signal_quality(
    rr_intervals: Sequence[float],
    window: int = 30,
    artifact_delta_ms: float = 300.0,
    min_intervals: int = 10,
) -> float:
    """Fraction of successive RR jumps that look physiological (0-1).

    A jump larger than *artifact_delta_ms* between adjacent beats is
    counted as an artifact.  With fewer than *min_intervals* intervals the
    quality is unknown and 0.5 is returned.
    """
    if len(rr_intervals) < max(min_intervals, 2):
        return 0.5
    arr = recent(rr_intervals, window)
    jumps = np.abs(np.diff(arr))
    artifact_rate = float(np.sum(jumps > artifact_delta_ms)) / len(jumps)
    return 1.0 - artifact_rate


def sdnn(rr_intervals: Sequence[float]) -> float | None:
    """Sample standard deviation of the RR intervals (ms).

    Returns None if fewer than 2 intervals.
    """
    if len(rr_intervals) < 2:
        return None
    arr = np.asarray(rr_intervals, dtype=np.float64)
    return float(np.std(arr, ddof=1))


def sdsd(rr_intervals: Sequence[float]) -> float | None:
    """Sample standard deviation of successive RR differences (ms)."""
    if len(rr_intervals) < 2:
        return None
    diffs = np.diff(np.asarray(rr_intervals, dtype=np.float64))
    if len(diffs) < 2:
        return 0.0
    return float(np.std(diffs, ddof=1))


def nn50(rr_intervals: Sequence[float], threshold_ms: float = NN50_THRESHOLD_MS) -> int:
    """Number of successive RR differences larger than *threshold_ms*."""
    if len(rr_intervals) < 2:
        return 0
    diffs = np.abs(np.diff(np.asarray(rr_intervals, dtype=np.float64)))
    return int(np.sum(diffs > threshold_ms))


def pnn50(rr_intervals: Sequence[float], threshold_ms: float = NN50_THRESHOLD_MS) -> float | None:
    """Percentage of successive RR differences larger than *threshold_ms*.

    Returns None if fewer than 2 intervals.
    """
    if len(rr_intervals) < 2:
        return None
    return nn50(rr_intervals, threshold_ms) / (len(rr_intervals) - 1) * 100.0


# ---------------------------------------------------------------------------
# Artifact filtering
# ---------------------------------------------------------------------------


def filter_artifacts(
    rr_intervals: Sequence[float],
    rr_min_ms: float = RR_MIN_MS,
    rr_max_ms: float = RR_MAX_MS,
    max_delta_ms: float = ARTIFACT_DELTA_MS,
    max_change_ratio: float = ARTIFACT_CHANGE_RATIO,
) -> tuple[list[float], int]:
    """Drop ectopic and missed beats.

    An interval is an artifact if it lies outside [rr_min_ms, rr_max_ms], or
    if it differs from the previous clean interval by more than
    *max_delta_ms* or by more than *max_change_ratio* of that interval.
    Artifacts do not become the reference for the next comparison.

    Returns:
        (clean intervals, artifact count)
    """
    cleaned: list[float] = []
    artifacts = 0
    previous: float | None = None
    for rr in rr_intervals:
        rr = float(rr)
        bad = not math.isfinite(rr) or rr < rr_min_ms or rr > rr_max_ms
        if not bad and previous is not None:
            delta = abs(rr - previous)
            bad = delta > max_delta_ms or delta / previous > max_change_ratio
        if bad:
            artifacts += 1
        else:
            cleaned.append(rr)
            previous = rr
    return cleaned, artifacts


def hrv_metrics(
    rr_intervals: Sequence[float],
    window_duration_sec: float | None = None,
    rr_min_ms: float = RR_MIN_MS,
    rr_max_ms: float = RR_MAX_MS,
    max_delta_ms: float = ARTIFACT_DELTA_MS,
    min_intervals: int = HRV_MIN_INTERVALS,
    max_artifact_fraction: float = MAX_ARTIFACT_FRACTION,
) -> HRVMetrics:
    """Full time-domain HRV metrics over an artifact-filtered window.

    Args:
        rr_intervals: Raw RR intervals (ms), oldest first.
        window_duration_sec: Recording length; defaults to the summed
            duration of the clean intervals.
        min_intervals: Clean intervals required for a usable result.
        max_artifact_fraction: Above this share of artifacts the metrics
            are computed but flagged invalid.
    """
    cleaned, artifacts = filter_artifacts(
        rr_intervals, rr_min_ms, rr_max_ms, max_delta_ms
    )
    if window_duration_sec is None:
        window_duration_sec = sum(cleaned) / 1000.0
    if len(cleaned) < min_intervals:
        return HRVMetrics.insufficient(artifacts, window_duration_sec)

    fraction = artifacts / max(1, len(rr_intervals))
    mean = mean_rr(cleaned)
    return HRVMetrics(
        rmssd=compute_rmssd(cleaned),
        sdnn=sdnn(cleaned),
        sdsd=sdsd(cleaned),
        pnn50=pnn50(cleaned),
        nn50=nn50(cleaned),
        mean_rr=mean,
        mean_hr=rr_to_bpm(mean),
        sample_count=len(cleaned),
        artifact_count=artifacts,
        artifact_fraction=fraction,
        window_duration_sec=window_duration_sec,
        is_valid=fraction <= max_artifact_fraction,
    )
