"""Beat interval processing: heartbeat events -> validated RR intervals -> RMSSD.

The processor accepts either raw heartbeat timestamps (seconds) or RR
intervals already measured by a sensor (milliseconds).  Intervals outside
the physiological range [300, 2000] ms (200-30 bpm) are missed or doubled
beats and are dropped before they reach the buffer.

RMSSD is recomputed over the most recent ``rmssd_window`` intervals after
every accepted beat.  With fewer than two intervals available the previous
value is kept.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import Iterator

from flowsense.config import EngineConfig, SIGNAL_QUALITY_MIN_INTERVALS
from flowsense.models import HRVMetrics, RRInterval
from flowsense.scoring import features

logger = logging.getLogger(__name__)


class BeatBuffer:
    """Capacity- and time-bounded FIFO of validated RR intervals."""

    def __init__(self, capacity: int, retention_sec: float) -> None:
        self.capacity = capacity
        self.retention_sec = retention_sec
        self._items: deque[RRInterval] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[RRInterval]:
        return iter(self._items)

    def append(self, interval: RRInterval) -> None:
        self._items.append(interval)
        self.prune(interval.observed_at)

    def prune(self, now: float) -> None:
        """Drop intervals observed more than ``retention_sec`` before *now*."""
        cutoff = now - self.retention_sec
        while self._items and self._items[0].observed_at < cutoff:
            self._items.popleft()

    def values(self) -> list[float]:
        return [iv.rr_ms for iv in self._items]

    def clear(self) -> None:
        self._items.clear()


class BeatIntervalProcessor:
    """Owns the beat buffer and publishes current heart rate and RMSSD."""

    def __init__(self, config: EngineConfig | None = None) -> None:
        self.config = config or EngineConfig()
        self.buffer = BeatBuffer(
            self.config.buffer_capacity, self.config.buffer_retention_sec
        )
        self._hr_samples: deque[tuple[float, float]] = deque()
        self._last_beat: float | None = None
        self.rmssd: float | None = None
        self.heart_rate: float | None = None
        self.rejected = 0

    # -- beats ---------------------------------------------------------------

    def is_valid_interval(self, rr_ms: float) -> bool:
        return (
            math.isfinite(rr_ms)
            and self.config.rr_min_ms <= rr_ms <= self.config.rr_max_ms
        )

    def add_beat(self, timestamp: float) -> RRInterval | None:
        """Feed one heartbeat timestamp (seconds).

        Returns the interval accepted into the buffer, or None when the beat
        only re-anchors the sequence (first beat, artifact, duplicate).
        """
        try:
            timestamp = float(timestamp)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(timestamp):
            return None
        previous = self._last_beat
        if previous is not None and timestamp <= previous:
            # duplicate or out-of-order delivery
            return None
        self._last_beat = timestamp
        if previous is None:
            return None
        return self.add_interval((timestamp - previous) * 1000.0, timestamp)

    def add_interval(self, rr_ms: float, observed_at: float) -> RRInterval | None:
        """Feed one RR interval (ms) measured by the sensor."""
        try:
            rr_ms = float(rr_ms)
            observed_at = float(observed_at)
        except (TypeError, ValueError):
            self.rejected += 1
            logger.debug("Rejected malformed RR interval %r", rr_ms)
            return None
        if not self.is_valid_interval(rr_ms):
            self.rejected += 1
            logger.debug("Rejected RR interval %.1f ms", rr_ms)
            return None

        interval = RRInterval(rr_ms=rr_ms, observed_at=observed_at)
        self.buffer.append(interval)

        rmssd = features.compute_rmssd(self.buffer.values(), self.config.rmssd_window)
        if rmssd is not None:
            self.rmssd = rmssd
        return interval

    # -- heart-rate samples --------------------------------------------------

    def add_heart_rate(self, bpm: float, timestamp: float) -> bool:
        """Record an instantaneous HR sample; returns False if discarded."""
        try:
            bpm = float(bpm)
            timestamp = float(timestamp)
        except (TypeError, ValueError):
            return False
        if not math.isfinite(bpm) or bpm <= 0:
            return False
        self._hr_samples.append((timestamp, bpm))
        cutoff = timestamp - self.config.buffer_retention_sec
        while self._hr_samples and self._hr_samples[0][0] < cutoff:
            self._hr_samples.popleft()
        self.heart_rate = bpm
        return True

    @property
    def average_heart_rate(self) -> float | None:
        if not self._hr_samples:
            return None
        return sum(bpm for _, bpm in self._hr_samples) / len(self._hr_samples)

    # -- derived -------------------------------------------------------------

    @property
    def intervals(self) -> list[float]:
        return self.buffer.values()

    @property
    def signal_quality(self) -> float:
        return features.signal_quality(
            self.buffer.values(),
            artifact_delta_ms=self.config.artifact_delta_ms,
            min_intervals=SIGNAL_QUALITY_MIN_INTERVALS,
        )

    def hrv_metrics(self) -> HRVMetrics:
        """SDNN, SDSD, pNN50 and friends over the artifact-filtered buffer."""
        return features.hrv_metrics(
            self.buffer.values(),
            rr_min_ms=self.config.rr_min_ms,
            rr_max_ms=self.config.rr_max_ms,
            max_delta_ms=self.config.artifact_delta_ms,
        )

    def reset(self) -> None:
        self.buffer.clear()
        self._hr_samples.clear()
        self._last_beat = None
        self.rmssd = None
        self.heart_rate = None
        self.rejected = 0
