"""Weighted flow-score components.

The flow score is the sum of four independent subscores whose maxima add
up to exactly 100:

    HRV        40  -- RMSSD relative to the (circadian-adjusted) baseline
    HR         30  -- heart rate relative to resting HR
    Sleep      20  -- last night's sleep quality
    Substance  10  -- caffeine dose and L-theanine synergy

All functions here are pure.  A missing or zero baseline yields a fixed
fallback value instead of a division by zero.
"""

from __future__ import annotations

from flowsense.models import CAFFEINE, THEANINE, Subscores

HRV_WEIGHT = 40.0
HR_WEIGHT = 30.0
SLEEP_WEIGHT = 20.0
SUBSTANCE_WEIGHT = 10.0

# Returned when the corresponding baseline is 0 or unknown
HRV_FALLBACK = 20.0
HR_FALLBACK = 15.0

SUBSTANCE_BASE = 5.0


# ---------------------------------------------------------------------------
# HRV (40)
# ---------------------------------------------------------------------------


def hrv_subscore(current_rmssd: float | None, baseline_rmssd: float | None) -> float:
    """Score current RMSSD against the baseline.

    Moderate vagal withdrawal (70-90% of baseline) is the flow signature and
    earns the full 40 points.  Near-baseline values taper linearly; values
    well below suggest stress, values well above suggest a relaxed state.
    """
    if not baseline_rmssd or baseline_rmssd <= 0:
        return HRV_FALLBACK

    r = (current_rmssd or 0.0) / baseline_rmssd

    if 0.7 <= r <= 0.9:
        return HRV_WEIGHT
    if 0.9 < r <= 1.1:
        # Near baseline: light engagement
        return 20.0 + 20.0 * (1.1 - r) / 0.2
    if 0.5 <= r < 0.7:
        # Too low: possible stress/overload
        return 40.0 * (r - 0.5) / 0.2
    if 1.1 < r <= 1.3:
        # Elevated: relaxed, not flow
        return 20.0 - 10.0 * (r - 1.1) / 0.2
    return max(0.0, 10.0 - abs(r - 0.8) * 20.0)


# ---------------------------------------------------------------------------
# Heart rate (30)
# ---------------------------------------------------------------------------


def hr_subscore(current_hr: float | None, resting_hr: float | None) -> float:
    """Score current HR against resting HR; 110-130% is optimal arousal."""
    if not resting_hr or resting_hr <= 0:
        return HR_FALLBACK

    r = (current_hr or 0.0) / resting_hr

    if 1.1 <= r <= 1.3:
        return HR_WEIGHT
    if 1.0 <= r < 1.1:
        # Warming up
        return 20.0 + 10.0 * (r - 1.0) / 0.1
    if 1.3 < r <= 1.5:
        # High arousal, possible anxiety
        return 30.0 - 15.0 * (r - 1.3) / 0.2
    if r > 1.5:
        return max(0.0, 15.0 - (r - 1.5) * 30.0)
    # Below resting: disengaged
    return max(0.0, 10.0 + (r - 0.8) * 25.0)


# ---------------------------------------------------------------------------
# Sleep (20) and substances (10)
# ---------------------------------------------------------------------------


def sleep_subscore(sleep_quality: float) -> float:
    """Sleep quality (0-100) scaled to 20 points.

    Callers supply a neutral default when the quality is unknown.
    """
    return sleep_quality * 0.2


def substance_subscore(caffeine_mg: float, theanine_mg: float) -> float:
    """Caffeine dose bonus plus L-theanine:caffeine synergy bonus."""
    score = SUBSTANCE_BASE

    if 50 <= caffeine_mg <= 200:
        score += 2.5
    elif 200 < caffeine_mg <= 300:
        score += 1.5

    # 2:1 theanine:caffeine is the sweet spot
    if theanine_mg >= 100 and caffeine_mg > 0:
        ratio = theanine_mg / caffeine_mg
        if 1.5 <= ratio <= 2.5:
            score += 2.5
        elif 1.0 <= ratio < 1.5:
            score += 1.5

    return score


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def compute_subscores(
    current_rmssd: float | None,
    baseline_rmssd: float | None,
    current_hr: float | None,
    resting_hr: float | None,
    sleep_quality: float,
    substances: dict[str, float] | None = None,
) -> Subscores:
    substances = substances or {}
    return Subscores(
        hrv=hrv_subscore(current_rmssd, baseline_rmssd),
        hr=hr_subscore(current_hr, resting_hr),
        sleep=sleep_subscore(sleep_quality),
        substance=substance_subscore(
            substances.get(CAFFEINE, 0.0),
            substances.get(THEANINE, 0.0),
        ),
    )


def total_score(subscores: Subscores) -> int:
    """Sum of subscores, truncated to an int and clamped to [0, 100]."""
    return max(0, min(100, int(subscores.raw_total)))


def confidence(data_point_count: int, full_confidence_points: int = 30) -> float:
    """Confidence in the score, growing with calibration data (0-1)."""
    return max(0.0, min(1.0, data_point_count / full_confidence_points))
