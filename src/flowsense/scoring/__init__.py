"""Scoring core: HRV features, weighted subscores and the flow state machine.

Modules:
    features       -- RMSSD, SDNN, SDSD, pNN50, artifact filter, signal quality
    subscores      -- HRV / HR / sleep / substance subscores, total, confidence
    state_machine  -- Hysteretic flow-state classifier and haptic cue mapping
"""

from flowsense.scoring.features import (
    compute_rmssd,
    filter_artifacts,
    hrv_metrics,
    mean_rr,
    nn50,
    pnn50,
    rr_to_bpm,
    sdnn,
    sdsd,
    signal_quality,
)
from flowsense.scoring.subscores import (
    hrv_subscore,
    hr_subscore,
    sleep_subscore,
    substance_subscore,
    compute_subscores,
    total_score,
    confidence,
)
from flowsense.scoring.state_machine import (
    FlowStateMachine,
    StateTransition,
    cue_for_state,
)

__all__ = [
    # features
    "compute_rmssd",
    "filter_artifacts",
    "hrv_metrics",
    "mean_rr",
    "nn50",
    "pnn50",
    "rr_to_bpm",
    "sdnn",
    "sdsd",
    "signal_quality",
    # subscores
    "hrv_subscore",
    "hr_subscore",
    "sleep_subscore",
    "substance_subscore",
    "compute_subscores",
    "total_score",
    "confidence",
    # state machine
    "FlowStateMachine",
    "StateTransition",
    "cue_for_state",
]
