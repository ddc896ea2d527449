"""Centralized policy definitions for review phases.

The policy is intentionally declarative so the stores, the cutoff engine and
the tests share one mapping of phases to applicant stages and one set of
default rubric settings.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional

from review_models import (
    ApplicationStage,
    ApplicationTrack,
    DecisionAction,
    ReviewPhase,
    ScoringCategory,
)

DEFAULT_MIN_REVIEWERS = 2
"""Distinct reviewers needed before an applicant counts as fully reviewed."""

DEFAULT_REFERRAL_WEIGHTS = {"advocate": 1.0, "oppose": -1.0}
"""Score added per referral / deferral signal."""

ZSCORE_CENTER = 3.0
SCORE_MIN = 1
SCORE_MAX = 5
"""Rubric scale; normalized scores are centered on ZSCORE_CENTER and may fall outside it."""

INTERVIEW_PHASES: FrozenSet[ReviewPhase] = frozenset(
    {ReviewPhase.INTERVIEW_ROUND1, ReviewPhase.INTERVIEW_ROUND2}
)

PHASE_POLICY: Dict[ReviewPhase, Dict[str, object]] = {
    ReviewPhase.APPLICATION: {
        "eligible_stages": frozenset({ApplicationStage.SUBMITTED, ApplicationStage.UNDER_REVIEW}),
        "advance_stage": ApplicationStage.INTERVIEW_ROUND1,
        "reject_stage": ApplicationStage.REJECTED,
        "default_categories": [
            ("overall", "Overall Impression"),
            ("experience", "Relevant Experience"),
            ("motivation", "Motivation & Fit"),
            ("communication", "Written Communication"),
        ],
    },
    ReviewPhase.INTERVIEW_ROUND1: {
        "eligible_stages": frozenset({ApplicationStage.INTERVIEW_ROUND1}),
        "advance_stage": ApplicationStage.INTERVIEW_ROUND2,
        "reject_stage": ApplicationStage.REJECTED,
        "default_categories": [
            ("overall", "Overall Impression"),
            ("technical", "Technical Knowledge"),
            ("problem_solving", "Problem Solving"),
            ("communication", "Communication"),
        ],
    },
    ReviewPhase.INTERVIEW_ROUND2: {
        "eligible_stages": frozenset({ApplicationStage.INTERVIEW_ROUND2}),
        "advance_stage": ApplicationStage.ACCEPTED,
        "reject_stage": ApplicationStage.REJECTED,
        "default_categories": [
            ("overall", "Overall Impression"),
            ("cultural_fit", "Cultural Fit"),
            ("leadership", "Leadership Potential"),
            ("teamwork", "Teamwork & Collaboration"),
        ],
    },
}


def eligible_stages(phase: ReviewPhase) -> FrozenSet[ApplicationStage]:
    return PHASE_POLICY[phase]["eligible_stages"]  # type: ignore[return-value]


def target_stage(phase: ReviewPhase, action: DecisionAction) -> ApplicationStage:
    key = "advance_stage" if action == DecisionAction.ADVANCE else "reject_stage"
    return PHASE_POLICY[phase][key]  # type: ignore[return-value]


def default_categories(phase: ReviewPhase) -> List[ScoringCategory]:
    """Four equally weighted categories; the first one is mandatory."""
    pairs = PHASE_POLICY[phase]["default_categories"]
    return [
        ScoringCategory(key=key, label=label, weight=1.0, mandatory=index == 0)
        for index, (key, label) in enumerate(pairs)  # type: ignore[arg-type]
    ]


def is_interview_phase(phase: ReviewPhase) -> bool:
    return phase in INTERVIEW_PHASES


def track_filter_values(track: Optional[ApplicationTrack]) -> Optional[List[str]]:
    """Tracks an application may carry to match a track filter (`both` matches all)."""
    if track is None:
        return None
    if track == ApplicationTrack.BOTH:
        return [ApplicationTrack.BOTH.value]
    return [track.value, ApplicationTrack.BOTH.value]
