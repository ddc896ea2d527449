# review_models.py
"""
Pydantic models for phase reviews, phase configuration, rankings and cutoffs.
Stores convert their ORM rows into these before handing data to callers.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ApplicationStage(str, Enum):
    NOT_STARTED = "not_started"
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    COFFEE_CHAT = "coffee_chat"
    INTERVIEW_ROUND1 = "interview_round1"
    INTERVIEW_ROUND2 = "interview_round2"
    FINAL_REVIEW = "final_review"
    WAITLISTED = "waitlisted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ApplicationTrack(str, Enum):
    BUSINESS = "business"
    ENGINEERING = "engineering"
    AI_INVESTMENT_FUND = "ai_investment_fund"
    AI_ENERGY_EFFICIENCY = "ai_energy_efficiency"
    BOTH = "both"


class ReviewPhase(str, Enum):
    APPLICATION = "application"
    INTERVIEW_ROUND1 = "interview_round1"
    INTERVIEW_ROUND2 = "interview_round2"


class ReferralSignal(str, Enum):
    REFERRAL = "referral"
    NEUTRAL = "neutral"
    DEFERRAL = "deferral"


class PhaseStatus(str, Enum):
    OPEN = "open"
    FINALIZED = "finalized"


class CutoffType(str, Enum):
    TOP_N = "top_n"
    MIN_SCORE = "min_score"
    MANUAL = "manual"


class DecisionAction(str, Enum):
    ADVANCE = "advance"
    REJECT = "reject"


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------


class Application(BaseModel):
    """One applicant's submission to one track in one cycle."""

    id: str
    cycle_id: str
    track: ApplicationTrack
    stage: ApplicationStage
    applicant_name: str = "Unknown"
    applicant_email: str = ""
    answers: Dict[str, object] = Field(default_factory=dict)
    files: Dict[str, str] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ApplicationCreate(BaseModel):
    cycle_id: str
    track: ApplicationTrack
    stage: ApplicationStage = ApplicationStage.SUBMITTED
    applicant_name: Optional[str] = None
    applicant_email: Optional[str] = None
    answers: Dict[str, object] = Field(default_factory=dict)
    files: Dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Phase configuration
# ---------------------------------------------------------------------------


class ScoringCategory(BaseModel):
    key: str = Field(..., min_length=1)
    label: str
    weight: float = Field(default=1.0, description="Relative weight, must be > 0")
    mandatory: bool = False
    description: Optional[str] = None
    level_descriptions: Dict[int, str] = Field(default_factory=dict, description="Star level (1-5) -> text")

    @field_validator("weight")
    @classmethod
    def validate_weight(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"weight must be > 0, got {v}")
        return v

    @field_validator("level_descriptions")
    @classmethod
    def validate_levels(cls, v: Dict[int, str]) -> Dict[int, str]:
        bad = [level for level in v if level < 1 or level > 5]
        if bad:
            raise ValueError(f"level descriptions must be keyed 1-5, got {sorted(bad)}")
        return v


class ReferralWeights(BaseModel):
    advocate: float = 1.0
    oppose: float = -1.0


class InterviewQuestion(BaseModel):
    key: str = Field(..., min_length=1)
    prompt: str


class CutoffCriteria(BaseModel):
    type: CutoffType = CutoffType.TOP_N
    top_n: Optional[int] = Field(default=None, ge=0)
    min_score: Optional[float] = None

    @model_validator(mode="after")
    def check_threshold(self) -> "CutoffCriteria":
        if self.type == CutoffType.TOP_N and self.top_n is None:
            raise ValueError("top_n is required for a top_n cutoff")
        if self.type == CutoffType.MIN_SCORE and self.min_score is None:
            raise ValueError("min_score is required for a min_score cutoff")
        return self


class PhaseConfig(BaseModel):
    cycle_id: str
    phase: ReviewPhase
    scoring_categories: List[ScoringCategory]
    min_reviewers_required: int = Field(default=2, ge=1)
    referral_weights: ReferralWeights = Field(default_factory=ReferralWeights)
    interview_questions: List[InterviewQuestion] = Field(default_factory=list)
    use_zscore_normalization: bool = False
    status: PhaseStatus = PhaseStatus.OPEN
    cutoff_applied_at: Optional[datetime] = None
    cutoff_applied_by: Optional[str] = None
    cutoff_criteria: Optional[CutoffCriteria] = None
    finalized_at: Optional[datetime] = None
    finalized_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def category_keys(self) -> List[str]:
        return [category.key for category in self.scoring_categories]

    def mandatory_keys(self) -> List[str]:
        return [category.key for category in self.scoring_categories if category.mandatory]


class PhaseSettings(BaseModel):
    """Editable subset of a phase config; unset fields are left untouched."""

    scoring_categories: Optional[List[ScoringCategory]] = None
    min_reviewers_required: Optional[int] = None
    referral_weights: Optional[ReferralWeights] = None
    interview_questions: Optional[List[InterviewQuestion]] = None
    use_zscore_normalization: Optional[bool] = None


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------


class Review(BaseModel):
    cycle_id: str
    application_id: str
    phase: ReviewPhase
    reviewer_email: str
    reviewer_name: Optional[str] = None
    scores: Dict[str, int] = Field(default_factory=dict)
    notes: Optional[str] = None
    question_notes: Dict[str, str] = Field(default_factory=dict)
    referral_signal: ReferralSignal = ReferralSignal.NEUTRAL
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        if self.reviewer_name:
            return self.reviewer_name
        return self.reviewer_email.split("@")[0] or "Anonymous"


class ApplicationScore(BaseModel):
    """Aggregated scoring for one application in one phase."""

    application_id: str
    average_score: Optional[float] = None
    weighted_score: Optional[float] = None
    category_scores: Dict[str, float] = Field(default_factory=dict)
    review_count: int = 0
    referral_count: int = 0
    deferral_count: int = 0
    neutral_count: int = 0
    reviewers: List[str] = Field(default_factory=list)


class ReviewsView(BaseModel):
    application_id: str
    phase: ReviewPhase
    reviews: List[Review]
    reviewer_names: Dict[str, str]
    summary: ApplicationScore

    @property
    def total_reviews(self) -> int:
        return len(self.reviews)


# ---------------------------------------------------------------------------
# Rankings & completeness
# ---------------------------------------------------------------------------


class RankedApplicant(BaseModel):
    rank: int
    application_id: str
    applicant_name: str
    applicant_email: str
    track: ApplicationTrack
    average_score: Optional[float] = None
    weighted_score: Optional[float] = None
    review_count: int = 0
    referral_count: int = 0
    deferral_count: int = 0
    neutral_count: int = 0
    decision: Optional[DecisionAction] = None
    manual_decision: bool = False
    decision_reason: Optional[str] = None

    @property
    def net_referrals(self) -> int:
        return self.referral_count - self.deferral_count


class PhaseRanking(BaseModel):
    cycle_id: str
    phase: ReviewPhase
    track: Optional[ApplicationTrack] = None
    generated_at: datetime
    finalized_at: Optional[datetime] = None
    entries: List[RankedApplicant] = Field(default_factory=list)


class ReviewerCompletion(BaseModel):
    email: str
    name: Optional[str] = None
    reviewed: int
    total: int
    percentage: float


class CompletenessSnapshot(BaseModel):
    cycle_id: str
    phase: ReviewPhase
    status: PhaseStatus
    total_applicants: int = 0
    applicants_with_reviews: int = 0
    applicants_fully_reviewed: int = 0
    active_reviewers: int = 0
    reviewer_completion: List[ReviewerCompletion] = Field(default_factory=list)
    incomplete_reviewers: List[ReviewerCompletion] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.incomplete_reviewers


# ---------------------------------------------------------------------------
# Cutoffs
# ---------------------------------------------------------------------------


class ManualOverride(BaseModel):
    application_id: str
    action: DecisionAction
    reason: str = ""


class CutoffDecision(BaseModel):
    application_id: str
    rank: int
    action: DecisionAction
    manual: bool = False
    reason: Optional[str] = None


class CutoffPreview(BaseModel):
    cycle_id: str
    phase: ReviewPhase
    track: Optional[ApplicationTrack] = None
    criteria: CutoffCriteria
    ranking: PhaseRanking
    decisions: List[CutoffDecision] = Field(default_factory=list)

    @property
    def advanced(self) -> List[str]:
        return [d.application_id for d in self.decisions if d.action == DecisionAction.ADVANCE]

    @property
    def rejected(self) -> List[str]:
        return [d.application_id for d in self.decisions if d.action == DecisionAction.REJECT]


class PhaseDecision(BaseModel):
    run_id: int
    cycle_id: str
    phase: ReviewPhase
    application_id: str
    action: DecisionAction
    manual: bool = False
    reason: Optional[str] = None
    previous_stage: ApplicationStage
    new_stage: ApplicationStage
    performed_by: str
    performed_at: datetime


class CutoffResult(BaseModel):
    run_id: int
    cycle_id: str
    phase: ReviewPhase
    track: Optional[ApplicationTrack] = None
    advanced: List[str] = Field(default_factory=list)
    rejected: List[str] = Field(default_factory=list)
    finalized: bool = False
    decisions: List[PhaseDecision] = Field(default_factory=list)
    applicant_names: Dict[str, str] = Field(default_factory=dict)
    performed_by: Optional[str] = None

    def to_logging_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "cycle_id": self.cycle_id,
            "phase": self.phase.value,
            "track": self.track.value if self.track else None,
            "advanced": len(self.advanced),
            "rejected": len(self.rejected),
            "finalized": self.finalized,
        }


class RevertResult(BaseModel):
    cycle_id: str
    phase: ReviewPhase
    reverted: int = 0
    skipped: List[str] = Field(default_factory=list)
    runs_reverted: List[int] = Field(default_factory=list)
