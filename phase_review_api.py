"""FastAPI router exposing phase reviews, rankings, cutoffs and the phase lifecycle."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from application_store import ApplicationStore
from notification_jobs import dispatch_cutoff_notification
from phase_config_store import PhaseConfigStore
from phase_engine.completeness_tracker import CompletenessTracker
from phase_engine.cutoff_engine import CutoffEngine
from phase_engine.ranking_builder import RankingBuilder
from review_db import ReviewDatabase, get_review_database
from review_errors import (
    IncompleteReviewsError,
    NotFoundError,
    ReviewEngineError,
    StorageError,
    ValidationError,
)
from review_models import (
    Application,
    ApplicationCreate,
    ApplicationStage,
    ApplicationTrack,
    CompletenessSnapshot,
    CutoffCriteria,
    CutoffPreview,
    CutoffResult,
    ManualOverride,
    PhaseConfig,
    PhaseDecision,
    PhaseRanking,
    PhaseSettings,
    ReferralSignal,
    Review,
    ReviewPhase,
    ReviewsView,
    RevertResult,
)
from review_store import ReviewStore
from slack_service import CutoffNotifier, build_cutoff_notifier

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/recruitment")


class ReviewServices:
    """Stores and engines sharing one database handle."""

    def __init__(
        self,
        db: Optional[ReviewDatabase] = None,
        notifier: Optional[CutoffNotifier] = None,
        reviewer_roster: Optional[List[str]] = None,
    ) -> None:
        self.db = db or get_review_database()
        self.notifier = notifier
        self.applications = ApplicationStore(self.db)
        self.reviews = ReviewStore(self.db)
        self.configs = PhaseConfigStore(self.db)
        self.completeness = CompletenessTracker(self.db, reviewer_roster)
        self.rankings = RankingBuilder(self.db)
        self.cutoffs = CutoffEngine(self.db, notifier=notifier, reviewer_roster=reviewer_roster)


_services: Optional[ReviewServices] = None


def get_services() -> ReviewServices:
    global _services

    if _services is None:
        _services = ReviewServices(notifier=build_cutoff_notifier())

    return _services


def current_reviewer(x_reviewer_email: Optional[str] = Header(default=None)) -> str:
    """Identity forwarded by the upstream identity provider."""
    email = (x_reviewer_email or "").strip().lower()
    if "@" not in email:
        raise HTTPException(status_code=401, detail="Missing or invalid X-Reviewer-Email header")
    return email


def _status_code(exc: ReviewEngineError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, StorageError):
        return 503
    return 409


@contextmanager
def engine_errors() -> Iterator[None]:
    try:
        yield
    except ReviewEngineError as exc:
        detail: Dict[str, object] = {"code": exc.code, "message": exc.message}
        if isinstance(exc, IncompleteReviewsError):
            detail["total_applicants"] = exc.total_applicants
            detail["incomplete_reviewers"] = [r.model_dump() for r in exc.incomplete]
        status_code = _status_code(exc)
        logger.info("review_api_request_rejected", extra={"code": exc.code, "status_code": status_code})
        raise HTTPException(status_code=status_code, detail=detail) from exc


# Request bodies

class ReviewUpsertRequest(BaseModel):
    scores: Dict[str, int]
    notes: Optional[str] = None
    question_notes: Optional[Dict[str, str]] = None
    referral_signal: ReferralSignal = ReferralSignal.NEUTRAL
    reviewer_name: Optional[str] = None


class StageUpdateRequest(BaseModel):
    stage: ApplicationStage


class CutoffPreviewRequest(BaseModel):
    track: Optional[ApplicationTrack] = None
    criteria: CutoffCriteria
    overrides: List[ManualOverride] = Field(default_factory=list)


class CutoffApplyRequest(CutoffPreviewRequest):
    force_finalize: bool = False
    finalize: bool = True
    notify: bool = True


class FinalizeRequest(BaseModel):
    force: bool = False


# ------------------------------------------------------------------
# Applications
# ------------------------------------------------------------------
@router.post("/applications", response_model=Application, status_code=201)
def create_application(
    body: ApplicationCreate,
    services: ReviewServices = Depends(get_services),
    reviewer: str = Depends(current_reviewer),
):
    with engine_errors():
        return services.applications.create_application(body)


@router.get("/cycles/{cycle_id}/applications", response_model=List[Application])
def list_applications(
    cycle_id: str,
    stage: Optional[ApplicationStage] = None,
    track: Optional[ApplicationTrack] = None,
    services: ReviewServices = Depends(get_services),
):
    with engine_errors():
        stages = [stage] if stage else None
        return services.applications.list_applications(cycle_id, stages=stages, track=track)


@router.get("/applications/{application_id}", response_model=Application)
def get_application(application_id: str, services: ReviewServices = Depends(get_services)):
    with engine_errors():
        return services.applications.get_application(application_id)


@router.patch("/applications/{application_id}/stage", response_model=Application)
def update_application_stage(
    application_id: str,
    body: StageUpdateRequest,
    services: ReviewServices = Depends(get_services),
    reviewer: str = Depends(current_reviewer),
):
    with engine_errors():
        return services.applications.update_stage(application_id, body.stage, actor=reviewer)


# ------------------------------------------------------------------
# Reviews
# ------------------------------------------------------------------
@router.get("/applications/{application_id}/reviews/{phase}", response_model=ReviewsView)
def get_reviews(application_id: str, phase: ReviewPhase, services: ReviewServices = Depends(get_services)):
    with engine_errors():
        return services.reviews.get_reviews(application_id, phase)


@router.put("/applications/{application_id}/reviews/{phase}", response_model=Review)
def upsert_review(
    application_id: str,
    phase: ReviewPhase,
    body: ReviewUpsertRequest,
    services: ReviewServices = Depends(get_services),
    reviewer: str = Depends(current_reviewer),
):
    with engine_errors():
        return services.reviews.upsert_review(
            application_id,
            phase,
            reviewer,
            body.scores,
            notes=body.notes,
            question_notes=body.question_notes,
            referral_signal=body.referral_signal,
            reviewer_name=body.reviewer_name,
        )


# ------------------------------------------------------------------
# Phase configuration
# ------------------------------------------------------------------
@router.get("/cycles/{cycle_id}/phase-configs", response_model=List[PhaseConfig])
def list_phase_configs(cycle_id: str, services: ReviewServices = Depends(get_services)):
    with engine_errors():
        return services.configs.list_configs(cycle_id)


@router.post("/cycles/{cycle_id}/phase-configs/initialize", response_model=List[PhaseConfig])
def initialize_phase_configs(
    cycle_id: str,
    services: ReviewServices = Depends(get_services),
    reviewer: str = Depends(current_reviewer),
):
    with engine_errors():
        return services.configs.initialize(cycle_id, actor=reviewer)


@router.get("/cycles/{cycle_id}/phase-configs/{phase}", response_model=PhaseConfig)
def get_phase_config(
    cycle_id: str,
    phase: ReviewPhase,
    track: Optional[ApplicationTrack] = None,
    services: ReviewServices = Depends(get_services),
):
    with engine_errors():
        return services.configs.get_config(cycle_id, phase, track)


@router.put("/cycles/{cycle_id}/phase-configs/{phase}", response_model=PhaseConfig)
def save_phase_config(
    cycle_id: str,
    phase: ReviewPhase,
    body: PhaseSettings,
    services: ReviewServices = Depends(get_services),
    reviewer: str = Depends(current_reviewer),
):
    with engine_errors():
        return services.configs.save_config(cycle_id, phase, body, actor=reviewer)


# ------------------------------------------------------------------
# Completeness & rankings
# ------------------------------------------------------------------
@router.get("/cycles/{cycle_id}/phases/{phase}/completeness", response_model=CompletenessSnapshot)
def get_completeness(
    cycle_id: str,
    phase: ReviewPhase,
    track: Optional[ApplicationTrack] = None,
    services: ReviewServices = Depends(get_services),
):
    with engine_errors():
        return services.completeness.compute_completeness(cycle_id, phase, track)


@router.get("/cycles/{cycle_id}/phases/{phase}/ranking", response_model=PhaseRanking)
def get_ranking(
    cycle_id: str,
    phase: ReviewPhase,
    track: Optional[ApplicationTrack] = None,
    services: ReviewServices = Depends(get_services),
):
    with engine_errors():
        return services.rankings.build_ranking(cycle_id, phase, track)


@router.get("/cycles/{cycle_id}/phases/{phase}/ranking/finalized", response_model=PhaseRanking)
def get_finalized_ranking(cycle_id: str, phase: ReviewPhase, services: ReviewServices = Depends(get_services)):
    with engine_errors():
        return services.rankings.get_finalized_ranking(cycle_id, phase)


# ------------------------------------------------------------------
# Cutoffs & lifecycle
# ------------------------------------------------------------------
@router.post("/cycles/{cycle_id}/phases/{phase}/cutoff/preview", response_model=CutoffPreview)
def preview_cutoff(
    cycle_id: str,
    phase: ReviewPhase,
    body: CutoffPreviewRequest,
    services: ReviewServices = Depends(get_services),
):
    with engine_errors():
        return services.cutoffs.preview_cutoff(cycle_id, phase, body.track, body.criteria, body.overrides)


@router.post("/cycles/{cycle_id}/phases/{phase}/cutoff", response_model=CutoffResult)
def apply_cutoff(
    cycle_id: str,
    phase: ReviewPhase,
    body: CutoffApplyRequest,
    background_tasks: BackgroundTasks,
    services: ReviewServices = Depends(get_services),
    reviewer: str = Depends(current_reviewer),
):
    with engine_errors():
        result = services.cutoffs.apply_cutoff(
            cycle_id,
            phase,
            body.track,
            body.criteria,
            body.overrides,
            actor=reviewer,
            force_finalize=body.force_finalize,
            finalize=body.finalize,
        )
    if body.notify:
        background_tasks.add_task(dispatch_cutoff_notification, services.notifier, result)
    return result


@router.get("/cycles/{cycle_id}/phases/{phase}/decisions", response_model=List[PhaseDecision])
def get_phase_decisions(cycle_id: str, phase: ReviewPhase, services: ReviewServices = Depends(get_services)):
    with engine_errors():
        return services.cutoffs.get_phase_decisions(cycle_id, phase)


@router.post("/cycles/{cycle_id}/phases/{phase}/finalize", response_model=PhaseConfig)
def finalize_phase(
    cycle_id: str,
    phase: ReviewPhase,
    body: FinalizeRequest,
    services: ReviewServices = Depends(get_services),
    reviewer: str = Depends(current_reviewer),
):
    with engine_errors():
        return services.cutoffs.finalize_phase(cycle_id, phase, actor=reviewer, force=body.force)


@router.post("/cycles/{cycle_id}/phases/{phase}/unlock", response_model=PhaseConfig)
def unlock_phase(
    cycle_id: str,
    phase: ReviewPhase,
    services: ReviewServices = Depends(get_services),
    reviewer: str = Depends(current_reviewer),
):
    with engine_errors():
        return services.cutoffs.unlock_phase(cycle_id, phase, actor=reviewer)


@router.post("/cycles/{cycle_id}/phases/{phase}/revert", response_model=RevertResult)
def revert_phase(
    cycle_id: str,
    phase: ReviewPhase,
    services: ReviewServices = Depends(get_services),
    reviewer: str = Depends(current_reviewer),
):
    with engine_errors():
        return services.cutoffs.revert_phase(cycle_id, phase, actor=reviewer)
