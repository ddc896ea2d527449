from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import ValidationError as ModelValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from phase_engine.phase_policy import (
    DEFAULT_MIN_REVIEWERS,
    DEFAULT_REFERRAL_WEIGHTS,
    default_categories,
    is_interview_phase,
)
from review_db import DBPhaseConfig, ReviewDatabase, get_review_database, log_audit_event, utcnow
from review_errors import PhaseLockedError, ValidationError
from review_models import (
    ApplicationTrack,
    CutoffCriteria,
    InterviewQuestion,
    PhaseConfig,
    PhaseSettings,
    PhaseStatus,
    ReferralWeights,
    ReviewPhase,
    ScoringCategory,
)

logger = logging.getLogger(__name__)


def to_phase_config(row: DBPhaseConfig) -> PhaseConfig:
    return PhaseConfig(
        cycle_id=row.cycle_id,
        phase=ReviewPhase(row.phase),
        scoring_categories=[ScoringCategory(**c) for c in row.scoring_categories or []],
        min_reviewers_required=row.min_reviewers_required,
        referral_weights=ReferralWeights(**(row.referral_weights or DEFAULT_REFERRAL_WEIGHTS)),
        interview_questions=[InterviewQuestion(**q) for q in row.interview_questions or []],
        use_zscore_normalization=bool(row.use_zscore_normalization),
        status=PhaseStatus(row.status),
        cutoff_applied_at=row.cutoff_applied_at,
        cutoff_applied_by=row.cutoff_applied_by,
        cutoff_criteria=CutoffCriteria(**row.cutoff_criteria) if row.cutoff_criteria else None,
        finalized_at=row.finalized_at,
        finalized_by=row.finalized_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _default_row(cycle_id: str, phase: ReviewPhase) -> DBPhaseConfig:
    return DBPhaseConfig(
        cycle_id=cycle_id,
        phase=phase.value,
        scoring_categories=[c.model_dump(mode="json") for c in default_categories(phase)],
        min_reviewers_required=DEFAULT_MIN_REVIEWERS,
        referral_weights=dict(DEFAULT_REFERRAL_WEIGHTS),
        interview_questions=[],
        use_zscore_normalization=False,
        status=PhaseStatus.OPEN.value,
    )


def find_config_row(session: Session, cycle_id: str, phase: ReviewPhase) -> Optional[DBPhaseConfig]:
    stmt = select(DBPhaseConfig).where(
        DBPhaseConfig.cycle_id == cycle_id,
        DBPhaseConfig.phase == phase.value,
    )
    return session.scalars(stmt).first()


def ensure_config_row(session: Session, cycle_id: str, phase: ReviewPhase) -> DBPhaseConfig:
    """Return the phase config row, creating the default on first access."""
    row = find_config_row(session, cycle_id, phase)
    if row is not None:
        return row

    row = _default_row(cycle_id, phase)
    try:
        with session.begin_nested():
            session.add(row)
    except IntegrityError:
        # Another request initialized it first
        row = find_config_row(session, cycle_id, phase)
        if row is None:
            raise
        return row

    logger.info("phase_config_initialized", extra={"cycle_id": cycle_id, "phase": phase.value})
    return row


def validate_categories(categories: List[ScoringCategory]) -> None:
    if not categories:
        raise ValidationError("At least one scoring category is required")
    keys = [category.key for category in categories]
    duplicates = sorted({key for key in keys if keys.count(key) > 1})
    if duplicates:
        raise ValidationError(f"Duplicate scoring category keys: {duplicates}")
    if not any(category.mandatory for category in categories):
        raise ValidationError("At least one scoring category must be mandatory")


class PhaseConfigStore:
    """
    Phase configuration per (cycle, phase).

    Configs are phase-scoped: a track filter never selects or forks a
    separate config, so what a reviewer sees under a track filter is
    exactly what a save affects.
    """

    def __init__(self, db: Optional[ReviewDatabase] = None) -> None:
        self.db = db or get_review_database()

    def get_config(
        self,
        cycle_id: str,
        phase: ReviewPhase,
        track: Optional[ApplicationTrack] = None,
    ) -> PhaseConfig:
        with self.db.transaction() as session:
            return to_phase_config(ensure_config_row(session, cycle_id, phase))

    def list_configs(self, cycle_id: str) -> List[PhaseConfig]:
        with self.db.transaction() as session:
            rows = session.scalars(
                select(DBPhaseConfig).where(DBPhaseConfig.cycle_id == cycle_id)
            ).all()
            configs = [to_phase_config(row) for row in rows]
        order = list(ReviewPhase)
        return sorted(configs, key=lambda c: order.index(c.phase))

    def initialize(self, cycle_id: str, *, actor: str = "system") -> List[PhaseConfig]:
        """Create default configs for every phase that lacks one. Safe to repeat."""
        with self.db.transaction() as session:
            created = []
            for phase in ReviewPhase:
                if find_config_row(session, cycle_id, phase) is None:
                    ensure_config_row(session, cycle_id, phase)
                    created.append(phase.value)
            if created:
                log_audit_event(
                    session,
                    actor=actor,
                    action="phase_configs.initialized",
                    target=cycle_id,
                    metadata={"phases": created},
                )
        return self.list_configs(cycle_id)

    def save_config(
        self,
        cycle_id: str,
        phase: ReviewPhase,
        settings: PhaseSettings,
        *,
        actor: str,
    ) -> PhaseConfig:
        """Apply the fields set on `settings` to the cycle+phase config (all tracks)."""
        if settings.scoring_categories is not None:
            validate_categories(settings.scoring_categories)
        if settings.min_reviewers_required is not None and settings.min_reviewers_required < 1:
            raise ValidationError("min_reviewers_required must be at least 1")
        if settings.interview_questions and not is_interview_phase(phase):
            raise ValidationError("Interview questions only apply to interview phases")
        if settings.interview_questions:
            question_keys = [q.key for q in settings.interview_questions]
            if len(set(question_keys)) != len(question_keys):
                raise ValidationError("Interview question keys must be unique")

        with self.db.transaction() as session:
            row = ensure_config_row(session, cycle_id, phase)
            if row.status == PhaseStatus.FINALIZED.value:
                raise PhaseLockedError(cycle_id, phase.value)

            updated_fields = sorted(settings.model_dump(exclude_none=True).keys())
            if settings.scoring_categories is not None:
                row.scoring_categories = [c.model_dump(mode="json") for c in settings.scoring_categories]
            if settings.min_reviewers_required is not None:
                row.min_reviewers_required = settings.min_reviewers_required
            if settings.referral_weights is not None:
                row.referral_weights = settings.referral_weights.model_dump()
            if settings.interview_questions is not None:
                row.interview_questions = [q.model_dump() for q in settings.interview_questions]
            if settings.use_zscore_normalization is not None:
                row.use_zscore_normalization = settings.use_zscore_normalization
            row.updated_at = utcnow()

            try:
                config = to_phase_config(row)
            except ModelValidationError as exc:
                raise ValidationError(str(exc)) from exc

            log_audit_event(
                session,
                actor=actor,
                action="phase_config.updated",
                target=f"{cycle_id}_{phase.value}",
                metadata={"updated_fields": updated_fields},
            )

        logger.info(
            "phase_config_saved",
            extra={"cycle_id": cycle_id, "phase": phase.value, "updated_fields": updated_fields},
        )
        return config
