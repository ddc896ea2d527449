# review_store.py
"""
Phase review records: one live review per (application, phase, reviewer).
Writes are last-write-wins upserts; no edit history is kept beyond the
audit log entry for each write.
"""

import logging
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from application_store import load_application, query_applications
from phase_config_store import ensure_config_row, to_phase_config
from phase_engine.phase_policy import SCORE_MAX, SCORE_MIN, eligible_stages, is_interview_phase
from phase_engine.score_aggregator import aggregate_application, compute_reviewer_stats
from review_config import is_strict_category_validation
from review_db import DBPhaseReview, ReviewDatabase, get_review_database, log_audit_event, utcnow
from review_errors import PhaseLockedError, ValidationError
from review_models import PhaseConfig, PhaseStatus, ReferralSignal, Review, ReviewPhase, ReviewsView

logger = logging.getLogger(__name__)


def to_review(row: DBPhaseReview) -> Review:
    return Review(
        cycle_id=row.cycle_id,
        application_id=row.application_id,
        phase=ReviewPhase(row.phase),
        reviewer_email=row.reviewer_email,
        reviewer_name=row.reviewer_name,
        scores=row.scores or {},
        notes=row.notes,
        question_notes=row.question_notes or {},
        referral_signal=ReferralSignal(row.referral_signal),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


# Session-level helpers

def find_review_row(
    session: Session, application_id: str, phase: ReviewPhase, reviewer_email: str
) -> Optional[DBPhaseReview]:
    stmt = select(DBPhaseReview).where(
        DBPhaseReview.application_id == application_id,
        DBPhaseReview.phase == phase.value,
        DBPhaseReview.reviewer_email == reviewer_email,
    )
    return session.scalars(stmt).first()


def reviews_for_phase(
    session: Session,
    cycle_id: str,
    phase: ReviewPhase,
    application_ids: Optional[Set[str]] = None,
) -> List[Review]:
    stmt = (
        select(DBPhaseReview)
        .where(DBPhaseReview.cycle_id == cycle_id, DBPhaseReview.phase == phase.value)
        .order_by(DBPhaseReview.application_id, DBPhaseReview.reviewer_email)
    )
    reviews = [to_review(row) for row in session.scalars(stmt)]
    if application_ids is not None:
        reviews = [review for review in reviews if review.application_id in application_ids]
    return reviews


def cycle_reviewer_names(session: Session, cycle_id: str) -> Dict[str, Optional[str]]:
    """Every reviewer who reviewed anything in the cycle, with their last known name."""
    stmt = (
        select(DBPhaseReview.reviewer_email, DBPhaseReview.reviewer_name)
        .where(DBPhaseReview.cycle_id == cycle_id)
        .order_by(DBPhaseReview.updated_at)
    )
    names: Dict[str, Optional[str]] = {}
    for email, name in session.execute(stmt):
        if name or email not in names:
            names[email] = name
    return names


def validate_scores(scores: Dict[str, Any], config: PhaseConfig, strict: bool) -> Dict[str, int]:
    """Return the scores restricted to the config's categories, or raise ValidationError."""
    if not scores:
        raise ValidationError("At least one category score is required")

    for key, value in scores.items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"Score for '{key}' must be an integer, got {value!r}")
        if value < SCORE_MIN or value > SCORE_MAX:
            raise ValidationError(f"Score for '{key}' must be between {SCORE_MIN} and {SCORE_MAX}, got {value}")

    known = set(config.category_keys())
    unknown = sorted(key for key in scores if key not in known)
    if unknown:
        if strict:
            raise ValidationError(f"Unknown scoring categories: {unknown}")
        logger.warning(
            "review_unknown_categories_dropped",
            extra={"cycle_id": config.cycle_id, "phase": config.phase.value, "categories": unknown},
        )

    cleaned = {key: value for key, value in scores.items() if key in known}
    missing = [key for key in config.mandatory_keys() if key not in cleaned]
    if missing:
        raise ValidationError(f"Mandatory categories missing a score: {missing}")
    return cleaned


class ReviewStore:
    """Upsert and read phase reviews."""

    def __init__(self, db: Optional[ReviewDatabase] = None, strict_categories: Optional[bool] = None) -> None:
        self.db = db or get_review_database()
        self.strict_categories = (
            is_strict_category_validation() if strict_categories is None else strict_categories
        )

    def upsert_review(
        self,
        application_id: str,
        phase: ReviewPhase,
        reviewer_email: str,
        scores: Dict[str, Any],
        notes: Optional[str] = None,
        question_notes: Optional[Dict[str, str]] = None,
        referral_signal: ReferralSignal = ReferralSignal.NEUTRAL,
        reviewer_name: Optional[str] = None,
    ) -> Review:
        """
        Create or replace the reviewer's review of an application for a phase.

        Raises:
            NotFoundError: unknown application
            PhaseLockedError: phase is finalized
            ValidationError: bad scores, missing mandatory category, or
                question notes outside an interview phase
        """
        email = normalize_email(reviewer_email)
        if not email:
            raise ValidationError("reviewer_email is required")
        if question_notes and not is_interview_phase(phase):
            raise ValidationError("Question notes are only accepted for interview phases")

        with self.db.transaction() as session:
            application = load_application(session, application_id)
            config_row = ensure_config_row(session, application.cycle_id, phase)
            if config_row.status == PhaseStatus.FINALIZED.value:
                raise PhaseLockedError(application.cycle_id, phase.value)

            cleaned = validate_scores(scores, to_phase_config(config_row), self.strict_categories)
            fields = {
                "reviewer_name": reviewer_name,
                "scores": cleaned,
                "notes": notes,
                "question_notes": dict(question_notes or {}),
                "referral_signal": referral_signal.value,
            }

            row = find_review_row(session, application_id, phase, email)
            created = row is None
            if created:
                row = DBPhaseReview(
                    cycle_id=application.cycle_id,
                    application_id=application_id,
                    phase=phase.value,
                    reviewer_email=email,
                    **fields,
                )
                try:
                    with session.begin_nested():
                        session.add(row)
                except IntegrityError:
                    # Concurrent insert of the same key won; overwrite it
                    created = False
                    row = find_review_row(session, application_id, phase, email)
                    if row is None:
                        raise

            if not created:
                if reviewer_name is None:
                    fields["reviewer_name"] = row.reviewer_name
                for name, value in fields.items():
                    setattr(row, name, value)
                row.updated_at = utcnow()

            session.flush()
            review = to_review(row)

            log_audit_event(
                session,
                actor=email,
                action="review.created" if created else "review.updated",
                target=application_id,
                metadata={
                    "phase": phase.value,
                    "categories": sorted(cleaned),
                    "referral_signal": referral_signal.value,
                },
            )

        logger.info(
            "phase_review_saved",
            extra={
                "application_id": application_id,
                "phase": phase.value,
                "reviewer": email,
                "is_new": created,
            },
        )
        return review

    def get_reviews(self, application_id: str, phase: ReviewPhase) -> ReviewsView:
        """All reviews of an application in a phase, with a scoring summary."""
        with self.db.transaction() as session:
            application = load_application(session, application_id)
            config = to_phase_config(ensure_config_row(session, application.cycle_id, phase))

            eligible_ids = {
                row.id
                for row in query_applications(session, application.cycle_id, eligible_stages(phase))
            }
            phase_reviews = reviews_for_phase(session, application.cycle_id, phase, eligible_ids)
            reviews = reviews_for_phase(session, application.cycle_id, phase, {application_id})

        stats = None
        if config.use_zscore_normalization:
            stats = compute_reviewer_stats(phase_reviews, config.category_keys())

        return ReviewsView(
            application_id=application_id,
            phase=phase,
            reviews=reviews,
            reviewer_names={review.reviewer_email: review.display_name for review in reviews},
            summary=aggregate_application(application_id, reviews, config, stats),
        )
