"""
Completeness of one review phase: how many eligible applicants each reviewer
has scored. A phase can only be finalized (without forcing) once every
reviewer is at 100%.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set

from phase_engine.phase_inputs import PhaseInputs, load_phase_inputs
from review_config import get_required_reviewers
from review_db import ReviewDatabase, get_review_database
from review_models import ApplicationTrack, CompletenessSnapshot, ReviewerCompletion, ReviewPhase

logger = logging.getLogger(__name__)


def summarize_completeness(inputs: PhaseInputs, reviewer_roster: Iterable[str] = ()) -> CompletenessSnapshot:
    config = inputs.config
    total = len(inputs.applications)

    reviewers_by_application: Dict[str, Set[str]] = {a.id: set() for a in inputs.applications}
    applications_by_reviewer: Dict[str, Set[str]] = {}
    for review in inputs.reviews:
        reviewers_by_application.setdefault(review.application_id, set()).add(review.reviewer_email)
        applications_by_reviewer.setdefault(review.reviewer_email, set()).add(review.application_id)

    names = dict(inputs.cycle_reviewers)
    for email in reviewer_roster:
        names.setdefault(email.strip().lower(), None)

    completion: List[ReviewerCompletion] = []
    for email in sorted(names):
        reviewed = len(applications_by_reviewer.get(email, ()))
        completion.append(
            ReviewerCompletion(
                email=email,
                name=names[email],
                reviewed=reviewed,
                total=total,
                percentage=100.0 if total == 0 else reviewed / total * 100,
            )
        )

    incomplete = sorted(
        (entry for entry in completion if entry.percentage < 100),
        key=lambda entry: (entry.percentage, entry.email),
    )

    return CompletenessSnapshot(
        cycle_id=config.cycle_id,
        phase=config.phase,
        status=config.status,
        total_applicants=total,
        applicants_with_reviews=sum(1 for r in reviewers_by_application.values() if r),
        applicants_fully_reviewed=sum(
            1 for r in reviewers_by_application.values() if len(r) >= config.min_reviewers_required
        ),
        active_reviewers=len(applications_by_reviewer),
        reviewer_completion=completion,
        incomplete_reviewers=incomplete,
    )


class CompletenessTracker:
    def __init__(
        self,
        db: Optional[ReviewDatabase] = None,
        reviewer_roster: Optional[Iterable[str]] = None,
    ) -> None:
        self.db = db or get_review_database()
        self.reviewer_roster = list(get_required_reviewers() if reviewer_roster is None else reviewer_roster)

    def compute_completeness(
        self,
        cycle_id: str,
        phase: ReviewPhase,
        track: Optional[ApplicationTrack] = None,
        reviewer_roster: Optional[Iterable[str]] = None,
    ) -> CompletenessSnapshot:
        roster = self.reviewer_roster if reviewer_roster is None else list(reviewer_roster)
        with self.db.transaction() as session:
            inputs = load_phase_inputs(session, cycle_id, phase, track)
        snapshot = summarize_completeness(inputs, roster)

        logger.info(
            "phase_completeness_computed",
            extra={
                "cycle_id": cycle_id,
                "phase": phase.value,
                "total_applicants": snapshot.total_applicants,
                "incomplete_reviewers": len(snapshot.incomplete_reviewers),
            },
        )
        return snapshot
