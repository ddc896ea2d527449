"""Loads everything the ranking, completeness and cutoff steps read for one phase."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from application_store import query_applications, to_application
from phase_config_store import ensure_config_row, to_phase_config
from phase_engine.phase_policy import eligible_stages
from review_models import Application, ApplicationTrack, PhaseConfig, Review, ReviewPhase
from review_store import cycle_reviewer_names, reviews_for_phase


@dataclass
class PhaseInputs:
    config: PhaseConfig
    track: Optional[ApplicationTrack]
    applications: List[Application]
    reviews: List[Review]
    """Reviews of the applications in the (track filtered) affected set."""
    phase_reviews: List[Review]
    """Reviews of every eligible application in the phase, used for reviewer statistics."""
    cycle_reviewers: Dict[str, Optional[str]] = field(default_factory=dict)

    def reviews_by_application(self) -> Dict[str, List[Review]]:
        grouped: Dict[str, List[Review]] = {application.id: [] for application in self.applications}
        for review in self.reviews:
            grouped.setdefault(review.application_id, []).append(review)
        return grouped


def load_phase_inputs(
    session: Session,
    cycle_id: str,
    phase: ReviewPhase,
    track: Optional[ApplicationTrack] = None,
) -> PhaseInputs:
    config = to_phase_config(ensure_config_row(session, cycle_id, phase))
    stages = eligible_stages(phase)

    all_eligible = [to_application(row) for row in query_applications(session, cycle_id, stages)]
    phase_reviews = reviews_for_phase(session, cycle_id, phase, {a.id for a in all_eligible})

    if track is None:
        applications = all_eligible
    else:
        applications = [to_application(row) for row in query_applications(session, cycle_id, stages, track)]
    affected_ids = {application.id for application in applications}

    return PhaseInputs(
        config=config,
        track=track,
        applications=applications,
        reviews=[review for review in phase_reviews if review.application_id in affected_ids],
        phase_reviews=phase_reviews,
        cycle_reviewers=cycle_reviewer_names(session, cycle_id),
    )
