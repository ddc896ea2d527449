"""
Dense, deterministic ranking of the applicants eligible for a phase.

Order: weighted score desc, net referrals desc, applicant name, application
id. Applicants without reviews sort last with no scores.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sqlalchemy import select

from phase_engine.phase_inputs import PhaseInputs, load_phase_inputs
from phase_engine.score_aggregator import aggregate_application, compute_reviewer_stats
from review_db import DBCutoffRun, ReviewDatabase, get_review_database, utcnow
from review_errors import NotFoundError
from review_models import (
    ApplicationScore,
    ApplicationTrack,
    PhaseRanking,
    RankedApplicant,
    ReviewPhase,
)

logger = logging.getLogger(__name__)


def score_applications(inputs: PhaseInputs) -> Dict[str, ApplicationScore]:
    stats = None
    if inputs.config.use_zscore_normalization:
        stats = compute_reviewer_stats(inputs.phase_reviews, inputs.config.category_keys())

    return {
        application_id: aggregate_application(application_id, reviews, inputs.config, stats)
        for application_id, reviews in inputs.reviews_by_application().items()
    }


def _sort_key(entry: RankedApplicant):
    unscored = entry.weighted_score is None
    return (
        unscored,
        0.0 if unscored else -entry.weighted_score,
        -entry.net_referrals,
        entry.applicant_name.casefold(),
        entry.application_id,
    )


def rank_applicants(inputs: PhaseInputs) -> List[RankedApplicant]:
    scores = score_applications(inputs)
    entries = []
    for application in inputs.applications:
        score = scores[application.id]
        entries.append(
            RankedApplicant(
                rank=0,
                application_id=application.id,
                applicant_name=application.applicant_name,
                applicant_email=application.applicant_email,
                track=application.track,
                average_score=score.average_score,
                weighted_score=score.weighted_score,
                review_count=score.review_count,
                referral_count=score.referral_count,
                deferral_count=score.deferral_count,
                neutral_count=score.neutral_count,
            )
        )

    entries.sort(key=_sort_key)
    for index, entry in enumerate(entries, start=1):
        entry.rank = index
    return entries


def build_phase_ranking(inputs: PhaseInputs) -> PhaseRanking:
    return PhaseRanking(
        cycle_id=inputs.config.cycle_id,
        phase=inputs.config.phase,
        track=inputs.track,
        generated_at=utcnow(),
        entries=rank_applicants(inputs),
    )


class RankingBuilder:
    def __init__(self, db: Optional[ReviewDatabase] = None) -> None:
        self.db = db or get_review_database()

    def build_ranking(
        self,
        cycle_id: str,
        phase: ReviewPhase,
        track: Optional[ApplicationTrack] = None,
    ) -> PhaseRanking:
        """Live ranking recomputed from the current reviews."""
        with self.db.transaction() as session:
            inputs = load_phase_inputs(session, cycle_id, phase, track)
        ranking = build_phase_ranking(inputs)

        logger.info(
            "phase_ranking_built",
            extra={
                "cycle_id": cycle_id,
                "phase": phase.value,
                "track": track.value if track else None,
                "applicants": len(ranking.entries),
            },
        )
        return ranking

    def get_finalized_ranking(self, cycle_id: str, phase: ReviewPhase) -> PhaseRanking:
        """Ranking snapshot, with decisions, saved by the latest non-reverted cutoff."""
        with self.db.transaction() as session:
            stmt = (
                select(DBCutoffRun)
                .where(
                    DBCutoffRun.cycle_id == cycle_id,
                    DBCutoffRun.phase == phase.value,
                    DBCutoffRun.reverted_at.is_(None),
                )
                .order_by(DBCutoffRun.id.desc())
            )
            run = session.scalars(stmt).first()
            if run is None:
                raise NotFoundError(f"No cutoff has been applied to phase '{phase.value}' of cycle '{cycle_id}'")
            return PhaseRanking.model_validate(run.ranking)
