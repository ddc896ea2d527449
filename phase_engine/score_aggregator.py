"""
Per-application score aggregation for one review phase.

Only categories present in the current phase config count. Scores from
categories that were later removed from the rubric are ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from phase_engine.phase_policy import ZSCORE_CENTER
from review_models import ApplicationScore, PhaseConfig, ReferralSignal, Review


@dataclass
class ReviewerStats:
    reviewer_email: str
    mean: float
    std: float
    applications: int

    @property
    def normalizable(self) -> bool:
        return self.applications >= 2 and self.std > 0


def _mean(values: List[float]) -> float:
    return sum(values) / len(values)


def _population_std(values: List[float], mean: float) -> float:
    return (sum((value - mean) ** 2 for value in values) / len(values)) ** 0.5


def compute_reviewer_stats(reviews: Iterable[Review], category_keys: Iterable[str]) -> Dict[str, ReviewerStats]:
    """Mean and population std dev of every category score each reviewer gave."""
    keys = set(category_keys)
    pooled: Dict[str, List[float]] = {}
    applications: Dict[str, set] = {}

    for review in reviews:
        values = [float(v) for k, v in review.scores.items() if k in keys]
        if not values:
            continue
        pooled.setdefault(review.reviewer_email, []).extend(values)
        applications.setdefault(review.reviewer_email, set()).add(review.application_id)

    stats = {}
    for email, values in pooled.items():
        mean = _mean(values)
        stats[email] = ReviewerStats(
            reviewer_email=email,
            mean=mean,
            std=_population_std(values, mean),
            applications=len(applications[email]),
        )
    return stats


def normalize_score(value: float, stats: Optional[ReviewerStats]) -> float:
    """Map a raw score to center + z, keeping the reviewer's ordering.

    Reviewers without enough spread pass through unchanged.
    """
    if stats is None or not stats.normalizable:
        return float(value)
    z = (value - stats.mean) / stats.std
    return ZSCORE_CENTER + z


def aggregate_application(
    application_id: str,
    reviews: Iterable[Review],
    config: PhaseConfig,
    reviewer_stats: Optional[Dict[str, ReviewerStats]] = None,
) -> ApplicationScore:
    reviews = list(reviews)
    normalize = config.use_zscore_normalization and reviewer_stats is not None
    keys = config.category_keys()

    per_category: Dict[str, List[float]] = {key: [] for key in keys}
    review_means: List[float] = []
    referrals = deferrals = neutrals = 0

    for review in reviews:
        stats = reviewer_stats.get(review.reviewer_email) if normalize else None
        values = []
        for key in keys:
            if key not in review.scores:
                continue
            value = normalize_score(review.scores[key], stats) if normalize else float(review.scores[key])
            per_category[key].append(value)
            values.append(value)
        if values:
            review_means.append(_mean(values))

        if review.referral_signal == ReferralSignal.REFERRAL:
            referrals += 1
        elif review.referral_signal == ReferralSignal.DEFERRAL:
            deferrals += 1
        else:
            neutrals += 1

    category_scores = {key: _mean(values) for key, values in per_category.items() if values}

    average_score = _mean(review_means) if review_means else None
    weighted_score = None
    if category_scores:
        weights = {c.key: c.weight for c in config.scoring_categories}
        total_weight = sum(weights[key] for key in category_scores)
        base = sum(score * weights[key] for key, score in category_scores.items()) / total_weight
        weighted_score = (
            base
            + config.referral_weights.advocate * referrals
            + config.referral_weights.oppose * deferrals
        )

    return ApplicationScore(
        application_id=application_id,
        average_score=average_score,
        weighted_score=weighted_score,
        category_scores=category_scores,
        review_count=len({review.reviewer_email for review in reviews}),
        referral_count=referrals,
        deferral_count=deferrals,
        neutral_count=neutrals,
        reviewers=sorted({review.display_name for review in reviews}),
    )
