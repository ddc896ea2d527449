import pytest
from sqlalchemy import select

from phase_engine.cutoff_engine import CutoffEngine
from review_db import DBAuditLog, DBPhaseReview
from review_errors import NotFoundError, PhaseLockedError, ValidationError
from review_models import ApplicationStage, ReferralSignal, ReviewPhase
from review_store import ReviewStore


def test_upsert_creates_then_replaces_same_key(db, make_application):
    store = ReviewStore(db, strict_categories=False)
    app = make_application("Alice")

    store.upsert_review(app.id, ReviewPhase.APPLICATION, "Rev@Example.com", {"overall": 3}, notes="ok")
    updated = store.upsert_review(
        app.id,
        ReviewPhase.APPLICATION,
        "rev@example.com",
        {"overall": 5, "experience": 4},
        referral_signal=ReferralSignal.REFERRAL,
    )

    assert updated.reviewer_email == "rev@example.com"
    assert updated.scores == {"overall": 5, "experience": 4}
    assert updated.notes is None
    assert updated.referral_signal == ReferralSignal.REFERRAL

    with db.transaction() as session:
        rows = session.scalars(select(DBPhaseReview)).all()
        assert len(rows) == 1
        actions = [row.action for row in session.scalars(select(DBAuditLog).order_by(DBAuditLog.id))]
    assert actions[-2:] == ["review.created", "review.updated"]


def test_reviewer_name_survives_update_without_name(db, make_application):
    store = ReviewStore(db, strict_categories=False)
    app = make_application("Alice")

    store.upsert_review(app.id, ReviewPhase.APPLICATION, "rev@example.com", {"overall": 3}, reviewer_name="Riley")
    review = store.upsert_review(app.id, ReviewPhase.APPLICATION, "rev@example.com", {"overall": 4})

    assert review.reviewer_name == "Riley"
    assert review.display_name == "Riley"


def test_same_reviewer_different_phase_is_separate_review(db, make_application):
    store = ReviewStore(db, strict_categories=False)
    app = make_application("Alice", stage=ApplicationStage.INTERVIEW_ROUND1)

    store.upsert_review(app.id, ReviewPhase.APPLICATION, "rev@example.com", {"overall": 3})
    store.upsert_review(app.id, ReviewPhase.INTERVIEW_ROUND1, "rev@example.com", {"overall": 4})

    assert store.get_reviews(app.id, ReviewPhase.APPLICATION).total_reviews == 1
    assert store.get_reviews(app.id, ReviewPhase.INTERVIEW_ROUND1).total_reviews == 1


@pytest.mark.parametrize(
    "scores",
    [
        {},
        {"overall": 0},
        {"overall": 6},
        {"overall": 4.5},
        {"overall": "5"},
        {"overall": True},
        {"experience": 4},
    ],
)
def test_invalid_scores_are_rejected(db, make_application, scores):
    store = ReviewStore(db, strict_categories=False)
    app = make_application("Alice")

    with pytest.raises(ValidationError):
        store.upsert_review(app.id, ReviewPhase.APPLICATION, "rev@example.com", scores)

    with db.transaction() as session:
        assert session.scalars(select(DBPhaseReview)).first() is None


def test_question_notes_only_for_interview_phases(db, make_application):
    store = ReviewStore(db, strict_categories=False)
    app = make_application("Alice")
    interviewee = make_application("Bob", stage=ApplicationStage.INTERVIEW_ROUND1)

    with pytest.raises(ValidationError):
        store.upsert_review(
            app.id, ReviewPhase.APPLICATION, "rev@example.com", {"overall": 4}, question_notes={"q1": "good"}
        )

    review = store.upsert_review(
        interviewee.id,
        ReviewPhase.INTERVIEW_ROUND1,
        "rev@example.com",
        {"overall": 4},
        question_notes={"q1": "Clear answer"},
    )
    assert review.question_notes == {"q1": "Clear answer"}


def test_unknown_categories_dropped_unless_strict(db, make_application):
    app = make_application("Alice")

    lenient = ReviewStore(db, strict_categories=False)
    review = lenient.upsert_review(app.id, ReviewPhase.APPLICATION, "a@example.com", {"overall": 4, "charisma": 5})
    assert review.scores == {"overall": 4}

    strict = ReviewStore(db, strict_categories=True)
    with pytest.raises(ValidationError):
        strict.upsert_review(app.id, ReviewPhase.APPLICATION, "b@example.com", {"overall": 4, "charisma": 5})


def test_unknown_application_raises_not_found(db):
    store = ReviewStore(db, strict_categories=False)
    with pytest.raises(NotFoundError):
        store.upsert_review("missing", ReviewPhase.APPLICATION, "rev@example.com", {"overall": 4})


def test_finalized_phase_rejects_review_writes(db, make_application):
    store = ReviewStore(db, strict_categories=False)
    app = make_application("Alice")
    store.upsert_review(app.id, ReviewPhase.APPLICATION, "rev@example.com", {"overall": 4})

    CutoffEngine(db, reviewer_roster=[]).finalize_phase("cycle-1", ReviewPhase.APPLICATION, actor="admin@example.com")

    with pytest.raises(PhaseLockedError):
        store.upsert_review(app.id, ReviewPhase.APPLICATION, "rev@example.com", {"overall": 1})

    assert store.get_reviews(app.id, ReviewPhase.APPLICATION).reviews[0].scores == {"overall": 4}


def test_unlocked_phase_accepts_the_rejected_write(db, make_application):
    store = ReviewStore(db, strict_categories=False)
    engine = CutoffEngine(db, reviewer_roster=[])
    app = make_application("Alice")
    store.upsert_review(app.id, ReviewPhase.APPLICATION, "rev@example.com", {"overall": 4})

    engine.finalize_phase("cycle-1", ReviewPhase.APPLICATION, actor="admin@example.com")
    with pytest.raises(PhaseLockedError):
        store.upsert_review(app.id, ReviewPhase.APPLICATION, "rev@example.com", {"overall": 2})

    engine.unlock_phase("cycle-1", ReviewPhase.APPLICATION, actor="admin@example.com")
    review = store.upsert_review(app.id, ReviewPhase.APPLICATION, "rev@example.com", {"overall": 2})

    assert review.scores == {"overall": 2}
    assert store.get_reviews(app.id, ReviewPhase.APPLICATION).reviews[0].scores == {"overall": 2}


def test_get_reviews_summary_with_referral(db, make_application):
    store = ReviewStore(db, strict_categories=False)
    app = make_application("Alice")

    store.upsert_review(
        app.id, ReviewPhase.APPLICATION, "r1@example.com", {"overall": 5}, referral_signal=ReferralSignal.REFERRAL
    )
    store.upsert_review(app.id, ReviewPhase.APPLICATION, "r2@example.com", {"overall": 3}, reviewer_name="Sam")
    store.upsert_review(app.id, ReviewPhase.APPLICATION, "r3@example.com", {"overall": 4})

    view = store.get_reviews(app.id, ReviewPhase.APPLICATION)

    assert view.total_reviews == 3
    assert view.reviewer_names == {"r1@example.com": "r1", "r2@example.com": "Sam", "r3@example.com": "r3"}
    assert view.summary.average_score == pytest.approx(4.0)
    assert view.summary.weighted_score == pytest.approx(5.0)
    assert view.summary.referral_count == 1
    assert view.summary.category_scores == {"overall": pytest.approx(4.0)}
