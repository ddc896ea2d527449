from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from main import app
from phase_review_api import ReviewServices, get_services
from review_db import ReviewDatabase

ADMIN = {"X-Reviewer-Email": "admin@example.com"}


@pytest.fixture
def services(tmp_path):
    database = ReviewDatabase(db_url=f"sqlite:///{tmp_path / 'reviews.db'}")
    services = ReviewServices(db=database, notifier=MagicMock(), reviewer_roster=[])
    app.dependency_overrides[get_services] = lambda: services
    yield services
    app.dependency_overrides.clear()
    database.dispose()


@pytest.fixture
def client(services):
    return TestClient(app)


def _create(client, name, track="engineering"):
    response = client.post(
        "/recruitment/applications",
        json={"cycle_id": "cycle-1", "track": track, "applicant_name": name, "applicant_email": f"{name}@example.com"},
        headers=ADMIN,
    )
    assert response.status_code == 201
    return response.json()["id"]


def _review(client, app_id, overall, reviewer="r1@example.com", **extra):
    return client.put(
        f"/recruitment/applications/{app_id}/reviews/application",
        json={"scores": {"overall": overall}, **extra},
        headers={"X-Reviewer-Email": reviewer},
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_review_round_trip_and_summary(client):
    app_id = _create(client, "alice")

    assert _review(client, app_id, 5, referral_signal="referral").status_code == 200
    assert _review(client, app_id, 3, reviewer="r2@example.com").status_code == 200
    assert _review(client, app_id, 4, reviewer="r3@example.com").status_code == 200

    body = client.get(f"/recruitment/applications/{app_id}/reviews/application").json()

    assert len(body["reviews"]) == 3
    assert body["summary"]["average_score"] == pytest.approx(4.0)
    assert body["summary"]["weighted_score"] == pytest.approx(5.0)


def test_error_mapping(client):
    app_id = _create(client, "alice")

    assert client.put(
        f"/recruitment/applications/{app_id}/reviews/application", json={"scores": {"overall": 4}}
    ).status_code == 401

    missing = _review(client, "nope", 4)
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "not_found"

    invalid = _review(client, app_id, 9)
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["code"] == "validation_error"

    assert client.get(f"/recruitment/applications/{app_id}/reviews/final").status_code == 422


def test_phase_config_endpoints(client):
    initialized = client.post("/recruitment/cycles/cycle-1/phase-configs/initialize", headers=ADMIN)
    assert [c["phase"] for c in initialized.json()] == ["application", "interview_round1", "interview_round2"]

    listed = client.get("/recruitment/cycles/cycle-1/phase-configs").json()
    assert [c["status"] for c in listed] == ["open", "open", "open"]

    saved = client.put(
        "/recruitment/cycles/cycle-1/phase-configs/application",
        json={"min_reviewers_required": 3, "use_zscore_normalization": True},
        headers=ADMIN,
    )
    assert saved.status_code == 200

    fetched = client.get("/recruitment/cycles/cycle-1/phase-configs/application", params={"track": "business"})
    assert fetched.json()["min_reviewers_required"] == 3
    assert fetched.json()["use_zscore_normalization"] is True

    bad = client.put(
        "/recruitment/cycles/cycle-1/phase-configs/application",
        json={"scoring_categories": []},
        headers=ADMIN,
    )
    assert bad.status_code == 400


def test_cutoff_lifecycle(client, services):
    ids = {name: _create(client, name) for name in ("alice", "bob", "cara")}
    for score, name in zip((5, 4, 2), ("alice", "bob", "cara")):
        _review(client, ids[name], score)

    preview = client.post(
        "/recruitment/cycles/cycle-1/phases/application/cutoff/preview",
        json={"criteria": {"type": "top_n", "top_n": 1}},
    )
    assert [d["action"] for d in preview.json()["decisions"]] == ["advance", "reject", "reject"]

    completeness = client.get("/recruitment/cycles/cycle-1/phases/application/completeness").json()
    assert completeness["total_applicants"] == 3
    assert completeness["incomplete_reviewers"] == []

    applied = client.post(
        "/recruitment/cycles/cycle-1/phases/application/cutoff",
        json={
            "criteria": {"type": "top_n", "top_n": 1},
            "overrides": [{"application_id": ids["bob"], "action": "advance", "reason": "Referral"}],
        },
        headers=ADMIN,
    )
    assert applied.status_code == 200
    assert set(applied.json()["advanced"]) == {ids["alice"], ids["bob"]}
    services.notifier.notify_cutoff.assert_called_once()

    locked = _review(client, ids["cara"], 5)
    assert locked.status_code == 409
    assert locked.json()["detail"]["code"] == "phase_locked"

    finalized = client.get("/recruitment/cycles/cycle-1/phases/application/ranking/finalized").json()
    assert [e["decision"] for e in finalized["entries"]] == ["advance", "advance", "reject"]

    decisions = client.get("/recruitment/cycles/cycle-1/phases/application/decisions").json()
    assert len(decisions) == 3

    assert client.post("/recruitment/cycles/cycle-1/phases/application/unlock", headers=ADMIN).json()["status"] == "open"
    reverted = client.post("/recruitment/cycles/cycle-1/phases/application/revert", headers=ADMIN).json()
    assert reverted["reverted"] == 3
    assert client.get(f"/recruitment/applications/{ids['alice']}").json()["stage"] == "submitted"

    again = client.post("/recruitment/cycles/cycle-1/phases/application/revert", headers=ADMIN)
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "nothing_to_revert"


def test_finalize_reports_incomplete_reviewers(client, services):
    services.cutoffs.reviewer_roster = ["late@example.com"]
    app_id = _create(client, "alice")
    _review(client, app_id, 4)

    response = client.post("/recruitment/cycles/cycle-1/phases/application/finalize", json={}, headers=ADMIN)

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["code"] == "incomplete_reviews"
    assert [r["email"] for r in detail["incomplete_reviewers"]] == ["late@example.com"]

    forced = client.post(
        "/recruitment/cycles/cycle-1/phases/application/finalize", json={"force": True}, headers=ADMIN
    )
    assert forced.json()["status"] == "finalized"


def test_manual_stage_update(client):
    app_id = _create(client, "alice")

    response = client.patch(
        f"/recruitment/applications/{app_id}/stage", json={"stage": "withdrawn"}, headers=ADMIN
    )

    assert response.status_code == 200
    assert response.json()["stage"] == "withdrawn"


def test_list_applications_filters_by_stage_and_track(client):
    alice = _create(client, "alice")
    bob = _create(client, "bob", track="business")
    client.patch(f"/recruitment/applications/{bob}/stage", json={"stage": "withdrawn"}, headers=ADMIN)

    everyone = client.get("/recruitment/cycles/cycle-1/applications").json()
    submitted = client.get("/recruitment/cycles/cycle-1/applications", params={"stage": "submitted"}).json()
    business = client.get("/recruitment/cycles/cycle-1/applications", params={"track": "business"}).json()

    assert {a["id"] for a in everyone} == {alice, bob}
    assert [a["id"] for a in submitted] == [alice]
    assert [a["id"] for a in business] == [bob]
    assert client.get("/recruitment/cycles/other/applications").json() == []
