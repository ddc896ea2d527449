from datetime import datetime, timezone

from review_models import (
    ApplicationStage,
    ApplicationTrack,
    CutoffResult,
    DecisionAction,
    PhaseDecision,
    ReviewPhase,
)
from slack_blocks import (
    MAX_APPLICANTS_PER_GROUP,
    build_cutoff_summary_blocks,
    build_decision_groups,
    build_footer,
    build_status_header,
    build_summary_stats,
)


def _decision(app_id, action, manual=False, reason=None):
    return PhaseDecision(
        run_id=7,
        cycle_id="cycle-1",
        phase=ReviewPhase.APPLICATION,
        application_id=app_id,
        action=action,
        manual=manual,
        reason=reason,
        previous_stage=ApplicationStage.SUBMITTED,
        new_stage=ApplicationStage.INTERVIEW_ROUND1 if action == DecisionAction.ADVANCE else ApplicationStage.REJECTED,
        performed_by="admin@example.com",
        performed_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
    )


def _result(decisions, finalized=True, track=None):
    return CutoffResult(
        run_id=7,
        cycle_id="cycle-1",
        phase=ReviewPhase.APPLICATION,
        track=track,
        advanced=[d.application_id for d in decisions if d.action == DecisionAction.ADVANCE],
        rejected=[d.application_id for d in decisions if d.action == DecisionAction.REJECT],
        finalized=finalized,
        decisions=decisions,
        applicant_names={"a1": "Alice", "a2": "Bob"},
        performed_by="admin@example.com",
    )


def test_build_status_header_locked():
    result = _result([_decision("a1", DecisionAction.ADVANCE)])

    blocks = build_status_header(result)

    assert len(blocks) == 1
    assert blocks[0]["type"] == "header"
    assert "🔒" in blocks[0]["text"]["text"]
    assert "Application Review Cutoff (1 applicants)" in blocks[0]["text"]["text"]


def test_build_status_header_open():
    blocks = build_status_header(_result([], finalized=False))

    assert "🔒" not in blocks[0]["text"]["text"]


def test_build_summary_stats_counts_manual_overrides():
    decisions = [
        _decision("a1", DecisionAction.ADVANCE, manual=True, reason="Referral"),
        _decision("a2", DecisionAction.REJECT),
    ]

    blocks = build_summary_stats(_result(decisions, track=ApplicationTrack.BUSINESS))

    fields_text = " ".join(f["text"] for f in blocks[0]["fields"])
    assert "*Advanced:*\n1" in fields_text
    assert "*Rejected:*\n1" in fields_text
    assert "*Manual Overrides:*\n1" in fields_text
    assert "business" in fields_text


def test_build_summary_stats_without_overrides_omits_field():
    blocks = build_summary_stats(_result([_decision("a1", DecisionAction.ADVANCE)]))

    fields_text = " ".join(f["text"] for f in blocks[0]["fields"])
    assert "Manual Overrides" not in fields_text
    assert "All tracks" in fields_text


def test_decision_groups_list_names_and_manual_reason():
    decisions = [
        _decision("a2", DecisionAction.REJECT),
        _decision("a1", DecisionAction.ADVANCE, manual=True, reason="Referral"),
    ]

    blocks = build_decision_groups(_result(decisions))

    texts = [b["text"]["text"] for b in blocks if b["type"] == "section"]
    assert texts[0].startswith("🟢 *Advanced* (1)")
    assert "*Alice*" in texts[0]
    assert "_(manual: Referral)_" in texts[0]
    assert texts[1].startswith("🔴 *Rejected* (1)")
    assert "*Bob*" in texts[1]


def test_decision_groups_truncate_long_lists():
    decisions = [_decision(f"x{i}", DecisionAction.REJECT) for i in range(MAX_APPLICANTS_PER_GROUP + 3)]

    blocks = build_decision_groups(_result(decisions))

    context = [b for b in blocks if b["type"] == "context"]
    assert context[0]["elements"][0]["text"] == "_...and 3 more applicants_"


def test_full_payload_ends_with_footer():
    result = _result([_decision("a1", DecisionAction.ADVANCE)])

    blocks = build_cutoff_summary_blocks(result)

    assert blocks[0]["type"] == "header"
    assert blocks[-1] == build_footer(result)[0]
    assert "Cutoff run #7 applied by admin@example.com" in blocks[-1]["elements"][0]["text"]
