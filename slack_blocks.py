"""
Slack Block Kit builders for phase cutoff notifications.
"""

from typing import Any, Dict, List

from review_models import CutoffResult, DecisionAction, PhaseDecision

MAX_APPLICANTS_PER_GROUP = 15

PHASE_TITLES = {
    "application": "Application Review",
    "interview_round1": "Interview Round 1",
    "interview_round2": "Interview Round 2",
}


def build_cutoff_summary_blocks(result: CutoffResult) -> List[Dict[str, Any]]:
    """
    Build complete Slack Block Kit payload for an applied cutoff.

    Args:
        result: CutoffResult returned by the cutoff engine

    Returns:
        List of Slack blocks
    """
    blocks = []

    blocks.extend(build_status_header(result))
    blocks.append({"type": "divider"})
    blocks.extend(build_summary_stats(result))
    blocks.append({"type": "divider"})

    if result.decisions:
        blocks.extend(build_decision_groups(result))

    blocks.extend(build_footer(result))
    return blocks


def build_status_header(result: CutoffResult) -> List[Dict[str, Any]]:
    """Header block with lock state and phase title."""
    emoji = "🔒" if result.finalized else "✂️"
    phase_title = PHASE_TITLES.get(result.phase.value, result.phase.value)
    title = f"{phase_title} Cutoff ({len(result.decisions)} applicants)"

    return [{
        "type": "header",
        "text": {
            "type": "plain_text",
            "text": f"{emoji} {title}",
            "emoji": True
        }
    }]


def build_summary_stats(result: CutoffResult) -> List[Dict[str, Any]]:
    manual = sum(1 for decision in result.decisions if decision.manual)
    fields = [
        {"type": "mrkdwn", "text": f"*Cycle:*\n{result.cycle_id}"},
        {"type": "mrkdwn", "text": f"*Track:*\n{result.track.value if result.track else 'All tracks'}"},
        {"type": "mrkdwn", "text": f"*Advanced:*\n{len(result.advanced)}"},
        {"type": "mrkdwn", "text": f"*Rejected:*\n{len(result.rejected)}"},
    ]
    if manual > 0:
        fields.append({"type": "mrkdwn", "text": f"*Manual Overrides:*\n{manual}"})
    fields.append({"type": "mrkdwn", "text": f"*Phase Locked:*\n{'Yes' if result.finalized else 'No'}"})

    return [{
        "type": "section",
        "fields": fields
    }]


def build_decision_groups(result: CutoffResult) -> List[Dict[str, Any]]:
    """Advanced applicants first, then rejected."""
    blocks = []
    outcome_configs = [
        (DecisionAction.ADVANCE, "🟢", "Advanced"),
        (DecisionAction.REJECT, "🔴", "Rejected"),
    ]
    for action, emoji, title in outcome_configs:
        group = [decision for decision in result.decisions if decision.action == action]
        if group:
            blocks.extend(build_decision_group_section(title, emoji, group, result.applicant_names))
    return blocks


def build_decision_group_section(
    title: str,
    emoji: str,
    decisions: List[PhaseDecision],
    applicant_names: Dict[str, str],
) -> List[Dict[str, Any]]:
    count = len(decisions)
    lines = [f"{emoji} *{title}* ({count})"]
    for decision in decisions[:MAX_APPLICANTS_PER_GROUP]:
        lines.append(build_decision_line(decision, applicant_names))

    blocks = [{
        "type": "section",
        "text": {"type": "mrkdwn", "text": "\n".join(lines)}
    }]

    if count > MAX_APPLICANTS_PER_GROUP:
        remaining = count - MAX_APPLICANTS_PER_GROUP
        blocks.append({
            "type": "context",
            "elements": [{
                "type": "mrkdwn",
                "text": f"_...and {remaining} more applicants_"
            }]
        })

    blocks.append({"type": "divider"})
    return blocks


def build_decision_line(decision: PhaseDecision, applicant_names: Dict[str, str]) -> str:
    name = applicant_names.get(decision.application_id) or decision.application_id
    line = f"• *{name}* — {decision.previous_stage.value} → {decision.new_stage.value}"
    if decision.manual:
        line += " _(manual"
        line += f": {decision.reason})_" if decision.reason else ")_"
    return line


def build_footer(result: CutoffResult) -> List[Dict[str, Any]]:
    text = f"Cutoff run #{result.run_id}"
    if result.performed_by:
        text += f" applied by {result.performed_by}"
    return [{
        "type": "context",
        "elements": [{
            "type": "mrkdwn",
            "text": text
        }]
    }]
