# review_config.py
"""
Configuration for the phase review engine.
"""

import os
from typing import List, Optional

REVIEW_DB_URL = os.getenv("REVIEW_DB_URL", "sqlite:///./phase_reviews.db")

# Reject unknown category keys on review writes instead of dropping them
STRICT_CATEGORY_VALIDATION = os.getenv("STRICT_CATEGORY_VALIDATION", "false").lower() == "true"

# Comma-separated reviewer emails who must complete every phase before it can be finalized
REQUIRED_REVIEWERS_RAW = os.getenv("REQUIRED_REVIEWERS", "")

CUTOFF_NOTIFICATIONS_ENABLED = os.getenv("CUTOFF_NOTIFICATIONS_ENABLED", "true").lower() == "true"
SLACK_RECRUITMENT_BOT_TOKEN = os.getenv("SLACK_RECRUITMENT_BOT_TOKEN")
SLACK_RECRUITMENT_CHANNEL_ID = os.getenv("SLACK_RECRUITMENT_CHANNEL_ID")

# Validation
_invalid_reviewers = [
    email.strip()
    for email in REQUIRED_REVIEWERS_RAW.split(",")
    if email.strip() and "@" not in email
]
if _invalid_reviewers:
    raise ValueError(f"REQUIRED_REVIEWERS must be email addresses, got {_invalid_reviewers}")


def get_required_reviewers() -> List[str]:
    """Reviewer roster used to flag stragglers who have not reviewed yet."""
    return sorted(
        {email.strip().lower() for email in REQUIRED_REVIEWERS_RAW.split(",") if email.strip()}
    )


def is_strict_category_validation() -> bool:
    return STRICT_CATEGORY_VALIDATION


def get_slack_channel() -> Optional[str]:
    return SLACK_RECRUITMENT_CHANNEL_ID
