from __future__ import annotations

import logging
from typing import Optional

from review_config import CUTOFF_NOTIFICATIONS_ENABLED
from review_models import CutoffResult
from slack_service import CutoffNotifier

logger = logging.getLogger(__name__)


def dispatch_cutoff_notification(notifier: Optional[CutoffNotifier], result: CutoffResult) -> bool:
    """Send the cutoff summary to Slack. Runs after commit; failures never undo the cutoff."""
    if not CUTOFF_NOTIFICATIONS_ENABLED:
        logger.info("cutoff_notification_disabled", extra=result.to_logging_dict())
        return False
    if notifier is None:
        logger.warning("cutoff_notifier_missing", extra=result.to_logging_dict())
        return False

    try:
        return bool(notifier.notify_cutoff(result))
    except Exception as exc:  # pragma: no cover - logging path
        logger.error("cutoff_slack_notification_failed", exc_info=True, extra={"error": str(exc)})
        return False
