import logging
from typing import Any, Dict, List, Optional

import requests

from review_config import SLACK_RECRUITMENT_BOT_TOKEN, get_slack_channel
from review_models import CutoffResult
from slack_blocks import PHASE_TITLES, build_cutoff_summary_blocks

slack_logger = logging.getLogger("slack")

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
SLACK_TIMEOUT_SECONDS = 10


class SlackClient:
    """Posts messages to the recruitment channel through the Slack Web API."""

    def __init__(self, *, bot_token: Optional[str], channel: Optional[str]) -> None:
        self.bot_token = bot_token
        self.channel = channel

    def post_message(self, text: str, blocks: Optional[List[Dict[str, Any]]] = None) -> bool:
        if not self.bot_token or not self.channel:
            slack_logger.warning(
                "slack_recruitment_not_configured",
                extra={"has_token": bool(self.bot_token), "channel": self.channel},
            )
            return False

        payload: Dict[str, Any] = {"channel": self.channel, "text": text}
        if blocks:
            payload["blocks"] = blocks

        try:
            response = requests.post(
                SLACK_POST_MESSAGE_URL,
                headers={"Authorization": f"Bearer {self.bot_token}"},
                json=payload,
                timeout=SLACK_TIMEOUT_SECONDS,
            )
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            slack_logger.error("slack_post_failed", extra={"channel": self.channel, "error": str(exc)})
            return False

        if not data.get("ok"):
            slack_logger.error("slack_api_error", extra={"channel": self.channel, "error": data.get("error")})
            return False
        return True


class CutoffNotifier:
    def __init__(self, *, client: Optional[SlackClient] = None) -> None:
        self.client = client

    def notify_cutoff(self, result: CutoffResult) -> bool:
        if not self.client:
            slack_logger.warning("slack_recruitment_client_missing", extra={"run_id": result.run_id})
            return False

        phase_title = PHASE_TITLES.get(result.phase.value, result.phase.value)
        fallback_text = (
            f"{phase_title} cutoff applied for {result.cycle_id}: "
            f"{len(result.advanced)} advanced, {len(result.rejected)} rejected"
        )
        return self.client.post_message(fallback_text, blocks=build_cutoff_summary_blocks(result))


def build_cutoff_notifier() -> CutoffNotifier:
    """Notifier wired to the recruitment bot settings from the environment."""
    if not SLACK_RECRUITMENT_BOT_TOKEN:
        return CutoffNotifier(client=None)
    return CutoffNotifier(client=SlackClient(bot_token=SLACK_RECRUITMENT_BOT_TOKEN, channel=get_slack_channel()))
