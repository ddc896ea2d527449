from unittest.mock import MagicMock

import notification_jobs
import slack_service
from review_models import CutoffResult, ReviewPhase
from slack_service import CutoffNotifier, SlackClient


def _result():
    return CutoffResult(
        run_id=1,
        cycle_id="cycle-1",
        phase=ReviewPhase.INTERVIEW_ROUND1,
        advanced=["a1"],
        rejected=["a2", "a3"],
        finalized=True,
    )


def test_dispatch_calls_notifier():
    notifier = MagicMock()
    notifier.notify_cutoff.return_value = True
    result = _result()

    assert notification_jobs.dispatch_cutoff_notification(notifier, result) is True
    notifier.notify_cutoff.assert_called_once_with(result)


def test_dispatch_swallows_notifier_failure():
    notifier = MagicMock()
    notifier.notify_cutoff.side_effect = RuntimeError("boom")

    assert notification_jobs.dispatch_cutoff_notification(notifier, _result()) is False


def test_dispatch_without_notifier_or_when_disabled(monkeypatch):
    assert notification_jobs.dispatch_cutoff_notification(None, _result()) is False

    notifier = MagicMock()
    monkeypatch.setattr(notification_jobs, "CUTOFF_NOTIFICATIONS_ENABLED", False)
    assert notification_jobs.dispatch_cutoff_notification(notifier, _result()) is False
    notifier.notify_cutoff.assert_not_called()


def test_notifier_posts_blocks_with_fallback_text():
    client = MagicMock()
    client.post_message.return_value = True
    notifier = CutoffNotifier(client=client)

    assert notifier.notify_cutoff(_result()) is True

    args, kwargs = client.post_message.call_args
    assert args[0] == "Interview Round 1 cutoff applied for cycle-1: 1 advanced, 2 rejected"
    assert kwargs["blocks"][0]["type"] == "header"


def test_notifier_without_client_skips():
    assert CutoffNotifier(client=None).notify_cutoff(_result()) is False


def test_slack_client_posts_to_chat_post_message(monkeypatch):
    response = MagicMock()
    response.json.return_value = {"ok": True}
    post = MagicMock(return_value=response)
    monkeypatch.setattr(slack_service.requests, "post", post)

    client = SlackClient(bot_token="xoxb-test", channel="C123")

    assert client.post_message("hello", blocks=[{"type": "divider"}]) is True
    url = post.call_args.args[0]
    assert url == "https://slack.com/api/chat.postMessage"
    assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer xoxb-test"


def test_slack_client_reports_api_error(monkeypatch):
    response = MagicMock()
    response.json.return_value = {"ok": False, "error": "channel_not_found"}
    monkeypatch.setattr(slack_service.requests, "post", MagicMock(return_value=response))

    client = SlackClient(bot_token="xoxb-test", channel="C123")

    assert client.post_message("hello") is False


def test_slack_client_without_token_or_channel():
    assert SlackClient(bot_token=None, channel="C123").post_message("hi") is False
    assert SlackClient(bot_token="xoxb", channel=None).post_message("hi") is False


def test_build_cutoff_notifier_without_token(monkeypatch):
    monkeypatch.setattr(slack_service, "SLACK_RECRUITMENT_BOT_TOKEN", None)

    assert slack_service.build_cutoff_notifier().client is None


def test_slack_client_reports_network_failure(monkeypatch):
    post = MagicMock(side_effect=slack_service.requests.ConnectionError("down"))
    monkeypatch.setattr(slack_service.requests, "post", post)

    client = SlackClient(bot_token="xoxb-test", channel="C123")

    assert client.post_message("hello") is False
    assert post.call_args.kwargs["json"] == {"channel": "C123", "text": "hello"}
