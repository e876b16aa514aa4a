from dataclasses import dataclass, field

import pytest

from autoinbox.dispatch import ActionDispatcher, SendResult, backoff_delays
from autoinbox.messages import (
    ApplicationOutcome,
    Channel,
    InMemoryMessageRepository,
    Message,
    MessageType,
    RuleApplicationKey,
)
from autoinbox.rules import AutomationRule, MatchedRule
from conftest import FakeResponder, FakeSender, make_settings, rule


@dataclass
class FakeWebhookClient:
    results: list[SendResult] = field(default_factory=list)
    posts: list[tuple[str, dict]] = field(default_factory=list)

    def post(self, url: str, payload: dict) -> SendResult:
        self.posts.append((url, payload))
        if self.results:
            return self.results.pop(0)
        return SendResult(success=True, message_id="hook-1")


def _setup(*, responder=None, sender=None, webhook=None, **settings_overrides):
    settings = make_settings(
        backoff_base_seconds=0.5, backoff_cap_seconds=4.0, **settings_overrides
    )
    repo = InMemoryMessageRepository()
    sender = sender or FakeSender()
    sleeps: list[float] = []
    dispatcher = ActionDispatcher(
        repo,
        settings,
        senders={"facebook": sender},
        responder=responder,
        webhook_client=webhook or FakeWebhookClient(),
        sleep=sleeps.append,
    )
    message, _ = repo.upsert(
        Message(
            workspace_id="ws-1",
            channel=Channel.FACEBOOK,
            external_id="post1_c1",
            conversation_id="comment:post1:user-1",
            sender_id="user-1",
            sender_name="Ana",
            text="I need help",
            type=MessageType.COMMENT,
            metadata={"account_id": "PAGE1"},
        )
    )
    return dispatcher, repo, sender, sleeps, message


def _match(**overrides) -> MatchedRule:
    return MatchedRule(rule=AutomationRule.model_validate(rule(**overrides)))


def _outcome(repo, message, match):
    key = RuleApplicationKey(
        message_id=message.id, rule_id=match.rule_id, action_type=match.action_type.value
    )
    return repo.get_application("ws-1", key).outcome


def test_backoff_delays_double_and_cap():
    assert backoff_delays(3, 0.5, 4.0) == [0.5, 1.0, 2.0]
    assert backoff_delays(5, 0.5, 4.0) == [0.5, 1.0, 2.0, 4.0, 4.0]
    assert backoff_delays(0, 0.5, 4.0) == []


def test_private_reply_to_comment_is_sent_once():
    dispatcher, repo, sender, _, message = _setup()
    match = _match()

    result = dispatcher.dispatch(message, match)
    replay = dispatcher.dispatch(message, match)

    assert result.ok and result.sent and not result.used_ai
    assert result.external_message_id == "out-1"
    assert replay.already_applied and not replay.sent
    assert len(sender.requests) == 1
    request = sender.requests[0]
    assert request.text == "We're here!"
    assert request.recipient_id == "user-1"
    assert request.comment_id == "post1_c1"
    assert request.account_id == "PAGE1"
    assert _outcome(repo, message, match) is ApplicationOutcome.SENT


def test_transient_failures_are_retried_with_backoff():
    dispatcher, _, sender, sleeps, message = _setup(sender=FakeSender(failures=2))

    result = dispatcher.dispatch(message, _match())

    assert result.ok and result.sent
    assert len(sender.requests) == 3
    assert sleeps == [0.5, 1.0]


def test_exhausted_retries_record_failure():
    dispatcher, repo, sender, sleeps, message = _setup(sender=FakeSender(failures=99))
    match = _match()

    result = dispatcher.dispatch(message, match)

    assert not result.ok and not result.sent
    assert "after 4 attempts" in result.error
    assert len(sender.requests) == 4
    assert sleeps == [0.5, 1.0, 2.0]
    assert "HTTP 503" in repo.get("ws-1", message.id).last_error
    assert _outcome(repo, message, match) is ApplicationOutcome.FAILED


class _RaisingSender(FakeSender):
    def send(self, request):
        self.requests.append(request)
        raise ConnectionResetError("connection reset by peer")


def test_raising_sender_is_retried_then_recorded_as_failure():
    dispatcher, repo, sender, sleeps, message = _setup(sender=_RaisingSender())
    match = _match()

    result = dispatcher.dispatch(message, match)

    assert not result.ok and not result.sent
    assert "ConnectionResetError" in result.error
    assert len(sender.requests) == 4
    assert sleeps == [0.5, 1.0, 2.0]
    assert "connection reset" in repo.get("ws-1", message.id).last_error
    assert _outcome(repo, message, match) is ApplicationOutcome.FAILED


def test_placeholder_template_uses_ai_response():
    responder = FakeResponder(confidence=0.876, text="Hi Ana, we can help!")
    dispatcher, repo, sender, _, message = _setup(responder=responder)

    result = dispatcher.dispatch(message, _match(private_reply_template="Hi {name}, {answer}"))

    assert result.used_ai
    assert result.confidence == 0.88
    assert sender.requests[0].text == "Hi Ana, we can help!"
    assert responder.calls[0].template == "Hi {name}, {answer}"
    stored = repo.get("ws-1", message.id)
    assert stored.ai_response == "Hi Ana, we can help!"
    assert stored.ai_confidence == 0.88


def test_ai_timeout_falls_back_to_template():
    dispatcher, repo, sender, _, message = _setup(responder=FakeResponder(fail=True))

    result = dispatcher.dispatch(message, _match(private_reply_template="Hi {name}"))

    assert result.ok and result.sent
    assert not result.used_ai
    assert result.confidence is None
    assert sender.requests[0].text == "Hi {name}"
    assert repo.get("ws-1", message.id).ai_response is None


def test_plain_template_never_calls_ai():
    responder = FakeResponder()
    dispatcher, _, _, _, message = _setup(responder=responder)
    dispatcher.dispatch(message, _match())
    assert responder.calls == []


def test_public_reply_targets_the_comment():
    dispatcher, _, sender, _, message = _setup()
    result = dispatcher.dispatch(
        message,
        _match(action_type="send_public_reply", public_reply_template="Check your inbox!"),
    )
    assert result.sent
    assert sender.requests[0].action_type == "send_public_reply"
    assert sender.requests[0].comment_id == "post1_c1"


@pytest.mark.parametrize(
    "overrides",
    [
        {"action_type": "send_email"},
        {"private_reply_template": None},
    ],
)
def test_unexecutable_actions_are_skipped(overrides):
    dispatcher, repo, sender, _, message = _setup()
    match = _match(**overrides)

    result = dispatcher.dispatch(message, match)

    assert result.ok and result.skipped and not result.sent
    assert sender.requests == []
    assert _outcome(repo, message, match) is ApplicationOutcome.SKIPPED


def test_public_reply_to_direct_message_is_skipped():
    dispatcher, repo, sender, _, _ = _setup()
    dm, _ = repo.upsert(
        Message(
            workspace_id="ws-1",
            channel=Channel.FACEBOOK,
            external_id="m_1",
            conversation_id="dm:user-1",
            sender_id="user-1",
            text="help",
            type=MessageType.DM,
        )
    )
    result = dispatcher.dispatch(
        dm, _match(action_type="send_public_reply", public_reply_template="Thanks!")
    )
    assert result.skipped
    assert sender.requests == []


def test_missing_channel_sender_is_a_failure():
    dispatcher, repo, _, _, _ = _setup()
    wa, _ = repo.upsert(
        Message(
            workspace_id="ws-1",
            channel=Channel.WHATSAPP,
            external_id="wamid.1",
            conversation_id="wa:1555",
            sender_id="1555",
            text="help",
            type=MessageType.DM,
        )
    )
    result = dispatcher.dispatch(wa, _match())
    assert not result.ok
    assert "No outbound sender" in result.error


def test_webhook_action_posts_envelope_with_retries():
    webhook = FakeWebhookClient(results=[SendResult(success=False, error="HTTP 500: boom")])
    dispatcher, _, _, sleeps, message = _setup(webhook=webhook)

    result = dispatcher.dispatch(
        message,
        _match(action_type="send_webhook", webhook_url="https://crm.example.com/hook"),
    )

    assert result.ok and result.sent
    assert sleeps == [0.5]
    url, payload = webhook.posts[-1]
    assert url == "https://crm.example.com/hook"
    assert payload["rule_id"] == "rule-help"
    assert payload["event_type"] == "comment_received"
    assert payload["data"]["message_text"] == "I need help"
    assert payload["data"]["author_id"] == "user-1"
