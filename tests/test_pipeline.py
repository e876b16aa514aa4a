import logging
import threading
import time

import pytest

from autoinbox.errors import PayloadMalformed, SignatureInvalid
from autoinbox.escalation import EscalationReason
from autoinbox.messages import MessageStatus
from conftest import (
    FakeResponder,
    FakeSender,
    encode,
    facebook_comment,
    rule,
    sign_meta,
    sign_whatsapp,
    whatsapp_text,
)


def _ingest_comment(pipeline, text="I need help", **kwargs):
    body = encode(facebook_comment(text, **kwargs))
    return pipeline.ingest("facebook", body, {"X-Hub-Signature-256": sign_meta(body)})


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_ingest_persists_once_per_external_id(harness):
    first = _ingest_comment(harness.pipeline)
    replay = _ingest_comment(harness.pipeline)

    assert (first.received, len(first.stored), first.duplicates) == (1, 1, 0)
    assert (replay.received, len(replay.stored), replay.duplicates) == (1, 0, 1)
    assert len(harness.messages) == 1
    stored = first.stored[0]
    assert stored.workspace_id == "ws-1"
    assert stored.status is MessageStatus.NEW
    assert stored.metadata["account_id"] == "PAGE1"


def test_account_maps_to_its_own_workspace(harness):
    result = _ingest_comment(harness.pipeline, page_id="PAGE2")
    assert result.stored[0].workspace_id == "ws-2"


def test_bad_signature_writes_nothing(harness):
    body = encode(whatsapp_text())
    with pytest.raises(SignatureInvalid):
        harness.pipeline.ingest("whatsapp", body, {"X-Twilio-Signature": "forged"})
    assert len(harness.messages) == 0


def test_malformed_body_writes_nothing(harness):
    body = b'{"entry": "nope"}'
    with pytest.raises(PayloadMalformed):
        harness.pipeline.ingest("facebook", body, {"X-Hub-Signature-256": sign_meta(body)})
    assert len(harness.messages) == 0


def test_unresolved_account_is_dropped(harness, caplog):
    with caplog.at_level("WARNING", logger="autoinbox.pipeline"):
        result = _ingest_comment(harness.pipeline, page_id="PAGE9")

    assert result.unresolved == 1
    assert result.stored == []
    assert len(harness.messages) == 0
    assert any("PAGE9" in r.getMessage() for r in caplog.records)


def test_unknown_channel_raises_key_error(harness):
    with pytest.raises(KeyError):
        harness.pipeline.ingest("telegram", b"{}", {})


def test_matched_rule_completes_message(harness):
    harness.rules.add(rule())
    stored = _ingest_comment(harness.pipeline).stored[0]

    outcome = harness.pipeline.process(stored)

    assert outcome.matched_rules == ["rule-help"]
    assert outcome.results[0].sent
    assert outcome.status is MessageStatus.COMPLETED
    assert outcome.escalation is None
    assert len(harness.senders["facebook"].requests) == 1


def test_processing_twice_never_resends(harness):
    harness.rules.add(rule())
    stored = _ingest_comment(harness.pipeline).stored[0]

    harness.pipeline.process(stored)
    second = harness.pipeline.process(stored)

    assert second.results[0].already_applied
    assert len(harness.senders["facebook"].requests) == 1


def test_all_matching_rules_run_independently(harness):
    harness.rules.add(rule(id="dm"))
    harness.rules.add(
        rule(
            id="public",
            action_type="send_public_reply",
            public_reply_template="Sent you a DM!",
        )
    )
    stored = _ingest_comment(harness.pipeline).stored[0]

    outcome = harness.pipeline.process(stored)

    assert sorted(r.rule_id for r in outcome.results) == ["dm", "public"]
    assert [r.action_type for r in harness.senders["facebook"].requests] == [
        "send_dm",
        "send_public_reply",
    ] or [r.action_type for r in harness.senders["facebook"].requests] == [
        "send_public_reply",
        "send_dm",
    ]
    assert outcome.status is MessageStatus.COMPLETED


def test_no_match_with_low_ai_confidence_is_queued(harness_factory):
    h = harness_factory(responder=FakeResponder(confidence=0.55, text="Maybe this helps"))
    stored = _ingest_comment(h.pipeline, "Where is my order?").stored[0]

    outcome = h.pipeline.process(stored)

    assert outcome.status is MessageStatus.QUEUED
    assert outcome.escalation.reason is EscalationReason.LOW_CONFIDENCE
    assert len(h.pipeline.escalation.list_open("ws-1")) == 1
    message = h.messages.get("ws-1", stored.id)
    assert message.ai_confidence == 0.55
    assert message.ai_response == "Maybe this helps"
    assert h.senders["facebook"].requests == []


def test_no_match_without_responder_is_queued_as_no_match(harness):
    stored = _ingest_comment(harness.pipeline, "Where is my order?").stored[0]
    outcome = harness.pipeline.process(stored)
    assert outcome.escalation.reason is EscalationReason.NO_MATCH
    assert outcome.status is MessageStatus.QUEUED


def test_failed_dispatch_escalates(harness_factory):
    h = harness_factory(senders={"facebook": FakeSender(failures=99)})
    h.rules.add(rule())
    stored = _ingest_comment(h.pipeline).stored[0]

    outcome = h.pipeline.process(stored)

    assert outcome.status is MessageStatus.QUEUED
    assert outcome.escalation.reason is EscalationReason.DISPATCH_FAILED
    assert h.sleeps == [0.0, 0.0, 0.0]
    assert h.messages.get("ws-1", stored.id).last_error


def test_low_confidence_ai_reply_is_sent_then_queued(harness_factory):
    h = harness_factory(responder=FakeResponder(confidence=0.4, text="Hello Ana"))
    h.rules.add(rule(private_reply_template="Hello {first_name}"))
    stored = _ingest_comment(h.pipeline).stored[0]

    outcome = h.pipeline.process(stored)

    assert h.senders["facebook"].requests[0].text == "Hello Ana"
    assert outcome.escalation.reason is EscalationReason.LOW_CONFIDENCE
    assert outcome.status is MessageStatus.QUEUED


def test_only_skipped_actions_are_queued(harness):
    harness.rules.add(rule(action_type="send_email"))
    stored = _ingest_comment(harness.pipeline).stored[0]

    outcome = harness.pipeline.process(stored)

    assert outcome.results[0].skipped
    assert outcome.escalation.reason is EscalationReason.NO_MATCH


def test_auto_skip_replies_after_earlier_reply(harness):
    harness.rules.add(rule(auto_skip_replies=True))
    first = _ingest_comment(harness.pipeline, comment_id="c1").stored[0]
    harness.pipeline.process(first)

    body = encode(
        {
            "object": "page",
            "entry": [
                {
                    "id": "PAGE1",
                    "changes": [
                        {
                            "field": "feed",
                            "value": {
                                "item": "comment",
                                "verb": "add",
                                "comment_id": "c2",
                                "post_id": "post1",
                                "message": "help again",
                                "from": {"id": "user-1"},
                            },
                        }
                    ],
                }
            ],
        }
    )
    second = harness.pipeline.ingest(
        "facebook", body, {"X-Hub-Signature-256": sign_meta(body)}
    ).stored[0]
    outcome = harness.pipeline.process(second)

    assert outcome.matched_rules == []
    assert len(harness.senders["facebook"].requests) == 1


def test_process_batch_isolates_failures(harness, monkeypatch):
    harness.rules.add(rule())
    good = _ingest_comment(harness.pipeline, comment_id="good").stored[0]
    bad = _ingest_comment(harness.pipeline, comment_id="bad").stored[0]
    original = harness.pipeline.process

    def _process(message):
        if message.external_id == "bad":
            raise RuntimeError("database went away")
        return original(message)

    monkeypatch.setattr(harness.pipeline, "process", _process)

    outcomes = harness.pipeline.process_batch([bad, good])

    assert [o.message_id for o in outcomes] == [good.id]


class _DmDownSender(FakeSender):
    def send(self, request):
        if request.action_type == "send_dm":
            raise ConnectionResetError("connection reset by peer")
        return super().send(request)


def test_raising_sender_fails_only_its_rule(harness_factory):
    h = harness_factory(senders={"facebook": _DmDownSender()})
    h.rules.add(rule(id="a-dm"))
    h.rules.add(
        rule(
            id="b-public",
            action_type="send_public_reply",
            public_reply_template="Sent you a DM!",
        )
    )
    stored = _ingest_comment(h.pipeline).stored[0]

    [outcome] = h.pipeline.process_batch([stored])

    by_rule = {r.rule_id: r for r in outcome.results}
    assert not by_rule["a-dm"].ok
    assert by_rule["b-public"].sent
    assert [r.action_type for r in h.senders["facebook"].requests] == ["send_public_reply"]
    assert outcome.status is MessageStatus.QUEUED
    assert outcome.escalation.reason is EscalationReason.DISPATCH_FAILED


def test_unexpected_dispatch_error_does_not_stop_other_rules(harness, monkeypatch, caplog):
    harness.rules.add(rule(id="a-dm"))
    harness.rules.add(
        rule(
            id="b-public",
            action_type="send_public_reply",
            public_reply_template="Sent you a DM!",
        )
    )
    stored = _ingest_comment(harness.pipeline).stored[0]
    original = harness.pipeline.dispatcher.dispatch

    def _dispatch(message, match):
        if match.rule_id == "a-dm":
            raise KeyError("template")
        return original(message, match)

    monkeypatch.setattr(harness.pipeline.dispatcher, "dispatch", _dispatch)
    caplog.set_level(logging.ERROR, logger="autoinbox.pipeline")

    outcome = harness.pipeline.process(stored)

    failed = next(r for r in outcome.results if r.rule_id == "a-dm")
    assert not failed.ok
    assert failed.error.startswith("KeyError")
    assert [r.action_type for r in harness.senders["facebook"].requests] == ["send_public_reply"]
    assert outcome.escalation.reason is EscalationReason.DISPATCH_FAILED
    assert any(r.getMessage() == "Rule action raised" for r in caplog.records)


def test_delayed_action_skipped_once_message_is_queued(harness, caplog):
    harness.rules.add(rule(id="slow", delay_seconds=1))
    stored = _ingest_comment(harness.pipeline).stored[0]
    harness.pipeline.process(stored)
    caplog.set_level(logging.INFO, logger="autoinbox.pipeline")

    harness.pipeline.escalation.enqueue("ws-1", stored.id, EscalationReason.MANUAL)

    assert _wait_until(
        lambda: any(
            r.getMessage() == "Delayed action skipped: message handed to a human"
            for r in caplog.records
        )
    )
    assert harness.senders["facebook"].requests == []
    assert harness.messages.get("ws-1", stored.id).status is MessageStatus.QUEUED


def test_delayed_rule_fires_later_without_blocking(harness):
    harness.rules.add(rule(id="slow", delay_seconds=1))
    delayed = _ingest_comment(harness.pipeline, comment_id="m1").stored[0]

    started = time.monotonic()
    outcome = harness.pipeline.process(delayed)
    assert time.monotonic() - started < 0.5
    assert outcome.scheduled == 1
    assert outcome.status is MessageStatus.NEW
    assert harness.senders["facebook"].requests == []

    assert _wait_until(
        lambda: harness.messages.get("ws-1", delayed.id).status is MessageStatus.COMPLETED
    )
    assert len(harness.senders["facebook"].requests) == 1


def test_disabling_rule_cancels_pending_action(harness):
    harness.rules.add(rule(id="slow", delay_seconds=30))
    stored = _ingest_comment(harness.pipeline).stored[0]
    harness.pipeline.process(stored)

    harness.rules.set_enabled("slow", False)
    cancelled = harness.pipeline.on_rule_disabled("ws-1", "slow")

    assert cancelled == 1
    assert harness.pipeline.scheduler.pending() == []
    message = harness.messages.get("ws-1", stored.id)
    assert message.status is MessageStatus.QUEUED
    assert harness.senders["facebook"].requests == []


def test_rule_disabled_before_delayed_fire_is_not_sent(harness):
    harness.rules.add(rule(id="slow", delay_seconds=1))
    stored = _ingest_comment(harness.pipeline).stored[0]
    harness.pipeline.process(stored)
    harness.rules.set_enabled("slow", False)

    assert _wait_until(lambda: harness.pipeline.scheduler.pending() == [])
    assert _wait_until(
        lambda: harness.messages.get("ws-1", stored.id).status is MessageStatus.QUEUED
    )
    assert harness.senders["facebook"].requests == []


def test_deleted_message_cancels_its_actions(harness):
    harness.rules.add(rule(id="slow", delay_seconds=30))
    stored = _ingest_comment(harness.pipeline).stored[0]
    harness.pipeline.process(stored)

    assert harness.pipeline.on_message_deleted(stored.id) == 1
    assert harness.pipeline.scheduler.pending() == []


def test_whatsapp_message_flows_end_to_end(harness):
    harness.rules.add(rule(trigger_words=["hola"], private_reply_template="¡Hola!"))
    body = encode(whatsapp_text("Hola, quiero info"))
    result = harness.pipeline.ingest(
        "whatsapp", body, {"X-Twilio-Signature": sign_whatsapp(body)}
    )

    outcome = harness.pipeline.process(result.stored[0])

    assert outcome.status is MessageStatus.COMPLETED
    request = harness.senders["whatsapp"].requests[0]
    assert request.account_id == "PHONE1"
    assert request.recipient_id == "15559990000"
    assert request.comment_id is None


def test_concurrent_delivery_processing_sends_once(harness):
    harness.rules.add(rule())
    stored = _ingest_comment(harness.pipeline).stored[0]
    barrier = threading.Barrier(4)

    def _worker():
        barrier.wait()
        harness.pipeline.process(stored)

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(harness.senders["facebook"].requests) == 1
