import hashlib
import hmac
import json

import requests

from autoinbox.dispatch.senders import (
    AutomationWebhookClient,
    MetaGraphSender,
    OutboundRequest,
    WhatsAppCloudSender,
)


class _Response:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self.ok = status_code < 400
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _Session:
    def __init__(self, response=None, error=None):
        self.response = response or _Response(payload={"message_id": "mid.1"})
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def _request(**overrides):
    values = dict(
        channel="facebook",
        action_type="send_dm",
        recipient_id="user-1",
        text="Hi!",
        account_id="PAGE1",
        comment_id="post1_c1",
    )
    values.update(overrides)
    return OutboundRequest(**values)


def test_private_reply_targets_the_comment():
    session = _Session()
    sender = MetaGraphSender("page-token", session=session)

    result = sender.send(_request())

    assert result.success and result.message_id == "mid.1"
    url, kwargs = session.calls[0]
    assert url == "https://graph.facebook.com/v18.0/me/messages"
    assert kwargs["params"] == {"access_token": "page-token"}
    assert kwargs["json"]["recipient"] == {"comment_id": "post1_c1"}
    assert kwargs["json"]["message"] == {"text": "Hi!"}


def test_dm_without_comment_uses_recipient_id():
    session = _Session()
    MetaGraphSender("t", session=session).send(_request(comment_id=None))
    assert session.calls[0][1]["json"]["recipient"] == {"id": "user-1"}


def test_public_reply_edges():
    session = _Session(_Response(payload={"id": "c9"}))
    facebook = MetaGraphSender("t", session=session)
    instagram = MetaGraphSender("t", api_version="v19.0", public_reply_edge="replies", session=session)

    assert facebook.send(_request(action_type="send_public_reply")).message_id == "c9"
    instagram.send(_request(channel="instagram", action_type="send_public_reply", comment_id="ig1"))
    assert facebook.send(_request(action_type="send_public_reply", comment_id=None)).success is False

    assert [url for url, _ in session.calls] == [
        "https://graph.facebook.com/v18.0/post1_c1/comments",
        "https://graph.facebook.com/v19.0/ig1/replies",
    ]


def test_whatsapp_payload():
    session = _Session(_Response(payload={"messages": [{"id": "wamid.out"}]}))
    sender = WhatsAppCloudSender("wa-token", session=session)

    result = sender.send(
        _request(channel="whatsapp", account_id="PHONE1", recipient_id="15559990000", comment_id=None)
    )

    assert result.message_id == "wamid.out"
    url, kwargs = session.calls[0]
    assert url == "https://graph.facebook.com/v18.0/PHONE1/messages"
    assert kwargs["headers"] == {"Authorization": "Bearer wa-token"}
    assert kwargs["json"]["to"] == "15559990000"
    assert kwargs["json"]["text"] == {"body": "Hi!"}
    assert not sender.send(_request(channel="whatsapp", account_id=None)).success


def test_http_errors_become_failed_results():
    sender = MetaGraphSender("t", session=_Session(_Response(status_code=400, text="bad token")))
    result = sender.send(_request())
    assert not result.success
    assert result.error == "HTTP 400: bad token"


def test_network_errors_become_failed_results():
    sender = MetaGraphSender("t", session=_Session(error=requests.ConnectionError("reset")))
    result = sender.send(_request())
    assert not result.success
    assert result.error.startswith("ConnectionError")


def test_automation_webhook_is_signed():
    session = _Session(_Response(payload=None))
    client = AutomationWebhookClient("hook-secret", session=session)

    result = client.post("https://example.com/hook", {"rule_id": "r1", "text": "hi"})

    assert result.success and result.message_id is None
    url, kwargs = session.calls[0]
    assert url == "https://example.com/hook"
    body = kwargs["data"]
    assert json.loads(body) == {"rule_id": "r1", "text": "hi"}
    expected = hmac.new(b"hook-secret", body, hashlib.sha256).hexdigest()
    assert kwargs["headers"]["X-Automation-Signature"] == expected


def test_automation_webhook_without_secret_is_unsigned():
    session = _Session()
    AutomationWebhookClient(None, session=session).post("https://example.com/hook", {})
    assert "X-Automation-Signature" not in session.calls[0][1]["headers"]
