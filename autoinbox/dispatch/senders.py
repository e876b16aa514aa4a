"""Outbound delivery to channel APIs and automation webhooks."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import requests

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"


@dataclass(frozen=True)
class OutboundRequest:
    """A reply to deliver on the channel a message arrived on."""

    channel: str
    action_type: str
    recipient_id: str
    text: str
    account_id: str | None = None
    comment_id: str | None = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class OutboundSender(Protocol):
    def send(self, request: OutboundRequest) -> SendResult: ...


def _result_from_response(response: requests.Response) -> SendResult:
    if not response.ok:
        return SendResult(
            success=False, error=f"HTTP {response.status_code}: {response.text[:300]}"
        )
    try:
        data: dict[str, Any] = response.json()
    except ValueError:
        data = {}
    message_id = data.get("message_id") or data.get("id")
    if not message_id and data.get("messages"):
        message_id = (data["messages"][0] or {}).get("id")
    return SendResult(success=True, message_id=str(message_id) if message_id else None)


class _HttpSender:
    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def _post(self, url: str, **kwargs: Any) -> SendResult:
        try:
            response = self.session.post(url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            return SendResult(success=False, error=f"{type(exc).__name__}: {exc}")
        return _result_from_response(response)


class MetaGraphSender(_HttpSender):
    """Messenger / Instagram delivery through the Graph API.

    DMs answering a comment use the private-reply form
    (``recipient.comment_id``); public replies post on the comment itself.
    """

    def __init__(
        self,
        access_token: str,
        *,
        api_version: str = "v18.0",
        public_reply_edge: str = "comments",
        session: requests.Session | None = None,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(session=session, timeout=timeout)
        self.access_token = access_token
        self.base_url = f"{GRAPH_BASE_URL}/{api_version}"
        self.public_reply_edge = public_reply_edge

    def send(self, request: OutboundRequest) -> SendResult:
        params = {"access_token": self.access_token}
        if request.action_type == "send_public_reply":
            if not request.comment_id:
                return SendResult(success=False, error="Public reply requires a comment id")
            return self._post(
                f"{self.base_url}/{request.comment_id}/{self.public_reply_edge}",
                params=params,
                json={"message": request.text},
            )
        recipient = (
            {"comment_id": request.comment_id}
            if request.comment_id
            else {"id": request.recipient_id}
        )
        return self._post(
            f"{self.base_url}/me/messages",
            params=params,
            json={
                "recipient": recipient,
                "message": {"text": request.text},
                "messaging_type": "RESPONSE",
            },
        )


class WhatsAppCloudSender(_HttpSender):
    """Text replies through the WhatsApp Business Cloud API."""

    def __init__(
        self,
        access_token: str,
        *,
        api_version: str = "v18.0",
        session: requests.Session | None = None,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(session=session, timeout=timeout)
        self.access_token = access_token
        self.base_url = f"{GRAPH_BASE_URL}/{api_version}"

    def send(self, request: OutboundRequest) -> SendResult:
        if request.action_type == "send_public_reply":
            return SendResult(success=False, error="WhatsApp has no public replies")
        if not request.account_id:
            return SendResult(success=False, error="Missing phone_number_id for WhatsApp reply")
        return self._post(
            f"{self.base_url}/{request.account_id}/messages",
            headers={"Authorization": f"Bearer {self.access_token}"},
            json={
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": request.recipient_id,
                "type": "text",
                "text": {"body": request.text},
            },
        )


class AutomationWebhookClient(_HttpSender):
    """POST rule events to customer-configured webhook URLs.

    Bodies are signed with ``X-Automation-Signature``: hex HMAC-SHA256 of the
    JSON body under the shared automation secret.
    """

    signature_header = "X-Automation-Signature"

    def __init__(
        self,
        secret: str | None,
        *,
        session: requests.Session | None = None,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(session=session, timeout=timeout)
        self.secret = secret

    def sign(self, body: bytes) -> str:
        return hmac.new((self.secret or "").encode("utf-8"), body, hashlib.sha256).hexdigest()

    def post(self, url: str, payload: dict[str, Any]) -> SendResult:
        body = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers[self.signature_header] = self.sign(body)
        result = self._post(url, data=body, headers=headers)
        logger.info(
            "Automation webhook delivered" if result.success else "Automation webhook failed",
            extra={"url": url, "error": result.error},
        )
        return result


__all__ = [
    "AutomationWebhookClient",
    "MetaGraphSender",
    "OutboundRequest",
    "OutboundSender",
    "SendResult",
    "WhatsAppCloudSender",
]
