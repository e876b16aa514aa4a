"""Website contact-form channel adapter."""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from ..errors import PayloadMalformed
from ..messages.models import InboundEvent
from ..messages.schemas import Channel, MessageType
from .base import ChannelAdapter, from_epoch

_ID_FIELDS = ("id", "submission_id")
_EMAIL_FIELDS = ("email", "sender_email")
_NAME_FIELDS = ("name", "sender_name")
_MESSAGE_FIELDS = ("message", "body", "content", "text")
_FORM_FIELDS = ("form_id", "site_id", "source")
_CONSUMED = {
    *_ID_FIELDS,
    *_EMAIL_FIELDS,
    *_NAME_FIELDS,
    *_MESSAGE_FIELDS,
    *_FORM_FIELDS,
    "timestamp",
    "agent_id",
}


def _first(payload: Mapping[str, Any], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = payload.get(name)
        if isinstance(value, (str, int, float)) and str(value).strip():
            return str(value).strip()
    return None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str) and not value.replace(".", "", 1).isdigit():
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.now(timezone.utc)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    millis = isinstance(value, (int, float)) and value > 10**11
    return from_epoch(value, millis=millis)


class WebsiteFormAdapter(ChannelAdapter):
    """Flat JSON submissions signed with a hex HMAC-SHA256 of the raw body."""

    channel = Channel.WEBSITE_FORM
    signature_header = "X-Signature"

    def expected_signature(self, body: bytes, secret: str, *, url: str | None = None) -> str:
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    def parse_payload(self, payload: Mapping[str, Any]) -> list[InboundEvent]:
        email = _first(payload, _EMAIL_FIELDS)
        if not email:
            raise PayloadMalformed("Form submission is missing the sender email")
        text = _first(payload, _MESSAGE_FIELDS)
        if not text:
            raise PayloadMalformed("Form submission is missing the message body")

        submission_id = _first(payload, _ID_FIELDS)
        if not submission_id:
            # Redelivery of an identical body must map to the same message.
            canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
            submission_id = hashlib.sha1(canonical.encode("utf-8")).hexdigest()

        extras = {
            key: value
            for key, value in payload.items()
            if key not in _CONSUMED and isinstance(value, (str, int, float, bool))
        }
        form_id = _first(payload, _FORM_FIELDS)
        if form_id:
            extras["form_id"] = form_id
        return [
            InboundEvent(
                channel=self.channel,
                account_id=form_id,
                external_id=submission_id,
                conversation_id=f"form:{email.lower()}",
                sender_id=email.lower(),
                sender_name=_first(payload, _NAME_FIELDS) or "Anonymous",
                agent_id=_first(payload, ("agent_id",)),
                type=MessageType.FORM,
                text=text,
                metadata=extras,
                received_at=_parse_timestamp(payload.get("timestamp")),
            )
        ]
