"""Shared handling for Meta Graph webhooks (Facebook Pages and Instagram)."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping
from typing import Any

from ..messages.models import InboundEvent
from ..messages.schemas import MessageType
from .base import ChannelAdapter, from_epoch, require_list, require_mapping, require_str


class MetaAdapter(ChannelAdapter):
    """Meta signs the raw body with the app secret: ``sha256=<hex digest>``."""

    signature_header = "X-Hub-Signature-256"

    def expected_signature(self, body: bytes, secret: str, *, url: str | None = None) -> str:
        digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return f"sha256={digest}"

    def entries(self, payload: Mapping[str, Any]) -> list[Mapping[str, Any]]:
        return [require_mapping(entry, "entry[]") for entry in require_list(payload, "entry")]

    def parse_messaging(
        self, entry: Mapping[str, Any], event: Mapping[str, Any]
    ) -> InboundEvent | None:
        """Canonicalize one Messenger-platform event into a DM, if it is one.

        Read receipts, delivery reports and echoes of our own outbound
        messages are not inbound messages and return ``None``.
        """

        event = require_mapping(event, "messaging[]")
        if "read" in event or "delivery" in event:
            return None
        message = event.get("message")
        postback = event.get("postback")
        if message is None and postback is None:
            return None

        sender = require_mapping(event.get("sender"), "sender")
        sender_id = require_str(sender, "id", "sender.id")
        recipient = event.get("recipient") or {}
        account_id = str(entry.get("id") or recipient.get("id") or "") or None

        if message is not None:
            message = require_mapping(message, "message")
            if message.get("is_echo"):
                return None
            external_id = require_str(message, "mid", "message.mid")
            text = message.get("text") or ""
            if not text and message.get("attachments"):
                kinds = {
                    str(att.get("type", "attachment"))
                    for att in message["attachments"]
                    if isinstance(att, Mapping)
                }
                text = f"[{', '.join(sorted(kinds)) or 'attachment'}]"
            extras: dict[str, Any] = {}
        else:
            postback = require_mapping(postback, "postback")
            external_id = str(
                postback.get("mid") or f"postback:{sender_id}:{event.get('timestamp', '')}"
            )
            text = postback.get("title") or postback.get("payload") or ""
            extras = {"postback_payload": postback.get("payload")}

        return InboundEvent(
            channel=self.channel,
            account_id=account_id,
            external_id=external_id,
            conversation_id=f"dm:{sender_id}",
            sender_id=sender_id,
            sender_name=sender.get("name") or sender.get("username"),
            recipient_id=str(recipient.get("id")) if recipient.get("id") else None,
            type=MessageType.DM,
            text=str(text),
            metadata=extras,
            received_at=from_epoch(event.get("timestamp"), millis=True),
        )

    def parse_messaging_entries(self, entry: Mapping[str, Any]) -> list[InboundEvent]:
        events = []
        for raw in require_list(entry, "messaging"):
            parsed = self.parse_messaging(entry, raw)
            if parsed is not None:
                events.append(parsed)
        return events

    def comment_event(
        self,
        *,
        account_id: str | None,
        comment_id: str,
        post_id: str | None,
        author: Mapping[str, Any],
        text: str,
        created: Any,
        metadata: dict[str, Any] | None = None,
    ) -> InboundEvent:
        sender_id = require_str(author, "id", "from.id")
        return InboundEvent(
            channel=self.channel,
            account_id=account_id,
            external_id=comment_id,
            conversation_id=f"comment:{post_id or comment_id}:{sender_id}",
            sender_id=sender_id,
            sender_name=author.get("name") or author.get("username"),
            type=MessageType.COMMENT,
            text=text,
            post_id=post_id,
            metadata=metadata or {},
            received_at=from_epoch(created),
        )
