"""WhatsApp Business channel adapter."""

from __future__ import annotations

import base64
import hashlib
import hmac
from collections.abc import Mapping
from typing import Any

from ..config import ChannelSettings
from ..messages.models import InboundEvent
from ..messages.schemas import Channel, MessageType
from .base import (
    ChannelAdapter,
    from_epoch,
    require_list,
    require_mapping,
    require_str,
)

_MEDIA_LABELS = {
    "audio": "[Audio message]",
    "voice": "[Audio message]",
    "image": "[Image message]",
    "video": "[Video message]",
    "sticker": "[Sticker message]",
    "location": "[Location message]",
}


def _message_text(message: Mapping[str, Any]) -> str:
    message_type = message.get("type") or "text"
    if message_type == "text":
        return str(require_mapping(message.get("text"), "text").get("body") or "")
    if message_type == "document":
        document = message.get("document") or {}
        return f"[Document: {document.get('filename') or 'file'}]"
    if message_type in {"button", "interactive"}:
        body = message.get(message_type) or {}
        reply = body.get("button_reply") or body.get("list_reply") or {}
        return str(body.get("text") or reply.get("title") or f"[{message_type} message]")
    media = message.get(message_type)
    caption = media.get("caption") if isinstance(media, Mapping) else None
    return str(caption or _MEDIA_LABELS.get(message_type, f"[{message_type} message]"))


class WhatsAppAdapter(ChannelAdapter):
    """Signed like Twilio: base64 HMAC-SHA1 over the webhook URL plus raw body."""

    channel = Channel.WHATSAPP

    def __init__(self, settings: ChannelSettings, *, verify_signatures: bool = True) -> None:
        super().__init__(settings, verify_signatures=verify_signatures)
        self.signature_header = settings.signature_header or "X-Twilio-Signature"

    def expected_signature(self, body: bytes, secret: str, *, url: str | None = None) -> str:
        signed = (self.settings.webhook_url or url or "").encode("utf-8") + body
        digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha1).digest()
        return base64.b64encode(digest).decode("ascii")

    def parse_payload(self, payload: Mapping[str, Any]) -> list[InboundEvent]:
        events: list[InboundEvent] = []
        for entry in require_list(payload, "entry"):
            entry = require_mapping(entry, "entry[]")
            for change in require_list(entry, "changes"):
                change = require_mapping(change, "changes[]")
                if change.get("field", "messages") != "messages":
                    continue
                value = require_mapping(change.get("value"), "changes[].value")
                metadata = value.get("metadata") or {}
                account_id = metadata.get("phone_number_id")
                business_number = metadata.get("display_phone_number")
                contacts = {
                    c.get("wa_id"): c
                    for c in require_list(value, "contacts")
                    if isinstance(c, Mapping)
                }
                # Delivery/read status callbacks carry "statuses" and no messages.
                for message in require_list(value, "messages"):
                    message = require_mapping(message, "messages[]")
                    sender_id = require_str(message, "from", "messages[].from")
                    if business_number and sender_id == business_number:
                        continue
                    contact = contacts.get(sender_id) or {}
                    profile = contact.get("profile") or {}
                    events.append(
                        InboundEvent(
                            channel=self.channel,
                            account_id=str(account_id) if account_id else None,
                            external_id=require_str(message, "id", "messages[].id"),
                            conversation_id=f"wa:{sender_id}",
                            sender_id=sender_id,
                            sender_name=profile.get("name"),
                            recipient_id=str(account_id) if account_id else None,
                            type=MessageType.DM,
                            text=_message_text(message),
                            metadata={
                                "message_type": message.get("type") or "text",
                                "context_id": (message.get("context") or {}).get("id"),
                            },
                            received_at=from_epoch(message.get("timestamp")),
                        )
                    )
        return events
