"""Instagram Business channel adapter (media comments and DMs)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..messages.models import InboundEvent
from ..messages.schemas import Channel
from .base import require_list, require_mapping, require_str
from .meta import MetaAdapter


class InstagramAdapter(MetaAdapter):
    channel = Channel.INSTAGRAM

    def parse_payload(self, payload: Mapping[str, Any]) -> list[InboundEvent]:
        events: list[InboundEvent] = []
        for entry in self.entries(payload):
            account_id = str(entry["id"]) if entry.get("id") else None
            events.extend(self.parse_messaging_entries(entry))
            for change in require_list(entry, "changes"):
                change = require_mapping(change, "changes[]")
                field = change.get("field")
                value = require_mapping(change.get("value"), "changes[].value")
                if field == "comments":
                    author = require_mapping(value.get("from"), "value.from")
                    if account_id and str(author.get("id")) == account_id:
                        continue
                    media = value.get("media") or {}
                    media_id = media.get("id") if isinstance(media, Mapping) else None
                    events.append(
                        self.comment_event(
                            account_id=account_id,
                            comment_id=require_str(value, "id", "comment id"),
                            post_id=str(media_id or value.get("media_id") or "") or None,
                            author=author,
                            text=str(value.get("text") or ""),
                            created=value.get("timestamp"),
                            metadata={"media_product_type": media.get("media_product_type")}
                            if isinstance(media, Mapping) and media.get("media_product_type")
                            else {},
                        )
                    )
                elif field == "messages":
                    parsed = self.parse_messaging(entry, value)
                    if parsed is not None:
                        events.append(parsed)
        return events
