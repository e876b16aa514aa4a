"""Facebook Page channel adapter (Messenger DMs and Page feed comments)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..messages.models import InboundEvent
from ..messages.schemas import Channel
from .base import require_list, require_mapping, require_str
from .meta import MetaAdapter


class FacebookAdapter(MetaAdapter):
    channel = Channel.FACEBOOK

    def parse_payload(self, payload: Mapping[str, Any]) -> list[InboundEvent]:
        events: list[InboundEvent] = []
        for entry in self.entries(payload):
            page_id = str(entry["id"]) if entry.get("id") else None
            events.extend(self.parse_messaging_entries(entry))
            for change in require_list(entry, "changes"):
                change = require_mapping(change, "changes[]")
                if change.get("field") != "feed":
                    continue
                value = require_mapping(change.get("value"), "changes[].value")
                if value.get("item") != "comment" or value.get("verb", "add") != "add":
                    continue
                author = require_mapping(value.get("from"), "value.from")
                # Replies posted by the Page itself come back through the feed.
                if page_id and str(author.get("id")) == page_id:
                    continue
                comment_id = str(value.get("comment_id") or require_str(value, "id", "comment_id"))
                events.append(
                    self.comment_event(
                        account_id=page_id,
                        comment_id=comment_id,
                        post_id=str(value["post_id"]) if value.get("post_id") else None,
                        author=author,
                        text=str(value.get("message") or ""),
                        created=value.get("created_time"),
                        metadata={"parent_id": value.get("parent_id")}
                        if value.get("parent_id")
                        else {},
                    )
                )
        return events
