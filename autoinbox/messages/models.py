"""Domain models shared by channel adapters and the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .schemas import Channel, Message, MessageType


@dataclass
class InboundEvent:
    """Canonical event produced by a channel adapter, before workspace binding."""

    channel: Channel
    account_id: str | None
    external_id: str
    conversation_id: str
    sender_id: str
    type: MessageType
    text: str
    sender_name: str | None = None
    recipient_id: str | None = None
    agent_id: str | None = None
    post_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self, workspace_id: str, agent_id: str | None = None) -> Message:
        metadata = dict(self.metadata)
        if self.account_id:
            metadata.setdefault("account_id", self.account_id)
        if self.recipient_id:
            metadata.setdefault("recipient_id", self.recipient_id)
        return Message(
            workspace_id=workspace_id,
            agent_id=agent_id or self.agent_id,
            channel=self.channel,
            external_id=self.external_id,
            conversation_id=self.conversation_id,
            sender_id=self.sender_id,
            sender_name=self.sender_name,
            text=self.text,
            post_id=self.post_id,
            type=self.type,
            metadata=metadata,
            created_at=self.received_at,
            updated_at=self.received_at,
        )
