"""Pydantic schemas for admin-authored automation rules."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class TriggerType(str, Enum):
    """Events that can fire a rule; ``time`` and ``manual`` never fire on ingest."""

    COMMENT = "comment"
    KEYWORD = "keyword"
    TIME = "time"
    MANUAL = "manual"


class ActionType(str, Enum):
    SEND_DM = "send_dm"
    SEND_PUBLIC_REPLY = "send_public_reply"
    SEND_EMAIL = "send_email"
    SEND_WEBHOOK = "send_webhook"


class AutomationRule(BaseModel):
    id: str
    workspace_id: str
    agent_id: str
    name: str | None = None
    enabled: bool = True
    trigger_type: TriggerType
    trigger_words: list[str] = Field(default_factory=list)
    trigger_platforms: list[str] = Field(default_factory=list)
    action_type: ActionType
    private_reply_template: str | None = None
    public_reply_template: str | None = None
    auto_skip_replies: bool = False
    delay_seconds: int = Field(default=0, ge=0)
    webhook_url: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("trigger_words", mode="before")
    @classmethod
    def _clean_words(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, list):
            return [str(word).strip() for word in value if str(word).strip()]
        return value

    @field_validator("trigger_platforms", mode="before")
    @classmethod
    def _clean_platforms(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, list):
            return [str(p).strip().lower() for p in value if str(p).strip()]
        return value

    @field_validator("delay_seconds", mode="before")
    @classmethod
    def _default_delay(cls, value: object) -> object:
        return 0 if value is None else value

    @model_validator(mode="after")
    def _check_action_target(self) -> AutomationRule:
        if self.action_type is ActionType.SEND_WEBHOOK and not self.webhook_url:
            raise ValueError("send_webhook rules require webhook_url")
        return self


@dataclass(frozen=True)
class MatchedRule:
    """A rule selected for a message, with the keyword that triggered it."""

    rule: AutomationRule
    matched_word: str | None = None

    @property
    def rule_id(self) -> str:
        return self.rule.id

    @property
    def action_type(self) -> ActionType:
        return self.rule.action_type
