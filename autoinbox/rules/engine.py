"""Rule evaluation: decide which automation rules apply to a message.

Evaluation is a pure function of the message, a snapshot of rules and the
``prior_reply`` flag computed by the caller. Nothing here touches the store.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ..messages.schemas import Message, MessageType
from .schemas import AutomationRule, MatchedRule, TriggerType

logger = logging.getLogger(__name__)


def platform_matches(rule: AutomationRule, message: Message) -> bool:
    """An empty platform list means the rule applies to every channel."""

    return not rule.trigger_platforms or message.channel.value in rule.trigger_platforms


def keyword_match(words: Iterable[str], text: str) -> tuple[bool, str | None]:
    """Case-insensitive substring match; no words means "match everything"."""

    words = [w for w in words if w]
    if not words:
        return True, None
    haystack = (text or "").lower()
    for word in words:
        if word.lower() in haystack:
            return True, word
    return False, None


def _trigger_applies(rule: AutomationRule, message: Message) -> bool:
    if rule.trigger_type is TriggerType.COMMENT:
        return message.type is MessageType.COMMENT
    if rule.trigger_type is TriggerType.KEYWORD:
        return True
    # time and manual rules are fired by other collaborators.
    return False


def _sort_key(rule: AutomationRule) -> tuple:
    return (rule.created_at, rule.id)


def evaluate(
    message: Message,
    rules: Iterable[AutomationRule],
    *,
    prior_reply: bool = False,
) -> list[MatchedRule]:
    """Return the rules matching ``message`` ordered by creation time.

    ``prior_reply`` tells whether a successful automated reply already exists
    in the message's conversation; rules with ``auto_skip_replies`` are then
    excluded.
    """

    matches: list[MatchedRule] = []
    for rule in sorted(rules, key=_sort_key):
        if not rule.enabled or rule.workspace_id != message.workspace_id:
            continue
        if message.agent_id and rule.agent_id != message.agent_id:
            continue
        if not _trigger_applies(rule, message):
            continue
        if not platform_matches(rule, message):
            continue
        matched, word = keyword_match(rule.trigger_words, message.text)
        if not matched:
            continue
        if rule.auto_skip_replies and prior_reply:
            logger.info(
                "Skipping rule: conversation already has an automated reply",
                extra={
                    "rule_id": rule.id,
                    "message_id": str(message.id),
                    "conversation_id": message.conversation_id,
                },
            )
            continue
        matches.append(MatchedRule(rule=rule, matched_word=word))
    return matches


__all__ = ["evaluate", "keyword_match", "platform_matches"]
