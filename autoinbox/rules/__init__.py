"""Automation rules and the rule evaluation engine."""

from .engine import evaluate, keyword_match, platform_matches
from .repository import InMemoryRuleRepository, PostgresRuleRepository, RuleRepository
from .schemas import ActionType, AutomationRule, MatchedRule, TriggerType

__all__ = [
    "ActionType",
    "AutomationRule",
    "InMemoryRuleRepository",
    "MatchedRule",
    "PostgresRuleRepository",
    "RuleRepository",
    "TriggerType",
    "evaluate",
    "keyword_match",
    "platform_matches",
]
