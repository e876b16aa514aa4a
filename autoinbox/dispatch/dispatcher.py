"""Execute the actions of matched automation rules."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

from ..config import Settings
from ..errors import ActionDispatchFailed, AIResponderTimeout, RuleConfigInvalid
from ..messages.repository import MessageRepository
from ..messages.schemas import (
    ApplicationOutcome,
    Message,
    MessageType,
    RuleApplication,
    RuleApplicationKey,
)
from ..metrics import ACTION_RESULTS
from ..rules.schemas import ActionType, AutomationRule, MatchedRule
from .responder import AIContext, AIResponder, has_placeholders
from .senders import AutomationWebhookClient, OutboundRequest, OutboundSender, SendResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one rule action on one message."""

    rule_id: str
    action_type: str
    ok: bool
    sent: bool = False
    skipped: bool = False
    already_applied: bool = False
    used_ai: bool = False
    confidence: float | None = None
    external_message_id: str | None = None
    error: str | None = None


def backoff_delays(retries: int, base: float, cap: float) -> list[float]:
    """Waits between attempts: ``base * 2**n`` capped at ``cap``."""

    return [min(cap, base * (2**attempt)) for attempt in range(retries)]


class ActionDispatcher:
    """Run a matched rule's action exactly once per message.

    The rule application key is recorded before anything is sent, so a
    redelivered or concurrently processed message never triggers the same
    action twice. Send failures are retried with exponential backoff; when
    retries run out the failure is stored on the message and reported to the
    caller as escalation input.
    """

    def __init__(
        self,
        messages: MessageRepository,
        settings: Settings,
        *,
        senders: Mapping[str, OutboundSender] | None = None,
        responder: AIResponder | None = None,
        webhook_client: AutomationWebhookClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.messages = messages
        self.settings = settings
        self.senders = dict(senders or {})
        self.responder = responder
        self.webhook_client = webhook_client or AutomationWebhookClient(
            settings.automation_webhook_secret, timeout=settings.send_timeout_seconds
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API

    def dispatch(self, message: Message, match: MatchedRule) -> ActionResult:
        rule = match.rule
        key = RuleApplicationKey(
            message_id=message.id, rule_id=rule.id, action_type=rule.action_type.value
        )
        recorded = self.messages.try_record_application(
            RuleApplication(
                **key.model_dump(),
                workspace_id=message.workspace_id,
                conversation_id=message.conversation_id,
            )
        )
        log_extra = {
            "message_id": str(message.id),
            "workspace_id": message.workspace_id,
            "rule_id": rule.id,
            "action_type": rule.action_type.value,
        }
        if not recorded:
            logger.info("Action already applied; skipping", extra=log_extra)
            ACTION_RESULTS.labels(rule.action_type.value, "duplicate").inc()
            return ActionResult(
                rule_id=rule.id,
                action_type=rule.action_type.value,
                ok=True,
                already_applied=True,
            )

        try:
            result = self._execute(message, rule)
        except RuleConfigInvalid as exc:
            logger.warning("Rule action skipped: %s", exc, extra=log_extra)
            result = ActionResult(
                rule_id=rule.id,
                action_type=rule.action_type.value,
                ok=True,
                skipped=True,
                error=str(exc),
            )
        except ActionDispatchFailed as exc:
            logger.error("Rule action failed: %s", exc, extra=log_extra)
            self.messages.record_failure(message.workspace_id, message.id, str(exc))
            result = ActionResult(
                rule_id=rule.id,
                action_type=rule.action_type.value,
                ok=False,
                error=str(exc),
            )
        except Exception:
            self.messages.finish_application(
                message.workspace_id, key, ApplicationOutcome.FAILED
            )
            raise

        if result.sent:
            outcome = ApplicationOutcome.SENT
        elif result.skipped:
            outcome = ApplicationOutcome.SKIPPED
        else:
            outcome = ApplicationOutcome.FAILED
        self.messages.finish_application(message.workspace_id, key, outcome)
        ACTION_RESULTS.labels(rule.action_type.value, outcome.value).inc()
        logger.info(
            "Rule action finished",
            extra={**log_extra, "outcome": outcome.value, "used_ai": result.used_ai},
        )
        return result

    # ------------------------------------------------------------------
    # Action handlers

    def _execute(self, message: Message, rule: AutomationRule) -> ActionResult:
        if rule.action_type in (ActionType.SEND_DM, ActionType.SEND_PUBLIC_REPLY):
            return self._reply(message, rule)
        if rule.action_type is ActionType.SEND_WEBHOOK:
            return self._webhook(message, rule)
        if rule.action_type is ActionType.SEND_EMAIL:
            raise RuleConfigInvalid("send_email has no delivery backend configured")
        raise RuleConfigInvalid(f"Unsupported action type {rule.action_type!r}")

    def _reply(self, message: Message, rule: AutomationRule) -> ActionResult:
        public = rule.action_type is ActionType.SEND_PUBLIC_REPLY
        template = rule.public_reply_template if public else rule.private_reply_template
        if not template:
            raise RuleConfigInvalid(f"Rule {rule.id} has no reply template")
        if public and message.type is not MessageType.COMMENT:
            raise RuleConfigInvalid("Public replies only apply to comments")

        sender = self.senders.get(message.channel.value)
        if sender is None:
            raise ActionDispatchFailed(
                f"No outbound sender configured for {message.channel.value}"
            )

        text, confidence, used_ai = self._render(message, template)
        request = OutboundRequest(
            channel=message.channel.value,
            action_type=rule.action_type.value,
            recipient_id=message.sender_id,
            text=text,
            account_id=message.metadata.get("account_id"),
            comment_id=message.external_id if message.type is MessageType.COMMENT else None,
        )
        sent = self._with_retries(lambda: sender.send(request))
        return ActionResult(
            rule_id=rule.id,
            action_type=rule.action_type.value,
            ok=True,
            sent=True,
            used_ai=used_ai,
            confidence=confidence,
            external_message_id=sent.message_id,
        )

    def _render(self, message: Message, template: str) -> tuple[str, float | None, bool]:
        """Return ``(text, confidence, used_ai)`` for a reply template.

        Templates without placeholders are sent verbatim. Placeholder
        templates go to the AI responder; if it fails or times out the raw
        template is sent and no confidence is recorded.
        """

        if not has_placeholders(template) or self.responder is None:
            return template, None, False
        context = AIContext(
            message_text=message.text,
            channel=message.channel.value,
            message_type=message.type.value,
            sender_name=message.sender_name,
            template=template,
        )
        try:
            response = self.responder.generate(context)
        except AIResponderTimeout as exc:
            logger.warning(
                "AI personalisation unavailable, sending template verbatim: %s",
                exc,
                extra={"message_id": str(message.id)},
            )
            return template, None, False
        confidence = round(response.confidence, 2)
        self.messages.set_ai_response(message.workspace_id, message.id, response.text, confidence)
        return response.text, confidence, True

    def _webhook(self, message: Message, rule: AutomationRule) -> ActionResult:
        if not rule.webhook_url:
            raise RuleConfigInvalid(f"Rule {rule.id} has no webhook_url")
        payload = {
            "rule_id": rule.id,
            "workspace_id": message.workspace_id,
            "agent_id": rule.agent_id,
            "event_type": f"{message.type.value}_received",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": {
                "message_id": str(message.id),
                "external_id": message.external_id,
                "message_text": message.text,
                "author_id": message.sender_id,
                "author_name": message.sender_name,
                "platform": message.channel.value,
                "conversation_id": message.conversation_id,
            },
        }
        url = rule.webhook_url
        sent = self._with_retries(lambda: self.webhook_client.post(url, payload))
        return ActionResult(
            rule_id=rule.id,
            action_type=rule.action_type.value,
            ok=True,
            sent=True,
            external_message_id=sent.message_id,
        )

    # ------------------------------------------------------------------
    # Retry policy

    def _with_retries(self, attempt: Callable[[], SendResult]) -> SendResult:
        delays = backoff_delays(
            self.settings.max_retries,
            self.settings.backoff_base_seconds,
            self.settings.backoff_cap_seconds,
        )
        last_error: str | None = None
        for attempt_no in range(len(delays) + 1):
            try:
                result = attempt()
            except Exception as exc:
                # A raising sender counts as a failed attempt.
                result = SendResult(success=False, error=f"{type(exc).__name__}: {exc}")
            if result.success:
                return result
            last_error = result.error
            if attempt_no < len(delays):
                logger.info(
                    "Send attempt %s failed, retrying in %.2fs: %s",
                    attempt_no + 1,
                    delays[attempt_no],
                    last_error,
                )
                self._sleep(delays[attempt_no])
        raise ActionDispatchFailed(
            f"Send failed after {len(delays) + 1} attempts: {last_error}",
            attempts=len(delays) + 1,
        )
