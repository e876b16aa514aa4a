"""Ingestion pipeline: Parse -> Persist -> Evaluate -> Dispatch -> (maybe) Enqueue.

:class:`InboxPipeline` is the single place where the components meet. The
webhook router calls :meth:`InboxPipeline.ingest` inside the request, which
verifies, parses and persists a delivery, and then hands the newly stored
messages to :meth:`InboxPipeline.process` outside the request.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from uuid import UUID

from .channels import ChannelAdapter, build_adapter
from .config import Settings
from .dispatch.dispatcher import ActionDispatcher, ActionResult
from .dispatch.responder import AIContext, AIResponder, BoundedResponder
from .dispatch.scheduler import DelayedActionScheduler
from .errors import (
    AIResponderTimeout,
    InboxAutomationError,
    SignatureInvalid,
    StatusConflict,
    WorkspaceUnresolved,
)
from .escalation.manager import EscalationManager
from .escalation.schemas import EscalationQueueEntry, EscalationReason
from .messages.models import InboundEvent
from .messages.repository import MessageRepository
from .messages.schemas import ApplicationOutcome, Message, MessageStatus
from .metrics import RULE_MATCHES, WEBHOOK_EVENTS
from .resolvers import WorkspaceResolver
from .rules.engine import evaluate
from .rules.repository import RuleRepository
from .rules.schemas import MatchedRule

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """What happened to the events of one webhook delivery."""

    received: int = 0
    stored: list[Message] = field(default_factory=list)
    duplicates: int = 0
    unresolved: int = 0


@dataclass
class ProcessOutcome:
    message_id: UUID
    matched_rules: list[str] = field(default_factory=list)
    results: list[ActionResult] = field(default_factory=list)
    scheduled: int = 0
    status: MessageStatus | None = None
    escalation: EscalationQueueEntry | None = None


class InboxPipeline:
    def __init__(
        self,
        settings: Settings,
        *,
        messages: MessageRepository,
        rules: RuleRepository,
        dispatcher: ActionDispatcher,
        escalation: EscalationManager,
        resolver: WorkspaceResolver,
        scheduler: DelayedActionScheduler | None = None,
        responder: AIResponder | None = None,
    ) -> None:
        self.settings = settings
        self.messages = messages
        self.rules = rules
        self.dispatcher = dispatcher
        self.escalation = escalation
        self.resolver = resolver
        self.scheduler = scheduler or DelayedActionScheduler()
        self.responder = responder
        self._adapters: dict[str, ChannelAdapter] = {}

    def adapter(self, channel: str) -> ChannelAdapter:
        """Adapter for the route's channel; raises ``KeyError`` when unknown."""

        key = channel.lower()
        if key not in self._adapters:
            self._adapters[key] = build_adapter(key, self.settings)
        return self._adapters[key]

    # ------------------------------------------------------------------
    # Request-time work

    def handshake(self, channel: str, params: Mapping[str, str]) -> str:
        return self.adapter(channel).verify_handshake(params)

    def ingest(
        self,
        channel: str,
        body: bytes,
        headers: Mapping[str, str],
        *,
        url: str | None = None,
    ) -> IngestResult:
        """Verify, parse and persist one delivery.

        Raises :class:`SignatureInvalid` or :class:`PayloadMalformed` before
        anything is written. Events whose account maps to no workspace are
        logged and dropped.
        """

        adapter = self.adapter(channel)
        if not adapter.verify_signature(body, headers, url=url):
            WEBHOOK_EVENTS.labels(adapter.channel_name, "rejected").inc()
            raise SignatureInvalid(f"Invalid {adapter.channel_name} webhook signature")
        try:
            events = adapter.parse_incoming(body)
        except InboxAutomationError:
            WEBHOOK_EVENTS.labels(adapter.channel_name, "malformed").inc()
            raise

        result = IngestResult(received=len(events))
        bound: list[tuple[InboundEvent, str]] = []
        for event in events:
            try:
                bound.append((event, self._resolve_workspace(event)))
            except WorkspaceUnresolved as exc:
                result.unresolved += 1
                WEBHOOK_EVENTS.labels(adapter.channel_name, "unresolved").inc()
                logger.warning(
                    str(exc),
                    extra={"channel": exc.channel, "account_id": exc.account_id},
                )

        for event, workspace_id in bound:
            stored, was_new = self.messages.upsert(event.to_message(workspace_id))
            outcome = "stored" if was_new else "duplicate"
            WEBHOOK_EVENTS.labels(adapter.channel_name, outcome).inc()
            logger.info(
                "Webhook event %s",
                outcome,
                extra={
                    "channel": adapter.channel_name,
                    "workspace_id": workspace_id,
                    "message_id": str(stored.id),
                    "external_id": stored.external_id,
                },
            )
            if was_new:
                result.stored.append(stored)
            else:
                result.duplicates += 1
        return result

    def _resolve_workspace(self, event: InboundEvent) -> str:
        workspace_id = self.resolver.resolve(event.channel.value, event.account_id)
        if not workspace_id:
            raise WorkspaceUnresolved(event.channel.value, event.account_id)
        return workspace_id

    # ------------------------------------------------------------------
    # Post-acknowledgement work

    def process_batch(self, messages: Iterable[Message]) -> list[ProcessOutcome]:
        """Process messages independently; one failure never stops the others."""

        outcomes = []
        for message in messages:
            try:
                outcomes.append(self.process(message))
            except Exception:
                logger.exception(
                    "Automation failed for message",
                    extra={"message_id": str(message.id), "workspace_id": message.workspace_id},
                )
        return outcomes

    def process(self, message: Message) -> ProcessOutcome:
        """Evaluate rules for a newly stored message and act on the matches."""

        outcome = ProcessOutcome(message_id=message.id)
        rules = self.rules.list_enabled(message.workspace_id, message.agent_id)
        prior_reply = self.messages.has_successful_reply(
            message.workspace_id, message.conversation_id, exclude_message_id=message.id
        )
        matches = evaluate(message, rules, prior_reply=prior_reply)
        outcome.matched_rules = [m.rule_id for m in matches]
        for match in matches:
            RULE_MATCHES.labels(message.channel.value, match.rule.trigger_type.value).inc()

        if not matches:
            outcome.escalation = self._escalate_unmatched(message)
            outcome.status = self._current_status(message)
            return outcome

        for match in matches:
            if match.rule.delay_seconds > 0:
                if self._schedule(message, match):
                    outcome.scheduled += 1
            else:
                outcome.results.append(self._dispatch(message, match))

        outcome.escalation = self._settle(message, outcome.results)
        outcome.status = self._current_status(message)
        return outcome

    def _escalate_unmatched(self, message: Message) -> EscalationQueueEntry | None:
        reason = EscalationReason.NO_MATCH
        if self.responder is not None:
            try:
                draft = self.responder.generate(
                    AIContext(
                        message_text=message.text,
                        channel=message.channel.value,
                        message_type=message.type.value,
                        sender_name=message.sender_name,
                    )
                )
            except AIResponderTimeout as exc:
                logger.warning(
                    "No AI draft for unmatched message: %s",
                    exc,
                    extra={"message_id": str(message.id)},
                )
            else:
                stored = self.messages.set_ai_response(
                    message.workspace_id, message.id, draft.text, draft.confidence
                )
                if (
                    stored.ai_confidence is not None
                    and stored.ai_confidence < self.settings.confidence_threshold
                ):
                    reason = EscalationReason.LOW_CONFIDENCE
        return self._enqueue(message, reason)

    def _schedule(self, message: Message, match: MatchedRule) -> bool:
        rule = match.rule
        workspace_id, message_id, rule_id = message.workspace_id, message.id, rule.id

        def _fire() -> None:
            self._run_delayed(workspace_id, message_id, rule_id)

        scheduled = self.scheduler.schedule(message_id, rule_id, rule.delay_seconds, _fire)
        if scheduled:
            logger.info(
                "Delayed rule action scheduled",
                extra={
                    "message_id": str(message_id),
                    "rule_id": rule_id,
                    "delay_seconds": rule.delay_seconds,
                },
            )
        return scheduled

    def _run_delayed(self, workspace_id: str, message_id: UUID, rule_id: str) -> None:
        message = self.messages.get(workspace_id, message_id)
        rule = self.rules.get(workspace_id, rule_id)
        if message is None or rule is None or not rule.enabled:
            logger.info(
                "Delayed action dropped: message or rule no longer active",
                extra={"message_id": str(message_id), "rule_id": rule_id},
            )
            if message is not None:
                self._settle(message, [])
            return
        if message.status is not MessageStatus.NEW:
            logger.info(
                "Delayed action skipped: message handed to a human",
                extra={
                    "message_id": str(message_id),
                    "rule_id": rule_id,
                    "status": message.status.value,
                },
            )
            return
        result = self._dispatch(message, MatchedRule(rule=rule))
        self._settle(message, [result])

    def _dispatch(self, message: Message, match: MatchedRule) -> ActionResult:
        """Dispatch one rule; an unexpected error fails only that rule."""

        try:
            return self.dispatcher.dispatch(message, match)
        except Exception as exc:
            logger.exception(
                "Rule action raised",
                extra={"message_id": str(message.id), "rule_id": match.rule_id},
            )
            return ActionResult(
                rule_id=match.rule_id,
                action_type=match.rule.action_type.value,
                ok=False,
                error=f"{type(exc).__name__}: {exc}",
            )

    def _settle(
        self, message: Message, results: list[ActionResult]
    ) -> EscalationQueueEntry | None:
        """Decide between ``completed`` and the queue once actions have run.

        A message completes only when every action succeeded, something was
        actually sent, no AI reply fell below the confidence threshold and no
        delayed action is still pending.
        """

        threshold = self.settings.confidence_threshold
        if any(not r.ok for r in results):
            return self._enqueue(message, EscalationReason.DISPATCH_FAILED)
        if any(r.confidence is not None and r.confidence < threshold for r in results):
            return self._enqueue(message, EscalationReason.LOW_CONFIDENCE)
        if self.scheduler.pending_for(message.id):
            return None

        current = self.messages.get(message.workspace_id, message.id)
        if current is None or current.status is not MessageStatus.NEW:
            return None
        applications = self.messages.list_applications(message.workspace_id, message.id)
        if any(app.outcome is ApplicationOutcome.PENDING for app in applications):
            # Another worker is still executing an action; it settles the message.
            return None
        sent_before = any(app.outcome is ApplicationOutcome.SENT for app in applications)
        if not any(r.sent for r in results) and not sent_before:
            return self._enqueue(message, EscalationReason.NO_MATCH)
        try:
            self.messages.update_status(
                message.workspace_id, message.id, MessageStatus.NEW, MessageStatus.COMPLETED
            )
        except StatusConflict:
            logger.info(
                "Message status changed while settling",
                extra={"message_id": str(message.id)},
            )
        return None

    def _enqueue(
        self, message: Message, reason: EscalationReason
    ) -> EscalationQueueEntry | None:
        try:
            return self.escalation.enqueue(message.workspace_id, message.id, reason)
        except StatusConflict as exc:
            logger.warning(
                "Message not queued: %s", exc, extra={"message_id": str(message.id)}
            )
            return None

    def _current_status(self, message: Message) -> MessageStatus | None:
        current = self.messages.get(message.workspace_id, message.id)
        return current.status if current else None

    # ------------------------------------------------------------------
    # Cancellation hooks

    def on_rule_disabled(self, workspace_id: str, rule_id: str) -> int:
        """Cancel pending delayed actions of a disabled rule.

        Messages that were only waiting on those actions are settled again so
        they do not stay ``new`` forever.
        """

        cancelled = self.scheduler.cancel_for_rule(rule_id)
        for message_id, _ in cancelled:
            message = self.messages.get(workspace_id, message_id)
            if message is not None:
                self._settle(message, [])
        return len(cancelled)

    def on_message_deleted(self, message_id: UUID) -> int:
        return len(self.scheduler.cancel_for_message(message_id))

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        if isinstance(self.responder, BoundedResponder):
            self.responder.shutdown()
