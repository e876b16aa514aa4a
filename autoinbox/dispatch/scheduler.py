"""Cancellable timers for rule actions with a configured delay."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from uuid import UUID

logger = logging.getLogger(__name__)

ActionKey = tuple[UUID, str]
Action = Callable[[], None]


class DelayedActionScheduler:
    """Run delayed actions on :class:`threading.Timer` threads.

    Each pending action is keyed by ``(message_id, rule_id)``. Timers are
    daemon threads, so waiting on one never blocks ingestion of other
    messages. Cancelling only affects actions that have not fired yet.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: dict[ActionKey, threading.Timer] = {}

    def schedule(self, message_id: UUID, rule_id: str, delay: float, fn: Action) -> bool:
        """Schedule ``fn`` after ``delay`` seconds; ``False`` if already pending."""

        key = (message_id, rule_id)

        def _fire() -> None:
            with self._lock:
                if self._timers.get(key) is not timer:
                    return
                del self._timers[key]
            try:
                fn()
            except Exception:
                logger.exception(
                    "Delayed action failed",
                    extra={"message_id": str(message_id), "rule_id": rule_id},
                )

        timer = threading.Timer(delay, _fire)
        timer.daemon = True
        with self._lock:
            if key in self._timers:
                return False
            self._timers[key] = timer
        timer.start()
        return True

    def _cancel_where(self, predicate: Callable[[ActionKey], bool]) -> list[ActionKey]:
        with self._lock:
            keys = [key for key in self._timers if predicate(key)]
            timers = [self._timers.pop(key) for key in keys]
        for timer in timers:
            timer.cancel()
        return keys

    def cancel_for_message(self, message_id: UUID) -> list[ActionKey]:
        cancelled = self._cancel_where(lambda key: key[0] == message_id)
        if cancelled:
            logger.info(
                "Cancelled delayed actions for message",
                extra={"message_id": str(message_id), "cancelled": len(cancelled)},
            )
        return cancelled

    def cancel_for_rule(self, rule_id: str) -> list[ActionKey]:
        cancelled = self._cancel_where(lambda key: key[1] == rule_id)
        if cancelled:
            logger.info(
                "Cancelled delayed actions for disabled rule",
                extra={"rule_id": rule_id, "cancelled": len(cancelled)},
            )
        return cancelled

    def pending_for(self, message_id: UUID) -> int:
        with self._lock:
            return sum(1 for key in self._timers if key[0] == message_id)

    def pending(self) -> list[ActionKey]:
        with self._lock:
            return list(self._timers)

    def shutdown(self) -> None:
        self._cancel_where(lambda key: True)
