"""AI responder contract and the OpenAI-backed implementation.

Only the responder's text and self-reported confidence are consumed here; the
model itself is an external collaborator.
"""

from __future__ import annotations

import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import OpenAI

from ..errors import AIResponderTimeout
from ..metrics import AI_RESPONSE_LATENCY

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{[^{}]+\}")


def has_placeholders(template: str | None) -> bool:
    """Templates with ``{...}`` markers are personalised by the AI responder."""

    return bool(template and PLACEHOLDER_RE.search(template))


@dataclass
class AIContext:
    """What the responder sees about the message it is answering."""

    message_text: str
    channel: str
    message_type: str
    sender_name: str | None = None
    template: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AIResponse:
    text: str
    confidence: float


class AIResponder(Protocol):
    def generate(self, context: AIContext) -> AIResponse: ...


_SYSTEM_PROMPT = (
    "You reply to customer messages on behalf of a business inbox. "
    "Return a JSON object with keys 'reply' (the message to send) and "
    "'confidence' (a number from 0 to 1 saying how sure you are the reply "
    "fully answers the customer without human help)."
)


def _clamp(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, number))


class OpenAIResponder:
    """Ask an OpenAI chat model for a reply and a confidence score."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        timeout: float = 5.0,
        client: Any | None = None,
    ) -> None:
        if client is None:
            client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self._client = client
        self._model = model

    def _prompt(self, context: AIContext) -> str:
        lines = [
            f"Channel: {context.channel} ({context.message_type})",
            f"Customer: {context.sender_name or 'unknown'}",
            f"Message:\n{context.message_text}",
        ]
        if context.template:
            lines.append(
                "Reply template (fill in every {placeholder} and keep its tone):\n"
                f"{context.template}"
            )
        else:
            lines.append("Draft a short, helpful reply for a human agent to review.")
        return "\n\n".join(lines)

    def generate(self, context: AIContext) -> AIResponse:
        completion = self._client.chat.completions.create(
            model=self._model,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": self._prompt(context)},
            ],
        )
        content = completion.choices[0].message.content or "{}"
        data = json.loads(content)
        reply = str(data.get("reply") or "").strip()
        if not reply:
            raise ValueError("AI responder returned an empty reply")
        return AIResponse(text=reply, confidence=_clamp(data.get("confidence")))


class BoundedResponder:
    """Run an :class:`AIResponder` with a hard deadline.

    Any failure, including the deadline passing, surfaces as
    :class:`AIResponderTimeout` so callers have a single fallback path.
    """

    def __init__(self, responder: AIResponder, *, timeout: float, max_workers: int = 4) -> None:
        self.responder = responder
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ai-responder"
        )

    def generate(self, context: AIContext) -> AIResponse:
        start = time.perf_counter()
        future = self._executor.submit(self.responder.generate, context)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise AIResponderTimeout(
                f"AI responder exceeded {self.timeout:.1f}s"
            ) from exc
        except Exception as exc:
            logger.warning("AI responder call failed: %s", exc)
            raise AIResponderTimeout(f"AI responder failed: {exc}") from exc
        finally:
            AI_RESPONSE_LATENCY.observe(time.perf_counter() - start)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


__all__ = [
    "AIContext",
    "AIResponder",
    "AIResponse",
    "BoundedResponder",
    "OpenAIResponder",
    "PLACEHOLDER_RE",
    "has_placeholders",
]
