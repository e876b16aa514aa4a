"""Base abstractions for inbound channel adapters."""

from __future__ import annotations

import hmac
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from ..config import ChannelSettings
from ..errors import PayloadMalformed, SignatureInvalid
from ..messages.models import InboundEvent
from ..messages.schemas import Channel

logger = logging.getLogger(__name__)


def header_value(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup that works for plain dicts too."""

    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def require_list(container: Mapping[str, Any], key: str) -> list[Any]:
    """Return ``container[key]`` as a list; absent keys yield an empty list."""

    value = container.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise PayloadMalformed(f"'{key}' must be a list")
    return value


def require_mapping(value: Any, label: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise PayloadMalformed(f"'{label}' must be an object")
    return value


def require_str(container: Mapping[str, Any], key: str, label: str | None = None) -> str:
    value = container.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise PayloadMalformed(f"Missing required field '{label or key}'")
    if isinstance(value, (dict, list)):
        raise PayloadMalformed(f"Field '{label or key}' must be a scalar")
    return str(value)


def from_epoch(value: Any, *, millis: bool = False) -> datetime:
    """Convert a channel timestamp to an aware datetime, defaulting to now."""

    if value in (None, ""):
        return datetime.now(timezone.utc)
    try:
        seconds = float(value) / (1000 if millis else 1)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


class ChannelAdapter(ABC):
    """Verification and canonicalization for one inbound channel.

    Subclasses declare the :class:`Channel` they serve and the header carrying
    the webhook signature, and implement :meth:`expected_signature` and
    :meth:`parse_payload`. The adapter for a request is chosen from the route,
    never from the payload.
    """

    #: Channel served by this adapter; also its route segment.
    channel: Channel
    #: Header carrying the webhook signature.
    signature_header: str

    def __init__(self, settings: ChannelSettings, *, verify_signatures: bool = True) -> None:
        self.settings = settings
        self.verify_signatures = verify_signatures

    @property
    def channel_name(self) -> str:
        return self.channel.value

    # Authenticity ---------------------------------------------------------------
    @abstractmethod
    def expected_signature(self, body: bytes, secret: str, *, url: str | None = None) -> str:
        """Compute the signature header value expected for ``body``."""

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        *,
        url: str | None = None,
    ) -> bool:
        """Return ``True`` when the request carries a valid signature.

        A channel without a configured secret rejects every request unless
        signature checks are disabled for local development.
        """

        if not self.verify_signatures:
            return True
        secret = self.settings.signing_secret
        if not secret:
            logger.warning(
                "Rejecting webhook: no signing secret configured",
                extra={"channel": self.channel_name},
            )
            return False
        received = header_value(headers, self.signature_header)
        if not received:
            return False
        expected = self.expected_signature(body, secret, url=url)
        return hmac.compare_digest(received.strip().encode(), expected.encode())

    def verify_handshake(self, params: Mapping[str, str]) -> str:
        """Answer a subscription challenge, returning the echoed challenge.

        Raises :class:`SignatureInvalid` when the mode, token or challenge is
        wrong or missing.
        """

        token = self.settings.verify_token
        if params.get("hub.mode") != "subscribe":
            raise SignatureInvalid("Unsupported handshake mode")
        challenge = params.get("hub.challenge")
        received = params.get("hub.verify_token") or ""
        if not token or not challenge:
            raise SignatureInvalid("Handshake not configured or challenge missing")
        if not hmac.compare_digest(received.encode(), token.encode()):
            raise SignatureInvalid("Verify token mismatch")
        return challenge

    # Parsing --------------------------------------------------------------------
    def parse_incoming(self, body: bytes) -> list[InboundEvent]:
        """Decode ``body`` into canonical events.

        The whole delivery is parsed before anything is returned so that a
        malformed event never leaves a partial batch behind. Deliveries that
        only contain non-message events yield an empty list.
        """

        try:
            payload = json.loads(body.decode("utf-8")) if body else None
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PayloadMalformed(f"Invalid JSON payload: {exc}") from exc
        if not isinstance(payload, dict):
            raise PayloadMalformed("Webhook payload must be a JSON object")
        try:
            return list(self.parse_payload(payload))
        except PayloadMalformed:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise PayloadMalformed(
                f"Unexpected {self.channel_name} payload shape: {exc}"
            ) from exc

    @abstractmethod
    def parse_payload(self, payload: Mapping[str, Any]) -> list[InboundEvent]:
        """Convert a decoded payload into canonical events."""
