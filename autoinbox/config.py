"""Runtime configuration for the inbox automation service."""

from __future__ import annotations

import dataclasses
import json
import os
from collections.abc import Mapping
from functools import lru_cache


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _load_account_map(raw: str | None) -> dict[str, str]:
    """Parse ``WORKSPACE_ACCOUNT_MAP``.

    The value is a JSON object keyed by ``"<channel>:<account id>"`` whose
    values are workspace identifiers, e.g.
    ``{"facebook:1029384756": "ws-acme"}``.
    """

    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError("WORKSPACE_ACCOUNT_MAP must be a JSON object") from exc
    if not isinstance(data, dict):
        raise RuntimeError("WORKSPACE_ACCOUNT_MAP must be a JSON object")
    return {str(key): str(value) for key, value in data.items()}


def _load_employee_map(raw: str | None) -> dict[str, list[str]]:
    """Parse ``WORKSPACE_EMPLOYEES``, e.g. ``{"ws-acme": ["ana", "bea"]}``."""

    if not raw:
        return {}
    message = "WORKSPACE_EMPLOYEES must be a JSON object mapping workspaces to employee lists"
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(message) from exc
    if not isinstance(data, dict) or not all(isinstance(v, list) for v in data.values()):
        raise RuntimeError(message)
    return {str(key): [str(emp) for emp in value] for key, value in data.items()}


@dataclasses.dataclass(frozen=True)
class ChannelSettings:
    """Credentials for one inbound channel."""

    signing_secret: str | None = None
    verify_token: str | None = None
    access_token: str | None = None
    signature_header: str | None = None
    webhook_url: str | None = None


@dataclasses.dataclass(frozen=True)
class Settings:
    """Explicit configuration object injected into the pipeline at startup."""

    database_url: str | None = None
    channels: Mapping[str, ChannelSettings] = dataclasses.field(default_factory=dict)
    workspace_accounts: Mapping[str, str] = dataclasses.field(default_factory=dict)
    workspace_employees: Mapping[str, list[str]] = dataclasses.field(default_factory=dict)
    verify_signatures: bool = True
    graph_api_version: str = "v18.0"
    confidence_threshold: float = 0.8
    ai_timeout_seconds: float = 5.0
    max_retries: int = 3
    backoff_base_seconds: float = 0.5
    backoff_cap_seconds: float = 4.0
    send_timeout_seconds: float = 10.0
    stale_claim_minutes: int = 30
    assignment_strategy: str = "round_robin"
    automation_webhook_secret: str | None = None
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    webhook_rate_limit: str = "120/minute"

    def channel(self, name: str) -> ChannelSettings:
        return self.channels.get(name) or ChannelSettings()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from the environment with development defaults."""

    channels = {
        "facebook": ChannelSettings(
            signing_secret=os.getenv("FACEBOOK_APP_SECRET"),
            verify_token=os.getenv("FACEBOOK_VERIFY_TOKEN"),
            access_token=os.getenv("FACEBOOK_PAGE_ACCESS_TOKEN"),
        ),
        "instagram": ChannelSettings(
            signing_secret=os.getenv("INSTAGRAM_APP_SECRET")
            or os.getenv("FACEBOOK_APP_SECRET"),
            verify_token=os.getenv("INSTAGRAM_VERIFY_TOKEN"),
            access_token=os.getenv("INSTAGRAM_ACCESS_TOKEN"),
        ),
        "whatsapp": ChannelSettings(
            signing_secret=os.getenv("WHATSAPP_AUTH_TOKEN"),
            verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN"),
            access_token=os.getenv("WHATSAPP_ACCESS_TOKEN"),
            signature_header=os.getenv(
                "WHATSAPP_SIGNATURE_HEADER", "X-Twilio-Signature"
            ),
            webhook_url=os.getenv("WHATSAPP_WEBHOOK_URL"),
        ),
        "website_form": ChannelSettings(
            signing_secret=os.getenv("WEBSITE_FORM_SECRET"),
        ),
    }
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        channels=channels,
        workspace_accounts=_load_account_map(os.getenv("WORKSPACE_ACCOUNT_MAP")),
        workspace_employees=_load_employee_map(os.getenv("WORKSPACE_EMPLOYEES")),
        verify_signatures=_env_bool("WEBHOOK_VERIFY_SIGNATURES", True),
        graph_api_version=os.getenv("GRAPH_API_VERSION", "v18.0"),
        confidence_threshold=_env_float("ESCALATION_CONFIDENCE_THRESHOLD", 0.8),
        ai_timeout_seconds=_env_float("AI_RESPONDER_TIMEOUT_SECONDS", 5.0),
        max_retries=_env_int("ACTION_MAX_RETRIES", 3),
        backoff_base_seconds=_env_float("ACTION_BACKOFF_BASE_SECONDS", 0.5),
        backoff_cap_seconds=_env_float("ACTION_BACKOFF_CAP_SECONDS", 4.0),
        send_timeout_seconds=_env_float("OUTBOUND_SEND_TIMEOUT_SECONDS", 10.0),
        stale_claim_minutes=_env_int("ESCALATION_STALE_CLAIM_MINUTES", 30),
        assignment_strategy=os.getenv("ASSIGNMENT_STRATEGY", "round_robin"),
        automation_webhook_secret=os.getenv("AUTOMATION_WEBHOOK_SECRET"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        webhook_rate_limit=os.getenv("WEBHOOK_RATE_LIMIT", "120/minute"),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = ["ChannelSettings", "Settings", "get_settings", "reset_settings_cache"]
