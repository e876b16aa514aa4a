import base64
import hashlib
import hmac
import json
import pathlib
import sys
from dataclasses import dataclass, field
from typing import Callable

import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from autoinbox.app_logging import init_logging
from autoinbox.config import ChannelSettings, Settings
from autoinbox.dispatch import (
    ActionDispatcher,
    AIContext,
    AIResponse,
    DelayedActionScheduler,
    OutboundRequest,
    SendResult,
)
from autoinbox.escalation import EscalationManager, InMemoryEscalationRepository
from autoinbox.errors import AIResponderTimeout
from autoinbox.messages import InMemoryMessageRepository
from autoinbox.pipeline import InboxPipeline
from autoinbox.resolvers import StaticWorkspaceResolver
from autoinbox.rules import InMemoryRuleRepository

FB_SECRET = "fb-app-secret"
WA_SECRET = "wa-auth-token"
FORM_SECRET = "form-secret"
VERIFY_TOKEN = "verify-me"
WA_URL = "https://hooks.example.com/api/webhooks/whatsapp"


def sign_meta(body: bytes, secret: str = FB_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def sign_whatsapp(body: bytes, secret: str = WA_SECRET, url: str = WA_URL) -> str:
    digest = hmac.new(secret.encode(), url.encode() + body, hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def sign_form(body: bytes, secret: str = FORM_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode()


def facebook_comment(
    text: str = "I need help",
    *,
    comment_id: str = "post1_c1",
    page_id: str = "PAGE1",
    author_id: str = "user-1",
) -> dict:
    return {
        "object": "page",
        "entry": [
            {
                "id": page_id,
                "time": 1700000000,
                "changes": [
                    {
                        "field": "feed",
                        "value": {
                            "item": "comment",
                            "verb": "add",
                            "comment_id": comment_id,
                            "post_id": "post1",
                            "message": text,
                            "from": {"id": author_id, "name": "Ana"},
                            "created_time": 1700000000,
                        },
                    }
                ],
            }
        ],
    }


def whatsapp_text(text: str = "hello", *, message_id: str = "wamid.1") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {
                                "display_phone_number": "15550001111",
                                "phone_number_id": "PHONE1",
                            },
                            "contacts": [
                                {"wa_id": "15559990000", "profile": {"name": "Bea"}}
                            ],
                            "messages": [
                                {
                                    "from": "15559990000",
                                    "id": message_id,
                                    "timestamp": "1700000000",
                                    "type": "text",
                                    "text": {"body": text},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


@dataclass
class FakeSender:
    """Outbound sender that records requests and fails on demand."""

    failures: int = 0
    requests: list[OutboundRequest] = field(default_factory=list)

    def send(self, request: OutboundRequest) -> SendResult:
        self.requests.append(request)
        if self.failures > 0:
            self.failures -= 1
            return SendResult(success=False, error="HTTP 503: unavailable")
        return SendResult(success=True, message_id=f"out-{len(self.requests)}")


@dataclass
class FakeResponder:
    confidence: float = 0.95
    text: str = "Hi there, happy to help!"
    fail: bool = False
    calls: list[AIContext] = field(default_factory=list)

    def generate(self, context: AIContext) -> AIResponse:
        self.calls.append(context)
        if self.fail:
            raise AIResponderTimeout("AI responder exceeded 5.0s")
        return AIResponse(text=self.text, confidence=self.confidence)


def make_settings(**overrides) -> Settings:
    values = dict(
        channels={
            "facebook": ChannelSettings(signing_secret=FB_SECRET, verify_token=VERIFY_TOKEN),
            "instagram": ChannelSettings(signing_secret=FB_SECRET, verify_token=VERIFY_TOKEN),
            "whatsapp": ChannelSettings(
                signing_secret=WA_SECRET,
                verify_token=VERIFY_TOKEN,
                signature_header="X-Twilio-Signature",
                webhook_url=WA_URL,
            ),
            "website_form": ChannelSettings(signing_secret=FORM_SECRET),
        },
        workspace_accounts={
            "facebook:PAGE1": "ws-1",
            "instagram:IG1": "ws-1",
            "whatsapp:PHONE1": "ws-1",
            "website_form:*": "ws-1",
            "facebook:PAGE2": "ws-2",
        },
        backoff_base_seconds=0.0,
        backoff_cap_seconds=0.0,
    )
    values.update(overrides)
    return Settings(**values)


@dataclass
class PipelineHarness:
    pipeline: InboxPipeline
    messages: InMemoryMessageRepository
    rules: InMemoryRuleRepository
    entries: InMemoryEscalationRepository
    senders: dict[str, FakeSender]
    sleeps: list[float]


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def harness_factory() -> Callable[..., PipelineHarness]:
    created: list[InboxPipeline] = []

    def _build(
        settings: Settings | None = None,
        *,
        responder=None,
        senders: dict[str, FakeSender] | None = None,
    ) -> PipelineHarness:
        settings = settings or make_settings()
        messages = InMemoryMessageRepository()
        rules = InMemoryRuleRepository()
        entries = InMemoryEscalationRepository()
        if senders is None:
            senders = {name: FakeSender() for name in ("facebook", "instagram", "whatsapp")}
        sleeps: list[float] = []
        dispatcher = ActionDispatcher(
            messages,
            settings,
            senders=senders,
            responder=responder,
            sleep=sleeps.append,
        )
        pipeline = InboxPipeline(
            settings,
            messages=messages,
            rules=rules,
            dispatcher=dispatcher,
            escalation=EscalationManager(messages, entries, settings),
            resolver=StaticWorkspaceResolver(settings.workspace_accounts),
            scheduler=DelayedActionScheduler(),
            responder=responder,
        )
        created.append(pipeline)
        return PipelineHarness(pipeline, messages, rules, entries, senders, sleeps)

    yield _build

    for pipeline in created:
        pipeline.shutdown()


@pytest.fixture
def harness(harness_factory) -> PipelineHarness:
    return harness_factory()


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app


def rule(**overrides) -> dict:
    values = {
        "id": "rule-help",
        "workspace_id": "ws-1",
        "agent_id": "agent-1",
        "name": "Help keyword",
        "enabled": True,
        "trigger_type": "keyword",
        "trigger_words": ["help"],
        "trigger_platforms": [],
        "action_type": "send_dm",
        "private_reply_template": "We're here!",
        "public_reply_template": None,
        "auto_skip_replies": False,
        "delay_seconds": 0,
    }
    values.update(overrides)
    return values
