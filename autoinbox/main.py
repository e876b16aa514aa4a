"""FastAPI application wiring for the inbox automation service.

- Loads ``.env`` and builds the explicit :class:`~autoinbox.config.Settings`.
- Configures logging, the Prometheus scrape endpoint and SlowAPI rate limiting.
- Assembles the pipeline: Postgres repositories when ``DATABASE_URL`` is
  set, in-memory ones otherwise (local development and tests), the channel
  senders for which access tokens exist and the OpenAI responder when an API
  key is configured.
"""

import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .config import Settings, get_settings
from .core.db import connection_factory
from .dispatch import (
    ActionDispatcher,
    AutomationWebhookClient,
    BoundedResponder,
    DelayedActionScheduler,
    MetaGraphSender,
    OpenAIResponder,
    OutboundSender,
    WhatsAppCloudSender,
)
from .escalation import (
    EscalationManager,
    InMemoryEscalationRepository,
    PostgresEscalationRepository,
    StaticEmployeeDirectory,
    get_strategy,
)
from .messages import InMemoryMessageRepository, PostgresMessageRepository
from .pipeline import InboxPipeline
from .resolvers import (
    ChainedWorkspaceResolver,
    PostgresWorkspaceResolver,
    StaticWorkspaceResolver,
    WorkspaceResolver,
)
from .routers import queue, webhooks
from .rules import InMemoryRuleRepository, PostgresRuleRepository

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Extract a best-effort client IP for rate limiting.

    Prefer ``X-Forwarded-For`` (first hop) if present, otherwise use the
    socket peer address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def build_senders(settings: Settings) -> dict[str, OutboundSender]:
    senders: dict[str, OutboundSender] = {}
    facebook = settings.channel("facebook").access_token
    if facebook:
        senders["facebook"] = MetaGraphSender(
            facebook,
            api_version=settings.graph_api_version,
            timeout=settings.send_timeout_seconds,
        )
    instagram = settings.channel("instagram").access_token
    if instagram:
        senders["instagram"] = MetaGraphSender(
            instagram,
            api_version=settings.graph_api_version,
            public_reply_edge="replies",
            timeout=settings.send_timeout_seconds,
        )
    whatsapp = settings.channel("whatsapp").access_token
    if whatsapp:
        senders["whatsapp"] = WhatsAppCloudSender(
            whatsapp,
            api_version=settings.graph_api_version,
            timeout=settings.send_timeout_seconds,
        )
    return senders


def build_pipeline(settings: Settings) -> InboxPipeline:
    """Assemble the pipeline from ``settings``."""

    resolver: WorkspaceResolver = StaticWorkspaceResolver(settings.workspace_accounts)
    if settings.database_url:
        connect = connection_factory(settings.database_url)
        messages = PostgresMessageRepository(connect)
        rules = PostgresRuleRepository(connect)
        entries = PostgresEscalationRepository(connect)
        resolver = ChainedWorkspaceResolver(resolver, PostgresWorkspaceResolver(connect))
    else:
        logger.warning("DATABASE_URL not set; using in-memory stores")
        messages = InMemoryMessageRepository()
        rules = InMemoryRuleRepository()
        entries = InMemoryEscalationRepository()

    responder = None
    if settings.openai_api_key:
        responder = BoundedResponder(
            OpenAIResponder(
                api_key=settings.openai_api_key,
                model=settings.openai_model,
                timeout=settings.ai_timeout_seconds,
            ),
            timeout=settings.ai_timeout_seconds,
        )

    dispatcher = ActionDispatcher(
        messages,
        settings,
        senders=build_senders(settings),
        responder=responder,
        webhook_client=AutomationWebhookClient(
            settings.automation_webhook_secret, timeout=settings.send_timeout_seconds
        ),
    )
    escalation = EscalationManager(
        messages,
        entries,
        settings,
        directory=StaticEmployeeDirectory(settings.workspace_employees),
        strategy=get_strategy(settings.assignment_strategy),
    )
    return InboxPipeline(
        settings,
        messages=messages,
        rules=rules,
        dispatcher=dispatcher,
        escalation=escalation,
        resolver=resolver,
        scheduler=DelayedActionScheduler(),
        responder=responder,
    )


def create_app(
    settings: Settings | None = None, pipeline: InboxPipeline | None = None
) -> FastAPI:
    settings = settings or get_settings()
    limiter = Limiter(key_func=get_client_ip, default_limits=[settings.webhook_rate_limit])

    application = FastAPI(title="autoinbox", version=__version__)
    init_logging(application)
    application.state.limiter = limiter
    application.state.settings = settings
    application.state.pipeline = pipeline or build_pipeline(settings)
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    application.add_middleware(SlowAPIMiddleware)
    application.include_router(webhooks.router)
    application.include_router(queue.router)

    @application.get("/api/health")
    async def health():
        """Liveness/readiness check with a minimal JSON body."""
        return {"status": "ok"}

    @application.get("/api/version")
    async def version():
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    @application.on_event("shutdown")
    def _shutdown() -> None:
        application.state.pipeline.shutdown()

    @application.get("/api/metrics", include_in_schema=False)
    def metrics() -> Response:
        """Prometheus scrape endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return application


load_dotenv()

app = create_app()
