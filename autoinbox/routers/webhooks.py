"""Webhook ingress routes for the inbound messaging channels."""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from ..errors import PayloadMalformed, SignatureInvalid
from ..pipeline import InboxPipeline

router = APIRouter(tags=["webhooks"])

logger = logging.getLogger(__name__)


def get_pipeline(request: Request) -> InboxPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=500, detail="Inbox pipeline not configured")
    return pipeline


def _forbidden() -> HTTPException:
    # Signature failures never explain what was wrong.
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.get("/api/webhooks/{channel}", response_class=PlainTextResponse)
def verify_subscription(channel: str, request: Request) -> PlainTextResponse:
    """Answer the platform's ``hub.challenge`` subscription handshake."""

    pipeline = get_pipeline(request)
    try:
        challenge = pipeline.handshake(channel, dict(request.query_params))
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SignatureInvalid as exc:
        logger.warning("Webhook handshake rejected: %s", exc, extra={"channel": channel})
        raise _forbidden() from exc
    return PlainTextResponse(challenge)


@router.post("/api/webhooks/{channel}")
async def receive_webhook(
    channel: str, request: Request, background_tasks: BackgroundTasks
) -> dict:
    """Verify and persist a delivery, then automate it after acknowledging.

    The response is sent once every event is stored; rule evaluation and
    dispatch run as a background task so slow channel APIs never delay the
    acknowledgement.
    """

    pipeline = get_pipeline(request)
    try:
        pipeline.adapter(channel)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    body = await request.body()
    try:
        result = await run_in_threadpool(
            pipeline.ingest, channel, body, request.headers, url=str(request.url)
        )
    except SignatureInvalid as exc:
        logger.warning("Webhook signature rejected", extra={"channel": channel})
        raise _forbidden() from exc
    except PayloadMalformed as exc:
        logger.warning("Malformed webhook payload: %s", exc, extra={"channel": channel})
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if result.stored:
        background_tasks.add_task(pipeline.process_batch, result.stored)
    return {
        "ok": True,
        "received": result.received,
        "stored": len(result.stored),
        "duplicates": result.duplicates,
    }
