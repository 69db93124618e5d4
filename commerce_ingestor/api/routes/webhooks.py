"""Inbound webhook endpoints, one per provider."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from ...exceptions import CommerceIngestorError
from ...utils.logging import setup_logger
from ...webhooks.processor import WebhookProcessor
from ..dependencies import get_webhook_processor

logger = setup_logger(__name__, context={"component": "WebhookAPI"})
router = APIRouter(prefix="/webhooks")


async def _receive(
    provider: str,
    request: Request,
    processor: WebhookProcessor,
    *,
    organization_id: str | None,
    connection_id: str | None,
) -> Any:
    body = await request.body()
    try:
        outcome = await processor.process(
            provider,
            body,
            request.headers,
            organization_id=organization_id,
            connection_id=connection_id,
        )
    except CommerceIngestorError:
        raise
    except Exception:
        # Non-2xx makes the provider redeliver; writes are idempotent.
        logger.exception("Unexpected webhook failure", extra={"provider": provider})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "message": "Internal error processing webhook"},
        )
    return outcome.model_dump(mode="json")


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    org: str | None = Query(None, description="Organization that owns the connection"),
    connection_id: str | None = Query(None),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> Any:
    """Accept a webhook identified by ``?org=`` or ``?connection_id=``."""

    return await _receive(
        provider, request, processor, organization_id=org, connection_id=connection_id
    )


@router.post("/{provider}/{organization_id}")
async def receive_webhook_for_org(
    provider: str,
    organization_id: str,
    request: Request,
    connection_id: str | None = Query(None),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> Any:
    """Accept a webhook whose organization is carried in the path."""

    return await _receive(
        provider,
        request,
        processor,
        organization_id=organization_id,
        connection_id=connection_id,
    )


def _challenge_or_liveness(provider: str, challenge: str | None) -> Response:
    if challenge is not None:
        return PlainTextResponse(challenge)
    return JSONResponse({"status": "ok", "provider": provider})


@router.get("/{provider}")
async def webhook_challenge(
    provider: str, challenge: str | None = Query(None)
) -> Response:
    """Echo a verification ``challenge`` or report liveness."""

    return _challenge_or_liveness(provider, challenge)


@router.get("/{provider}/{organization_id}")
async def webhook_challenge_for_org(
    provider: str, organization_id: str, challenge: str | None = Query(None)
) -> Response:
    return _challenge_or_liveness(provider, challenge)
