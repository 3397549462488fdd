"""Gateway sync-message webhook: ``POST /channels/wechatpadpro/sync/{authcode}``.

Answers ``{"status": "ok"}`` before processing so the gateway connection is
released immediately; the payload then runs through the account's pipeline
as a background task.
"""

from __future__ import annotations

import json

from fastapi import APIRouter, Request, Response
from loguru import logger
from starlette.background import BackgroundTask

from padbridge.channels.monitor import WEBHOOK_PATH_PREFIX, PayloadHandler, WebhookRegistry

router = APIRouter()

_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def get_registry(request: Request) -> WebhookRegistry:
    registry = getattr(request.app.state, "webhook_registry", None)
    if registry is None:
        registry = WebhookRegistry()
        request.app.state.webhook_registry = registry
    return registry


async def _run_handler(handler: PayloadHandler, payload: object, token: str) -> None:
    try:
        await handler(payload)
    except Exception as exc:
        logger.error(f"Webhook processing error (token ...{token[-4:]}): {exc}")


@router.api_route(WEBHOOK_PATH_PREFIX + "/{token}", methods=_ALL_METHODS)
async def sync_webhook(token: str, request: Request) -> Response:
    if request.method != "POST":
        return _json(405, {"error": "Method Not Allowed"}, headers={"Allow": "POST"})

    handler = get_registry(request).get(token)
    if handler is None:
        return _json(404, {"error": "Not Found"})

    body = await request.body()
    try:
        payload = json.loads(body) if body else {}
    except ValueError:
        return _json(400, {"error": "Invalid JSON"})

    logger.debug(f"Sync webhook: {len(body)} bytes")
    return _json(200, {"status": "ok"}, background=BackgroundTask(_run_handler, handler, payload, token))


def _json(
    status: int,
    data: dict,
    headers: dict[str, str] | None = None,
    background: BackgroundTask | None = None,
) -> Response:
    return Response(
        content=json.dumps(data),
        status_code=status,
        media_type="application/json; charset=utf-8",
        headers=headers,
        background=background,
    )
