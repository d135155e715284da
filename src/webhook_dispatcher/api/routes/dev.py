"""Local receiver for end-to-end webhook testing (development only)."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import structlog
from aiohttp import web

from webhook_dispatcher.dispatcher import (
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
)
from webhook_dispatcher.signing import verify

routes = web.RouteTableDef()
logger = structlog.get_logger(__name__)

RECEIVER_SECRET_KEY = "dev_webhook_receiver_secret"


@routes.post("/api/dev/webhook-receiver")
async def webhook_receiver(request: web.Request):
    body_text = await request.text()
    try:
        body = json.loads(body_text) if body_text else None
    except json.JSONDecodeError:
        body = body_text

    logger.info(
        "webhook received",
        event_type=request.headers.get(EVENT_HEADER),
        delivery_id=request.headers.get(DELIVERY_ID_HEADER),
    )
    response = {
        "received": True,
        "method": request.method,
        "headers": {k: v for k, v in request.headers.items() if k.lower() != SIGNATURE_HEADER.lower()},
        "body": body,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    secret = request.app.get(RECEIVER_SECRET_KEY)
    if secret:
        try:
            timestamp = int(request.headers.get(TIMESTAMP_HEADER, ""))
        except ValueError:
            response["signature_valid"] = False
        else:
            response["signature_valid"] = verify(
                request.headers.get(SIGNATURE_HEADER, ""), secret, body, timestamp
            )
    return web.json_response(response)
