"""Per-subscription delivery history and test sends."""
from __future__ import annotations

from aiohttp import web

from webhook_dispatcher.api.utils import parse_uuid
from webhook_dispatcher.core.exceptions import InactiveSubscriptionError, NotFoundError
from webhook_dispatcher.domain.webhooks import DELIVERY_LIST_FIELDS
from webhook_dispatcher.services.dependencies import get_webhook_service, require_current_user

routes = web.RouteTableDef()


@routes.get("/api/v1/webhooks/{webhook_id}/deliveries")
async def list_deliveries(request: web.Request):
    user_id = require_current_user(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = get_webhook_service(request)
    try:
        items = await service.list_deliveries(webhook_id, user_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    fields = set(DELIVERY_LIST_FIELDS)
    return web.json_response(
        {"deliveries": [item.model_dump(mode="json", include=fields) for item in items]}
    )


@routes.post("/api/v1/webhooks/{webhook_id}/test")
async def send_test_webhook(request: web.Request):
    user_id = require_current_user(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = get_webhook_service(request)
    try:
        result = await service.send_test(webhook_id, user_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except InactiveSubscriptionError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    if not result["success"]:
        return web.json_response(
            {**result, "message": "Failed to deliver test webhook"}, status=400
        )
    return web.json_response({**result, "message": "Test webhook sent"})
