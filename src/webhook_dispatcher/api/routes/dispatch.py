"""Dispatch triggers: scheduled (cron) and internal on-demand."""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import structlog
from aiohttp import web

from webhook_dispatcher.api.utils import limit_param
from webhook_dispatcher.core.exceptions import StoreUnavailableError
from webhook_dispatcher.services.dependencies import (
    get_dispatcher,
    get_trigger_config,
    require_cron_token,
    require_internal_token,
)

routes = web.RouteTableDef()
logger = structlog.get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _run_dispatch(request: web.Request, limit: int) -> dict[str, Any]:
    """Run one bounded dispatch invocation, mapping infrastructure failures to HTTP."""
    dispatcher = get_dispatcher(request)
    config = get_trigger_config(request)
    try:
        summary = await asyncio.wait_for(
            dispatcher.dispatch_pending_deliveries(limit),
            timeout=config.invocation_timeout_seconds,
        )
    except StoreUnavailableError as exc:
        logger.error("webhook dispatch aborted: store unavailable", error=str(exc))
        raise web.HTTPServiceUnavailable(
            text=json.dumps({"success": False, "error": str(exc), "timestamp": _now_iso()}),
            content_type="application/json",
        ) from exc
    except asyncio.TimeoutError as exc:
        logger.error(
            "webhook dispatch timed out",
            timeout_seconds=config.invocation_timeout_seconds,
        )
        raise web.HTTPGatewayTimeout(
            text=json.dumps({"success": False, "error": "dispatch timed out", "timestamp": _now_iso()}),
            content_type="application/json",
        ) from exc
    return summary.model_dump(mode="json")


@routes.post("/api/cron/process-webhooks")
async def cron_process_webhooks(request: web.Request):
    require_cron_token(request)
    config = get_trigger_config(request)
    result = await _run_dispatch(request, config.cron_batch_size)
    return web.json_response({"success": True, **result, "timestamp": _now_iso()})


@routes.get("/api/cron/process-webhooks")
async def cron_health(_request: web.Request):
    return web.json_response(
        {"status": "ok", "endpoint": "webhook-processor", "timestamp": _now_iso()}
    )


@routes.post("/api/internal/dispatch-webhooks")
async def internal_dispatch_webhooks(request: web.Request):
    require_internal_token(request)
    config = get_trigger_config(request)
    limit = limit_param(request, default=config.default_limit)
    result = await _run_dispatch(request, limit)
    return web.json_response({"ok": True, **result})
