"""Shared dependency providers for aiohttp handlers."""
from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from aiohttp import web

from webhook_dispatcher.dispatcher import WebhookDispatcher
from webhook_dispatcher.services.webhooks import WebhookService
from webhook_dispatcher.signing import constant_time_equals

DISPATCHER_KEY = "webhook_dispatcher"
WEBHOOK_SERVICE_KEY = "webhook_service"
TRIGGER_CONFIG_KEY = "trigger_config"

USER_ID_HEADER = "X-User-Id"
INTERNAL_TOKEN_HEADER = "X-Internal-Token"


@dataclass(frozen=True)
class TriggerConfig:
    """Credentials and limits for the dispatch triggers, fixed at startup."""

    cron_secret: str | None
    internal_token: str | None
    cron_batch_size: int = 10
    default_limit: int = 10
    invocation_timeout_seconds: float = 55.0


def get_dispatcher(request: web.Request) -> WebhookDispatcher:
    return request.app[DISPATCHER_KEY]


def get_webhook_service(request: web.Request) -> WebhookService:
    return request.app[WEBHOOK_SERVICE_KEY]


def get_trigger_config(request: web.Request) -> TriggerConfig:
    return request.app[TRIGGER_CONFIG_KEY]


def require_current_user(request: web.Request) -> UUID:
    """Caller identity as forwarded by the API gateway."""
    user_header = request.headers.get(USER_ID_HEADER)
    if user_header is None:
        raise web.HTTPUnauthorized(reason=f"Header {USER_ID_HEADER} is required")
    try:
        return UUID(user_header)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {USER_ID_HEADER}") from exc


def _check_token(presented: str | None, expected: str | None, name: str) -> None:
    if not expected:
        raise web.HTTPInternalServerError(
            text=f'{{"error": "Missing {name}"}}', content_type="application/json"
        )
    if presented is None or not constant_time_equals(presented, expected):
        raise web.HTTPUnauthorized(
            text='{"error": "Unauthorized"}', content_type="application/json"
        )


def require_cron_token(request: web.Request) -> None:
    """Scheduled trigger: ``Authorization: Bearer <cron secret>``."""
    config = get_trigger_config(request)
    auth_header = request.headers.get("Authorization", "")
    presented = auth_header[len("Bearer "):] if auth_header.startswith("Bearer ") else None
    _check_token(presented, config.cron_secret, "CRON_SECRET")


def require_internal_token(request: web.Request) -> None:
    """Internal trigger: ``X-Internal-Token: <internal token>``."""
    config = get_trigger_config(request)
    _check_token(
        request.headers.get(INTERNAL_TOKEN_HEADER),
        config.internal_token,
        "INTERNAL_DISPATCH_TOKEN",
    )
