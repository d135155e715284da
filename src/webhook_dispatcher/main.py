"""aiohttp application entrypoint."""
from __future__ import annotations

from aiohttp import ClientSession, web
from aiohttp_cors import ResourceOptions, setup as cors_setup

from webhook_dispatcher.api.routes.dev import RECEIVER_SECRET_KEY
from webhook_dispatcher.api.router import setup_routes
from webhook_dispatcher.db.migrations import create_migration_runner
from webhook_dispatcher.db.pool import close_pool, init_pool
from webhook_dispatcher.delivery_client import WebhookHttpClient
from webhook_dispatcher.dispatcher import WebhookDispatcher
from webhook_dispatcher.logging_config import configure_logging
from webhook_dispatcher.middleware.trace import create_trace_middleware
from webhook_dispatcher.repositories import (
    DeliveryStore,
    InMemoryDeliveryStore,
    PostgresDeliveryStore,
)
from webhook_dispatcher.retry import RetryPolicy
from webhook_dispatcher.services.dependencies import (
    DISPATCHER_KEY,
    TRIGGER_CONFIG_KEY,
    WEBHOOK_SERVICE_KEY,
    TriggerConfig,
)
from webhook_dispatcher.services.webhooks import WebhookService
from webhook_dispatcher.settings import Settings, settings as default_settings
from webhook_dispatcher.workers import build_worker

STORE_KEY = "delivery_store"
HTTP_SESSION_KEY = "webhook_http_session"
WORKER_KEY = "background_worker"

_ALLOWED_HEADERS = (
    "Accept",
    "Content-Type",
    "Authorization",
    "X-Trace-Id",
    "X-Request-Id",
    "X-User-Id",
)

_EXPOSED_HEADERS = (
    "X-Trace-Id",
    "X-Request-Id",
)


async def healthcheck(request: web.Request) -> web.Response:
    settings: Settings = request.app["settings"]
    return web.json_response({"status": "ok", "service": settings.app_name, "env": settings.env})


def create_app(
    settings: Settings | None = None,
    *,
    store: DeliveryStore | None = None,
) -> web.Application:
    """Build the service.

    ``store`` overrides the configured delivery store backend (used by tests).
    """
    settings = settings or default_settings
    app = web.Application()
    app["settings"] = settings

    app.middlewares.append(create_trace_middleware(settings.app_name))

    cors = cors_setup(
        app,
        defaults={
            origin: ResourceOptions(
                allow_credentials=True,
                expose_headers=_EXPOSED_HEADERS,
                allow_headers=_ALLOWED_HEADERS,
                allow_methods=("GET", "POST", "OPTIONS"),
            )
            for origin in settings.cors_allowed_origins
        },
    )

    # Trigger tokens are read once here, never from the environment in handlers.
    app[TRIGGER_CONFIG_KEY] = TriggerConfig(
        cron_secret=settings.cron_secret,
        internal_token=settings.internal_dispatch_token,
        cron_batch_size=settings.webhook_cron_batch_size,
        default_limit=settings.webhook_default_dispatch_limit,
        invocation_timeout_seconds=settings.webhook_invocation_timeout_seconds,
    )
    app[RECEIVER_SECRET_KEY] = settings.dev_webhook_receiver_secret

    app.router.add_get("/health", healthcheck)
    setup_routes(app, include_dev=settings.env == "development")

    use_postgres = store is None and settings.delivery_store_backend == "postgres"
    if use_postgres:
        app.on_startup.append(create_migration_runner(settings))

    async def init_components(app: web.Application) -> None:
        if store is not None:
            app[STORE_KEY] = store
        elif use_postgres:
            pool = await init_pool(str(settings.database_url), settings.db_pool_size)
            app[STORE_KEY] = PostgresDeliveryStore(pool)
        else:
            app[STORE_KEY] = InMemoryDeliveryStore()

        session = ClientSession()
        app[HTTP_SESSION_KEY] = session
        client = WebhookHttpClient(
            session,
            timeout_seconds=settings.webhook_request_timeout_seconds,
            user_agent=settings.webhook_user_agent,
        )
        app[DISPATCHER_KEY] = WebhookDispatcher(
            app[STORE_KEY],
            client,
            policy=RetryPolicy.from_settings(settings),
            max_concurrency=settings.webhook_dispatch_max_concurrency,
            stale_claim_seconds=settings.webhook_stale_claim_seconds,
        )
        app[WEBHOOK_SERVICE_KEY] = WebhookService(
            app[STORE_KEY],
            client,
            default_max_attempts=settings.webhook_max_attempts,
        )
        worker = build_worker(app[STORE_KEY], settings)
        app[WORKER_KEY] = worker
        await worker.start(app)

    async def close_components(app: web.Application) -> None:
        worker = app.get(WORKER_KEY)
        if worker is not None:
            await worker.stop(app)
        session = app.get(HTTP_SESSION_KEY)
        if session is not None:
            await session.close()
        if use_postgres:
            await close_pool(app)

    app.on_startup.append(init_components)
    app.on_cleanup.append(close_components)

    for route in list(app.router.routes()):
        cors.add(route)

    return app


def main() -> None:
    configure_logging()
    web.run_app(create_app(), host=default_settings.host, port=default_settings.port)


if __name__ == "__main__":
    main()
