"""API router composition for aiohttp."""
from __future__ import annotations

from aiohttp import web

from webhook_dispatcher.api.routes import dev, dispatch, webhooks

ROUTE_MODULES = [
    dispatch,
    webhooks,
]


def setup_routes(app: web.Application, *, include_dev: bool = False) -> None:
    """Attach domain routes to the aiohttp application."""
    for module in ROUTE_MODULES:
        app.add_routes(module.routes)
    if include_dev:
        app.add_routes(dev.routes)
