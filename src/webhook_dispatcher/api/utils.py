"""Helper utilities for API handlers."""
from __future__ import annotations

from uuid import UUID

from aiohttp import web


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value if isinstance(value, str) else str(value))
    except (ValueError, TypeError) as exc:
        raise web.HTTPBadRequest(text=f"Invalid {label}") from exc


def limit_param(request: web.Request, *, default: int) -> int:
    """``?limit=`` as an integer; negative values mean zero."""
    raw = request.rel_url.query.get("limit")
    if raw is None or raw == "":
        return default
    try:
        limit = int(raw)
    except ValueError as exc:
        raise web.HTTPBadRequest(text="limit must be an integer") from exc
    return max(0, limit)
