"""Outbound HTTP POST to subscriber endpoints."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog
from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout

logger = structlog.get_logger(__name__)

RESPONSE_BODY_LIMIT = 2000
# utf-8 needs at most 4 bytes per character
_RESPONSE_READ_BYTES = RESPONSE_BODY_LIMIT * 4


@dataclass(frozen=True)
class DeliveryResponse:
    """Uniform view of one attempt: an HTTP status, or an error with no status."""

    status: int | None
    body: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300


async def _read_prefix(resp: ClientResponse) -> str:
    """Decode at most the first few kilobytes of the body; the rest is never buffered."""
    raw = bytearray()
    while len(raw) < _RESPONSE_READ_BYTES:
        chunk = await resp.content.read(_RESPONSE_READ_BYTES - len(raw))
        if not chunk:
            break
        raw.extend(chunk)
    return raw.decode("utf-8", errors="replace")


class WebhookHttpClient:
    def __init__(self, session: ClientSession, *, timeout_seconds: float, user_agent: str):
        self._session = session
        self._timeout = ClientTimeout(total=timeout_seconds)
        self._user_agent = user_agent

    async def post(self, url: str, body: bytes, headers: dict[str, str]) -> DeliveryResponse:
        request_headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            **headers,
        }
        try:
            async with self._session.post(
                url,
                data=body,
                headers=request_headers,
                timeout=self._timeout,
                allow_redirects=False,
            ) as resp:
                text = (await _read_prefix(resp))[:RESPONSE_BODY_LIMIT]
                if 300 <= resp.status < 400:
                    location = resp.headers.get("Location", "")
                    logger.warning(
                        "webhook redirect not followed",
                        url=url,
                        status=resp.status,
                        location=location,
                    )
                    return DeliveryResponse(
                        status=resp.status,
                        body=text,
                        error=f"redirect not followed: {location}",
                    )
                error = None if 200 <= resp.status < 300 else f"HTTP {resp.status}"
                return DeliveryResponse(status=resp.status, body=text, error=error)
        except asyncio.TimeoutError:
            return DeliveryResponse(status=None, error="request timed out")
        except (ClientError, ValueError) as exc:
            return DeliveryResponse(status=None, error=str(exc) or type(exc).__name__)
