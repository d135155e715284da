"""Shared fixtures: a controllable clock, an in-memory store and a local receiver."""
from __future__ import annotations

import asyncio
import json
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from aiohttp import ClientSession, web

from webhook_dispatcher.delivery_client import WebhookHttpClient
from webhook_dispatcher.dispatcher import WebhookDispatcher
from webhook_dispatcher.repositories.memory import InMemoryDeliveryStore
from webhook_dispatcher.retry import RetryPolicy


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class Receiver:
    """Local subscriber endpoint recording every request it gets."""

    requests: list[dict[str, Any]] = field(default_factory=list)
    status: int = 200
    statuses: list[int] = field(default_factory=list)
    delay: float = 0.0
    redirect_to: str | None = None
    in_flight: int = 0
    max_in_flight: int = 0
    url: str = ""

    async def handle(self, request: web.Request) -> web.Response:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            raw = await request.read()
            self.requests.append(
                {
                    "headers": dict(request.headers),
                    "raw": raw,
                    "body": json.loads(raw.decode("utf-8")) if raw else None,
                }
            )
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.redirect_to:
                raise web.HTTPFound(location=self.redirect_to)
            status = self.statuses.pop(0) if self.statuses else self.status
            return web.Response(status=status, text=f"status {status}")
        finally:
            self.in_flight -= 1

    def delivery_ids(self) -> list[str]:
        return [r["headers"]["X-Webhook-Delivery-Id"] for r in self.requests]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryDeliveryStore:
    return InMemoryDeliveryStore(clock=clock)


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(base_seconds=60, cap_seconds=3600, jitter_ratio=0, rng=random.Random(7))


@pytest.fixture
async def receiver(aiohttp_server) -> Receiver:
    recv = Receiver()
    app = web.Application()
    app.router.add_post("/hook", recv.handle)
    app.router.add_post("/elsewhere", recv.handle)
    server = await aiohttp_server(app)
    recv.url = str(server.make_url("/hook"))
    return recv


@pytest.fixture
async def http_session():
    session = ClientSession()
    yield session
    await session.close()


@pytest.fixture
def make_dispatcher(store, clock, policy, http_session) -> Callable[..., WebhookDispatcher]:
    def factory(*, timeout_seconds: float = 5.0, max_concurrency: int = 10, target_store=None):
        client = WebhookHttpClient(
            http_session, timeout_seconds=timeout_seconds, user_agent="tests/1.0"
        )
        return WebhookDispatcher(
            target_store or store,
            client,
            policy=policy,
            max_concurrency=max_concurrency,
            stale_claim_seconds=120,
            clock=clock,
        )

    return factory


@pytest.fixture
def subscription(store, receiver):
    return store.add_subscription(
        user_id=uuid.uuid4(),
        target_url=receiver.url,
        secret="s3cr3t",
        subscribed_events=["note.created", "note.updated"],
    )
