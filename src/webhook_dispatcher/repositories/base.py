"""Delivery store contract and shared asyncpg helpers."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Protocol
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]

from webhook_dispatcher.core.exceptions import StoreUnavailableError
from webhook_dispatcher.domain.enums import DeliveryStatus
from webhook_dispatcher.domain.webhooks import (
    AttemptResult,
    DueDelivery,
    WebhookDelivery,
    WebhookSubscription,
)
from webhook_dispatcher.retry import RetryPolicy

_UNAVAILABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.PostgresConnectionError,
)


class DeliveryStore(Protocol):
    """Persistence the dispatcher depends on.

    Every state change is a compare-and-set on the current status, so
    concurrent dispatch runs never advance the same delivery twice.
    """

    async def fetch_due_deliveries(self, limit: int) -> list[DueDelivery]:
        """Up to ``limit`` due deliveries of active subscriptions, oldest first."""
        ...

    async def claim_delivery(
        self, delivery_id: UUID, expected_status: DeliveryStatus
    ) -> UUID | None:
        """Move a due delivery to ``delivering``; None when another run got it first."""
        ...

    async def mark_attempt_result(
        self, delivery_id: UUID, claim_id: UUID, result: AttemptResult
    ) -> bool:
        """Record one attempt (``attempt_number += 1``) if the claim is still held."""
        ...

    async def reclaim_stale(self, claimed_before: datetime, policy: RetryPolicy) -> int:
        """Count stale ``delivering`` claims as failed attempts. Returns row count."""
        ...

    async def fail_orphaned_deliveries(self) -> int:
        """Terminally fail due deliveries whose subscription no longer exists."""
        ...

    async def get_subscription(self, webhook_id: UUID) -> WebhookSubscription | None:
        ...

    async def list_recent_deliveries(
        self, webhook_id: UUID, *, limit: int = 50
    ) -> list[WebhookDelivery]:
        ...

    async def enqueue_event(
        self,
        *,
        user_id: UUID,
        event_type: str,
        event_data: Any,
        max_attempts: int,
    ) -> list[WebhookDelivery]:
        ...

    async def purge_delivered(self, created_before: datetime) -> int:
        ...


class BaseRepository:
    """Thin wrapper over asyncpg pool operations."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError(f"Delivery store unavailable: {exc}") from exc

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self._connection() as conn:
            return await conn.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> Iterable[asyncpg.Record]:
        async with self._connection() as conn:
            return await conn.fetch(query, *args)

    async def _execute(self, query: str, *args: Any) -> str:
        async with self._connection() as conn:
            return await conn.execute(query, *args)
