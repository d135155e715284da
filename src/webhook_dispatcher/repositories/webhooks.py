"""Webhook repositories (subscriptions + deliveries outbox) on PostgreSQL."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, List
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_dispatcher.domain.enums import DeliveryStatus
from webhook_dispatcher.domain.webhooks import (
    AttemptResult,
    DueDelivery,
    WebhookDelivery,
    WebhookSubscription,
)
from webhook_dispatcher.repositories.base import BaseRepository
from webhook_dispatcher.retry import RetryPolicy

ORPHANED_ERROR = "webhook subscription no longer exists"
STALE_CLAIM_ERROR = "delivery attempt abandoned (stale claim reclaimed)"
MAX_LIST_LIMIT = 50


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 3"
    return int(status.split()[-1])


class PostgresDeliveryStore(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _normalize(payload: dict[str, Any]) -> dict[str, Any]:
        value = payload.get("event_data")
        if isinstance(value, str):
            payload["event_data"] = json.loads(value)
        return payload

    @classmethod
    def _to_delivery(cls, record: Record) -> WebhookDelivery:
        return WebhookDelivery.model_validate(cls._normalize(dict(record)))

    @staticmethod
    def _to_subscription(record: Record) -> WebhookSubscription:
        return WebhookSubscription.model_validate(dict(record))

    async def fetch_due_deliveries(self, limit: int) -> List[DueDelivery]:
        if limit <= 0:
            return []
        records = await self._fetch(
            """
            SELECT d.*,
                   s.target_url AS subscription_target_url,
                   s.secret AS subscription_secret
            FROM webhook_deliveries d
            JOIN webhook_subscriptions s ON s.id = d.webhook_id
            WHERE d.status IN ('pending', 'retrying')
              AND (d.next_attempt_at IS NULL OR d.next_attempt_at <= now())
              AND s.active = true
            ORDER BY d.created_at ASC
            LIMIT $1
            """,
            limit,
        )
        due: List[DueDelivery] = []
        for rec in records:
            rec_dict = dict(rec)
            target_url = rec_dict.pop("subscription_target_url")
            secret = rec_dict.pop("subscription_secret")
            delivery = WebhookDelivery.model_validate(self._normalize(rec_dict))
            due.append(DueDelivery(delivery=delivery, target_url=target_url, secret=secret))
        return due

    async def claim_delivery(
        self, delivery_id: UUID, expected_status: DeliveryStatus
    ) -> UUID | None:
        record = await self._fetchrow(
            """
            UPDATE webhook_deliveries
            SET status = 'delivering',
                claim_id = gen_random_uuid(),
                claimed_at = now(),
                updated_at = now()
            WHERE id = $1
              AND status = $2
              AND (next_attempt_at IS NULL OR next_attempt_at <= now())
            RETURNING claim_id
            """,
            delivery_id,
            DeliveryStatus(expected_status).value,
        )
        return record["claim_id"] if record else None

    async def mark_attempt_result(
        self, delivery_id: UUID, claim_id: UUID, result: AttemptResult
    ) -> bool:
        # A retrying result on the last allowed attempt is forced to failed.
        record = await self._fetchrow(
            """
            UPDATE webhook_deliveries
            SET status = CASE
                    WHEN $3::text = 'retrying' AND attempt_number + 1 >= max_attempts THEN 'failed'
                    ELSE $3::text
                END,
                next_attempt_at = CASE
                    WHEN $3::text = 'retrying' AND attempt_number + 1 < max_attempts THEN $7::timestamptz
                    ELSE NULL
                END,
                attempt_number = attempt_number + 1,
                response_status = $4,
                response_body = $5,
                error_message = $6,
                delivered_at = CASE WHEN $3::text = 'delivered' THEN $8::timestamptz ELSE NULL END,
                claim_id = NULL,
                claimed_at = NULL,
                updated_at = now()
            WHERE id = $1
              AND claim_id = $2
              AND status = 'delivering'
              AND attempt_number < max_attempts
            RETURNING id
            """,
            delivery_id,
            claim_id,
            result.status.value,
            result.response_status,
            result.response_body,
            result.error_message,
            result.next_attempt_at,
            result.delivered_at,
        )
        return record is not None

    async def reclaim_stale(self, claimed_before: datetime, policy: RetryPolicy) -> int:
        """Release deliveries stuck in ``delivering`` (e.g. after a crash).

        The abandoned claim counts as a failed attempt and follows the retry
        path, so a crashing subscriber cannot keep a delivery alive forever.
        """
        now = datetime.now(timezone.utc)
        async with self._connection() as conn:
            async with conn.transaction():
                records = await conn.fetch(
                    """
                    SELECT id, attempt_number, max_attempts
                    FROM webhook_deliveries
                    WHERE status = 'delivering'
                      AND claimed_at < $1
                    ORDER BY claimed_at ASC
                    FOR UPDATE SKIP LOCKED
                    """,
                    claimed_before,
                )
                updates = []
                for rec in records:
                    attempt_number = min(rec["attempt_number"] + 1, rec["max_attempts"])
                    status, next_at = policy.outcome_for_failure(
                        attempt_number, rec["max_attempts"], now
                    )
                    updates.append((rec["id"], status.value, attempt_number, next_at, STALE_CLAIM_ERROR))
                if updates:
                    await conn.executemany(
                        """
                        UPDATE webhook_deliveries
                        SET status = $2,
                            attempt_number = $3,
                            next_attempt_at = $4,
                            error_message = $5,
                            response_status = NULL,
                            claim_id = NULL,
                            claimed_at = NULL,
                            updated_at = now()
                        WHERE id = $1 AND status = 'delivering'
                        """,
                        updates,
                    )
        return len(updates)

    async def fail_orphaned_deliveries(self) -> int:
        result = await self._execute(
            """
            UPDATE webhook_deliveries d
            SET status = 'failed',
                attempt_number = d.max_attempts,
                next_attempt_at = NULL,
                error_message = $1,
                updated_at = now()
            WHERE d.status IN ('pending', 'retrying')
              AND NOT EXISTS (
                  SELECT 1 FROM webhook_subscriptions s WHERE s.id = d.webhook_id
              )
            """,
            ORPHANED_ERROR,
        )
        return _affected(result)

    async def get_subscription(self, webhook_id: UUID) -> WebhookSubscription | None:
        record = await self._fetchrow(
            "SELECT * FROM webhook_subscriptions WHERE id = $1",
            webhook_id,
        )
        return self._to_subscription(record) if record else None

    async def list_recent_deliveries(
        self, webhook_id: UUID, *, limit: int = MAX_LIST_LIMIT
    ) -> List[WebhookDelivery]:
        limit = max(0, min(limit, MAX_LIST_LIMIT))
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_deliveries
            WHERE webhook_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            webhook_id,
            limit,
        )
        return [self._to_delivery(r) for r in records]

    async def enqueue_event(
        self,
        *,
        user_id: UUID,
        event_type: str,
        event_data: Any,
        max_attempts: int,
    ) -> List[WebhookDelivery]:
        records = await self._fetch(
            """
            INSERT INTO webhook_deliveries (
                webhook_id,
                event_type,
                event_data,
                status,
                attempt_number,
                max_attempts
            )
            SELECT s.id, $2, $3::jsonb, 'pending', 0, $4
            FROM webhook_subscriptions s
            WHERE s.user_id = $1
              AND s.active = true
              AND $2 = ANY(s.subscribed_events)
            ORDER BY s.created_at ASC
            RETURNING *
            """,
            user_id,
            event_type,
            json.dumps(event_data),
            max_attempts,
        )
        return [self._to_delivery(r) for r in records]

    async def purge_delivered(self, created_before: datetime) -> int:
        """Purge delivered rows older than *created_before*. Returns count."""
        result = await self._execute(
            "DELETE FROM webhook_deliveries WHERE status = 'delivered' AND created_at < $1",
            created_before,
        )
        return _affected(result)
