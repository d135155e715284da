"""In-process delivery store (local development and tests)."""
from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Callable, List
from uuid import UUID, uuid4

from webhook_dispatcher.domain.enums import DUE_STATUSES, DeliveryStatus
from webhook_dispatcher.domain.state_machine import validate_delivery_transition
from webhook_dispatcher.domain.webhooks import (
    AttemptResult,
    DueDelivery,
    WebhookDelivery,
    WebhookSubscription,
)
from webhook_dispatcher.repositories.webhooks import (
    MAX_LIST_LIMIT,
    ORPHANED_ERROR,
    STALE_CLAIM_ERROR,
)
from webhook_dispatcher.retry import RetryPolicy

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDeliveryStore:
    """Same compare-and-set contract as the SQL store, serialised by one lock."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._subscriptions: dict[UUID, WebhookSubscription] = {}
        self._deliveries: dict[UUID, WebhookDelivery] = {}
        self._claims: dict[UUID, tuple[UUID, datetime]] = {}
        self._response_bodies: dict[UUID, str | None] = {}
        self.status_history: dict[UUID, list[DeliveryStatus]] = {}

    # -- fixtures / management helpers ------------------------------------

    def add_subscription(
        self,
        *,
        user_id: UUID,
        target_url: str,
        secret: str,
        subscribed_events: list[str],
        active: bool = True,
        subscription_id: UUID | None = None,
    ) -> WebhookSubscription:
        sub = WebhookSubscription(
            id=subscription_id or uuid4(),
            user_id=user_id,
            target_url=target_url,
            secret=secret,
            subscribed_events=list(subscribed_events),
            active=active,
            created_at=self._clock(),
        )
        self._subscriptions[sub.id] = sub
        return sub

    def remove_subscription(self, webhook_id: UUID) -> None:
        self._subscriptions.pop(webhook_id, None)

    def set_subscription_active(self, webhook_id: UUID, active: bool) -> None:
        sub = self._subscriptions[webhook_id]
        self._subscriptions[webhook_id] = sub.model_copy(update={"active": active})

    def add_delivery(
        self,
        *,
        webhook_id: UUID,
        event_type: str,
        event_data: Any,
        max_attempts: int = 5,
        created_at: datetime | None = None,
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            id=uuid4(),
            webhook_id=webhook_id,
            event_type=event_type,
            event_data=copy.deepcopy(event_data),
            status=DeliveryStatus.PENDING,
            attempt_number=0,
            max_attempts=max_attempts,
            created_at=created_at or self._clock(),
        )
        self._deliveries[delivery.id] = delivery
        self.status_history[delivery.id] = [DeliveryStatus.PENDING]
        return delivery

    def get_delivery(self, delivery_id: UUID) -> WebhookDelivery:
        return self._deliveries[delivery_id]

    def response_body(self, delivery_id: UUID) -> str | None:
        return self._response_bodies.get(delivery_id)

    def _set(self, delivery: WebhookDelivery, **changes: Any) -> WebhookDelivery:
        new_status = changes.get("status")
        if new_status is not None and new_status != delivery.status:
            validate_delivery_transition(delivery.status, new_status)
            self.status_history.setdefault(delivery.id, []).append(new_status)
        updated = delivery.model_copy(update=changes)
        self._deliveries[delivery.id] = updated
        return updated

    # -- DeliveryStore ----------------------------------------------------

    async def fetch_due_deliveries(self, limit: int) -> List[DueDelivery]:
        if limit <= 0:
            return []
        async with self._lock:
            now = self._clock()
            due: List[DueDelivery] = []
            for delivery in sorted(self._deliveries.values(), key=lambda d: d.created_at):
                sub = self._subscriptions.get(delivery.webhook_id)
                if sub is None or not sub.active or not delivery.is_due(now):
                    continue
                due.append(
                    DueDelivery(
                        delivery=delivery.model_copy(deep=True),
                        target_url=sub.target_url,
                        secret=sub.secret,
                    )
                )
                if len(due) >= limit:
                    break
            return due

    async def claim_delivery(
        self, delivery_id: UUID, expected_status: DeliveryStatus
    ) -> UUID | None:
        async with self._lock:
            delivery = self._deliveries.get(delivery_id)
            now = self._clock()
            if delivery is None or delivery.status != expected_status or not delivery.is_due(now):
                return None
            claim_id = uuid4()
            self._set(delivery, status=DeliveryStatus.DELIVERING)
            self._claims[delivery_id] = (claim_id, now)
            return claim_id

    async def mark_attempt_result(
        self, delivery_id: UUID, claim_id: UUID, result: AttemptResult
    ) -> bool:
        async with self._lock:
            delivery = self._deliveries.get(delivery_id)
            claim = self._claims.get(delivery_id)
            if (
                delivery is None
                or delivery.status != DeliveryStatus.DELIVERING
                or claim is None
                or claim[0] != claim_id
                or delivery.attempt_number >= delivery.max_attempts
            ):
                return False
            attempt_number = delivery.attempt_number + 1
            status = result.status
            next_attempt_at = result.next_attempt_at
            if status == DeliveryStatus.RETRYING and attempt_number >= delivery.max_attempts:
                status = DeliveryStatus.FAILED
            if status != DeliveryStatus.RETRYING:
                next_attempt_at = None
            self._set(
                delivery,
                status=status,
                attempt_number=attempt_number,
                next_attempt_at=next_attempt_at,
                response_status=result.response_status,
                error_message=result.error_message,
                delivered_at=result.delivered_at if status == DeliveryStatus.DELIVERED else None,
            )
            self._response_bodies[delivery_id] = result.response_body
            del self._claims[delivery_id]
            return True

    async def reclaim_stale(self, claimed_before: datetime, policy: RetryPolicy) -> int:
        async with self._lock:
            now = self._clock()
            reclaimed = 0
            for delivery_id, (_, claimed_at) in list(self._claims.items()):
                if claimed_at >= claimed_before:
                    continue
                delivery = self._deliveries[delivery_id]
                attempt_number = min(delivery.attempt_number + 1, delivery.max_attempts)
                status, next_at = policy.outcome_for_failure(attempt_number, delivery.max_attempts, now)
                self._set(
                    delivery,
                    status=status,
                    attempt_number=attempt_number,
                    next_attempt_at=next_at,
                    response_status=None,
                    error_message=STALE_CLAIM_ERROR,
                )
                del self._claims[delivery_id]
                reclaimed += 1
            return reclaimed

    async def fail_orphaned_deliveries(self) -> int:
        async with self._lock:
            failed = 0
            for delivery in list(self._deliveries.values()):
                if delivery.status in DUE_STATUSES and delivery.webhook_id not in self._subscriptions:
                    self._set(
                        delivery,
                        status=DeliveryStatus.FAILED,
                        attempt_number=delivery.max_attempts,
                        next_attempt_at=None,
                        error_message=ORPHANED_ERROR,
                    )
                    failed += 1
            return failed

    async def get_subscription(self, webhook_id: UUID) -> WebhookSubscription | None:
        return self._subscriptions.get(webhook_id)

    async def list_recent_deliveries(
        self, webhook_id: UUID, *, limit: int = MAX_LIST_LIMIT
    ) -> List[WebhookDelivery]:
        limit = max(0, min(limit, MAX_LIST_LIMIT))
        items = [d for d in self._deliveries.values() if d.webhook_id == webhook_id]
        items.sort(key=lambda d: d.created_at, reverse=True)
        return items[:limit]

    async def enqueue_event(
        self,
        *,
        user_id: UUID,
        event_type: str,
        event_data: Any,
        max_attempts: int,
    ) -> List[WebhookDelivery]:
        async with self._lock:
            subs = sorted(
                (
                    s
                    for s in self._subscriptions.values()
                    if s.user_id == user_id and s.active and s.wants(event_type)
                ),
                key=lambda s: s.created_at,
            )
            return [
                self.add_delivery(
                    webhook_id=sub.id,
                    event_type=event_type,
                    event_data=event_data,
                    max_attempts=max_attempts,
                )
                for sub in subs
            ]

    async def purge_delivered(self, created_before: datetime) -> int:
        async with self._lock:
            stale = [
                d.id
                for d in self._deliveries.values()
                if d.status == DeliveryStatus.DELIVERED and d.created_at < created_before
            ]
            for delivery_id in stale:
                del self._deliveries[delivery_id]
                self._response_bodies.pop(delivery_id, None)
            return len(stale)
