"""Webhook domain service (enqueueing events, delivery history, test sends)."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List
from uuid import UUID, uuid4

import structlog

from webhook_dispatcher.core.exceptions import (
    InactiveSubscriptionError,
    InvalidEventTypeError,
    NotFoundError,
)
from webhook_dispatcher.delivery_client import WebhookHttpClient
from webhook_dispatcher.dispatcher import build_signed_request
from webhook_dispatcher.domain.enums import TEST_EVENT, WebhookEvent
from webhook_dispatcher.domain.webhooks import WebhookDelivery, WebhookSubscription
from webhook_dispatcher.repositories.base import DeliveryStore

logger = structlog.get_logger(__name__)

ALLOWED_EVENTS = frozenset(e.value for e in WebhookEvent)
TEST_RESPONSE_PREVIEW = 500


class WebhookService:
    def __init__(
        self,
        store: DeliveryStore,
        client: WebhookHttpClient,
        *,
        default_max_attempts: int = 5,
    ):
        self._store = store
        self._client = client
        self._default_max_attempts = default_max_attempts

    async def enqueue_event(
        self,
        *,
        user_id: UUID,
        event_type: str,
        data: Any,
        max_attempts: int | None = None,
    ) -> List[WebhookDelivery]:
        """Snapshot ``data`` into one pending delivery per interested subscription."""
        if event_type not in ALLOWED_EVENTS:
            raise InvalidEventTypeError(f"Unsupported webhook event: {event_type}")
        if max_attempts is None:
            max_attempts = self._default_max_attempts
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        payload = {
            "event": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data,
            "user_id": str(user_id),
        }
        deliveries = await self._store.enqueue_event(
            user_id=user_id,
            event_type=event_type,
            event_data=payload,
            max_attempts=max_attempts,
        )
        logger.info(
            "webhook event enqueued",
            event_type=event_type,
            user_id=str(user_id),
            deliveries=len(deliveries),
        )
        return deliveries

    async def get_owned_subscription(self, webhook_id: UUID, user_id: UUID) -> WebhookSubscription:
        sub = await self._store.get_subscription(webhook_id)
        if sub is None or sub.user_id != user_id:
            raise NotFoundError("Webhook not found")
        return sub

    async def list_deliveries(
        self, webhook_id: UUID, user_id: UUID, *, limit: int = 50
    ) -> List[WebhookDelivery]:
        await self.get_owned_subscription(webhook_id, user_id)
        return await self._store.list_recent_deliveries(webhook_id, limit=limit)

    async def send_test(self, webhook_id: UUID, user_id: UUID) -> dict[str, Any]:
        sub = await self.get_owned_subscription(webhook_id, user_id)
        if not sub.active:
            raise InactiveSubscriptionError("Webhook is not active")

        now = datetime.now(timezone.utc)
        payload = {
            "event": TEST_EVENT,
            "timestamp": now.isoformat(),
            "data": {
                "message": "This is a test webhook delivery",
                "webhook_id": str(sub.id),
            },
        }
        body, headers = build_signed_request(
            secret=sub.secret,
            payload=payload,
            event_type=TEST_EVENT,
            delivery_id=str(uuid4()),
            timestamp=int(now.timestamp()),
        )
        response = await self._client.post(sub.target_url, body, headers)
        if response.status is None:
            logger.warning("test webhook failed", webhook_id=str(sub.id), error=response.error)
            return {"success": False, "error": response.error}

        logger.info("test webhook sent", webhook_id=str(sub.id), status=response.status)
        return {
            "success": response.ok,
            "status": response.status,
            "response": response.body[:TEST_RESPONSE_PREVIEW],
        }
