"""Webhook domain primitives."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from webhook_dispatcher.domain.enums import DUE_STATUSES, DeliveryStatus


class WebhookSubscription(BaseModel):
    id: UUID
    user_id: UUID
    target_url: str
    secret: str = Field(repr=False)
    subscribed_events: list[str] = Field(default_factory=list)
    active: bool = True
    created_at: datetime

    def wants(self, event_type: str) -> bool:
        return event_type in self.subscribed_events


class WebhookDelivery(BaseModel):
    """Stored delivery record (one event for one subscription)."""

    id: UUID
    webhook_id: UUID
    event_type: str
    event_data: Any
    status: DeliveryStatus
    attempt_number: int = 0
    max_attempts: int = Field(ge=1)
    next_attempt_at: datetime | None = None
    response_status: int | None = None
    error_message: str | None = None
    created_at: datetime
    delivered_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        if self.status not in DUE_STATUSES:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now


class DueDelivery(BaseModel):
    """A due delivery joined with its subscription's endpoint and secret.

    Resolved in the same read as the delivery so a subscription edited
    mid-batch cannot split url and secret across versions.
    """

    delivery: WebhookDelivery
    target_url: str
    secret: str = Field(repr=False)

    @property
    def id(self) -> UUID:
        return self.delivery.id


class AttemptResult(BaseModel):
    """Outcome of one HTTP attempt, recorded by ``mark_attempt_result``."""

    status: DeliveryStatus
    response_status: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    next_attempt_at: datetime | None = None
    delivered_at: datetime | None = None


class DispatchSummary(BaseModel):
    """Aggregate returned to the triggers for one dispatch invocation."""

    attempted: int = 0
    delivered: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


DELIVERY_LIST_FIELDS = (
    "id",
    "event_type",
    "event_data",
    "status",
    "attempt_number",
    "max_attempts",
    "response_status",
    "error_message",
    "next_attempt_at",
    "created_at",
    "delivered_at",
)
