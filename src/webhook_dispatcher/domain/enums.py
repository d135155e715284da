"""Domain enums for webhook deliveries."""
from __future__ import annotations

from enum import Enum


class DeliveryStatus(str, Enum):
    """Webhook delivery lifecycle states."""

    PENDING = "pending"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"


DUE_STATUSES = frozenset({DeliveryStatus.PENDING, DeliveryStatus.RETRYING})


class WebhookEvent(str, Enum):
    """Event types producers may enqueue."""

    NOTE_CREATED = "note.created"
    NOTE_UPDATED = "note.updated"
    NOTE_DELETED = "note.deleted"


TEST_EVENT = "webhook.test"
