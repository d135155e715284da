"""Delivery status transition validators."""
from __future__ import annotations

from webhook_dispatcher.core.exceptions import InvalidStatusTransitionError
from webhook_dispatcher.domain.enums import DeliveryStatus

DELIVERY_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    # pending/retrying -> failed only for orphaned deliveries
    DeliveryStatus.PENDING: {DeliveryStatus.DELIVERING, DeliveryStatus.FAILED},
    DeliveryStatus.RETRYING: {DeliveryStatus.DELIVERING, DeliveryStatus.FAILED},
    DeliveryStatus.DELIVERING: {
        DeliveryStatus.DELIVERED,
        DeliveryStatus.RETRYING,
        DeliveryStatus.FAILED,
    },
    DeliveryStatus.DELIVERED: set(),
    DeliveryStatus.FAILED: set(),
}


def validate_delivery_transition(current: DeliveryStatus, new: DeliveryStatus) -> None:
    allowed = DELIVERY_TRANSITIONS.get(current, set())
    if new not in allowed:
        raise InvalidStatusTransitionError(
            f"Invalid delivery status transition: {current.value} → {new.value}"
        )
