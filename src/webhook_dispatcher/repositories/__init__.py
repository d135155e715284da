"""Repository package exports."""

from webhook_dispatcher.repositories.base import DeliveryStore
from webhook_dispatcher.repositories.memory import InMemoryDeliveryStore
from webhook_dispatcher.repositories.webhooks import PostgresDeliveryStore

__all__ = [
    "DeliveryStore",
    "InMemoryDeliveryStore",
    "PostgresDeliveryStore",
]
