"""Domain services exports."""

from webhook_dispatcher.services.webhooks import WebhookService

__all__ = [
    "WebhookService",
]
