"""Worker: purge old delivered webhook deliveries."""
from __future__ import annotations

from datetime import datetime, timedelta

from webhook_dispatcher.repositories.base import DeliveryStore


async def webhook_purge_delivered(
    store: DeliveryStore, now: datetime, *, retention_days: int
) -> str | None:
    cutoff = now - timedelta(days=retention_days)
    purged = await store.purge_delivered(cutoff)
    return f"purged={purged}" if purged else None
