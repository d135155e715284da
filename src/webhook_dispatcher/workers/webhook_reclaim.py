"""Worker: reclaim stale webhook delivery claims."""
from __future__ import annotations

from datetime import datetime, timedelta

from webhook_dispatcher.repositories.base import DeliveryStore
from webhook_dispatcher.retry import RetryPolicy


async def webhook_reclaim_stale(
    store: DeliveryStore,
    now: datetime,
    *,
    policy: RetryPolicy,
    stale_seconds: float,
) -> str | None:
    """Count deliveries stuck in ``delivering`` past ``stale_seconds`` as failed attempts."""
    cutoff = now - timedelta(seconds=stale_seconds)
    reclaimed = await store.reclaim_stale(cutoff, policy)
    return f"reclaimed={reclaimed}" if reclaimed else None
