"""Background workers for the webhook dispatcher.

Each worker module exports a task function taking the delivery store and
the current time; :func:`build_worker` binds them to a store.
"""
from __future__ import annotations

from functools import partial

from webhook_dispatcher.repositories.base import DeliveryStore
from webhook_dispatcher.retry import RetryPolicy
from webhook_dispatcher.settings import Settings
from webhook_dispatcher.worker import BackgroundWorker, WorkerTask
from webhook_dispatcher.workers.webhook_purge import webhook_purge_delivered
from webhook_dispatcher.workers.webhook_reclaim import webhook_reclaim_stale


def build_worker(store: DeliveryStore, settings: Settings) -> BackgroundWorker:
    policy = RetryPolicy.from_settings(settings)
    return BackgroundWorker(
        interval_seconds=settings.worker_interval_seconds,
        tasks=[
            WorkerTask(
                name="webhook_reclaim_stale",
                fn=partial(
                    webhook_reclaim_stale,
                    store,
                    policy=policy,
                    stale_seconds=settings.webhook_stale_claim_seconds,
                ),
            ),
            WorkerTask(
                name="webhook_purge_delivered",
                fn=partial(
                    webhook_purge_delivered,
                    store,
                    retention_days=settings.webhook_delivered_retention_days,
                ),
            ),
        ],
    )


__all__ = ["build_worker"]
