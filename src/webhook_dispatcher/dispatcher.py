"""Webhook dispatcher: claims due deliveries, sends them signed, records outcomes."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

import structlog

from webhook_dispatcher.core.exceptions import RepositoryError, StoreUnavailableError
from webhook_dispatcher.delivery_client import WebhookHttpClient
from webhook_dispatcher.domain.enums import DeliveryStatus
from webhook_dispatcher.domain.webhooks import AttemptResult, DispatchSummary, DueDelivery
from webhook_dispatcher.repositories.base import DeliveryStore
from webhook_dispatcher.retry import RetryPolicy
from webhook_dispatcher.signing import canonical_json, sign

logger = structlog.get_logger(__name__)

EVENT_HEADER = "X-Webhook-Event"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"
SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def wrap_payload(event_data: Any) -> Any:
    """Objects and arrays are sent as-is; scalars and null as ``{"data": value}``."""
    return event_data if isinstance(event_data, (dict, list)) else {"data": event_data}


def build_signed_request(
    *,
    secret: str,
    payload: Any,
    event_type: str,
    delivery_id: str,
    timestamp: int,
) -> tuple[bytes, dict[str, str]]:
    body = canonical_json(payload).encode("utf-8")
    headers = {
        EVENT_HEADER: event_type,
        DELIVERY_ID_HEADER: delivery_id,
        SIGNATURE_HEADER: sign(secret, payload, timestamp),
        TIMESTAMP_HEADER: str(timestamp),
    }
    return body, headers


class _Outcome(str, Enum):
    DELIVERED = "delivered"
    RETRYING = "retrying"
    FAILED = "failed"
    SKIPPED = "skipped"
    LOST = "lost"


class WebhookDispatcher:
    """Stateless between invocations; all coordination goes through the store."""

    def __init__(
        self,
        store: DeliveryStore,
        client: WebhookHttpClient,
        *,
        policy: RetryPolicy | None = None,
        max_concurrency: int = 10,
        stale_claim_seconds: float = 120,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._client = client
        self._policy = policy or RetryPolicy()
        self._max_concurrency = max(1, max_concurrency)
        self._stale_claim = timedelta(seconds=stale_claim_seconds)
        self._clock = clock

    async def dispatch_pending_deliveries(self, limit: int) -> DispatchSummary:
        """Deliver up to ``limit`` due deliveries.

        Individual delivery failures end up in the summary. Store
        unavailability, whether while selecting the batch or while claiming
        and recording a single delivery, aborts the invocation with
        :class:`StoreUnavailableError` once in-flight sends have settled.
        """
        summary = DispatchSummary()
        limit = max(0, int(limit))
        if limit == 0:
            return summary

        try:
            now = self._clock()
            reclaimed = await self._store.reclaim_stale(now - self._stale_claim, self._policy)
            orphaned = await self._store.fail_orphaned_deliveries()
            due = await self._store.fetch_due_deliveries(limit)
        except StoreUnavailableError:
            raise
        except RepositoryError as exc:
            raise StoreUnavailableError(str(exc)) from exc

        if reclaimed or orphaned:
            logger.info("webhook sweep released deliveries", reclaimed=reclaimed, orphaned=orphaned)
        if not due:
            return summary

        semaphore = asyncio.Semaphore(self._max_concurrency)
        # tasks are created in created_at order and the semaphore wakes waiters FIFO
        tasks = [asyncio.create_task(self._process(item, semaphore)) for item in due]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
        unavailable = next(
            (r for r in results if isinstance(r, StoreUnavailableError)), None
        )
        if unavailable is not None:
            logger.error("webhook dispatch aborted: store unavailable", error=str(unavailable))
            raise unavailable

        for item, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(
                    "webhook delivery processing error",
                    delivery_id=str(item.id),
                    error=str(result),
                    error_type=type(result).__name__,
                )
                summary.errors.append(f"{item.id}: {type(result).__name__}: {result}")
                continue
            outcome = result
            if outcome is _Outcome.SKIPPED:
                summary.skipped += 1
                continue
            summary.attempted += 1
            if outcome is _Outcome.DELIVERED:
                summary.delivered += 1
            elif outcome is _Outcome.RETRYING:
                summary.retrying += 1
            elif outcome is _Outcome.FAILED:
                summary.failed += 1
            else:
                summary.errors.append(f"{item.id}: claim lost before result was recorded")

        logger.info(
            "webhook dispatch finished",
            attempted=summary.attempted,
            delivered=summary.delivered,
            retrying=summary.retrying,
            failed=summary.failed,
            skipped=summary.skipped,
            errors=len(summary.errors),
        )
        return summary

    async def _process(self, item: DueDelivery, semaphore: asyncio.Semaphore) -> _Outcome:
        async with semaphore:
            delivery = item.delivery
            claim_id = await self._store.claim_delivery(delivery.id, delivery.status)
            if claim_id is None:
                logger.info("webhook delivery already claimed", delivery_id=str(delivery.id))
                return _Outcome.SKIPPED

            timestamp = int(self._clock().timestamp())
            body, headers = build_signed_request(
                secret=item.secret,
                payload=wrap_payload(delivery.event_data),
                event_type=delivery.event_type,
                delivery_id=str(delivery.id),
                timestamp=timestamp,
            )
            response = await self._client.post(item.target_url, body, headers)

            now = self._clock()
            attempt_number = delivery.attempt_number + 1
            if response.ok:
                result = AttemptResult(
                    status=DeliveryStatus.DELIVERED,
                    response_status=response.status,
                    response_body=response.body,
                    delivered_at=now,
                )
            else:
                status, next_at = self._policy.outcome_for_failure(
                    attempt_number, delivery.max_attempts, now
                )
                result = AttemptResult(
                    status=status,
                    response_status=response.status,
                    response_body=response.body or None,
                    error_message=response.error,
                    next_attempt_at=next_at,
                )

            recorded = await self._store.mark_attempt_result(delivery.id, claim_id, result)
            if not recorded:
                logger.warning(
                    "webhook delivery claim lost",
                    delivery_id=str(delivery.id),
                    attempt_number=attempt_number,
                )
                return _Outcome.LOST

            if result.status == DeliveryStatus.DELIVERED:
                logger.info(
                    "webhook delivered",
                    delivery_id=str(delivery.id),
                    event_type=delivery.event_type,
                    attempt_number=attempt_number,
                    response_status=response.status,
                )
                return _Outcome.DELIVERED

            logger.warning(
                "webhook attempt failed",
                delivery_id=str(delivery.id),
                event_type=delivery.event_type,
                attempt_number=attempt_number,
                max_attempts=delivery.max_attempts,
                status=result.status.value,
                response_status=response.status,
                error=response.error,
            )
            if result.status == DeliveryStatus.FAILED:
                return _Outcome.FAILED
            return _Outcome.RETRYING
