"""Compare-and-set behaviour of the in-memory delivery store."""
from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta

import pytest
from pydantic import ValidationError

from webhook_dispatcher.domain.enums import DeliveryStatus
from webhook_dispatcher.domain.webhooks import AttemptResult
from webhook_dispatcher.repositories.webhooks import ORPHANED_ERROR, STALE_CLAIM_ERROR


def _sub(store, **kwargs):
    params = {
        "user_id": uuid.uuid4(),
        "target_url": "http://127.0.0.1:1/hook",
        "secret": "s",
        "subscribed_events": ["note.created"],
    }
    params.update(kwargs)
    return store.add_subscription(**params)


async def test_fetch_due_is_oldest_first_and_limited(store, clock):
    sub = _sub(store)
    created = []
    for i in range(4):
        created.append(store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={"i": i}))
        clock.advance(seconds=1)

    due = await store.fetch_due_deliveries(3)

    assert [d.id for d in due] == [d.id for d in created[:3]]
    assert due[0].target_url == sub.target_url
    assert due[0].secret == "s"


async def test_fetch_due_skips_inactive_and_not_yet_due(store, clock, policy):
    active = _sub(store)
    inactive = _sub(store, active=False)
    waiting = store.add_delivery(webhook_id=active.id, event_type="note.created", event_data={})
    store.add_delivery(webhook_id=inactive.id, event_type="note.created", event_data={})

    claim = await store.claim_delivery(waiting.id, DeliveryStatus.PENDING)
    status, next_at = policy.outcome_for_failure(1, 5, clock())
    await store.mark_attempt_result(
        waiting.id, claim, AttemptResult(status=status, next_attempt_at=next_at, error_message="HTTP 500")
    )

    assert await store.fetch_due_deliveries(10) == []
    clock.advance(minutes=2)
    due = await store.fetch_due_deliveries(10)
    assert [d.id for d in due] == [waiting.id]


async def test_fetch_zero_limit(store):
    sub = _sub(store)
    store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={})
    assert await store.fetch_due_deliveries(0) == []
    assert await store.fetch_due_deliveries(-5) == []


async def test_claim_is_exclusive_under_concurrency(store):
    sub = _sub(store)
    delivery = store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={})

    claims = await asyncio.gather(
        *(store.claim_delivery(delivery.id, DeliveryStatus.PENDING) for _ in range(5))
    )

    assert sum(c is not None for c in claims) == 1
    assert store.get_delivery(delivery.id).status is DeliveryStatus.DELIVERING


async def test_claim_requires_expected_status(store):
    sub = _sub(store)
    delivery = store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={})
    assert await store.claim_delivery(delivery.id, DeliveryStatus.RETRYING) is None
    assert await store.claim_delivery(uuid.uuid4(), DeliveryStatus.PENDING) is None


async def test_mark_attempt_result_needs_current_claim(store, clock):
    sub = _sub(store)
    delivery = store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={})
    claim = await store.claim_delivery(delivery.id, DeliveryStatus.PENDING)
    delivered = AttemptResult(status=DeliveryStatus.DELIVERED, response_status=200, delivered_at=clock())

    assert await store.mark_attempt_result(delivery.id, uuid.uuid4(), delivered) is False
    assert await store.mark_attempt_result(delivery.id, claim, delivered) is True
    # the same claim cannot be used twice
    assert await store.mark_attempt_result(delivery.id, claim, delivered) is False

    record = store.get_delivery(delivery.id)
    assert record.status is DeliveryStatus.DELIVERED
    assert record.attempt_number == 1
    assert record.delivered_at == clock()
    assert record.next_attempt_at is None


async def test_retrying_on_last_attempt_is_forced_to_failed(store, clock):
    sub = _sub(store)
    delivery = store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={}, max_attempts=1)
    claim = await store.claim_delivery(delivery.id, DeliveryStatus.PENDING)

    await store.mark_attempt_result(
        delivery.id,
        claim,
        AttemptResult(
            status=DeliveryStatus.RETRYING,
            next_attempt_at=clock() + timedelta(minutes=1),
            error_message="HTTP 503",
        ),
    )

    record = store.get_delivery(delivery.id)
    assert record.status is DeliveryStatus.FAILED
    assert record.attempt_number == record.max_attempts == 1
    assert record.next_attempt_at is None


async def test_reclaim_stale_counts_as_failed_attempt(store, clock, policy):
    sub = _sub(store)
    delivery = store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={})
    fresh = store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={})
    old_claim = await store.claim_delivery(delivery.id, DeliveryStatus.PENDING)
    clock.advance(minutes=3)
    await store.claim_delivery(fresh.id, DeliveryStatus.PENDING)

    reclaimed = await store.reclaim_stale(clock() - timedelta(minutes=2), policy)

    assert reclaimed == 1
    record = store.get_delivery(delivery.id)
    assert record.status is DeliveryStatus.RETRYING
    assert record.attempt_number == 1
    assert record.error_message == STALE_CLAIM_ERROR
    assert record.next_attempt_at == clock() + timedelta(seconds=60)
    assert store.get_delivery(fresh.id).status is DeliveryStatus.DELIVERING
    # the crashed worker's late result is rejected
    late = AttemptResult(status=DeliveryStatus.DELIVERED, response_status=200, delivered_at=clock())
    assert await store.mark_attempt_result(delivery.id, old_claim, late) is False


async def test_reclaim_stale_on_last_attempt_fails(store, clock, policy):
    sub = _sub(store)
    delivery = store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={}, max_attempts=1)
    await store.claim_delivery(delivery.id, DeliveryStatus.PENDING)
    clock.advance(minutes=5)

    await store.reclaim_stale(clock() - timedelta(minutes=2), policy)

    record = store.get_delivery(delivery.id)
    assert record.status is DeliveryStatus.FAILED
    assert record.attempt_number == 1


async def test_fail_orphaned_deliveries(store):
    sub = _sub(store)
    delivery = store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={}, max_attempts=4)
    store.remove_subscription(sub.id)

    assert await store.fail_orphaned_deliveries() == 1
    record = store.get_delivery(delivery.id)
    assert record.status is DeliveryStatus.FAILED
    assert record.attempt_number == 4
    assert record.error_message == ORPHANED_ERROR
    assert await store.fail_orphaned_deliveries() == 0


async def test_list_recent_is_newest_first_and_capped(store, clock):
    sub = _sub(store)
    other = _sub(store)
    for i in range(55):
        store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={"i": i})
        clock.advance(seconds=1)
    store.add_delivery(webhook_id=other.id, event_type="note.created", event_data={})

    items = await store.list_recent_deliveries(sub.id, limit=500)

    assert len(items) == 50
    assert items[0].event_data == {"i": 54}
    assert all(a.created_at > b.created_at for a, b in zip(items, items[1:]))


async def test_enqueue_event_snapshots_payload(store):
    user_id = uuid.uuid4()
    wanted = _sub(store, user_id=user_id, subscribed_events=["note.created"])
    _sub(store, user_id=user_id, subscribed_events=["note.deleted"])
    _sub(store, user_id=user_id, subscribed_events=["note.created"], active=False)
    _sub(store, subscribed_events=["note.created"])
    data = {"note": {"title": "v1"}}

    created = await store.enqueue_event(
        user_id=user_id, event_type="note.created", event_data=data, max_attempts=3
    )
    data["note"]["title"] = "v2"

    assert [d.webhook_id for d in created] == [wanted.id]
    record = store.get_delivery(created[0].id)
    assert record.status is DeliveryStatus.PENDING
    assert record.attempt_number == 0
    assert record.max_attempts == 3
    assert record.next_attempt_at is None
    assert record.event_data == {"note": {"title": "v1"}}


async def test_purge_delivered(store, clock):
    sub = _sub(store)
    old = store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={})
    claim = await store.claim_delivery(old.id, DeliveryStatus.PENDING)
    await store.mark_attempt_result(
        old.id, claim, AttemptResult(status=DeliveryStatus.DELIVERED, response_status=200, delivered_at=clock())
    )
    pending = store.add_delivery(webhook_id=sub.id, event_type="note.created", event_data={})
    clock.advance(days=40)

    assert await store.purge_delivered(clock() - timedelta(days=30)) == 1
    assert [d.id for d in await store.list_recent_deliveries(sub.id)] == [pending.id]


@pytest.mark.parametrize("max_attempts", [0, -1])
def test_delivery_needs_at_least_one_attempt(store, max_attempts):
    sub = _sub(store)
    with pytest.raises(ValidationError):
        store.add_delivery(
            webhook_id=sub.id, event_type="note.created", event_data={}, max_attempts=max_attempts
        )


async def test_enqueue_event_rejects_zero_max_attempts(store):
    user_id = uuid.uuid4()
    sub = _sub(store, user_id=user_id)
    with pytest.raises(ValidationError):
        await store.enqueue_event(user_id=user_id, event_type="note.created", event_data={}, max_attempts=0)
    assert await store.list_recent_deliveries(sub.id) == []
