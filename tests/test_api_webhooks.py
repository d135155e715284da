"""Delivery history, test sends and the development receiver."""
from __future__ import annotations

import time
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from webhook_dispatcher.dispatcher import build_signed_request
from webhook_dispatcher.domain.webhooks import DELIVERY_LIST_FIELDS
from webhook_dispatcher.main import create_app
from webhook_dispatcher.repositories.memory import InMemoryDeliveryStore
from webhook_dispatcher.settings import Settings


@pytest.fixture
def owner_id():
    return uuid.uuid4()


@pytest.fixture
def live_store() -> InMemoryDeliveryStore:
    return InMemoryDeliveryStore()


@pytest.fixture
def webhook(live_store, receiver, owner_id):
    return live_store.add_subscription(
        user_id=owner_id,
        target_url=receiver.url,
        secret="s3cr3t",
        subscribed_events=["note.created"],
    )


@pytest.fixture
def make_client(aiohttp_client, live_store):
    async def factory(**overrides):
        settings = Settings(_env_file=None, delivery_store_backend="memory", **overrides)
        return await aiohttp_client(create_app(settings, store=live_store))

    return factory


@pytest.mark.asyncio
async def test_list_deliveries_requires_user(make_client, webhook):
    client = await make_client()
    resp = await client.get(f"/api/v1/webhooks/{webhook.id}/deliveries")
    assert resp.status == 401

    resp = await client.get(
        f"/api/v1/webhooks/{webhook.id}/deliveries", headers={"X-User-Id": "nope"}
    )
    assert resp.status == 400


@pytest.mark.asyncio
async def test_list_deliveries_invalid_webhook_id(make_client, owner_id):
    client = await make_client()
    resp = await client.get(
        "/api/v1/webhooks/not-a-uuid/deliveries", headers={"X-User-Id": str(owner_id)}
    )
    assert resp.status == 400


@pytest.mark.asyncio
async def test_list_deliveries_unknown_or_foreign_webhook(make_client, webhook, owner_id):
    client = await make_client()

    resp = await client.get(
        f"/api/v1/webhooks/{uuid.uuid4()}/deliveries", headers={"X-User-Id": str(owner_id)}
    )
    assert resp.status == 404

    resp = await client.get(
        f"/api/v1/webhooks/{webhook.id}/deliveries", headers={"X-User-Id": str(uuid.uuid4())}
    )
    assert resp.status == 404


@pytest.mark.asyncio
async def test_list_deliveries_newest_first_capped(make_client, live_store, webhook, owner_id):
    client = await make_client()
    base = datetime.now(timezone.utc)
    for i in range(53):
        live_store.add_delivery(
            webhook_id=webhook.id,
            event_type="note.created",
            event_data={"n": i},
            created_at=base + timedelta(seconds=i),
        )

    resp = await client.get(
        f"/api/v1/webhooks/{webhook.id}/deliveries", headers={"X-User-Id": str(owner_id)}
    )

    assert resp.status == 200
    items = (await resp.json())["deliveries"]
    assert len(items) == 50
    assert items[0]["event_data"] == {"n": 52}
    assert set(items[0]) == set(DELIVERY_LIST_FIELDS)
    assert items[0]["status"] == "pending"
    assert items[0]["attempt_number"] == 0
    assert "response_body" not in items[0]
    assert "claim_id" not in items[0]


@pytest.mark.asyncio
async def test_list_deliveries_empty(make_client, webhook, owner_id):
    client = await make_client()
    resp = await client.get(
        f"/api/v1/webhooks/{webhook.id}/deliveries", headers={"X-User-Id": str(owner_id)}
    )
    assert resp.status == 200
    assert await resp.json() == {"deliveries": []}


@pytest.mark.asyncio
async def test_send_test_webhook(make_client, webhook, owner_id, receiver):
    client = await make_client()

    resp = await client.post(
        f"/api/v1/webhooks/{webhook.id}/test", headers={"X-User-Id": str(owner_id)}
    )

    assert resp.status == 200
    body = await resp.json()
    assert body["success"] is True
    assert body["status"] == 200
    assert body["message"] == "Test webhook sent"
    (request,) = receiver.requests
    assert request["headers"]["X-Webhook-Event"] == "webhook.test"
    assert request["body"]["data"]["webhook_id"] == str(webhook.id)


@pytest.mark.asyncio
async def test_send_test_webhook_reports_receiver_error(make_client, webhook, owner_id, receiver):
    receiver.status = 500
    client = await make_client()

    resp = await client.post(
        f"/api/v1/webhooks/{webhook.id}/test", headers={"X-User-Id": str(owner_id)}
    )

    assert resp.status == 400
    body = await resp.json()
    assert body["success"] is False
    assert body["status"] == 500
    assert body["message"] == "Failed to deliver test webhook"


@pytest.mark.asyncio
async def test_send_test_webhook_unreachable(make_client, live_store, owner_id):
    sub = live_store.add_subscription(
        user_id=owner_id,
        target_url="http://127.0.0.1:1/hook",
        secret="s",
        subscribed_events=["note.created"],
    )
    client = await make_client()

    resp = await client.post(f"/api/v1/webhooks/{sub.id}/test", headers={"X-User-Id": str(owner_id)})

    assert resp.status == 400
    body = await resp.json()
    assert body["success"] is False
    assert body["message"] == "Failed to deliver test webhook"


@pytest.mark.asyncio
async def test_send_test_webhook_inactive(make_client, live_store, webhook, owner_id, receiver):
    live_store.set_subscription_active(webhook.id, False)
    client = await make_client()

    resp = await client.post(
        f"/api/v1/webhooks/{webhook.id}/test", headers={"X-User-Id": str(owner_id)}
    )

    assert resp.status == 400
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_dev_receiver_echoes_and_checks_signature(make_client):
    client = await make_client(env="development", dev_webhook_receiver_secret="dev-secret")
    payload = {"event": "note.created", "data": {"id": 1}}
    body, headers = build_signed_request(
        secret="dev-secret",
        payload=payload,
        event_type="note.created",
        delivery_id="d-1",
        timestamp=int(time.time()),
    )

    resp = await client.post(
        "/api/dev/webhook-receiver",
        data=body,
        headers={"Content-Type": "application/json", **headers},
    )

    assert resp.status == 200
    echoed = await resp.json()
    assert echoed["received"] is True
    assert echoed["method"] == "POST"
    assert echoed["body"] == payload
    assert echoed["signature_valid"] is True
    assert "X-Webhook-Signature" not in echoed["headers"]
    assert echoed["headers"]["X-Webhook-Delivery-Id"] == "d-1"


@pytest.mark.asyncio
async def test_dev_receiver_flags_bad_signature(make_client):
    client = await make_client(env="development", dev_webhook_receiver_secret="dev-secret")
    body, headers = build_signed_request(
        secret="someone-else",
        payload={"a": 1},
        event_type="note.created",
        delivery_id="d-2",
        timestamp=int(time.time()),
    )

    resp = await client.post("/api/dev/webhook-receiver", data=body, headers=headers)

    assert (await resp.json())["signature_valid"] is False


@pytest.mark.asyncio
async def test_dev_receiver_only_in_development(make_client):
    client = await make_client(env="production")
    resp = await client.post("/api/dev/webhook-receiver", json={"a": 1})
    assert resp.status in (404, 405)
