import json

import pytest
from sqlalchemy import func, select

from conftest import VALID_SIGNATURE, add_subscription, add_user, auth_header
from credits_api.models.db_models import PaymentEvent
from credits_api.services.provider_events import SubscriptionSnapshot


CREATED = 1790000000


def _webhook_body(event_id, event_type, obj, created=CREATED):
    return json.dumps({"id": event_id, "type": event_type, "created": created, "data": {"object": obj}})


async def _post_webhook(client, body, signature=VALID_SIGNATURE):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["stripe-signature"] = signature
    return await client.post("/v1/billing/webhook", content=body, headers=headers)


CHECKOUT_SESSION = {
    "id": "cs_1",
    "mode": "subscription",
    "subscription": "sub_1",
    "customer": "cus_1",
    "metadata": {"userId": "user-1"},
}

INVOICE = {
    "id": "in_1",
    "subscription": "sub_1",
    "lines": {"data": [{"price": {"id": "price_pro_monthly"}}]},
}


@pytest.fixture
def provider_subscription(provider):
    provider.subscriptions["sub_1"] = SubscriptionSnapshot(
        external_subscription_id="sub_1",
        status="active",
        customer_id="cus_1",
        price_id="price_pro_monthly",
        user_id="user-1",
    )
    return provider


@pytest.mark.asyncio
@pytest.mark.parametrize("signature", [None, "t=1,v1=forged"])
async def test_webhook_rejects_bad_signature(client, signature):
    response = await _post_webhook(client, _webhook_body("evt_1", "invoice.paid", INVOICE), signature)

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_webhook"


@pytest.mark.asyncio
async def test_webhook_without_event_id_is_rejected_and_not_recorded(client, session_factory):
    body = json.dumps({"type": "invoice.paid", "created": CREATED, "data": {"object": INVOICE}})

    for _ in range(2):
        response = await _post_webhook(client, body)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_webhook"

    async with session_factory() as session:
        count = await session.execute(select(func.count()).select_from(PaymentEvent))
        assert count.scalar() == 0


@pytest.mark.asyncio
async def test_checkout_then_invoice_paid_funds_the_user(client, provider_subscription, session_factory):
    await add_user(session_factory, "user-1")
    checkout = await _post_webhook(client, _webhook_body("evt_1", "checkout.session.completed", CHECKOUT_SESSION))
    assert checkout.status_code == 200
    assert checkout.json()["status"] == "applied"

    paid = await _post_webhook(client, _webhook_body("evt_2", "invoice.paid", INVOICE))
    assert paid.json()["credits_granted"] == 1000

    redelivered = await _post_webhook(client, _webhook_body("evt_2", "invoice.paid", INVOICE))
    assert redelivered.status_code == 200
    assert redelivered.json() == {
        "received": True,
        "status": "duplicate",
        "event_type": "invoice.paid",
        "subscription_id": None,
        "detail": None,
        "credits_granted": 0,
    }

    billing = await client.get("/v1/billing", headers=auth_header("user-1"))
    assert billing.status_code == 200
    body = billing.json()
    assert body["balance"] == 1000
    assert body["active_subscription"]["external_subscription_id"] == "sub_1"
    assert body["active_subscription"]["plan"] == "pro"


@pytest.mark.asyncio
async def test_payment_failure_then_deletion(client, provider_subscription):
    await _post_webhook(client, _webhook_body("evt_1", "checkout.session.completed", CHECKOUT_SESSION))
    await _post_webhook(client, _webhook_body("evt_2", "invoice.payment_failed", INVOICE, created=CREATED + 60))

    billing = (await client.get("/v1/billing", headers=auth_header("user-1"))).json()
    assert billing["active_subscription"]["status"] == "past_due"

    deleted = {
        "id": "sub_1",
        "status": "canceled",
        "customer": "cus_1",
        "metadata": {"userId": "user-1"},
        "items": {"data": [{"price": {"id": "price_pro_monthly"}}]},
    }
    await _post_webhook(client, _webhook_body("evt_3", "customer.subscription.deleted", deleted, created=CREATED + 120))

    billing = (await client.get("/v1/billing", headers=auth_header("user-1"))).json()
    assert billing["active_subscription"] is None
    assert billing["subscriptions"][0]["status"] == "canceled"


@pytest.mark.asyncio
async def test_checkout_route(client, provider, session_factory):
    unknown = await client.post(
        "/v1/billing/checkout",
        json={"price_id": "price_nope", "success_url": "https://ok", "cancel_url": "https://no"},
        headers=auth_header("user-1"),
    )
    assert unknown.status_code == 400

    created = await client.post(
        "/v1/billing/checkout",
        json={"price_id": "price_pro_monthly", "success_url": "https://ok", "cancel_url": "https://no"},
        headers=auth_header("user-1", email="one@example.com"),
    )
    assert created.status_code == 200
    assert created.json()["checkout_url"].startswith("https://checkout.test/")
    assert provider.checkout_calls[-1]["email"] == "one@example.com"

    await add_subscription(session_factory, "user-1", "sub_1")
    conflict = await client.post(
        "/v1/billing/checkout",
        json={"price_id": "price_pro_yearly", "success_url": "https://ok", "cancel_url": "https://no"},
        headers=auth_header("user-1"),
    )
    assert conflict.status_code == 409


@pytest.mark.asyncio
async def test_checkout_without_billing_configured(client, provider):
    provider.configured = False

    response = await client.post(
        "/v1/billing/checkout",
        json={"price_id": "price_pro_monthly", "success_url": "https://ok", "cancel_url": "https://no"},
        headers=auth_header("user-1"),
    )

    assert response.status_code == 503
    assert response.json()["error"] == "billing_not_configured"


@pytest.mark.asyncio
async def test_cancel_route(client, provider, session_factory):
    subscription_id = await add_subscription(session_factory, "user-1", "sub_1")

    foreign = await client.post(f"/v1/billing/subscriptions/{subscription_id}/cancel", headers=auth_header("user-2"))
    assert foreign.status_code == 404
    assert provider.cancel_calls == []

    canceled = await client.post(f"/v1/billing/subscriptions/{subscription_id}/cancel", headers=auth_header("user-1"))
    assert canceled.status_code == 200
    assert canceled.json()["cancel_at_period_end"] is True
    assert canceled.json()["status"] == "active"

    again = await client.post(f"/v1/billing/subscriptions/{subscription_id}/cancel", headers=auth_header("user-1"))
    assert again.status_code == 200
    assert provider.cancel_calls == ["sub_1"]


@pytest.mark.asyncio
async def test_cancel_provider_failure_is_bad_gateway(client, provider, session_factory):
    provider.fail_cancel = True
    subscription_id = await add_subscription(session_factory, "user-1", "sub_1")

    response = await client.post(f"/v1/billing/subscriptions/{subscription_id}/cancel", headers=auth_header("user-1"))

    assert response.status_code == 502
    billing = (await client.get("/v1/billing", headers=auth_header("user-1"))).json()
    assert billing["active_subscription"]["cancel_at_period_end"] is False


@pytest.mark.asyncio
async def test_plans_are_public(client):
    response = await client.get("/v1/billing/plans")

    assert response.status_code == 200
    assert [p["id"] for p in response.json()["plans"]] == ["free", "pro", "enterprise"]
