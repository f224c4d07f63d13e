import pytest
from httpx import ASGITransport

from client import CreditsClient
from client.credits_client import AuthenticationError, InsufficientCreditsError
from conftest import add_subscription, add_user, auth_header
from credits_api.config import get_settings
from credits_api.main import app
from credits_api.services.key_service import APIKeyService


async def _issue_key(session_factory, user_id):
    async with session_factory() as session:
        _, full_key = await APIKeyService(session).create_key(user_id, "tests")
        await session.commit()
    return full_key


@pytest.fixture
def sdk(client):
    """Build SDK clients that call the app in-process with the test overrides."""
    def build(api_key):
        return CreditsClient(api_key=api_key, base_url="http://test", transport=ASGITransport(app=app), max_retries=1)
    return build


@pytest.mark.asyncio
async def test_paid_user_is_charged_per_call_until_the_balance_runs_out(session_factory, sdk):
    await add_user(session_factory, "u1", balance=2)
    await add_subscription(session_factory, "u1", "sub_1")
    api_key = await _issue_key(session_factory, "u1")

    async with sdk(api_key) as credits:
        first = await credits.charge_api_call(request_id="req-1")
        second = await credits.charge_api_call(request_id="req-2")
        retried = await credits.charge_api_call(request_id="req-2")

        assert (first.charged, first.balance) == (1, 1)
        assert (second.charged, second.balance) == (1, 0)
        assert retried.applied is False

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await credits.charge_api_call(request_id="req-3")
        assert exc_info.value.status_code == 402
        assert exc_info.value.required == 1
        assert exc_info.value.available == 0

        assert await credits.get_balance() == 0


@pytest.mark.asyncio
async def test_free_user_calls_inside_quota_are_free(session_factory, sdk):
    await add_user(session_factory, "u1")
    api_key = await _issue_key(session_factory, "u1")

    async with sdk(api_key) as credits:
        charge = await credits.charge_api_call(request_id="req-1", calls=5)

    assert charge.within_quota is True
    assert charge.charged == 0
    assert charge.usage_this_period == 5


@pytest.mark.asyncio
async def test_storage_charge(session_factory, sdk):
    await add_user(session_factory, "u1", balance=50)
    await add_subscription(session_factory, "u1", "sub_1")
    api_key = await _issue_key(session_factory, "u1")

    async with sdk(api_key) as credits:
        charge = await credits.charge_storage(1.5, request_id="store-1")

    assert charge.charged == 15
    assert charge.balance == 35
    assert charge.reference_id == "storage:u1:store-1"


@pytest.mark.asyncio
async def test_unknown_key_is_an_authentication_error(sdk):
    async with sdk("bs_" + "f" * 32) as credits:
        with pytest.raises(AuthenticationError):
            await credits.get_balance()


@pytest.mark.asyncio
async def test_invalid_charge_body_is_rejected(client, session_factory):
    await add_user(session_factory, "u1")
    api_key = await _issue_key(session_factory, "u1")

    response = await client.post(
        "/v1/usage/api-call",
        json={"request_id": "req-1", "calls": 0},
        headers={"Authorization": f"Bearer {api_key}"},
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_pricing_is_public(client):
    response = await client.get("/v1/usage/pricing")

    assert response.status_code == 200
    body = response.json()
    assert body["rates"] == {"api_call": 1, "storage_gb_month": 10}
    assert body["free_quota"]["free_tier"]["api_calls"] == 100


# -----------------------------------------------------------------------------
# Session endpoints
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_credit_history_and_quota(client, session_factory):
    await add_user(session_factory, "u1")
    api_key = await _issue_key(session_factory, "u1")
    await client.post("/v1/usage/api-call", json={"request_id": "req-1"}, headers={"Authorization": f"Bearer {api_key}"})

    adjust = await client.post(
        "/v1/credits/adjust",
        json={"user_id": "u1", "amount": 20, "reference_id": "promo-1"},
        headers=auth_header("admin-1", role="admin"),
    )
    assert adjust.status_code == 200
    assert adjust.json()["balance"] == 20

    history = await client.get("/v1/credits/history", headers=auth_header("u1"))
    assert [e["reference_id"] for e in history.json()["entries"]] == ["promo-1"]

    quota = await client.get("/v1/credits/quota", headers=auth_header("u1"))
    assert quota.json()["paid"] is False
    assert quota.json()["api_calls"] == {"used": 1.0, "limit": 100.0}

    balance = await client.get("/v1/credits/balance", headers=auth_header("u1"))
    assert balance.json() == {"user_id": "u1", "balance": 20}


@pytest.mark.asyncio
async def test_adjust_requires_admin(client):
    response = await client.post(
        "/v1/credits/adjust",
        json={"user_id": "u1", "amount": 20},
        headers=auth_header("u1"),
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_adjust_repeated_reference_is_applied_once(client):
    headers = auth_header("admin-1", role="admin")
    body = {"user_id": "u1", "amount": 20, "reference_id": "promo-1"}

    first = await client.post("/v1/credits/adjust", json=body, headers=headers)
    second = await client.post("/v1/credits/adjust", json=body, headers=headers)

    assert first.json()["applied"] is True
    assert second.json()["applied"] is False
    assert second.json()["balance"] == 20


@pytest.mark.asyncio
async def test_adjust_debit_beyond_balance_is_payment_required(client):
    response = await client.post(
        "/v1/credits/adjust",
        json={"user_id": "u1", "amount": -5},
        headers=auth_header("admin-1", role="admin"),
    )

    assert response.status_code == 402
    assert response.json()["details"] == {"required": 5, "available": 0}


@pytest.mark.asyncio
async def test_signup_credits_are_granted_once(client, session_factory):
    await add_user(session_factory, "existing")

    first = await client.get("/v1/credits/balance", headers=auth_header("u1"))
    second = await client.get("/v1/credits/balance", headers=auth_header("u1"))
    existing = await client.get("/v1/credits/balance", headers=auth_header("existing"))

    assert first.json()["balance"] == 50
    assert second.json()["balance"] == 50
    assert existing.json()["balance"] == 0

    history = await client.get("/v1/credits/history", headers=auth_header("u1"))
    entries = history.json()["entries"]
    assert [e["reference_id"] for e in entries] == ["signup:u1"]
    assert entries[0]["reason"] == "signup_bonus"


@pytest.mark.asyncio
async def test_signup_credits_can_be_disabled(client, monkeypatch):
    monkeypatch.setenv("SIGNUP_CREDITS", "0")
    get_settings.cache_clear()

    response = await client.get("/v1/credits/balance", headers=auth_header("u1"))

    assert response.json()["balance"] == 0
