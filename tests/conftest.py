import dataclasses
import json
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "console")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credits_api.config import get_settings
from credits_api.database import Base, create_engine_for_url, get_db, get_sessionmaker
from credits_api.errors import InvalidWebhookEvent, ProviderError
from credits_api.main import app
from credits_api.models.db_models import SubscriptionRecord, User
from credits_api.services.ledger import LedgerService
from credits_api.services.provider_events import (
    CheckoutCompleted,
    SubscriptionSnapshot,
    from_stripe_payload,
)
from credits_api.services.session_token import create_session_token
from credits_api.services.stripe_service import get_payment_provider


VALID_SIGNATURE = "t=1,v1=valid"


def auth_header(user_id: str, role: str = "user", email: Optional[str] = None) -> Dict[str, str]:
    token = create_session_token(user_id, email=email or f"{user_id}@example.com", role=role)
    return {"Authorization": f"Bearer {token}"}


class FakePaymentProvider:
    """In-memory payment provider recording every call made to it."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.subscriptions: Dict[str, SubscriptionSnapshot] = {}
        self.cancel_calls: List[str] = []
        self.checkout_calls: List[Dict[str, Any]] = []
        self.fail_cancel = False

    def is_configured(self) -> bool:
        return self.configured

    async def parse_webhook(self, payload: bytes, signature: Optional[str]):
        if signature != VALID_SIGNATURE:
            raise InvalidWebhookEvent("Invalid signature")
        raw = json.loads(payload)
        event = from_stripe_payload(raw)
        if isinstance(event, CheckoutCompleted) and event.subscription is None:
            snapshot = self.subscriptions.get(raw["data"]["object"].get("subscription"))
            if snapshot is not None:
                event = dataclasses.replace(
                    event,
                    subscription=snapshot,
                    user_id=event.user_id or snapshot.user_id,
                )
        return event

    async def create_checkout_session(self, user_id, price_id, success_url, cancel_url, email=None):
        self.checkout_calls.append({"user_id": user_id, "price_id": price_id, "email": email})
        session_id = f"cs_test_{len(self.checkout_calls)}"
        return {"checkout_url": f"https://checkout.test/{session_id}", "session_id": session_id}

    async def cancel_subscription(self, external_subscription_id: str) -> SubscriptionSnapshot:
        self.cancel_calls.append(external_subscription_id)
        if self.fail_cancel:
            raise ProviderError("Payment provider call failed: cancel_subscription")
        snapshot = self.subscriptions.get(external_subscription_id) or SubscriptionSnapshot(
            external_subscription_id=external_subscription_id,
            status="active",
        )
        snapshot = dataclasses.replace(snapshot, cancel_at_period_end=True)
        self.subscriptions[external_subscription_id] = snapshot
        return snapshot

    async def retrieve_subscription(self, external_subscription_id: str) -> SubscriptionSnapshot:
        if external_subscription_id not in self.subscriptions:
            raise ProviderError("Payment provider call failed: retrieve_subscription")
        return self.subscriptions[external_subscription_id]


@pytest.fixture(autouse=True)
def fresh_settings():
    """Each test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'credits.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest_asyncio.fixture
async def client(session_factory, provider):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_sessionmaker():
        return session_factory

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sessionmaker] = override_get_sessionmaker
    app.dependency_overrides[get_payment_provider] = lambda: provider

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()


async def add_user(session_factory, user_id: str, balance: int = 0, banned: bool = False) -> None:
    """Create a user, optionally funded through the ledger."""
    async with session_factory() as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com", banned=banned))
        await session.flush()
        if balance:
            await LedgerService(session).apply_transaction(
                user_id, balance, "manual_adjustment", f"seed:{user_id}"
            )
        await session.commit()


async def add_subscription(
    session_factory,
    user_id: str,
    external_id: str,
    status: str = "active",
    price_id: Optional[str] = "price_pro_monthly",
    last_event_at: Optional[datetime] = None,
) -> str:
    async with session_factory() as session:
        record = SubscriptionRecord(
            user_id=user_id,
            external_subscription_id=external_id,
            customer_id="cus_test",
            price_id=price_id,
            status=status,
            last_event_at=last_event_at,
        )
        session.add(record)
        await session.commit()
        return record.id
