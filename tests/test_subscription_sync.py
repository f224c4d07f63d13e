from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from credits_api.errors import Conflict, InvalidRequest, NotFound, ProviderError, ProviderNotConfigured
from credits_api.models.db_models import PaymentEvent, SubscriptionRecord
from credits_api.services.consumption import ConsumptionService
from credits_api.services.ledger import LedgerService
from credits_api.services.provider_events import (
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
    UnrecognizedEvent,
)
from credits_api.services.subscriptions import SubscriptionService


T0 = datetime(2026, 10, 1, 12, 0)


def _snapshot(status="active", user_id="user-1", external_id="sub_1", **kwargs):
    return SubscriptionSnapshot(
        external_subscription_id=external_id,
        status=status,
        customer_id="cus_1",
        price_id=kwargs.pop("price_id", "price_pro_monthly"),
        user_id=user_id,
        **kwargs,
    )


def _checkout(event_id="evt_checkout", at=T0, user_id="user-1", **kwargs):
    return CheckoutCompleted(
        event_id=event_id,
        occurred_at=at,
        user_id=user_id,
        subscription=_snapshot(user_id=user_id, **kwargs),
    )


async def _record(db, external_id="sub_1"):
    return await SubscriptionService(db).get_by_external_id(external_id)


@pytest.mark.asyncio
async def test_checkout_creates_active_record(db):
    service = SubscriptionService(db)

    outcome = await service.apply_provider_event(_checkout())

    assert outcome.status == "applied"
    record = await _record(db)
    assert record.user_id == "user-1"
    assert record.status == "active"
    assert record.last_event_at == T0
    assert outcome.subscription_id == record.id


@pytest.mark.asyncio
async def test_duplicate_event_is_a_noop(db):
    service = SubscriptionService(db)
    await service.apply_provider_event(_checkout())
    update = SubscriptionUpdated(
        event_id="evt_update",
        occurred_at=T0 + timedelta(minutes=1),
        subscription=_snapshot(status="past_due"),
    )

    first = await service.apply_provider_event(update)
    second = await service.apply_provider_event(update)

    assert first.status == "applied"
    assert second.status == "duplicate"
    count = await db.execute(
        select(func.count()).select_from(PaymentEvent).where(PaymentEvent.provider_event_id == "evt_update")
    )
    assert count.scalar() == 1


@pytest.mark.asyncio
async def test_stale_event_does_not_overwrite_newer_state(db):
    service = SubscriptionService(db)
    await service.apply_provider_event(_checkout(at=T0))
    await service.apply_provider_event(
        SubscriptionUpdated(event_id="evt_new", occurred_at=T0 + timedelta(hours=1), subscription=_snapshot(status="past_due"))
    )

    outcome = await service.apply_provider_event(
        SubscriptionUpdated(event_id="evt_old", occurred_at=T0 + timedelta(minutes=5), subscription=_snapshot(status="active"))
    )

    assert outcome.status == "stale"
    assert (await _record(db)).status == "past_due"


@pytest.mark.asyncio
async def test_invoice_payment_failed_marks_past_due(db):
    service = SubscriptionService(db)
    await service.apply_provider_event(_checkout())

    outcome = await service.apply_provider_event(
        InvoicePaymentFailed(
            event_id="evt_fail",
            occurred_at=T0 + timedelta(days=30),
            invoice_id="in_1",
            external_subscription_id="sub_1",
        )
    )

    assert outcome.status == "applied"
    assert (await _record(db)).status == "past_due"


@pytest.mark.asyncio
async def test_canceled_is_terminal_for_updates(db):
    service = SubscriptionService(db)
    await service.apply_provider_event(_checkout())
    await service.apply_provider_event(
        SubscriptionDeleted(event_id="evt_del", occurred_at=T0 + timedelta(days=1), subscription=_snapshot(status="canceled"))
    )

    outcome = await service.apply_provider_event(
        SubscriptionUpdated(event_id="evt_upd", occurred_at=T0 + timedelta(days=2), subscription=_snapshot(status="active"))
    )

    assert outcome.status == "ignored"
    assert (await _record(db)).status == "canceled"


@pytest.mark.asyncio
async def test_newer_checkout_reactivates_canceled_subscription(db):
    service = SubscriptionService(db)
    await service.apply_provider_event(_checkout())
    await service.apply_provider_event(
        SubscriptionDeleted(event_id="evt_del", occurred_at=T0 + timedelta(days=1), subscription=_snapshot(status="canceled"))
    )

    outcome = await service.apply_provider_event(_checkout(event_id="evt_checkout_2", at=T0 + timedelta(days=2)))

    assert outcome.status == "applied"
    assert (await _record(db)).status == "active"


@pytest.mark.asyncio
async def test_delete_before_checkout_leaves_tombstone(db):
    service = SubscriptionService(db)

    deleted = await service.apply_provider_event(
        SubscriptionDeleted(event_id="evt_del", occurred_at=T0 + timedelta(minutes=5), subscription=_snapshot(status="canceled"))
    )
    late_checkout = await service.apply_provider_event(_checkout(at=T0))

    assert deleted.status == "applied"
    assert late_checkout.status == "stale"
    assert (await _record(db)).status == "canceled"


@pytest.mark.asyncio
async def test_new_activation_supersedes_other_active_subscription(db):
    service = SubscriptionService(db)
    await service.apply_provider_event(_checkout(event_id="evt_a", external_id="sub_old"))

    await service.apply_provider_event(_checkout(event_id="evt_b", external_id="sub_new", at=T0 + timedelta(days=1)))

    old = await _record(db, "sub_old")
    new = await _record(db, "sub_new")
    assert old.cancel_at_period_end is True
    assert new.cancel_at_period_end is False
    assert (await service.get_active_subscription("user-1")).id == new.id


@pytest.mark.asyncio
async def test_invoice_paid_grants_plan_credits_once(db):
    service = SubscriptionService(db)
    await service.apply_provider_event(_checkout())
    paid = InvoicePaid(event_id="evt_paid", occurred_at=T0, invoice_id="in_1", external_subscription_id="sub_1")
    succeeded = InvoicePaid(
        event_id="evt_succeeded",
        occurred_at=T0,
        invoice_id="in_1",
        external_subscription_id="sub_1",
        event_type="invoice.payment_succeeded",
    )

    first = await service.apply_provider_event(paid)
    second = await service.apply_provider_event(succeeded)

    assert first.credits_granted == 1000
    assert second.status == "duplicate"
    assert await LedgerService(db).get_balance("user-1") == 1000


@pytest.mark.asyncio
async def test_unrecognized_event_is_recorded_as_ignored(db):
    outcome = await SubscriptionService(db).apply_provider_event(
        UnrecognizedEvent(event_id="evt_x", occurred_at=T0, event_type="customer.created")
    )

    assert outcome.status == "ignored"
    event = (await db.execute(select(PaymentEvent).where(PaymentEvent.provider_event_id == "evt_x"))).scalar_one()
    assert event.outcome == "ignored"


@pytest.mark.asyncio
async def test_cancel_requires_ownership(db, provider):
    service = SubscriptionService(db, provider)
    await service.apply_provider_event(_checkout())
    record = await _record(db)

    with pytest.raises(NotFound):
        await service.cancel_subscription(record.id, "someone-else")

    assert provider.cancel_calls == []
    assert record.cancel_at_period_end is False


@pytest.mark.asyncio
async def test_cancel_sets_cancel_at_period_end_and_logs_event(db, provider):
    service = SubscriptionService(db, provider)
    await service.apply_provider_event(_checkout())
    record = await _record(db)

    canceled = await service.cancel_subscription(record.id, "user-1")

    assert canceled.cancel_at_period_end is True
    assert canceled.status == "active"
    assert provider.cancel_calls == ["sub_1"]
    events = await db.execute(select(PaymentEvent.event_type).where(PaymentEvent.subscription_id == record.id))
    assert "cancel_requested" in events.scalars().all()


@pytest.mark.asyncio
async def test_cancel_provider_failure_leaves_record_unchanged(db, provider):
    provider.fail_cancel = True
    service = SubscriptionService(db, provider)
    await service.apply_provider_event(_checkout())
    record = await _record(db)

    with pytest.raises(ProviderError):
        await service.cancel_subscription(record.id, "user-1")

    assert record.cancel_at_period_end is False


@pytest.mark.asyncio
async def test_cancel_without_provider_configuration(db, provider):
    provider.configured = False
    service = SubscriptionService(db, provider)
    await service.apply_provider_event(_checkout())
    record = await _record(db)

    with pytest.raises(ProviderNotConfigured):
        await service.cancel_subscription(record.id, "user-1")


@pytest.mark.asyncio
async def test_sync_pulls_provider_state(db, provider):
    service = SubscriptionService(db, provider)
    await service.apply_provider_event(_checkout())
    record = await _record(db)
    provider.subscriptions["sub_1"] = _snapshot(status="past_due", current_period_end=datetime(2026, 11, 1))

    synced = await service.sync_subscription(record.id, "user-1")

    assert synced.status == "past_due"
    assert synced.current_period_end == datetime(2026, 11, 1)


@pytest.mark.asyncio
async def test_checkout_rules(db, provider):
    service = SubscriptionService(db, provider)

    with pytest.raises(InvalidRequest):
        await service.create_checkout("user-1", "price_unknown", "https://ok", "https://cancel")

    session = await service.create_checkout("user-1", "price_pro_monthly", "https://ok", "https://cancel")
    assert session["session_id"] == "cs_test_1"

    await service.apply_provider_event(_checkout())
    with pytest.raises(Conflict):
        await service.create_checkout("user-1", "price_pro_yearly", "https://ok", "https://cancel")


@pytest.mark.asyncio
async def test_billing_info(db):
    service = SubscriptionService(db)
    await service.apply_provider_event(_checkout())

    info = await service.get_billing_info("user-1")

    assert info["balance"] == 0
    assert info["active_subscription"].external_subscription_id == "sub_1"
    assert [s.external_subscription_id for s in info["subscriptions"]] == ["sub_1"]
    assert isinstance(info["subscriptions"][0], SubscriptionRecord)


@pytest.mark.asyncio
async def test_past_due_subscription_stays_current_and_blocks_checkout(db, provider):
    service = SubscriptionService(db, provider)
    await service.apply_provider_event(_checkout())
    await service.apply_provider_event(
        InvoicePaymentFailed(
            event_id="evt_fail",
            occurred_at=T0 + timedelta(days=30),
            invoice_id="in_2",
            external_subscription_id="sub_1",
        )
    )

    info = await service.get_billing_info("user-1")
    assert info["active_subscription"].status == "past_due"

    with pytest.raises(Conflict):
        await service.create_checkout("user-1", "price_pro_monthly", "https://ok", "https://cancel")
    assert provider.checkout_calls == []
    assert await ConsumptionService(db).is_paid_user("user-1") is False
