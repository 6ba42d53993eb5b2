"""
Tests for the Redis payment store against an in-process fake server.
"""
import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis

from platform_payments.core.exceptions import StoreError
from platform_payments.core.models import (
    BookingPayment,
    ConnectedAccount,
    PaymentIntent,
    PaymentStatus,
    PaymentType,
    Reconciliation,
    Subscription,
)
from platform_payments.storage.redis import RedisPaymentStore

from .conftest import ACCOUNT_ID, TENANT_ID

NOON = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def redis_store():
    """Redis store over fakeredis."""
    client = fake_aioredis.FakeRedis(decode_responses=True)
    store = RedisPaymentStore(client, prefix="test_payments", lock_timeout=5)
    yield store
    await client.flushall()
    await store.close()


class TestRedisPaymentStore:
    """Test suite for RedisPaymentStore."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_intent_range(self, redis_store: RedisPaymentStore) -> None:
        """Test intents are listed by creation time within the requested window."""
        for offset, payment_intent_id in [(-1, "pi_before"), (0, "pi_in"), (1, "pi_after")]:
            await redis_store.save_payment_intent(
                PaymentIntent(
                    id=payment_intent_id,
                    tenant_id=TENANT_ID,
                    amount=5000,
                    currency="gbp",
                    created_at=NOON + timedelta(days=offset),
                )
            )

        intents = await redis_store.list_payment_intents(
            TENANT_ID, NOON - timedelta(hours=1), NOON + timedelta(hours=1)
        )

        assert [i.id for i in intents] == ["pi_in"]
        fetched = await redis_store.get_payment_intent("pi_in")
        assert fetched.amount == 5000
        assert fetched.status == PaymentStatus.PENDING
        assert await redis_store.get_payment_intent("pi_missing") is None
        assert await redis_store.list_tenant_ids() == [TENANT_ID]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_booking_payment_indexes(self, redis_store: RedisPaymentStore) -> None:
        booking_payment = BookingPayment(
            tenant_id=TENANT_ID,
            booking_id="booking_1",
            customer_id="cus_1",
            payment_intent_id="pi_1",
            payment_type=PaymentType.DEPOSIT,
            amount=3000,
            total_amount=10000,
        )
        await redis_store.save_booking_payment(booking_payment)

        by_intent = await redis_store.get_booking_payment_by_intent("pi_1")
        lineage = await redis_store.list_booking_payments("booking_1")

        assert by_intent.id == booking_payment.id
        assert [p.id for p in lineage] == [booking_payment.id]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_connected_account_lookup(self, redis_store: RedisPaymentStore) -> None:
        await redis_store.save_connected_account(
            ConnectedAccount(id=ACCOUNT_ID, tenant_id=TENANT_ID, charges_enabled=True)
        )

        by_tenant = await redis_store.get_connected_account(TENANT_ID)
        by_id = await redis_store.get_connected_account_by_id(ACCOUNT_ID)

        assert by_tenant == by_id
        assert by_tenant.is_active is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_latest_subscription(self, redis_store: RedisPaymentStore) -> None:
        """Test the newest subscription is the tenant's current one."""
        for offset, subscription_id in [(0, "sub_old"), (1, "sub_new")]:
            await redis_store.save_subscription(
                Subscription(
                    id=subscription_id,
                    tenant_id=TENANT_ID,
                    customer_id="cus_1",
                    plan_id="price_basic",
                    status="active",
                    created_at=NOON + timedelta(days=offset),
                )
            )

        assert (await redis_store.get_subscription(TENANT_ID)).id == "sub_new"
        assert len(await redis_store.list_subscriptions(TENANT_ID)) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconciliations_are_write_once(self, redis_store: RedisPaymentStore) -> None:
        reconciliation = Reconciliation(tenant_id=TENANT_ID, date=date(2026, 3, 14))
        await redis_store.save_reconciliation(reconciliation)

        with pytest.raises(StoreError):
            await redis_store.save_reconciliation(reconciliation)

        stored = await redis_store.list_reconciliations(TENANT_ID)
        assert [r.id for r in stored] == [reconciliation.id]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_event_dedup_marker(self, redis_store: RedisPaymentStore) -> None:
        """Test only the first marker for an event id is created."""
        assert await redis_store.is_event_processed("evt_1") is False

        assert await redis_store.mark_event_processed("evt_1", 60) is True
        assert await redis_store.mark_event_processed("evt_1", 60) is False
        assert await redis_store.is_event_processed("evt_1") is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lock_serializes_holders(self, redis_store: RedisPaymentStore) -> None:
        """Test holders of the same key never overlap."""
        active = 0
        overlaps = 0

        async def hold() -> None:
            nonlocal active, overlaps
            async with redis_store.lock("booking:booking_1"):
                active += 1
                if active > 1:
                    overlaps += 1
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(hold(), hold(), hold())

        assert overlaps == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_lock_released_quietly(self, redis_store: RedisPaymentStore) -> None:
        """Test a lock that timed out while held does not fail its holder."""
        async with redis_store.lock("booking:booking_1"):
            await redis_store.redis.delete("test_payments:lock:booking:booking_1")

        async with redis_store.lock("booking:booking_1"):
            assert await redis_store.redis.exists("test_payments:lock:booking:booking_1") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ping(self, redis_store: RedisPaymentStore) -> None:
        assert await redis_store.ping() is True
