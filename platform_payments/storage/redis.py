"""
Redis-backed payment store for multi-instance deployments.

Records are stored as JSON strings. Secondary indexes are sorted sets
scored by creation timestamp so range queries stay server-side.

Key layout ({prefix} defaults to ``payments``):
    {prefix}:intent:{id}                     PaymentIntent JSON
    {prefix}:booking_payment:{id}            BookingPayment JSON
    {prefix}:booking_payment_by_intent:{id}  BookingPayment id
    {prefix}:account:{tenant_id}             ConnectedAccount JSON
    {prefix}:account_tenant:{account_id}     tenant id
    {prefix}:subscription:{id}               Subscription JSON
    {prefix}:refund:{id}                     Refund JSON
    {prefix}:report:{id}                     PaymentReport JSON (write once)
    {prefix}:reconciliation:{id}             Reconciliation JSON (write once)
    {prefix}:webhook:processed:{event_id}    dedup marker with TTL
    {prefix}:tenants                         set of known tenant ids
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional, Type, TypeVar

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel
from redis.exceptions import LockNotOwnedError, RedisError

from platform_payments.config import Settings
from platform_payments.core.exceptions import StoreError
from platform_payments.core.models import (
    BookingPayment,
    ConnectedAccount,
    PaymentIntent,
    PaymentReport,
    Reconciliation,
    Refund,
    Subscription,
)
from platform_payments.storage.base import PaymentStore

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class RedisPaymentStore(PaymentStore):
    """Payment store shared between instances through Redis."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        prefix: str = "payments",
        lock_timeout: int = 300,
    ):
        """
        Initialize Redis store.

        Args:
            redis_client: Redis client created with ``decode_responses=True``
            prefix: Namespace for every key
            lock_timeout: Seconds before an abandoned lock expires
        """
        self.redis = redis_client
        self.prefix = prefix
        self.lock_timeout = lock_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisPaymentStore":
        if not settings.redis_url:
            raise StoreError("redis_url must be set for the redis store backend")
        client = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        return cls(client, settings.redis_key_prefix, settings.lock_timeout_seconds)

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    async def _get(self, model: Type[ModelT], key: str) -> Optional[ModelT]:
        raw = await self.redis.get(key)
        return model.model_validate_json(raw) if raw else None

    async def _range(
        self,
        model: Type[ModelT],
        index_key: str,
        record_prefix: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ModelT]:
        low = start.timestamp() if start else "-inf"
        high = end.timestamp() if end else "+inf"
        ids = await self.redis.zrangebyscore(index_key, low, high)
        if not ids:
            return []
        raws = await self.redis.mget([self._key(record_prefix, i) for i in ids])
        return [model.model_validate_json(raw) for raw in raws if raw]

    # Payment intents

    async def save_payment_intent(self, intent: PaymentIntent) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("intent", intent.id), intent.model_dump_json())
            pipe.zadd(
                self._key("tenant", intent.tenant_id, "intents"),
                {intent.id: intent.created_at.timestamp()},
            )
            pipe.sadd(self._key("tenants"), intent.tenant_id)
            await pipe.execute()

    async def get_payment_intent(self, payment_intent_id: str) -> Optional[PaymentIntent]:
        return await self._get(PaymentIntent, self._key("intent", payment_intent_id))

    async def list_payment_intents(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[PaymentIntent]:
        return await self._range(
            PaymentIntent, self._key("tenant", tenant_id, "intents"), "intent", start, end
        )

    # Booking payments

    async def save_booking_payment(self, booking_payment: BookingPayment) -> None:
        score = booking_payment.created_at.timestamp()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(
                self._key("booking_payment", booking_payment.id),
                booking_payment.model_dump_json(),
            )
            pipe.set(
                self._key("booking_payment_by_intent", booking_payment.payment_intent_id),
                booking_payment.id,
            )
            pipe.zadd(
                self._key("booking", booking_payment.booking_id, "payments"),
                {booking_payment.id: score},
            )
            pipe.zadd(
                self._key("tenant", booking_payment.tenant_id, "booking_payments"),
                {booking_payment.id: score},
            )
            await pipe.execute()

    async def get_booking_payment_by_intent(
        self, payment_intent_id: str
    ) -> Optional[BookingPayment]:
        booking_payment_id = await self.redis.get(
            self._key("booking_payment_by_intent", payment_intent_id)
        )
        if not booking_payment_id:
            return None
        return await self._get(
            BookingPayment, self._key("booking_payment", booking_payment_id)
        )

    async def list_booking_payments(self, booking_id: str) -> List[BookingPayment]:
        return await self._range(
            BookingPayment, self._key("booking", booking_id, "payments"), "booking_payment"
        )

    async def list_tenant_booking_payments(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[BookingPayment]:
        return await self._range(
            BookingPayment,
            self._key("tenant", tenant_id, "booking_payments"),
            "booking_payment",
            start,
            end,
        )

    # Connected accounts

    async def save_connected_account(self, account: ConnectedAccount) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("account", account.tenant_id), account.model_dump_json())
            pipe.set(self._key("account_tenant", account.id), account.tenant_id)
            pipe.sadd(self._key("tenants"), account.tenant_id)
            await pipe.execute()

    async def get_connected_account(self, tenant_id: str) -> Optional[ConnectedAccount]:
        return await self._get(ConnectedAccount, self._key("account", tenant_id))

    async def get_connected_account_by_id(self, account_id: str) -> Optional[ConnectedAccount]:
        tenant_id = await self.redis.get(self._key("account_tenant", account_id))
        if not tenant_id:
            return None
        return await self.get_connected_account(tenant_id)

    # Subscriptions

    async def save_subscription(self, subscription: Subscription) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(
                self._key("subscription", subscription.id), subscription.model_dump_json()
            )
            pipe.zadd(
                self._key("tenant", subscription.tenant_id, "subscriptions"),
                {subscription.id: subscription.created_at.timestamp()},
            )
            pipe.sadd(self._key("tenants"), subscription.tenant_id)
            await pipe.execute()

    async def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        latest = await self.redis.zrevrange(
            self._key("tenant", tenant_id, "subscriptions"), 0, 0
        )
        if not latest:
            return None
        return await self.get_subscription_by_id(latest[0])

    async def get_subscription_by_id(self, subscription_id: str) -> Optional[Subscription]:
        return await self._get(Subscription, self._key("subscription", subscription_id))

    async def list_subscriptions(self, tenant_id: str) -> List[Subscription]:
        return await self._range(
            Subscription, self._key("tenant", tenant_id, "subscriptions"), "subscription"
        )

    # Refunds

    async def save_refund(self, refund: Refund) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("refund", refund.id), refund.model_dump_json())
            pipe.zadd(
                self._key("tenant", refund.tenant_id, "refunds"),
                {refund.id: refund.created_at.timestamp()},
            )
            await pipe.execute()

    async def list_refunds(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[Refund]:
        return await self._range(
            Refund, self._key("tenant", tenant_id, "refunds"), "refund", start, end
        )

    # Append-only artifacts

    async def save_report(self, report: PaymentReport) -> None:
        created = await self.redis.set(
            self._key("report", report.id), report.model_dump_json(), nx=True
        )
        if not created:
            raise StoreError(f"Report {report.id} already exists")

    async def save_reconciliation(self, reconciliation: Reconciliation) -> None:
        created = await self.redis.set(
            self._key("reconciliation", reconciliation.id),
            reconciliation.model_dump_json(),
            nx=True,
        )
        if not created:
            raise StoreError(f"Reconciliation {reconciliation.id} already exists")
        await self.redis.zadd(
            self._key("tenant", reconciliation.tenant_id, "reconciliations"),
            {reconciliation.id: reconciliation.generated_at.timestamp()},
        )

    async def list_reconciliations(self, tenant_id: str) -> List[Reconciliation]:
        return await self._range(
            Reconciliation,
            self._key("tenant", tenant_id, "reconciliations"),
            "reconciliation",
        )

    # Coordination

    async def is_event_processed(self, event_id: str) -> bool:
        return bool(await self.redis.exists(self._key("webhook", "processed", event_id)))

    async def mark_event_processed(self, event_id: str, ttl_seconds: int) -> bool:
        created = await self.redis.set(
            self._key("webhook", "processed", event_id), "1", nx=True, ex=ttl_seconds
        )
        return bool(created)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self.redis.lock(self._key("lock", key), timeout=self.lock_timeout)
        await lock.acquire()
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockNotOwnedError:
                # Expired while held, so another holder may have overlapped
                logger.error("store_lock_expired", key=key, lock_timeout=self.lock_timeout)

    async def list_tenant_ids(self) -> List[str]:
        return sorted(await self.redis.smembers(self._key("tenants")))

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            logger.error("store_ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.redis.aclose()
