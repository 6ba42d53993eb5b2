"""In-process payment store for single-instance deployments and tests."""
import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

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


def _in_range(value: datetime, start: datetime, end: datetime) -> bool:
    return start <= value <= end


class MemoryPaymentStore(PaymentStore):
    """Dictionary-backed store. Records are copied in and out."""

    def __init__(self) -> None:
        self.payment_intents: Dict[str, PaymentIntent] = {}
        self.booking_payments: Dict[str, BookingPayment] = {}
        self.accounts: Dict[str, ConnectedAccount] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.refunds: Dict[str, Refund] = {}
        self.reports: Dict[str, PaymentReport] = {}
        self.reconciliations: Dict[str, Reconciliation] = {}
        self._tenant_subscription: Dict[str, str] = {}
        self._processed_events: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    async def save_payment_intent(self, intent: PaymentIntent) -> None:
        self.payment_intents[intent.id] = intent.model_copy(deep=True)

    async def get_payment_intent(self, payment_intent_id: str) -> Optional[PaymentIntent]:
        intent = self.payment_intents.get(payment_intent_id)
        return intent.model_copy(deep=True) if intent else None

    async def list_payment_intents(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[PaymentIntent]:
        intents = [
            i.model_copy(deep=True)
            for i in self.payment_intents.values()
            if i.tenant_id == tenant_id and _in_range(i.created_at, start, end)
        ]
        return sorted(intents, key=lambda i: i.created_at)

    async def save_booking_payment(self, booking_payment: BookingPayment) -> None:
        self.booking_payments[booking_payment.id] = booking_payment.model_copy(deep=True)

    async def get_booking_payment_by_intent(
        self, payment_intent_id: str
    ) -> Optional[BookingPayment]:
        for payment in self.booking_payments.values():
            if payment.payment_intent_id == payment_intent_id:
                return payment.model_copy(deep=True)
        return None

    async def list_booking_payments(self, booking_id: str) -> List[BookingPayment]:
        payments = [
            p.model_copy(deep=True)
            for p in self.booking_payments.values()
            if p.booking_id == booking_id
        ]
        return sorted(payments, key=lambda p: p.created_at)

    async def list_tenant_booking_payments(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[BookingPayment]:
        payments = [
            p.model_copy(deep=True)
            for p in self.booking_payments.values()
            if p.tenant_id == tenant_id and _in_range(p.created_at, start, end)
        ]
        return sorted(payments, key=lambda p: p.created_at)

    async def save_connected_account(self, account: ConnectedAccount) -> None:
        self.accounts[account.tenant_id] = account.model_copy(deep=True)

    async def get_connected_account(self, tenant_id: str) -> Optional[ConnectedAccount]:
        account = self.accounts.get(tenant_id)
        return account.model_copy(deep=True) if account else None

    async def get_connected_account_by_id(self, account_id: str) -> Optional[ConnectedAccount]:
        for account in self.accounts.values():
            if account.id == account_id:
                return account.model_copy(deep=True)
        return None

    async def save_subscription(self, subscription: Subscription) -> None:
        self.subscriptions[subscription.id] = subscription.model_copy(deep=True)
        current_id = self._tenant_subscription.get(subscription.tenant_id)
        current = self.subscriptions.get(current_id) if current_id else None
        if current is None or current.created_at <= subscription.created_at:
            self._tenant_subscription[subscription.tenant_id] = subscription.id

    async def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        subscription_id = self._tenant_subscription.get(tenant_id)
        if subscription_id is None:
            return None
        return self.subscriptions[subscription_id].model_copy(deep=True)

    async def get_subscription_by_id(self, subscription_id: str) -> Optional[Subscription]:
        subscription = self.subscriptions.get(subscription_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def list_subscriptions(self, tenant_id: str) -> List[Subscription]:
        subscriptions = [
            s.model_copy(deep=True)
            for s in self.subscriptions.values()
            if s.tenant_id == tenant_id
        ]
        return sorted(subscriptions, key=lambda s: s.created_at)

    async def save_refund(self, refund: Refund) -> None:
        self.refunds[refund.id] = refund.model_copy(deep=True)

    async def list_refunds(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[Refund]:
        refunds = [
            r.model_copy(deep=True)
            for r in self.refunds.values()
            if r.tenant_id == tenant_id and _in_range(r.created_at, start, end)
        ]
        return sorted(refunds, key=lambda r: r.created_at)

    async def save_report(self, report: PaymentReport) -> None:
        if report.id in self.reports:
            raise StoreError(f"Report {report.id} already exists")
        self.reports[report.id] = report.model_copy(deep=True)

    async def save_reconciliation(self, reconciliation: Reconciliation) -> None:
        if reconciliation.id in self.reconciliations:
            raise StoreError(f"Reconciliation {reconciliation.id} already exists")
        self.reconciliations[reconciliation.id] = reconciliation.model_copy(deep=True)

    async def list_reconciliations(self, tenant_id: str) -> List[Reconciliation]:
        snapshots = [
            r.model_copy(deep=True)
            for r in self.reconciliations.values()
            if r.tenant_id == tenant_id
        ]
        return sorted(snapshots, key=lambda r: r.generated_at)

    def _prune_events(self, now: float) -> None:
        # Insertion order matches expiry order for a fixed TTL
        while self._processed_events:
            event_id, expires_at = next(iter(self._processed_events.items()))
            if expires_at > now:
                break
            del self._processed_events[event_id]

    async def is_event_processed(self, event_id: str) -> bool:
        expires_at = self._processed_events.get(event_id)
        if expires_at is None:
            return False
        if expires_at <= time.monotonic():
            del self._processed_events[event_id]
            return False
        return True

    async def mark_event_processed(self, event_id: str, ttl_seconds: int) -> bool:
        now = time.monotonic()
        self._prune_events(now)
        if await self.is_event_processed(event_id):
            return False
        self._processed_events[event_id] = now + ttl_seconds
        return True

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[key] -= 1
            if not self._lock_holders[key]:
                del self._lock_holders[key]
                del self._locks[key]

    async def list_tenant_ids(self) -> List[str]:
        tenant_ids = set(self.accounts)
        tenant_ids.update(i.tenant_id for i in self.payment_intents.values())
        tenant_ids.update(self._tenant_subscription)
        return sorted(tenant_ids)

    async def ping(self) -> bool:
        return True
