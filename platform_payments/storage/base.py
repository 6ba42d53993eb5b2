"""
Payment store interface.

The engine treats persistence as a keyed read/write store. Implementations
exist for a single process (``MemoryPaymentStore``) and for multi-instance
deployments sharing Redis (``RedisPaymentStore``).
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, List, Optional

from platform_payments.core.models import (
    BookingPayment,
    ConnectedAccount,
    PaymentIntent,
    PaymentReport,
    Reconciliation,
    Refund,
    Subscription,
)


class PaymentStore(ABC):
    """Keyed store for payment records."""

    # Payment intents

    @abstractmethod
    async def save_payment_intent(self, intent: PaymentIntent) -> None:
        ...

    @abstractmethod
    async def get_payment_intent(self, payment_intent_id: str) -> Optional[PaymentIntent]:
        ...

    @abstractmethod
    async def list_payment_intents(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[PaymentIntent]:
        """List a tenant's intents created in ``[start, end]``, oldest first."""

    # Booking payments

    @abstractmethod
    async def save_booking_payment(self, booking_payment: BookingPayment) -> None:
        ...

    @abstractmethod
    async def get_booking_payment_by_intent(
        self, payment_intent_id: str
    ) -> Optional[BookingPayment]:
        ...

    @abstractmethod
    async def list_booking_payments(self, booking_id: str) -> List[BookingPayment]:
        """List every payment for a booking, oldest first."""

    @abstractmethod
    async def list_tenant_booking_payments(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[BookingPayment]:
        ...

    # Connected accounts

    @abstractmethod
    async def save_connected_account(self, account: ConnectedAccount) -> None:
        ...

    @abstractmethod
    async def get_connected_account(self, tenant_id: str) -> Optional[ConnectedAccount]:
        ...

    @abstractmethod
    async def get_connected_account_by_id(self, account_id: str) -> Optional[ConnectedAccount]:
        ...

    # Subscriptions

    @abstractmethod
    async def save_subscription(self, subscription: Subscription) -> None:
        ...

    @abstractmethod
    async def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        """Return the tenant's current subscription."""

    @abstractmethod
    async def get_subscription_by_id(self, subscription_id: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    async def list_subscriptions(self, tenant_id: str) -> List[Subscription]:
        ...

    # Refunds

    @abstractmethod
    async def save_refund(self, refund: Refund) -> None:
        ...

    @abstractmethod
    async def list_refunds(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[Refund]:
        ...

    # Append-only artifacts

    @abstractmethod
    async def save_report(self, report: PaymentReport) -> None:
        """
        Persist a report.

        Raises:
            StoreError: If a report with the same id already exists
        """

    @abstractmethod
    async def save_reconciliation(self, reconciliation: Reconciliation) -> None:
        """
        Persist a reconciliation snapshot.

        Raises:
            StoreError: If a snapshot with the same id already exists
        """

    @abstractmethod
    async def list_reconciliations(self, tenant_id: str) -> List[Reconciliation]:
        ...

    # Coordination

    @abstractmethod
    async def is_event_processed(self, event_id: str) -> bool:
        ...

    @abstractmethod
    async def mark_event_processed(self, event_id: str, ttl_seconds: int) -> bool:
        """
        Record a webhook event id.

        Returns:
            bool: True on first sight, False if the id was already recorded
        """

    @abstractmethod
    def lock(self, key: str) -> AsyncContextManager[None]:
        """Mutual exclusion for operations on one key (e.g. a booking)."""

    @abstractmethod
    async def list_tenant_ids(self) -> List[str]:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        """Release backend resources."""
