"""
Pytest configuration and fixtures.
"""
import itertools
import json
import time
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
import stripe

from platform_payments.config import Settings
from platform_payments.core.booking_payments import BookingPaymentCoordinator
from platform_payments.core.exceptions import SignatureInvalid
from platform_payments.core.models import ConnectedAccount, PaymentStatus, utcnow
from platform_payments.core.payments import PaymentIntentService
from platform_payments.core.refunds import RefundProcessor
from platform_payments.core.retry import RetryExecutor
from platform_payments.integrations.audit import AuditSink
from platform_payments.integrations.gateway import PaymentGateway, Resource
from platform_payments.integrations.webhook_processor import WebhookProcessor
from platform_payments.storage.memory import MemoryPaymentStore

TENANT_ID = "tenant_1"
ACCOUNT_ID = "acct_tenant_1"
VALID_SIGNATURE = "t=1,v1=valid"


class FakeGateway(PaymentGateway):
    """
    Scripted in-memory gateway.

    Resources are plain dicts. ``fail(operation, *errors)`` queues errors
    raised by the next calls to ``operation`` before it behaves normally.
    """

    def __init__(self) -> None:
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.invoices: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.prices: Dict[str, int] = {"price_basic": 2900, "price_pro": 7900}
        self._ids = itertools.count(1)

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def calls_to(self, operation: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _call(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def set_intent_status(self, payment_intent_id: str, status: str) -> None:
        self.intents[payment_intent_id]["status"] = status

    # Payment intents

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_id: Optional[str] = None,
        destination_account_id: Optional[str] = None,
        application_fee_amount: Optional[int] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Resource:
        self._call(
            "create_payment_intent",
            amount=amount,
            currency=currency,
            customer_id=customer_id,
            destination_account_id=destination_account_id,
            application_fee_amount=application_fee_amount,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        payment_intent_id = self._id("pi")
        self.intents[payment_intent_id] = {
            "id": payment_intent_id,
            "amount": amount,
            "currency": currency,
            "status": "requires_payment_method",
            "client_secret": f"{payment_intent_id}_secret",
            "metadata": dict(metadata or {}),
            "created": int(time.time()),
        }
        return dict(self.intents[payment_intent_id])

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Resource:
        self._call("retrieve_payment_intent", payment_intent_id=payment_intent_id)
        if payment_intent_id not in self.intents:
            raise stripe.InvalidRequestError(
                f"No such payment_intent: '{payment_intent_id}'", "intent", code="resource_missing"
            )
        return dict(self.intents[payment_intent_id])

    async def confirm_payment_intent(
        self, payment_intent_id: str, payment_method_id: Optional[str] = None
    ) -> Resource:
        self._call(
            "confirm_payment_intent",
            payment_intent_id=payment_intent_id,
            payment_method_id=payment_method_id,
        )
        self.intents[payment_intent_id]["status"] = "succeeded"
        return dict(self.intents[payment_intent_id])

    async def cancel_payment_intent(self, payment_intent_id: str) -> Resource:
        self._call("cancel_payment_intent", payment_intent_id=payment_intent_id)
        self.intents[payment_intent_id]["status"] = "canceled"
        return dict(self.intents[payment_intent_id])

    async def list_payment_intents(
        self, tenant_id: str, created_gte: int, created_lte: int
    ) -> List[Resource]:
        self._call("list_payment_intents", tenant_id=tenant_id)
        return [
            dict(intent)
            for intent in self.intents.values()
            if intent["metadata"].get("tenantId") == tenant_id
            and created_gte <= intent["created"] <= created_lte
        ]

    # Refunds

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        reverse_transfer: bool = False,
    ) -> Resource:
        self._call(
            "create_refund",
            payment_intent_id=payment_intent_id,
            amount=amount,
            reason=reason,
            metadata=metadata,
            reverse_transfer=reverse_transfer,
        )
        intent = self.intents[payment_intent_id]
        refunded = intent.get("amount_refunded", 0)
        amount = amount if amount is not None else intent["amount"] - refunded
        intent["amount_refunded"] = refunded + amount
        refund = {
            "id": self._id("re"),
            "amount": amount,
            "status": "succeeded",
            "payment_intent": payment_intent_id,
            "currency": intent["currency"],
        }
        self.refunds.append(refund)
        return refund

    # Customers

    async def find_customer(self, tenant_id: str) -> Optional[Resource]:
        self._call("find_customer", tenant_id=tenant_id)
        for customer in self.customers.values():
            if customer["metadata"].get("tenantId") == tenant_id:
                return dict(customer)
        return None

    async def create_customer(self, email: str, name: str, metadata: Dict[str, str]) -> Resource:
        self._call("create_customer", email=email, name=name, metadata=metadata)
        customer_id = self._id("cus")
        self.customers[customer_id] = {
            "id": customer_id,
            "email": email,
            "name": name,
            "metadata": dict(metadata),
        }
        return dict(self.customers[customer_id])

    # Subscriptions

    def _subscription_item(self, price_id: str) -> Dict[str, Any]:
        return {
            "id": self._id("si"),
            "price": {
                "id": price_id,
                "unit_amount": self.prices.get(price_id, 1000),
                "recurring": {"interval": "month"},
            },
        }

    async def create_subscription(
        self, customer_id: str, price_id: str, metadata: Dict[str, str]
    ) -> Resource:
        self._call(
            "create_subscription", customer_id=customer_id, price_id=price_id, metadata=metadata
        )
        now = int(time.time())
        subscription_id = self._id("sub")
        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "customer": customer_id,
            "status": "incomplete",
            "current_period_start": now,
            "current_period_end": now + 30 * 86400,
            "cancel_at_period_end": False,
            "canceled_at": None,
            "metadata": dict(metadata),
            "items": {"data": [self._subscription_item(price_id)]},
            "latest_invoice": {"payment_intent": {"client_secret": f"{subscription_id}_secret"}},
        }
        return self.subscriptions[subscription_id]

    async def retrieve_subscription(self, subscription_id: str) -> Resource:
        self._call("retrieve_subscription", subscription_id=subscription_id)
        return self.subscriptions[subscription_id]

    async def update_subscription_price(
        self, subscription_id: str, item_id: str, price_id: str
    ) -> Resource:
        self._call(
            "update_subscription_price",
            subscription_id=subscription_id,
            item_id=item_id,
            price_id=price_id,
        )
        subscription = self.subscriptions[subscription_id]
        item = self._subscription_item(price_id)
        item["id"] = item_id
        subscription["items"] = {"data": [item]}
        return subscription

    async def cancel_subscription(self, subscription_id: str, immediately: bool) -> Resource:
        self._call(
            "cancel_subscription", subscription_id=subscription_id, immediately=immediately
        )
        subscription = self.subscriptions[subscription_id]
        if immediately:
            subscription["status"] = "canceled"
            subscription["canceled_at"] = int(time.time())
        else:
            subscription["cancel_at_period_end"] = True
        return subscription

    def add_invoice(self, subscription_id: str, payment_intent_id: Optional[str]) -> None:
        self.invoices.setdefault(subscription_id, []).insert(
            0,
            {
                "id": self._id("in"),
                "subscription": subscription_id,
                "payment_intent": payment_intent_id,
            },
        )

    async def list_invoices(self, subscription_id: str, limit: int = 1) -> List[Resource]:
        self._call("list_invoices", subscription_id=subscription_id, limit=limit)
        return [dict(invoice) for invoice in self.invoices.get(subscription_id, [])[:limit]]

    # Connected accounts

    async def create_account(
        self, tenant_id: str, email: str, business_name: str, country: str
    ) -> Resource:
        self._call(
            "create_account",
            tenant_id=tenant_id,
            email=email,
            business_name=business_name,
            country=country,
        )
        account_id = self._id("acct")
        self.accounts[account_id] = {
            "id": account_id,
            "charges_enabled": False,
            "payouts_enabled": False,
            "details_submitted": False,
            "requirements": {"currently_due": ["external_account"]},
            "metadata": {"tenantId": tenant_id},
        }
        return dict(self.accounts[account_id])

    async def retrieve_account(self, account_id: str) -> Resource:
        self._call("retrieve_account", account_id=account_id)
        return dict(self.accounts[account_id])

    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> Resource:
        self._call(
            "create_account_link",
            account_id=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
        )
        return {"url": f"https://connect.example.test/setup/{account_id}"}

    # Webhooks

    async def construct_event(self, payload: bytes, signature: str) -> Resource:
        self._call("construct_event", signature=signature)
        if signature != VALID_SIGNATURE:
            raise SignatureInvalid("Invalid signature")
        return json.loads(payload)


class RecordingAuditSink(AuditSink):
    """Keeps emitted audit events in order."""

    def __init__(self) -> None:
        self.events: List[tuple] = []

    async def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    @property
    def event_types(self) -> List[str]:
        return [event_type for event_type, _ in self.events]


async def no_sleep(seconds: float) -> None:
    return None


def webhook_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {"id": event_id, "type": event_type, "data": {"object": obj}}
    ).encode()


async def settle(store: MemoryPaymentStore, payment_intent_id: str) -> None:
    """Mark a local intent and its booking payment succeeded."""
    intent = await store.get_payment_intent(payment_intent_id)
    intent.status = PaymentStatus.SUCCEEDED
    await store.save_payment_intent(intent)
    booking_payment = await store.get_booking_payment_by_intent(payment_intent_id)
    if booking_payment is not None:
        booking_payment.status = PaymentStatus.SUCCEEDED
        booking_payment.updated_at = utcnow()
        await store.save_booking_payment(booking_payment)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        store_backend="memory",
        reports_dir=str(tmp_path / "reports"),
        reports_base_url="http://test/reports",
        app_name="platform-payments-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest.fixture
def store() -> MemoryPaymentStore:
    return MemoryPaymentStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def retry_executor(test_settings: Settings) -> RetryExecutor:
    """Retry executor that never actually waits."""
    return RetryExecutor(test_settings, sleep=no_sleep)


@pytest_asyncio.fixture
async def active_account(store: MemoryPaymentStore) -> ConnectedAccount:
    account = ConnectedAccount(
        id=ACCOUNT_ID,
        tenant_id=TENANT_ID,
        charges_enabled=True,
        payouts_enabled=True,
        details_submitted=True,
    )
    await store.save_connected_account(account)
    return account


@pytest.fixture
def payment_service(
    gateway: FakeGateway,
    store: MemoryPaymentStore,
    retry_executor: RetryExecutor,
    test_settings: Settings,
) -> PaymentIntentService:
    return PaymentIntentService(gateway, store, retry_executor, test_settings)


@pytest.fixture
def booking_coordinator(
    payment_service: PaymentIntentService,
    store: MemoryPaymentStore,
    test_settings: Settings,
) -> BookingPaymentCoordinator:
    return BookingPaymentCoordinator(payment_service, store, test_settings)


@pytest.fixture
def refund_processor(
    gateway: FakeGateway,
    store: MemoryPaymentStore,
    payment_service: PaymentIntentService,
    retry_executor: RetryExecutor,
    audit: RecordingAuditSink,
) -> RefundProcessor:
    return RefundProcessor(gateway, store, payment_service, retry_executor, audit)


@pytest.fixture
def webhook_processor(
    gateway: FakeGateway,
    store: MemoryPaymentStore,
    audit: RecordingAuditSink,
    test_settings: Settings,
) -> WebhookProcessor:
    return WebhookProcessor(gateway, store, audit, test_settings)
