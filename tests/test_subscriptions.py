"""
Tests for platform subscriptions and connected-account onboarding.
"""
from unittest.mock import AsyncMock, patch

import pytest
import stripe

from platform_payments.config import Settings
from platform_payments.core.connected_accounts import ConnectedAccountManager
from platform_payments.core.models import (
    BusinessInfo,
    CustomerInfo,
    RefundInitiator,
    RefundReason,
)
from platform_payments.core.retry import RetryExecutor
from platform_payments.core.subscriptions import SubscriptionManager
from platform_payments.storage.memory import MemoryPaymentStore

from .conftest import TENANT_ID, FakeGateway, RecordingAuditSink

CUSTOMER = CustomerInfo(email="owner@salon.test", business_name="Salon One")
BUSINESS = BusinessInfo(email="owner@salon.test", business_name="Salon One")


@pytest.fixture
def subscription_manager(
    gateway: FakeGateway,
    store: MemoryPaymentStore,
    retry_executor: RetryExecutor,
    audit: RecordingAuditSink,
) -> SubscriptionManager:
    return SubscriptionManager(gateway, store, retry_executor, audit)


@pytest.fixture
def account_manager(
    gateway: FakeGateway,
    store: MemoryPaymentStore,
    retry_executor: RetryExecutor,
    audit: RecordingAuditSink,
    test_settings: Settings,
) -> ConnectedAccountManager:
    return ConnectedAccountManager(gateway, store, retry_executor, audit, test_settings)


class TestSubscriptionManager:
    """Test suite for SubscriptionManager."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_subscription(
        self,
        subscription_manager: SubscriptionManager,
        gateway: FakeGateway,
        store: MemoryPaymentStore,
        audit: RecordingAuditSink,
    ) -> None:
        """Test subscribing creates a customer, stores the subscription and returns its secret."""
        result = await subscription_manager.create_platform_subscription(
            TENANT_ID, "price_basic", CUSTOMER
        )

        assert result.success is True
        subscription = result.subscription
        assert subscription.tenant_id == TENANT_ID
        assert subscription.plan_id == "price_basic"
        assert subscription.status == "incomplete"
        assert subscription.unit_amount == 2900
        assert subscription.current_period_end is not None
        assert result.client_secret == f"{subscription.id}_secret"

        customer_call = gateway.calls_to("create_customer")[0]
        assert customer_call["metadata"]["tenantId"] == TENANT_ID
        assert (await store.get_subscription(TENANT_ID)).id == subscription.id
        assert audit.event_types == ["subscription.created"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_existing_customer_is_reused(
        self, subscription_manager: SubscriptionManager, gateway: FakeGateway
    ) -> None:
        """Test a tenant already known to the gateway is not created twice."""
        await gateway.create_customer("owner@salon.test", "Salon One", {"tenantId": TENANT_ID})

        result = await subscription_manager.create_platform_subscription(
            TENANT_ID, "price_basic", CUSTOMER
        )

        assert result.success is True
        assert len(gateway.calls_to("create_customer")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_subscription_gateway_failure(
        self, subscription_manager: SubscriptionManager, gateway: FakeGateway
    ) -> None:
        gateway.fail("create_subscription", stripe.InvalidRequestError("No such price", "price"))

        result = await subscription_manager.create_platform_subscription(
            TENANT_ID, "price_missing", CUSTOMER
        )

        assert result.success is False
        assert result.payment_error is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_subscription_plan(
        self,
        subscription_manager: SubscriptionManager,
        gateway: FakeGateway,
        audit: RecordingAuditSink,
    ) -> None:
        """Test changing plan swaps the price on the existing subscription item."""
        created = await subscription_manager.create_platform_subscription(
            TENANT_ID, "price_basic", CUSTOMER
        )
        item_id = gateway.subscriptions[created.subscription.id]["items"]["data"][0]["id"]

        result = await subscription_manager.update_platform_subscription(TENANT_ID, "price_pro")

        assert result.success is True
        assert result.subscription.id == created.subscription.id
        assert result.subscription.plan_id == "price_pro"
        assert result.subscription.unit_amount == 7900
        assert gateway.calls_to("update_subscription_price")[0]["item_id"] == item_id
        assert audit.event_types[-1] == "subscription.plan_changed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_without_subscription(
        self, subscription_manager: SubscriptionManager
    ) -> None:
        result = await subscription_manager.update_platform_subscription(TENANT_ID, "price_pro")

        assert result.success is False
        assert result.error_code == "subscription_not_found"
        assert result.error == "No active subscription found."

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_at_period_end(
        self, subscription_manager: SubscriptionManager
    ) -> None:
        """Test a default cancel keeps the subscription until the period ends."""
        await subscription_manager.create_platform_subscription(
            TENANT_ID, "price_basic", CUSTOMER
        )

        result = await subscription_manager.cancel_platform_subscription(TENANT_ID)

        assert result.success is True
        assert result.subscription.cancel_at_period_end is True
        assert result.subscription.status != "canceled"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_immediately(
        self,
        subscription_manager: SubscriptionManager,
        audit: RecordingAuditSink,
    ) -> None:
        await subscription_manager.create_platform_subscription(
            TENANT_ID, "price_basic", CUSTOMER
        )

        result = await subscription_manager.cancel_platform_subscription(
            TENANT_ID, immediately=True
        )

        assert result.subscription.status == "canceled"
        assert result.subscription.canceled_at is not None
        fetched = await subscription_manager.get_platform_subscription(TENANT_ID)
        assert fetched.subscription.status == "canceled"
        assert audit.event_types[-1] == "subscription.canceled"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_missing_subscription(
        self, subscription_manager: SubscriptionManager
    ) -> None:
        result = await subscription_manager.get_platform_subscription(TENANT_ID)

        assert result.success is False
        assert result.error_code == "subscription_not_found"


class TestConnectedAccountManager:
    """Test suite for ConnectedAccountManager."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_connected_account(
        self,
        account_manager: ConnectedAccountManager,
        gateway: FakeGateway,
        store: MemoryPaymentStore,
        audit: RecordingAuditSink,
    ) -> None:
        """Test onboarding opens an account and returns an account link."""
        result = await account_manager.create_connected_account(TENANT_ID, BUSINESS)

        assert result.success is True
        account = result.account
        assert account.tenant_id == TENANT_ID
        assert account.is_active is False
        assert account.onboarding_complete is False
        assert result.onboarding_url == f"https://connect.example.test/setup/{account.id}"

        link_call = gateway.calls_to("create_account_link")[0]
        assert link_call["refresh_url"] == "http://localhost:3000/settings/payments/refresh"
        assert link_call["return_url"] == "http://localhost:3000/settings/payments/success"
        assert (await store.get_connected_account(TENANT_ID)).id == account.id
        assert audit.event_types == ["account.created"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_existing_account_gets_new_link(
        self, account_manager: ConnectedAccountManager, gateway: FakeGateway
    ) -> None:
        """Test a tenant is never given a second account."""
        first = await account_manager.create_connected_account(TENANT_ID, BUSINESS)
        second = await account_manager.create_connected_account(TENANT_ID, BUSINESS)

        assert second.account.id == first.account.id
        assert len(gateway.calls_to("create_account")) == 1
        assert len(gateway.calls_to("create_account_link")) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_reflects_gateway_flags(
        self, account_manager: ConnectedAccountManager, gateway: FakeGateway
    ) -> None:
        """Test status is recomputed from the gateway on every call."""
        created = await account_manager.create_connected_account(TENANT_ID, BUSINESS)
        gateway.accounts[created.account.id].update(
            charges_enabled=True,
            payouts_enabled=True,
            details_submitted=True,
            requirements={"currently_due": []},
        )

        account = await account_manager.get_connected_account_status(TENANT_ID)

        assert account.is_active is True
        assert account.onboarding_complete is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_unknown_tenant(self, account_manager: ConnectedAccountManager) -> None:
        assert await account_manager.get_connected_account_status(TENANT_ID) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_gateway_unreachable(
        self, account_manager: ConnectedAccountManager, gateway: FakeGateway
    ) -> None:
        """Test a failing lookup yields None rather than an exception."""
        await account_manager.create_connected_account(TENANT_ID, BUSINESS)
        gateway.fail("retrieve_account", *[stripe.APIConnectionError("down") for _ in range(3)])

        assert await account_manager.get_connected_account_status(TENANT_ID) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_onboarding_link_requires_account(
        self, account_manager: ConnectedAccountManager
    ) -> None:
        result = await account_manager.create_onboarding_link(TENANT_ID)

        assert result.success is False
        assert result.error_code == "account_not_found"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_onboarding_link_refresh(
        self, account_manager: ConnectedAccountManager
    ) -> None:
        created = await account_manager.create_connected_account(TENANT_ID, BUSINESS)

        result = await account_manager.create_onboarding_link(TENANT_ID)

        assert result.success is True
        assert result.account.id == created.account.id
        assert result.onboarding_url.endswith(created.account.id)


class TestSubscriptionRefunds:
    """Test suite for refunding a tenant's latest subscription invoice."""

    @staticmethod
    async def subscribe_with_paid_invoice(
        subscription_manager: SubscriptionManager, gateway: FakeGateway
    ) -> str:
        created = await subscription_manager.create_platform_subscription(
            TENANT_ID, "price_basic", CUSTOMER
        )
        gateway.intents["pi_invoice_1"] = {
            "id": "pi_invoice_1",
            "amount": 2900,
            "currency": "gbp",
            "status": "succeeded",
            "metadata": {},
            "created": 0,
        }
        gateway.add_invoice(created.subscription.id, "pi_invoice_1")
        return created.subscription.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_latest_invoice(
        self,
        subscription_manager: SubscriptionManager,
        gateway: FakeGateway,
        audit: RecordingAuditSink,
    ) -> None:
        """Test the newest invoice's payment is refunded on the platform's behalf."""
        subscription_id = await self.subscribe_with_paid_invoice(subscription_manager, gateway)

        result = await subscription_manager.refund_latest_invoice(
            TENANT_ID, reason=RefundReason.REQUESTED_BY_CUSTOMER
        )

        assert result.success is True
        refund = result.refund
        assert refund.payment_intent_id == "pi_invoice_1"
        assert refund.amount == 2900
        assert refund.currency == "gbp"
        assert refund.initiated_by == RefundInitiator.PLATFORM

        assert gateway.calls_to("list_invoices")[0] == {
            "subscription_id": subscription_id,
            "limit": 1,
        }
        refund_call = gateway.calls_to("create_refund")[0]
        assert refund_call["reason"] == "requested_by_customer"
        assert refund_call["reverse_transfer"] is False
        assert refund_call["metadata"] == {
            "tenantId": TENANT_ID,
            "subscriptionId": subscription_id,
            "initiatedBy": "platform",
        }
        assert audit.event_types[-1] == "subscription.refunded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund_of_latest_invoice(
        self, subscription_manager: SubscriptionManager, gateway: FakeGateway
    ) -> None:
        await self.subscribe_with_paid_invoice(subscription_manager, gateway)

        result = await subscription_manager.refund_latest_invoice(TENANT_ID, amount=1000)

        assert result.success is True
        assert result.refund.amount == 1000
        assert gateway.intents["pi_invoice_1"]["amount_refunded"] == 1000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_without_subscription(
        self, subscription_manager: SubscriptionManager, gateway: FakeGateway
    ) -> None:
        result = await subscription_manager.refund_latest_invoice(TENANT_ID)

        assert result.success is False
        assert result.error_code == "subscription_not_found"
        assert gateway.calls_to("list_invoices") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_without_invoices(
        self, subscription_manager: SubscriptionManager, gateway: FakeGateway
    ) -> None:
        """Test a subscription that was never invoiced has nothing to refund."""
        await subscription_manager.create_platform_subscription(
            TENANT_ID, "price_basic", CUSTOMER
        )

        result = await subscription_manager.refund_latest_invoice(TENANT_ID)

        assert result.success is False
        assert result.error_code == "no_invoice_found"
        assert result.error == "No invoices found for subscription."
        assert gateway.calls_to("create_refund") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_invoice_without_payment(
        self, subscription_manager: SubscriptionManager, gateway: FakeGateway
    ) -> None:
        """Test an unpaid invoice is reported rather than refunded."""
        created = await subscription_manager.create_platform_subscription(
            TENANT_ID, "price_basic", CUSTOMER
        )
        gateway.add_invoice(created.subscription.id, None)

        result = await subscription_manager.refund_latest_invoice(TENANT_ID)

        assert result.success is False
        assert result.error_code == "no_invoice_payment"
        assert result.error == "No payment intent found for latest invoice."
        assert gateway.calls_to("create_refund") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_gateway_failure(
        self, subscription_manager: SubscriptionManager, gateway: FakeGateway
    ) -> None:
        await self.subscribe_with_paid_invoice(subscription_manager, gateway)
        gateway.fail(
            "create_refund",
            stripe.InvalidRequestError(
                "Charge has already been refunded", "charge", code="charge_already_refunded"
            ),
        )

        result = await subscription_manager.refund_latest_invoice(TENANT_ID)

        assert result.success is False
        assert result.payment_error is not None
        assert result.refund is None


class TestStoreFailures:
    """Test suite for subscription and account operations when the store fails."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_subscription_write_failure(
        self, subscription_manager: SubscriptionManager, store: MemoryPaymentStore
    ) -> None:
        with patch.object(
            store, "save_subscription", AsyncMock(side_effect=ConnectionError("store unreachable"))
        ):
            result = await subscription_manager.create_platform_subscription(
                TENANT_ID, "price_basic", CUSTOMER
            )

        assert result.success is False
        assert result.error_code == "unexpected_error"
        assert result.error == "store unreachable"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_subscription_read_failure(
        self, subscription_manager: SubscriptionManager, store: MemoryPaymentStore
    ) -> None:
        """Test every subscription operation returns an envelope when reads fail."""
        with patch.object(
            store, "get_subscription", AsyncMock(side_effect=ConnectionError("store unreachable"))
        ):
            results = [
                await subscription_manager.update_platform_subscription(TENANT_ID, "price_pro"),
                await subscription_manager.cancel_platform_subscription(TENANT_ID),
                await subscription_manager.get_platform_subscription(TENANT_ID),
                await subscription_manager.refund_latest_invoice(TENANT_ID),
            ]

        assert all(r.success is False for r in results)
        assert all(r.error_code == "unexpected_error" for r in results)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connected_account_store_failure(
        self, account_manager: ConnectedAccountManager, store: MemoryPaymentStore
    ) -> None:
        with patch.object(
            store,
            "get_connected_account",
            AsyncMock(side_effect=ConnectionError("store unreachable")),
        ):
            created = await account_manager.create_connected_account(TENANT_ID, BUSINESS)
            link = await account_manager.create_onboarding_link(TENANT_ID)
            status = await account_manager.get_connected_account_status(TENANT_ID)

        assert created.success is False
        assert created.error_code == "unexpected_error"
        assert link.error_code == "unexpected_error"
        assert status is None
