"""
Platform subscription billing.

Tenants pay the platform on a recurring plan, independently of the booking
payments they collect. Subscriptions are never deleted locally, only
cancelled.
"""
from typing import List, Mapping, Optional

import structlog

from platform_payments.core.exceptions import (
    NoInvoiceFound,
    NoInvoicePayment,
    PaymentsError,
    SubscriptionNotFound,
)
from platform_payments.core.models import (
    CustomerInfo,
    Refund,
    RefundInitiator,
    RefundReason,
    RefundResult,
    Subscription,
    SubscriptionResult,
    utcnow,
)
from platform_payments.core.payments import from_timestamp
from platform_payments.core.retry import RetryExecutor
from platform_payments.integrations.audit import AuditSink
from platform_payments.integrations.gateway import PaymentGateway, Resource
from platform_payments.monitoring.metrics import metrics
from platform_payments.storage.base import PaymentStore

logger = structlog.get_logger(__name__)


def _first_item(resource: Resource) -> Optional[Resource]:
    items = resource.get("items") or {}
    data = items.get("data") or []
    return data[0] if data else None


def _client_secret(resource: Resource) -> Optional[str]:
    invoice = resource.get("latest_invoice")
    if not invoice or isinstance(invoice, str):
        return None
    payment_intent = invoice.get("payment_intent")
    if not payment_intent or isinstance(payment_intent, str):
        return None
    return payment_intent.get("client_secret")


def apply_subscription_resource(subscription: Subscription, resource: Resource) -> Subscription:
    """Copy gateway subscription fields onto a local record."""
    subscription.status = resource.get("status") or subscription.status
    subscription.current_period_start = from_timestamp(resource.get("current_period_start"))
    subscription.current_period_end = from_timestamp(resource.get("current_period_end"))
    subscription.cancel_at_period_end = bool(resource.get("cancel_at_period_end"))
    subscription.canceled_at = from_timestamp(resource.get("canceled_at"))

    item = _first_item(resource)
    if item is not None:
        price = item.get("price") or {}
        subscription.plan_id = price.get("id") or subscription.plan_id
        subscription.unit_amount = price.get("unit_amount") or 0
        recurring = price.get("recurring") or {}
        subscription.interval = recurring.get("interval") or subscription.interval

    subscription.updated_at = utcnow()
    return subscription


class SubscriptionManager:
    """Creates and maintains a tenant's platform subscription."""

    def __init__(
        self,
        gateway: PaymentGateway,
        store: PaymentStore,
        retry_executor: RetryExecutor,
        audit: AuditSink,
    ):
        self.gateway = gateway
        self.store = store
        self.retry = retry_executor
        self.audit = audit

    async def _get_or_create_customer(
        self, tenant_id: str, customer_info: CustomerInfo
    ) -> SubscriptionResult | str:
        async def _find() -> Optional[Resource]:
            return await self.gateway.find_customer(tenant_id)

        found = await self.retry.execute_with_retry(_find, operation_name="find_customer")
        if not found.success:
            return SubscriptionResult.from_payment_error(found.error)
        if found.result is not None:
            return found.result["id"]

        async def _create() -> Resource:
            return await self.gateway.create_customer(
                email=customer_info.email,
                name=customer_info.business_name,
                metadata={
                    "tenantId": tenant_id,
                    "businessName": customer_info.business_name,
                },
            )

        created = await self.retry.execute_with_retry(_create, operation_name="create_customer")
        if not created.success:
            return SubscriptionResult.from_payment_error(created.error)

        logger.info(
            "platform_customer_created",
            tenant_id=tenant_id,
            customer_id=created.result["id"],
        )
        return created.result["id"]

    async def create_platform_subscription(
        self, tenant_id: str, price_id: str, customer_info: CustomerInfo
    ) -> SubscriptionResult:
        """
        Subscribe a tenant to a platform plan.

        Args:
            tenant_id: Subscribing tenant
            price_id: Gateway price for the plan
            customer_info: Billing contact for a new gateway customer

        Returns:
            SubscriptionResult: Subscription and the client secret of its
            first invoice payment, or the failure
        """
        try:
            return await self._create_platform_subscription(tenant_id, price_id, customer_info)
        except Exception as e:
            logger.error(
                "platform_subscription_create_failed",
                tenant_id=tenant_id,
                price_id=price_id,
                error=str(e),
                exc_info=True,
            )
            return SubscriptionResult.from_unexpected(e)

    async def update_platform_subscription(
        self, tenant_id: str, new_price_id: str
    ) -> SubscriptionResult:
        """
        Move a tenant to another plan.

        The price is replaced on the existing subscription item with
        prorations; the subscription itself is kept.
        """
        try:
            return await self._update_platform_subscription(tenant_id, new_price_id)
        except Exception as e:
            logger.error(
                "platform_subscription_update_failed",
                tenant_id=tenant_id,
                price_id=new_price_id,
                error=str(e),
                exc_info=True,
            )
            return SubscriptionResult.from_unexpected(e)

    async def cancel_platform_subscription(
        self, tenant_id: str, immediately: bool = False
    ) -> SubscriptionResult:
        """Cancel now, or at the end of the current period."""
        try:
            return await self._cancel_platform_subscription(tenant_id, immediately)
        except Exception as e:
            logger.error(
                "platform_subscription_cancel_failed",
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return SubscriptionResult.from_unexpected(e)

    async def get_platform_subscription(self, tenant_id: str) -> SubscriptionResult:
        try:
            subscription = await self.store.get_subscription(tenant_id)
        except Exception as e:
            logger.error(
                "platform_subscription_lookup_failed",
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return SubscriptionResult.from_unexpected(e)
        if subscription is None:
            return SubscriptionResult.from_exception(SubscriptionNotFound())
        return SubscriptionResult(success=True, subscription=subscription)

    async def refund_latest_invoice(
        self,
        tenant_id: str,
        amount: Optional[int] = None,
        reason: Optional[RefundReason] = None,
    ) -> RefundResult:
        """
        Refund the payment behind a tenant's latest subscription invoice.

        Platform billing refunds are initiated by the platform and are not
        recorded against the tenant's booking refunds.

        Args:
            tenant_id: Subscribed tenant
            amount: Partial amount (None refunds the whole invoice payment)
            reason: Gateway refund reason

        Returns:
            RefundResult: Refund record, or the failure (``subscription_not_found``,
            ``no_invoice_found``, ``no_invoice_payment`` or a gateway error)
        """
        try:
            return await self._refund_latest_invoice(tenant_id, amount, reason)
        except PaymentsError as e:
            logger.warning(
                "subscription_refund_rejected", tenant_id=tenant_id, error_code=e.code
            )
            return RefundResult.from_exception(e)
        except Exception as e:
            metrics.record_refund("failed")
            logger.error(
                "subscription_refund_failed",
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return RefundResult.from_unexpected(e)

    async def _create_platform_subscription(
        self, tenant_id: str, price_id: str, customer_info: CustomerInfo
    ) -> SubscriptionResult:
        customer = await self._get_or_create_customer(tenant_id, customer_info)
        if isinstance(customer, SubscriptionResult):
            return customer

        async def _subscribe() -> Resource:
            return await self.gateway.create_subscription(
                customer_id=customer,
                price_id=price_id,
                metadata={
                    "tenantId": tenant_id,
                    "businessName": customer_info.business_name,
                },
            )

        outcome = await self.retry.execute_with_retry(
            _subscribe, operation_name="create_subscription"
        )
        if not outcome.success:
            return SubscriptionResult.from_payment_error(outcome.error)

        resource = outcome.result
        client_secret = _client_secret(resource)
        subscription = apply_subscription_resource(
            Subscription(
                id=resource["id"],
                tenant_id=tenant_id,
                customer_id=customer,
                plan_id=price_id,
                status=resource.get("status") or "incomplete",
                client_secret=client_secret,
            ),
            resource,
        )
        await self.store.save_subscription(subscription)

        logger.info(
            "platform_subscription_created",
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            plan_id=subscription.plan_id,
            status=subscription.status,
        )
        await self.audit.publish(
            "subscription.created",
            {"tenant_id": tenant_id, "subscription_id": subscription.id, "plan_id": price_id},
        )

        return SubscriptionResult(
            success=True, subscription=subscription, client_secret=client_secret
        )

    async def _update_platform_subscription(
        self, tenant_id: str, new_price_id: str
    ) -> SubscriptionResult:
        subscription = await self.store.get_subscription(tenant_id)
        if subscription is None:
            return SubscriptionResult.from_exception(SubscriptionNotFound())

        async def _retrieve() -> Resource:
            return await self.gateway.retrieve_subscription(subscription.id)

        current = await self.retry.execute_with_retry(
            _retrieve, operation_name="retrieve_subscription"
        )
        if not current.success:
            return SubscriptionResult.from_payment_error(current.error)

        item = _first_item(current.result)
        if item is None:
            return SubscriptionResult.from_exception(
                PaymentsError("Subscription has no items to update")
            )

        async def _update() -> Resource:
            return await self.gateway.update_subscription_price(
                subscription.id, item["id"], new_price_id
            )

        outcome = await self.retry.execute_with_retry(_update, operation_name="update_subscription")
        if not outcome.success:
            return SubscriptionResult.from_payment_error(outcome.error)

        previous_plan = subscription.plan_id
        apply_subscription_resource(subscription, outcome.result)
        subscription.plan_id = new_price_id
        await self.store.save_subscription(subscription)

        logger.info(
            "platform_subscription_updated",
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            previous_plan_id=previous_plan,
            plan_id=new_price_id,
        )
        await self.audit.publish(
            "subscription.plan_changed",
            {
                "tenant_id": tenant_id,
                "subscription_id": subscription.id,
                "previous_plan_id": previous_plan,
                "plan_id": new_price_id,
            },
        )

        return SubscriptionResult(success=True, subscription=subscription)

    async def _cancel_platform_subscription(
        self, tenant_id: str, immediately: bool
    ) -> SubscriptionResult:
        subscription = await self.store.get_subscription(tenant_id)
        if subscription is None:
            return SubscriptionResult.from_exception(SubscriptionNotFound())

        async def _cancel() -> Resource:
            return await self.gateway.cancel_subscription(subscription.id, immediately)

        outcome = await self.retry.execute_with_retry(_cancel, operation_name="cancel_subscription")
        if not outcome.success:
            return SubscriptionResult.from_payment_error(outcome.error)

        apply_subscription_resource(subscription, outcome.result)
        if immediately and subscription.canceled_at is None:
            subscription.canceled_at = utcnow()
        await self.store.save_subscription(subscription)

        logger.info(
            "platform_subscription_canceled",
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            immediately=immediately,
            status=subscription.status,
        )
        await self.audit.publish(
            "subscription.canceled",
            {
                "tenant_id": tenant_id,
                "subscription_id": subscription.id,
                "immediately": immediately,
            },
        )

        return SubscriptionResult(success=True, subscription=subscription)

    async def _refund_latest_invoice(
        self,
        tenant_id: str,
        amount: Optional[int],
        reason: Optional[RefundReason],
    ) -> RefundResult:
        subscription = await self.store.get_subscription(tenant_id)
        if subscription is None:
            raise SubscriptionNotFound()

        async def _invoices() -> List[Resource]:
            return await self.gateway.list_invoices(subscription.id, limit=1)

        listed = await self.retry.execute_with_retry(_invoices, operation_name="list_invoices")
        if not listed.success:
            return RefundResult.from_payment_error(listed.error)
        if not listed.result:
            raise NoInvoiceFound()

        payment_intent = listed.result[0].get("payment_intent")
        if isinstance(payment_intent, Mapping):
            payment_intent = payment_intent.get("id")
        if not payment_intent:
            raise NoInvoicePayment()

        refund_metadata = {
            "tenantId": tenant_id,
            "subscriptionId": subscription.id,
            "initiatedBy": RefundInitiator.PLATFORM.value,
        }

        async def _refund() -> Resource:
            return await self.gateway.create_refund(
                payment_intent_id=payment_intent,
                amount=amount,
                reason=reason.value if reason else None,
                metadata=refund_metadata,
            )

        outcome = await self.retry.execute_with_retry(_refund, operation_name="create_refund")
        if not outcome.success:
            metrics.record_refund("failed")
            return RefundResult.from_payment_error(outcome.error)

        resource = outcome.result
        refund = Refund(
            id=resource["id"],
            tenant_id=tenant_id,
            payment_intent_id=payment_intent,
            amount=resource.get("amount") or amount or 0,
            currency=resource["currency"],
            reason=reason,
            initiated_by=RefundInitiator.PLATFORM,
            status=resource.get("status") or "pending",
            metadata=refund_metadata,
        )

        metrics.record_refund("succeeded")
        logger.info(
            "subscription_refund_processed",
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            refund_id=refund.id,
            payment_intent_id=payment_intent,
            amount=refund.amount,
        )
        await self.audit.publish(
            "subscription.refunded",
            {
                "tenant_id": tenant_id,
                "subscription_id": subscription.id,
                "refund_id": refund.id,
                "payment_intent_id": payment_intent,
                "amount": refund.amount,
            },
        )

        return RefundResult(success=True, refund=refund)
