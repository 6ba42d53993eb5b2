"""
Stripe implementation of the payment gateway.

Implements:
- Per-call timeout (a timeout surfaces as ``asyncio.TimeoutError`` and is
  classified as a retryable connection error)
- Destination charges with application fees for connected accounts
- Express account onboarding
- Webhook signature verification

Retries are not performed here; callers wrap each call in the
``RetryExecutor`` so every attempt is counted in one place.
"""
import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

import stripe
import structlog

from platform_payments.config import Settings, get_settings
from platform_payments.core.exceptions import SignatureInvalid
from platform_payments.integrations.gateway import PaymentGateway, Resource
from platform_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StripeGateway(PaymentGateway):
    """Thin async wrapper over the Stripe SDK."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize Stripe gateway."""
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.timeout = settings.gateway_timeout_seconds

        logger.info(
            "stripe_gateway_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    async def _call(
        self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any
    ) -> T:
        """
        Run a blocking SDK call off the event loop with a timeout.

        Args:
            operation: Name used in metrics and logs
            func: Stripe SDK callable
            *args: Positional arguments for ``func``
            **kwargs: Keyword arguments for ``func``

        Returns:
            The SDK response
        """
        start = time.time()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout
            )
        except Exception as e:
            metrics.record_gateway_call(operation, "failure", time.time() - start)
            logger.warning(
                "stripe_call_failed",
                operation=operation,
                error=str(e),
                error_class=type(e).__name__,
            )
            raise
        metrics.record_gateway_call(operation, "success", time.time() - start)
        return result

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
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_id:
            params["customer"] = customer_id
        if description:
            params["description"] = description
        if destination_account_id:
            params["transfer_data"] = {"destination": destination_account_id}
        if application_fee_amount:
            params["application_fee_amount"] = application_fee_amount
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        logger.info(
            "creating_payment_intent",
            amount=amount,
            currency=currency,
            destination=destination_account_id,
        )
        return await self._call("create_payment_intent", stripe.PaymentIntent.create, **params)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Resource:
        return await self._call(
            "retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id
        )

    async def confirm_payment_intent(
        self, payment_intent_id: str, payment_method_id: Optional[str] = None
    ) -> Resource:
        params: Dict[str, Any] = {}
        if payment_method_id:
            params["payment_method"] = payment_method_id
        return await self._call(
            "confirm_payment_intent", stripe.PaymentIntent.confirm, payment_intent_id, **params
        )

    async def cancel_payment_intent(self, payment_intent_id: str) -> Resource:
        return await self._call(
            "cancel_payment_intent", stripe.PaymentIntent.cancel, payment_intent_id
        )

    async def list_payment_intents(
        self, tenant_id: str, created_gte: int, created_lte: int
    ) -> List[Resource]:
        query = (
            f"metadata['tenantId']:'{tenant_id}' "
            f"AND created>={created_gte} AND created<={created_lte}"
        )

        def _search() -> List[Resource]:
            result = stripe.PaymentIntent.search(query=query, limit=100)
            return list(result.auto_paging_iter())

        return await self._call("list_payment_intents", _search)

    # Refunds

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        reverse_transfer: bool = False,
    ) -> Resource:
        params: Dict[str, Any] = {
            "payment_intent": payment_intent_id,
            "metadata": metadata or {},
        }
        if amount is not None:
            params["amount"] = amount
        if reason:
            params["reason"] = reason
        if reverse_transfer:
            params["reverse_transfer"] = True
            params["refund_application_fee"] = True

        logger.info("creating_refund", payment_intent_id=payment_intent_id, amount=amount)
        return await self._call("create_refund", stripe.Refund.create, **params)

    # Customers

    async def find_customer(self, tenant_id: str) -> Optional[Resource]:
        result = await self._call(
            "search_customers",
            stripe.Customer.search,
            query=f"metadata['tenantId']:'{tenant_id}'",
            limit=1,
        )
        return result.data[0] if result.data else None

    async def create_customer(
        self, email: str, name: str, metadata: Dict[str, str]
    ) -> Resource:
        return await self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata,
        )

    # Subscriptions

    async def create_subscription(
        self, customer_id: str, price_id: str, metadata: Dict[str, str]
    ) -> Resource:
        return await self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.payment_intent"],
            metadata=metadata,
        )

    async def retrieve_subscription(self, subscription_id: str) -> Resource:
        return await self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, subscription_id
        )

    async def update_subscription_price(
        self, subscription_id: str, item_id: str, price_id: str
    ) -> Resource:
        return await self._call(
            "update_subscription",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item_id, "price": price_id}],
            proration_behavior="create_prorations",
        )

    async def cancel_subscription(self, subscription_id: str, immediately: bool) -> Resource:
        if immediately:
            return await self._call(
                "cancel_subscription", stripe.Subscription.cancel, subscription_id
            )
        return await self._call(
            "cancel_subscription",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )

    async def list_invoices(self, subscription_id: str, limit: int = 1) -> List[Resource]:
        result = await self._call(
            "list_invoices", stripe.Invoice.list, subscription=subscription_id, limit=limit
        )
        return list(result.data)

    # Connected accounts

    async def create_account(
        self,
        tenant_id: str,
        email: str,
        business_name: str,
        country: str,
    ) -> Resource:
        return await self._call(
            "create_account",
            stripe.Account.create,
            type="express",
            country=country,
            email=email,
            business_profile={"name": business_name},
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            metadata={"tenantId": tenant_id},
        )

    async def retrieve_account(self, account_id: str) -> Resource:
        return await self._call("retrieve_account", stripe.Account.retrieve, account_id)

    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> Resource:
        return await self._call(
            "create_account_link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )

    # Webhooks

    async def construct_event(self, payload: bytes, signature: str) -> Resource:
        try:
            return stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.settings.stripe_webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise SignatureInvalid("Invalid signature")
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise SignatureInvalid("Invalid signature")
