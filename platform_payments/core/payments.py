"""
Payment intent service.

Creates, confirms and looks up payment intents charged against a tenant's
connected account. Booking flows are built on top of this service.
"""
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import structlog

from platform_payments.config import Settings, get_settings
from platform_payments.core.exceptions import (
    IllegalTransition,
    NoActiveAccount,
    PaymentsError,
    ValidationFailed,
)
from platform_payments.core.models import (
    PaymentIntent,
    PaymentIntentResult,
    PaymentStatus,
    PaymentStatusResult,
    utcnow,
)
from platform_payments.core.retry import RetryExecutor
from platform_payments.core.state_machine import next_status
from platform_payments.integrations.gateway import PaymentGateway, Resource
from platform_payments.storage.base import PaymentStore

logger = structlog.get_logger(__name__)

_PENDING_GATEWAY_STATUSES = frozenset(
    {
        "requires_payment_method",
        "requires_confirmation",
        "requires_action",
        "requires_capture",
        "processing",
    }
)


def round_half_up(value: float) -> int:
    """Round to the nearest minor unit, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def map_gateway_status(gateway_status: Optional[str]) -> PaymentStatus:
    """Map a gateway intent status onto the four-state lifecycle."""
    if gateway_status in _PENDING_GATEWAY_STATUSES:
        return PaymentStatus.PENDING
    if gateway_status == "succeeded":
        return PaymentStatus.SUCCEEDED
    return PaymentStatus.FAILED


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def apply_status(intent: PaymentIntent, target: PaymentStatus) -> bool:
    """
    Move a local intent to ``target`` through the transition table.

    Returns:
        bool: True if the intent changed

    Raises:
        IllegalTransition: If the move is not allowed
    """
    if not next_status(intent.status, target):
        return False
    intent.status = target
    intent.updated_at = utcnow()
    return True


class PaymentIntentService:
    """Gateway-backed payment intents for connected accounts."""

    def __init__(
        self,
        gateway: PaymentGateway,
        store: PaymentStore,
        retry_executor: RetryExecutor,
        settings: Optional[Settings] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.retry = retry_executor
        self.settings = settings or get_settings()

    def calculate_platform_fee(self, amount: int) -> int:
        """Percentage plus flat fee, in minor units."""
        percent_fee = round_half_up(amount * self.settings.platform_fee_percent)
        return percent_fee + self.settings.platform_fee_flat

    async def _require_active_account(self, tenant_id: str) -> str:
        account = await self.store.get_connected_account(tenant_id)
        if account is None or not account.is_active:
            raise NoActiveAccount()
        return account.id

    async def create_payment_intent(
        self,
        tenant_id: str,
        amount: int,
        currency: Optional[str] = None,
        customer_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        application_fee_amount: Optional[int] = None,
    ) -> PaymentIntentResult:
        """
        Create a payment intent transferring to the tenant's connected account.

        Args:
            tenant_id: Tenant receiving the funds
            amount: Amount in minor currency units
            currency: Currency code (defaults to ``default_currency``)
            customer_id: Optional gateway customer
            description: Optional statement description
            metadata: Extra metadata stored on the intent
            application_fee_amount: Fee override (defaults to the platform fee)

        Returns:
            PaymentIntentResult: Created intent and client secret, or the failure
        """
        try:
            return await self._create_payment_intent(
                tenant_id,
                amount,
                currency,
                customer_id,
                description,
                metadata,
                application_fee_amount,
            )
        except PaymentsError as e:
            logger.warning(
                "payment_intent_rejected",
                tenant_id=tenant_id,
                amount=amount,
                error_code=e.code,
            )
            return PaymentIntentResult.from_exception(e)
        except Exception as e:
            logger.error(
                "payment_intent_creation_failed",
                tenant_id=tenant_id,
                amount=amount,
                error=str(e),
                exc_info=True,
            )
            return PaymentIntentResult.from_unexpected(e)

    async def _create_payment_intent(
        self,
        tenant_id: str,
        amount: int,
        currency: Optional[str],
        customer_id: Optional[str],
        description: Optional[str],
        metadata: Optional[Dict[str, str]],
        application_fee_amount: Optional[int],
    ) -> PaymentIntentResult:
        if amount < self.settings.minimum_charge_amount:
            raise ValidationFailed(
                [f"Amount must be at least {self.settings.minimum_charge_amount}"]
            )

        destination = await self._require_active_account(tenant_id)
        currency = (currency or self.settings.default_currency).lower()
        fee = (
            application_fee_amount
            if application_fee_amount is not None
            else self.calculate_platform_fee(amount)
        )
        intent_metadata = {**(metadata or {}), "tenantId": tenant_id}
        # Shared by every retry so the gateway never creates a second intent
        idempotency_key = f"pi_{tenant_id}_{uuid.uuid4().hex}"

        logger.info(
            "creating_payment_intent",
            tenant_id=tenant_id,
            amount=amount,
            currency=currency,
            application_fee_amount=fee,
        )

        async def _create() -> Resource:
            return await self.gateway.create_payment_intent(
                amount=amount,
                currency=currency,
                customer_id=customer_id,
                destination_account_id=destination,
                application_fee_amount=fee,
                description=description,
                metadata=intent_metadata,
                idempotency_key=idempotency_key,
            )

        outcome = await self.retry.execute_with_retry(
            _create, operation_name="create_payment_intent"
        )
        if not outcome.success:
            return PaymentIntentResult.from_payment_error(outcome.error, attempts=outcome.attempts)

        resource = outcome.result
        intent = PaymentIntent(
            id=resource["id"],
            tenant_id=tenant_id,
            customer_id=customer_id,
            amount=amount,
            currency=currency,
            status=map_gateway_status(resource.get("status")),
            destination_account_id=destination,
            application_fee_amount=fee,
            metadata=intent_metadata,
        )
        try:
            await self.store.save_payment_intent(intent)
        except Exception:
            await self.cancel_payment_intent(intent.id)
            raise

        logger.info(
            "payment_intent_created",
            tenant_id=tenant_id,
            payment_intent_id=intent.id,
            status=intent.status.value,
            attempts=outcome.attempts,
        )

        return PaymentIntentResult(
            success=True,
            payment_intent=intent,
            client_secret=resource.get("client_secret"),
            attempts=outcome.attempts,
        )

    async def confirm_payment_intent(
        self, payment_intent_id: str, payment_method_id: Optional[str] = None
    ) -> PaymentIntentResult:
        """Confirm an intent and record the resulting status locally."""

        async def _confirm() -> Resource:
            return await self.gateway.confirm_payment_intent(payment_intent_id, payment_method_id)

        outcome = await self.retry.execute_with_retry(
            _confirm, operation_name="confirm_payment_intent"
        )
        if not outcome.success:
            return PaymentIntentResult.from_payment_error(outcome.error, attempts=outcome.attempts)

        resource = outcome.result
        try:
            intent = await self.store.get_payment_intent(payment_intent_id)
            if intent is not None:
                self._sync_from_resource(intent, resource)
                await self.store.save_payment_intent(intent)
        except IllegalTransition as e:
            return PaymentIntentResult.from_exception(
                e, payment_intent=intent, attempts=outcome.attempts
            )
        except Exception as e:
            logger.error(
                "payment_intent_confirm_failed",
                payment_intent_id=payment_intent_id,
                error=str(e),
                exc_info=True,
            )
            return PaymentIntentResult.from_unexpected(e, attempts=outcome.attempts)

        logger.info(
            "payment_intent_confirmed",
            payment_intent_id=payment_intent_id,
            gateway_status=resource.get("status"),
        )

        return PaymentIntentResult(
            success=True,
            payment_intent=intent,
            client_secret=resource.get("client_secret"),
            attempts=outcome.attempts,
        )

    def _sync_from_resource(self, intent: PaymentIntent, resource: Resource) -> None:
        apply_status(intent, map_gateway_status(resource.get("status")))
        error = resource.get("last_payment_error")
        if intent.status == PaymentStatus.FAILED and error:
            intent.failure_code = error.get("decline_code") or error.get("code")
            intent.failure_message = error.get("message")

    async def get_payment_status(self, payment_id: str) -> PaymentStatusResult:
        """
        Look up a payment's current status.

        The gateway keeps refunded intents in ``succeeded``, so a locally
        recorded ``refunded`` status takes precedence.

        Args:
            payment_id: Gateway payment intent id

        Returns:
            PaymentStatusResult: Status, or the classified lookup failure
        """

        async def _retrieve() -> Resource:
            return await self.gateway.retrieve_payment_intent(payment_id)

        outcome = await self.retry.execute_with_retry(
            _retrieve, operation_name="retrieve_payment_intent"
        )
        if not outcome.success:
            return PaymentStatusResult.from_payment_error(outcome.error)

        status = map_gateway_status(outcome.result.get("status"))
        try:
            local = await self.store.get_payment_intent(payment_id)
        except Exception as e:
            logger.error(
                "payment_status_lookup_failed",
                payment_intent_id=payment_id,
                error=str(e),
                exc_info=True,
            )
            return PaymentStatusResult.from_unexpected(e)
        if local is not None and local.status == PaymentStatus.REFUNDED:
            status = PaymentStatus.REFUNDED

        return PaymentStatusResult(success=True, status=status)

    async def cancel_payment_intent(self, payment_intent_id: str) -> bool:
        """
        Cancel an intent at the gateway.

        Used to void an intent whose local bookkeeping could not be written.

        Returns:
            bool: True if the gateway accepted the cancellation
        """

        async def _cancel() -> Resource:
            return await self.gateway.cancel_payment_intent(payment_intent_id)

        outcome = await self.retry.execute_with_retry(
            _cancel, operation_name="cancel_payment_intent"
        )
        if not outcome.success:
            logger.error(
                "payment_intent_cancel_failed",
                payment_intent_id=payment_intent_id,
                error_code=outcome.error.code,
            )
            return False

        logger.warning("payment_intent_canceled", payment_intent_id=payment_intent_id)
        return True

    async def get_payment_intent(self, payment_id: str) -> Optional[PaymentIntent]:
        return await self.store.get_payment_intent(payment_id)

    @staticmethod
    def describe(intent: PaymentIntent) -> Dict[str, Any]:
        """Audit payload for an intent."""
        return {
            "tenant_id": intent.tenant_id,
            "payment_intent_id": intent.id,
            "amount": intent.amount,
            "currency": intent.currency,
            "status": intent.status.value,
        }
