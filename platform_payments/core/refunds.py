"""
Refund validation and processing.

Every validation rule runs before any refund call and all failures are
collected, so a rejected request never reaches the gateway's refund
primitive and the caller sees every problem at once.
"""
from typing import Dict, List, Optional

import structlog

from platform_payments.core.models import (
    PaymentIntent,
    PaymentStatus,
    Refund,
    RefundInitiator,
    RefundReason,
    RefundResult,
    utcnow,
)
from platform_payments.core.payments import PaymentIntentService, apply_status
from platform_payments.core.retry import RetryExecutor
from platform_payments.integrations.audit import AuditSink
from platform_payments.integrations.gateway import PaymentGateway, Resource
from platform_payments.monitoring.metrics import metrics
from platform_payments.storage.base import PaymentStore

logger = structlog.get_logger(__name__)

PAYMENT_NOT_FOUND = "Payment not found or inaccessible"
PAYMENT_NOT_SUCCEEDED = "Payment must be succeeded to process refund"
AMOUNT_NOT_POSITIVE = "Refund amount must be greater than 0"
AMOUNT_EXCEEDS_BALANCE = "Refund amount exceeds refundable balance"
INSUFFICIENT_PERMISSIONS = "Insufficient permissions to refund this payment"


class RefundProcessor:
    """Validates refund requests and issues them through the gateway."""

    def __init__(
        self,
        gateway: PaymentGateway,
        store: PaymentStore,
        payments: PaymentIntentService,
        retry_executor: RetryExecutor,
        audit: AuditSink,
    ):
        self.gateway = gateway
        self.store = store
        self.payments = payments
        self.retry = retry_executor
        self.audit = audit

    async def validate_refund(
        self,
        tenant_id: str,
        payment_id: str,
        amount: Optional[int],
        initiated_by: RefundInitiator,
    ) -> List[str]:
        """
        Collect every reason the refund cannot proceed.

        Args:
            tenant_id: Tenant requesting the refund
            payment_id: Payment intent to refund
            amount: Requested amount (None refunds the remaining balance)
            initiated_by: Who initiated the refund

        Returns:
            List[str]: Validation errors, empty when the refund may proceed
        """
        errors: List[str] = []

        status_result = await self.payments.get_payment_status(payment_id)
        intent = await self.store.get_payment_intent(payment_id)

        if not status_result.success or intent is None:
            errors.append(PAYMENT_NOT_FOUND)
        if status_result.success and (
            status_result.status != PaymentStatus.SUCCEEDED
            or (intent is not None and intent.status == PaymentStatus.FAILED)
        ):
            errors.append(PAYMENT_NOT_SUCCEEDED)

        if amount is not None and amount <= 0:
            errors.append(AMOUNT_NOT_POSITIVE)
        elif amount is not None and intent is not None and amount > intent.refundable_amount:
            errors.append(AMOUNT_EXCEEDS_BALANCE)

        if (
            intent is not None
            and initiated_by == RefundInitiator.TENANT
            and intent.tenant_id != tenant_id
        ):
            errors.append(INSUFFICIENT_PERMISSIONS)

        return errors

    async def process_refund_with_validation(
        self,
        tenant_id: str,
        payment_id: str,
        amount: Optional[int] = None,
        reason: Optional[RefundReason] = None,
        initiated_by: RefundInitiator = RefundInitiator.TENANT,
        metadata: Optional[Dict[str, str]] = None,
    ) -> RefundResult:
        """
        Validate and issue a refund.

        Args:
            tenant_id: Tenant requesting the refund
            payment_id: Payment intent to refund
            amount: Partial amount (None refunds the remaining balance)
            reason: Gateway refund reason
            initiated_by: ``platform`` or ``tenant``
            metadata: Extra metadata stored on the refund

        Returns:
            RefundResult: Refund record, validation errors, or the gateway failure
        """
        try:
            async with self.store.lock(f"payment:{payment_id}"):
                errors = await self.validate_refund(tenant_id, payment_id, amount, initiated_by)
                if errors:
                    metrics.record_refund("rejected")
                    logger.info(
                        "refund_validation_failed",
                        tenant_id=tenant_id,
                        payment_intent_id=payment_id,
                        errors=errors,
                    )
                    return RefundResult(
                        success=False,
                        error="; ".join(errors),
                        error_code="validation_failed",
                        validation_errors=errors,
                    )

                intent = await self.store.get_payment_intent(payment_id)
                # The gateway reported succeeded; catch up if its webhook has not arrived yet
                apply_status(intent, PaymentStatus.SUCCEEDED)
                return await self.process_refund(
                    intent, tenant_id, amount, reason, initiated_by, metadata or {}
                )
        except Exception as e:
            metrics.record_refund("failed")
            logger.error(
                "refund_failed",
                tenant_id=tenant_id,
                payment_intent_id=payment_id,
                error=str(e),
                exc_info=True,
            )
            return RefundResult.from_unexpected(e)

    async def process_refund(
        self,
        intent: PaymentIntent,
        tenant_id: str,
        amount: Optional[int],
        reason: Optional[RefundReason],
        initiated_by: RefundInitiator,
        metadata: Dict[str, str],
    ) -> RefundResult:
        """Issue a refund for an already validated request."""
        booking_payment = await self.store.get_booking_payment_by_intent(intent.id)
        reverse_transfer = intent.destination_account_id is not None
        refund_metadata = {
            **metadata,
            "initiatedBy": initiated_by.value,
            "tenantId": tenant_id,
        }

        logger.info(
            "processing_refund",
            tenant_id=tenant_id,
            payment_intent_id=intent.id,
            amount=amount,
            reverse_transfer=reverse_transfer,
        )

        async def _refund() -> Resource:
            return await self.gateway.create_refund(
                payment_intent_id=intent.id,
                amount=amount,
                reason=reason.value if reason else None,
                metadata=refund_metadata,
                reverse_transfer=reverse_transfer,
            )

        outcome = await self.retry.execute_with_retry(_refund, operation_name="create_refund")
        if not outcome.success:
            metrics.record_refund("failed")
            return RefundResult.from_payment_error(outcome.error)

        resource = outcome.result
        refunded_amount = resource.get("amount") or amount or intent.refundable_amount
        refund = Refund(
            id=resource["id"],
            tenant_id=intent.tenant_id,
            payment_intent_id=intent.id,
            amount=refunded_amount,
            currency=intent.currency,
            reason=reason,
            initiated_by=initiated_by,
            status=resource.get("status") or "pending",
            metadata=refund_metadata,
        )
        await self.store.save_refund(refund)

        intent.amount_refunded = min(intent.amount, intent.amount_refunded + refunded_amount)
        intent.updated_at = utcnow()
        if intent.amount_refunded >= intent.amount:
            apply_status(intent, PaymentStatus.REFUNDED)
            if booking_payment is not None:
                booking_payment.status = PaymentStatus.REFUNDED
                booking_payment.updated_at = utcnow()
                await self.store.save_booking_payment(booking_payment)
        await self.store.save_payment_intent(intent)

        metrics.record_refund("succeeded")
        logger.info(
            "refund_processed",
            tenant_id=tenant_id,
            refund_id=refund.id,
            payment_intent_id=intent.id,
            amount=refunded_amount,
            payment_status=intent.status.value,
        )
        await self.audit.publish(
            "refund.processed",
            {
                "tenant_id": tenant_id,
                "refund_id": refund.id,
                "payment_intent_id": intent.id,
                "amount": refunded_amount,
                "reason": reason.value if reason else None,
                "initiated_by": initiated_by.value,
                "booking_id": booking_payment.booking_id if booking_payment else None,
            },
        )

        return RefundResult(success=True, refund=refund)
