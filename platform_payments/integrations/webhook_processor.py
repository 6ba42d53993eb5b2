"""
Gateway webhook processing.

Implements:
- Signature verification before the payload is interpreted
- Event de-duplication through the store (at-least-once delivery)
- Dispatch to local state updates through the payment state machine
- Forward compatibility: unknown event types are accepted and ignored
"""
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from platform_payments.config import Settings, get_settings
from platform_payments.core.connected_accounts import apply_account_resource
from platform_payments.core.exceptions import IllegalTransition, SignatureInvalid
from platform_payments.core.models import PaymentIntent, PaymentStatus, WebhookResult, utcnow
from platform_payments.core.payments import apply_status
from platform_payments.core.subscriptions import apply_subscription_resource
from platform_payments.integrations.audit import AuditSink
from platform_payments.integrations.gateway import PaymentGateway, Resource
from platform_payments.monitoring.metrics import metrics
from platform_payments.storage.base import PaymentStore

logger = structlog.get_logger(__name__)

Handler = Callable[[Resource], Awaitable[List[str]]]


def _object_id(value: Any) -> Optional[str]:
    """Ids arrive either as strings or as expanded objects."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


class WebhookProcessor:
    """Verifies and dispatches gateway events."""

    def __init__(
        self,
        gateway: PaymentGateway,
        store: PaymentStore,
        audit: AuditSink,
        settings: Optional[Settings] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.audit = audit
        self.settings = settings or get_settings()
        self.event_handlers: Dict[str, Handler] = {
            "payment_intent.succeeded": self._handle_payment_succeeded,
            "payment_intent.payment_failed": self._handle_payment_failed,
            "payment_intent.requires_action": self._handle_payment_requires_action,
            "charge.refunded": self._handle_charge_refunded,
            "charge.dispute.created": self._handle_dispute_created,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_failed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "account.updated": self._handle_account_updated,
        }

    async def handle_webhook(self, raw_payload: bytes, signature: str) -> WebhookResult:
        """
        Verify and process one webhook delivery.

        Args:
            raw_payload: Raw request body
            signature: Signature header value

        Returns:
            WebhookResult: Event id and type plus the handlers that ran. On a
            bad signature ``success`` is False and nothing is interpreted.
        """
        try:
            event = await self.gateway.construct_event(raw_payload, signature)
        except SignatureInvalid as e:
            metrics.record_signature_failure()
            logger.warning("webhook_rejected", error=str(e))
            return WebhookResult.from_exception(e)

        event_id = event["id"]
        event_type = event["type"]
        start = time.time()
        log = logger.bind(event_id=event_id, event_type=event_type)

        try:
            if await self.store.is_event_processed(event_id):
                log.info("webhook_duplicate_ignored")
                metrics.record_webhook_event(event_type, "duplicate", time.time() - start)
                return WebhookResult(
                    success=True, event_id=event_id, event_type=event_type, duplicate=True
                )

            handler = self.event_handlers.get(event_type)
            if handler is None:
                log.info("webhook_event_ignored")
                await self.store.mark_event_processed(
                    event_id, self.settings.webhook_dedup_ttl_seconds
                )
                metrics.record_webhook_event(event_type, "ignored", time.time() - start)
                return WebhookResult(success=True, event_id=event_id, event_type=event_type)

            triggered = await handler(event["data"]["object"])
            await self.store.mark_event_processed(event_id, self.settings.webhook_dedup_ttl_seconds)
        except Exception as e:
            # Not marked processed so the gateway's redelivery is handled
            log.error("webhook_processing_failed", error=str(e), exc_info=True)
            metrics.record_webhook_event(event_type, "failed", time.time() - start)
            return WebhookResult(
                success=False,
                error=str(e),
                error_code="webhook_processing_failed",
                event_id=event_id,
                event_type=event_type,
            )

        for name in triggered:
            await self.audit.publish(name, {"event_id": event_id, "event_type": event_type})

        log.info("webhook_processed", webhooks_triggered=triggered)
        metrics.record_webhook_event(event_type, "handled", time.time() - start)
        return WebhookResult(
            success=True,
            event_id=event_id,
            event_type=event_type,
            webhooks_triggered=triggered,
        )

    # Payment intents

    async def _transition_payment(
        self,
        payment_intent_id: str,
        target: PaymentStatus,
        update: Optional[Callable[[PaymentIntent], None]] = None,
    ) -> Optional[PaymentIntent]:
        """
        Apply a webhook-driven status change to a local intent.

        Returns:
            The intent if it changed, None if unknown, unchanged or rejected
        """
        intent = await self.store.get_payment_intent(payment_intent_id)
        if intent is None:
            logger.info("webhook_payment_unknown", payment_intent_id=payment_intent_id)
            return None

        try:
            changed = apply_status(intent, target)
        except IllegalTransition as e:
            logger.warning(
                "webhook_transition_rejected",
                payment_intent_id=intent.id,
                tenant_id=intent.tenant_id,
                error=str(e),
            )
            return None
        if not changed:
            return None

        if update is not None:
            update(intent)
        await self.store.save_payment_intent(intent)

        booking_payment = await self.store.get_booking_payment_by_intent(intent.id)
        if booking_payment is not None:
            booking_payment.status = intent.status
            booking_payment.updated_at = utcnow()
            await self.store.save_booking_payment(booking_payment)

        logger.info(
            "payment_status_updated",
            payment_intent_id=intent.id,
            tenant_id=intent.tenant_id,
            status=intent.status.value,
        )
        return intent

    async def _is_booking(self, intent: PaymentIntent) -> bool:
        return await self.store.get_booking_payment_by_intent(intent.id) is not None

    async def _handle_payment_succeeded(self, obj: Resource) -> List[str]:
        intent = await self._transition_payment(obj["id"], PaymentStatus.SUCCEEDED)
        if intent is None:
            return []
        triggered = ["payment.succeeded"]
        if await self._is_booking(intent):
            triggered.append("booking.payment_succeeded")
        return triggered

    async def _handle_payment_failed(self, obj: Resource) -> List[str]:
        error = obj.get("last_payment_error") or {}

        def _record_failure(intent: PaymentIntent) -> None:
            intent.failure_code = error.get("decline_code") or error.get("code")
            intent.failure_message = error.get("message")

        intent = await self._transition_payment(obj["id"], PaymentStatus.FAILED, _record_failure)
        if intent is None:
            return []
        triggered = ["payment.failed"]
        if await self._is_booking(intent):
            triggered.append("booking.payment_failed")
        return triggered

    async def _handle_payment_requires_action(self, obj: Resource) -> List[str]:
        intent = await self.store.get_payment_intent(obj["id"])
        if intent is None:
            return []
        return ["payment.requires_action"]

    async def _handle_charge_refunded(self, obj: Resource) -> List[str]:
        payment_intent_id = _object_id(obj.get("payment_intent"))
        if payment_intent_id is None:
            return []
        intent = await self.store.get_payment_intent(payment_intent_id)
        if intent is None:
            logger.info("webhook_payment_unknown", payment_intent_id=payment_intent_id)
            return []

        amount_refunded = obj.get("amount_refunded") or 0
        if amount_refunded <= intent.amount_refunded:
            return []

        def _record_refund(updated: PaymentIntent) -> None:
            updated.amount_refunded = min(updated.amount, amount_refunded)

        if amount_refunded >= intent.amount:
            if await self._transition_payment(
                intent.id, PaymentStatus.REFUNDED, _record_refund
            ) is None:
                return []
        else:
            _record_refund(intent)
            intent.updated_at = utcnow()
            await self.store.save_payment_intent(intent)
        return ["payment.refunded"]

    async def _handle_dispute_created(self, obj: Resource) -> List[str]:
        payment_intent_id = _object_id(obj.get("payment_intent"))
        logger.warning(
            "payment_disputed",
            dispute_id=obj.get("id"),
            payment_intent_id=payment_intent_id,
            amount=obj.get("amount"),
            reason=obj.get("reason"),
        )
        return ["payment.disputed"]

    # Subscriptions

    async def _set_subscription_status(
        self, subscription_id: Optional[str], status: str
    ) -> bool:
        if subscription_id is None:
            return False
        subscription = await self.store.get_subscription_by_id(subscription_id)
        if subscription is None:
            logger.info("webhook_subscription_unknown", subscription_id=subscription_id)
            return False
        subscription.status = status
        if status == "canceled" and subscription.canceled_at is None:
            subscription.canceled_at = utcnow()
        subscription.updated_at = utcnow()
        await self.store.save_subscription(subscription)
        return True

    async def _handle_invoice_paid(self, obj: Resource) -> List[str]:
        if await self._set_subscription_status(_object_id(obj.get("subscription")), "active"):
            return ["subscription.payment_succeeded"]
        return []

    async def _handle_invoice_failed(self, obj: Resource) -> List[str]:
        if await self._set_subscription_status(_object_id(obj.get("subscription")), "past_due"):
            return ["subscription.payment_failed"]
        return []

    async def _handle_subscription_updated(self, obj: Resource) -> List[str]:
        subscription = await self.store.get_subscription_by_id(obj["id"])
        if subscription is None:
            logger.info("webhook_subscription_unknown", subscription_id=obj["id"])
            return []
        apply_subscription_resource(subscription, obj)
        await self.store.save_subscription(subscription)
        return ["subscription.updated"]

    async def _handle_subscription_deleted(self, obj: Resource) -> List[str]:
        if await self._set_subscription_status(obj["id"], "canceled"):
            return ["subscription.canceled"]
        return []

    # Connected accounts

    async def _handle_account_updated(self, obj: Resource) -> List[str]:
        account = await self.store.get_connected_account_by_id(obj["id"])
        if account is None:
            logger.info("webhook_account_unknown", account_id=obj["id"])
            return []

        was_active = account.is_active
        apply_account_resource(account, obj)
        await self.store.save_connected_account(account)

        triggered = ["account.updated"]
        if account.is_active and not was_active:
            triggered.append("account.activated")
        elif was_active and not account.is_active:
            triggered.append("account.deactivated")
        return triggered
