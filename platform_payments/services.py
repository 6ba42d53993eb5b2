"""
Service wiring.

Builds every payment component from settings so the API, the worker and
tests share one construction path. Gateway, store and audit sink can be
injected.
"""
from typing import Optional

import structlog

from platform_payments.config import Settings, get_settings
from platform_payments.core.analytics import AnalyticsEngine
from platform_payments.core.booking_payments import BookingPaymentCoordinator
from platform_payments.core.connected_accounts import ConnectedAccountManager
from platform_payments.core.payments import PaymentIntentService
from platform_payments.core.refunds import RefundProcessor
from platform_payments.core.reports import ReportWriter
from platform_payments.core.retry import RetryExecutor
from platform_payments.core.subscriptions import SubscriptionManager
from platform_payments.integrations.audit import AuditSink, LoggingAuditSink
from platform_payments.integrations.gateway import PaymentGateway
from platform_payments.integrations.stripe_gateway import StripeGateway
from platform_payments.integrations.webhook_processor import WebhookProcessor
from platform_payments.monitoring.health import HealthCheck
from platform_payments.storage import PaymentStore, get_store

logger = structlog.get_logger(__name__)


class PaymentServices:
    """Container holding one instance of each payment component."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        gateway: Optional[PaymentGateway] = None,
        store: Optional[PaymentStore] = None,
        audit: Optional[AuditSink] = None,
        retry_executor: Optional[RetryExecutor] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway or StripeGateway(self.settings)
        self.store = store or get_store(self.settings)
        self.audit = audit or LoggingAuditSink()
        self.retry = retry_executor or RetryExecutor(self.settings)
        self.report_writer = ReportWriter(self.settings)

        self.payments = PaymentIntentService(self.gateway, self.store, self.retry, self.settings)
        self.bookings = BookingPaymentCoordinator(self.payments, self.store, self.settings)
        self.refunds = RefundProcessor(
            self.gateway, self.store, self.payments, self.retry, self.audit
        )
        self.subscriptions = SubscriptionManager(self.gateway, self.store, self.retry, self.audit)
        self.accounts = ConnectedAccountManager(
            self.gateway, self.store, self.retry, self.audit, self.settings
        )
        self.webhooks = WebhookProcessor(self.gateway, self.store, self.audit, self.settings)
        self.analytics = AnalyticsEngine(
            self.store, self.report_writer, gateway=self.gateway, retry_executor=self.retry
        )
        self.health = HealthCheck(self.store, self.settings)

        logger.info(
            "payment_services_initialized",
            store_backend=type(self.store).__name__,
            gateway=type(self.gateway).__name__,
        )

    async def close(self) -> None:
        await self.store.close()
