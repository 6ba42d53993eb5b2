"""
Analytics and reconciliation engine.

Aggregates a tenant's payment records into revenue, success and refund
metrics, wraps them into downloadable reports, and produces day-level
reconciliation snapshots. When a gateway is available reconciliation also
compares the store against the gateway's own records to detect:
- Payments missing from the store
- Amount mismatches
- Status mismatches

Analytics reads are not retried: a failing store surfaces its own message
and the caller re-runs.
"""
from collections import Counter, defaultdict
from datetime import date, datetime, time, timezone
from typing import Dict, List, Optional, Tuple

import structlog

from platform_payments.core.exceptions import GatewayUnavailable, PaymentsError, ValidationFailed
from platform_payments.core.models import (
    BookingPaymentMetrics,
    Discrepancy,
    FailureReason,
    PaymentAnalytics,
    PaymentIntent,
    PaymentReport,
    PaymentStatus,
    PaymentType,
    Reconciliation,
    ReconciliationResult,
    ReconciliationSummary,
    RefundSummary,
    ReportPeriod,
    ReportResult,
    ReportTrends,
    SubscriptionMetrics,
)
from platform_payments.core.payments import map_gateway_status
from platform_payments.core.reports import SUPPORTED_FORMATS, ReportWriter
from platform_payments.core.retry import RetryExecutor
from platform_payments.integrations.gateway import PaymentGateway, Resource
from platform_payments.monitoring.metrics import metrics
from platform_payments.storage.base import PaymentStore

logger = structlog.get_logger(__name__)

TOP_FAILURE_REASONS = 5


def _percentage(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _net_revenue(intent: PaymentIntent) -> int:
    return intent.amount - intent.amount_refunded


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def day_range(day: date) -> Tuple[datetime, datetime]:
    """First and last instant of a UTC day."""
    return (
        datetime.combine(day, time.min, tzinfo=timezone.utc),
        datetime.combine(day, time.max, tzinfo=timezone.utc),
    )


class AnalyticsEngine:
    """Payment analytics, reports and reconciliation for one tenant at a time."""

    def __init__(
        self,
        store: PaymentStore,
        report_writer: ReportWriter,
        gateway: Optional[PaymentGateway] = None,
        retry_executor: Optional[RetryExecutor] = None,
    ):
        """
        Initialize analytics engine.

        Args:
            store: Payment store the figures are computed from
            report_writer: Writer for report artifacts
            gateway: Optional gateway for gateway-side reconciliation
            retry_executor: Retry executor for gateway listing calls
        """
        self.store = store
        self.report_writer = report_writer
        self.gateway = gateway
        self.retry = retry_executor

    async def get_payment_analytics(
        self, tenant_id: str, start_date: datetime, end_date: datetime
    ) -> PaymentAnalytics:
        """
        Aggregate a tenant's payments over ``[start_date, end_date]``.

        A range without activity yields all-zero analytics.

        Raises:
            Exception: Whatever the store raised, unchanged
        """
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        intents = await self.store.list_payment_intents(tenant_id, start_date, end_date)
        booking_payments = await self.store.list_tenant_booking_payments(
            tenant_id, start_date, end_date
        )
        subscriptions = await self.store.list_subscriptions(tenant_id)

        by_status: Dict[str, int] = {status.value: 0 for status in PaymentStatus}
        for intent in intents:
            by_status[intent.status.value] += 1

        succeeded = [i for i in intents if i.status == PaymentStatus.SUCCEEDED]
        refunded_count = by_status[PaymentStatus.REFUNDED.value]
        settled_count = len(succeeded) + refunded_count

        total_revenue = sum(_net_revenue(i) for i in succeeded)
        average = round(total_revenue / len(succeeded), 2) if succeeded else 0.0

        booking_metrics = BookingPaymentMetrics(
            total_booking_revenue=sum(
                p.amount for p in booking_payments if p.status == PaymentStatus.SUCCEEDED
            ),
            deposit_payments=sum(
                1 for p in booking_payments if p.payment_type == PaymentType.DEPOSIT
            ),
            full_payments=sum(
                1 for p in booking_payments if p.payment_type == PaymentType.FULL_PAYMENT
            ),
            remaining_balance_payments=sum(
                1 for p in booking_payments if p.payment_type == PaymentType.REMAINING_BALANCE
            ),
        )

        active = [s for s in subscriptions if s.status == "active"]
        churned = [
            s
            for s in subscriptions
            if s.status == "canceled"
            and s.canceled_at is not None
            and start_date <= s.canceled_at <= end_date
        ]
        subscription_metrics = SubscriptionMetrics(
            active_subscriptions=len(active),
            monthly_recurring_revenue=sum(s.monthly_amount for s in active),
            churn_rate=_percentage(len(churned), len(active) + len(churned)),
        )

        return PaymentAnalytics(
            total_revenue=total_revenue,
            total_transactions=len(intents),
            success_rate=_percentage(settled_count, len(intents)),
            refund_rate=_percentage(refunded_count, settled_count),
            average_transaction_value=average,
            platform_fees=sum(i.application_fee_amount for i in succeeded),
            by_status=by_status,
            booking_payments=booking_metrics,
            subscription_metrics=subscription_metrics,
        )

    async def generate_payment_report(
        self,
        tenant_id: str,
        start_date: datetime,
        end_date: datetime,
        include_refunds: bool = False,
        format: str = "json",
    ) -> ReportResult:
        """
        Build, persist and write a payment report.

        Args:
            tenant_id: Tenant being reported on
            start_date: Period start (echoed unchanged in ``report_period``)
            end_date: Period end (echoed unchanged in ``report_period``)
            include_refunds: Attach a refund summary
            format: ``json`` or ``csv``

        Returns:
            ReportResult: Report and download URL, or the originating failure
        """
        start, end = as_utc(start_date), as_utc(end_date)
        errors: List[str] = []
        if format not in SUPPORTED_FORMATS:
            errors.append(f"Unsupported report format: {format}")
        if start > end:
            errors.append("Start date must not be after end date")
        if errors:
            return ReportResult.from_exception(ValidationFailed(errors))

        try:
            analytics = await self.get_payment_analytics(tenant_id, start, end)
            intents = await self.store.list_payment_intents(tenant_id, start, end)
            refunds = (
                await self._refund_summary(tenant_id, start, end)
                if include_refunds
                else None
            )

            report = PaymentReport(
                tenant_id=tenant_id,
                report_period=ReportPeriod(start=start_date, end=end_date),
                format=format,
                analytics=analytics,
                summary={
                    "total_revenue": analytics.total_revenue,
                    "total_transactions": analytics.total_transactions,
                    "success_rate": analytics.success_rate,
                    "refund_rate": analytics.refund_rate,
                    "average_transaction_value": analytics.average_transaction_value,
                    "platform_fees": analytics.platform_fees,
                },
                trends=ReportTrends(daily_revenue=self._daily_revenue(intents)),
                top_failure_reasons=self._top_failure_reasons(intents),
                refunds=refunds,
            )
            await self.store.save_report(report)
            download_url = await self.report_writer.write(report)
        except Exception as e:
            logger.error(
                "report_generation_failed",
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return ReportResult(
                success=False,
                error=str(e),
                error_code=getattr(e, "code", "report_generation_failed"),
            )

        logger.info(
            "payment_report_generated",
            tenant_id=tenant_id,
            report_id=report.id,
            format=format,
            total_transactions=analytics.total_transactions,
        )
        return ReportResult(success=True, report=report, download_url=download_url)

    @staticmethod
    def _daily_revenue(intents: List[PaymentIntent]) -> Dict[str, int]:
        revenue: Dict[str, int] = defaultdict(int)
        for intent in intents:
            if intent.status == PaymentStatus.SUCCEEDED:
                revenue[intent.created_at.date().isoformat()] += _net_revenue(intent)
        return dict(sorted(revenue.items()))

    @staticmethod
    def _top_failure_reasons(intents: List[PaymentIntent]) -> List[FailureReason]:
        failed = [i for i in intents if i.status == PaymentStatus.FAILED]
        counts = Counter(i.failure_code or "unknown" for i in failed)
        return [
            FailureReason(reason=reason, count=count, percentage=_percentage(count, len(failed)))
            for reason, count in counts.most_common(TOP_FAILURE_REASONS)
        ]

    async def _refund_summary(
        self, tenant_id: str, start_date: datetime, end_date: datetime
    ) -> RefundSummary:
        refunds = await self.store.list_refunds(tenant_id, start_date, end_date)
        by_reason = Counter(r.reason.value if r.reason else "unspecified" for r in refunds)
        return RefundSummary(
            refund_count=len(refunds),
            total_refunded=sum(r.amount for r in refunds),
            by_reason=dict(by_reason),
        )

    async def reconcile_payments(
        self, tenant_id: str, day: date, check_gateway: bool = True
    ) -> ReconciliationResult:
        """
        Produce the reconciliation snapshot for one tenant and day.

        Running it twice for the same day yields the same figures as long
        as the underlying records are unchanged.

        Args:
            tenant_id: Tenant being reconciled
            day: UTC day to reconcile
            check_gateway: Compare against the gateway's records when available

        Returns:
            ReconciliationResult: Snapshot, or the originating failure
        """
        start, end = day_range(day)
        logger.info("starting_reconciliation", tenant_id=tenant_id, date=day.isoformat())

        try:
            analytics = await self.get_payment_analytics(tenant_id, start, end)
            intents = await self.store.list_payment_intents(tenant_id, start, end)

            discrepancies: List[Discrepancy] = []
            gateway_checked = False
            if check_gateway and self.gateway is not None:
                discrepancies = await self._gateway_discrepancies(tenant_id, intents, start, end)
                gateway_checked = True

            mismatched = {d.payment_intent_id for d in discrepancies}
            reconciliation = Reconciliation(
                tenant_id=tenant_id,
                date=day,
                total_processed=analytics.total_transactions,
                total_reconciled=sum(1 for i in intents if i.id not in mismatched),
                gateway_checked=gateway_checked,
                discrepancies=discrepancies,
                summary=ReconciliationSummary(
                    successful_payments=analytics.by_status[PaymentStatus.SUCCEEDED.value],
                    failed_payments=analytics.by_status[PaymentStatus.FAILED.value],
                    refunded_payments=analytics.by_status[PaymentStatus.REFUNDED.value],
                    pending_payments=analytics.by_status[PaymentStatus.PENDING.value],
                    total_revenue=analytics.total_revenue,
                    platform_fees=analytics.platform_fees,
                ),
            )
            await self.store.save_reconciliation(reconciliation)
        except GatewayUnavailable as e:
            metrics.set_reconciliation_metrics("failed")
            logger.error("reconciliation_failed", tenant_id=tenant_id, error=str(e))
            return ReconciliationResult.from_payment_error(e.payment_error)
        except PaymentsError as e:
            metrics.set_reconciliation_metrics("failed")
            logger.error("reconciliation_failed", tenant_id=tenant_id, error=str(e))
            return ReconciliationResult.from_exception(e)
        except Exception as e:
            metrics.set_reconciliation_metrics("failed")
            logger.error(
                "reconciliation_failed",
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return ReconciliationResult(
                success=False, error=str(e), error_code="reconciliation_failed"
            )

        metrics.set_reconciliation_metrics("completed", len(discrepancies))
        log = logger.warning if discrepancies else logger.info
        log(
            "reconciliation_completed",
            tenant_id=tenant_id,
            date=day.isoformat(),
            total_processed=reconciliation.total_processed,
            total_reconciled=reconciliation.total_reconciled,
            discrepancies=len(discrepancies),
        )
        return ReconciliationResult(success=True, reconciliation=reconciliation)

    async def _gateway_discrepancies(
        self,
        tenant_id: str,
        intents: List[PaymentIntent],
        start: datetime,
        end: datetime,
    ) -> List[Discrepancy]:
        """
        Compare store intents with the gateway's intents for the same window.

        Raises:
            GatewayUnavailable: If the gateway listing fails after retries
        """

        async def _list() -> List[Resource]:
            return await self.gateway.list_payment_intents(
                tenant_id, int(start.timestamp()), int(end.timestamp())
            )

        if self.retry is not None:
            outcome = await self.retry.execute_with_retry(
                _list, operation_name="list_payment_intents"
            )
            if not outcome.success:
                raise GatewayUnavailable(outcome.error)
            gateway_intents = outcome.result
        else:
            gateway_intents = await _list()

        local = {i.id: i for i in intents}
        discrepancies: List[Discrepancy] = []
        for remote in gateway_intents:
            remote_status = map_gateway_status(remote.get("status"))
            intent = local.get(remote["id"])
            if intent is None:
                discrepancies.append(
                    Discrepancy(
                        type="missing_in_store",
                        payment_intent_id=remote["id"],
                        gateway_amount=remote.get("amount"),
                        gateway_status=remote_status.value,
                    )
                )
                continue
            if intent.amount != remote.get("amount"):
                discrepancies.append(
                    Discrepancy(
                        type="amount_mismatch",
                        payment_intent_id=intent.id,
                        store_amount=intent.amount,
                        gateway_amount=remote.get("amount"),
                    )
                )
            # The gateway keeps refunded intents in succeeded
            local_status = (
                PaymentStatus.SUCCEEDED
                if intent.status == PaymentStatus.REFUNDED
                else intent.status
            )
            if local_status != remote_status:
                discrepancies.append(
                    Discrepancy(
                        type="status_mismatch",
                        payment_intent_id=intent.id,
                        store_status=intent.status.value,
                        gateway_status=remote_status.value,
                    )
                )
        return discrepancies
