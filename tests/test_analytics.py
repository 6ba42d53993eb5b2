"""
Tests for payment analytics, reports and reconciliation.
"""
import json
from datetime import date, datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import stripe

from platform_payments.config import Settings
from platform_payments.core.analytics import AnalyticsEngine
from platform_payments.core.exceptions import StoreError
from platform_payments.core.models import (
    PaymentIntent,
    PaymentStatus,
    Refund,
    RefundInitiator,
    RefundReason,
    Subscription,
)
from platform_payments.core.reports import ReportWriter
from platform_payments.core.retry import RetryExecutor
from platform_payments.storage.memory import MemoryPaymentStore

from .conftest import TENANT_ID, FakeGateway

DAY = date(2026, 3, 14)
NOON = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)
DAY_START = datetime(2026, 3, 14, 0, 0, tzinfo=timezone.utc)
DAY_END = datetime(2026, 3, 14, 23, 59, 59, tzinfo=timezone.utc)


def intent(payment_intent_id: str, amount: int, status: PaymentStatus, **fields) -> PaymentIntent:
    return PaymentIntent(
        id=payment_intent_id,
        tenant_id=TENANT_ID,
        amount=amount,
        currency="gbp",
        status=status,
        created_at=NOON,
        **fields,
    )


def gateway_intent(gateway: FakeGateway, payment_intent_id: str, amount: int, status: str) -> None:
    gateway.intents[payment_intent_id] = {
        "id": payment_intent_id,
        "amount": amount,
        "currency": "gbp",
        "status": status,
        "metadata": {"tenantId": TENANT_ID},
        "created": int(NOON.timestamp()),
    }


@pytest.fixture
def report_writer(test_settings: Settings) -> ReportWriter:
    return ReportWriter(test_settings)


@pytest.fixture
def analytics(
    store: MemoryPaymentStore,
    report_writer: ReportWriter,
    gateway: FakeGateway,
    retry_executor: RetryExecutor,
) -> AnalyticsEngine:
    return AnalyticsEngine(store, report_writer, gateway, retry_executor)


class TestPaymentAnalytics:
    """Test suite for analytics aggregation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_range_is_all_zero(self, analytics: AnalyticsEngine) -> None:
        result = await analytics.get_payment_analytics(TENANT_ID, DAY_START, DAY_END)

        assert result.total_revenue == 0
        assert result.total_transactions == 0
        assert result.success_rate == 0.0
        assert result.refund_rate == 0.0
        assert result.average_transaction_value == 0.0
        assert result.by_status == {"pending": 0, "succeeded": 0, "failed": 0, "refunded": 0}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_figures(self, analytics: AnalyticsEngine, store: MemoryPaymentStore) -> None:
        """Test revenue is net of refunds and rates count refunded payments as settled."""
        await _seed(store)

        result = await analytics.get_payment_analytics(TENANT_ID, DAY_START, DAY_END)

        assert result.total_transactions == 5
        assert result.by_status == {"pending": 1, "succeeded": 2, "failed": 1, "refunded": 1}
        assert result.total_revenue == 14000
        assert result.average_transaction_value == 7000.0
        assert result.success_rate == 60.0
        assert result.refund_rate == 33.33
        assert result.platform_fees == 495

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_naive_dates_are_utc(
        self, analytics: AnalyticsEngine, store: MemoryPaymentStore
    ) -> None:
        await _seed(store)

        result = await analytics.get_payment_analytics(
            TENANT_ID, datetime(2026, 3, 14), datetime(2026, 3, 14, 23, 59, 59)
        )

        assert result.total_transactions == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_subscription_metrics(
        self, analytics: AnalyticsEngine, store: MemoryPaymentStore
    ) -> None:
        """Test MRR counts active subscriptions and churn counts cancellations in range."""
        await store.save_subscription(
            Subscription(
                id="sub_1",
                tenant_id=TENANT_ID,
                customer_id="cus_1",
                plan_id="price_basic",
                status="active",
                unit_amount=2900,
            )
        )
        await store.save_subscription(
            Subscription(
                id="sub_2",
                tenant_id=TENANT_ID,
                customer_id="cus_2",
                plan_id="price_yearly",
                status="canceled",
                unit_amount=24000,
                interval="year",
                canceled_at=NOON,
            )
        )

        result = await analytics.get_payment_analytics(TENANT_ID, DAY_START, DAY_END)

        assert result.subscription_metrics.active_subscriptions == 1
        assert result.subscription_metrics.monthly_recurring_revenue == 2900
        assert result.subscription_metrics.churn_rate == 50.0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_failure_propagates(
        self, analytics: AnalyticsEngine, store: MemoryPaymentStore
    ) -> None:
        failing = AsyncMock(side_effect=StoreError("Payment store unavailable"))

        with patch.object(store, "list_payment_intents", failing):
            with pytest.raises(StoreError, match="Payment store unavailable"):
                await analytics.get_payment_analytics(TENANT_ID, DAY_START, DAY_END)

        failing.assert_awaited_once()


class TestPaymentReports:
    """Test suite for report generation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_json_report(
        self,
        analytics: AnalyticsEngine,
        store: MemoryPaymentStore,
        test_settings: Settings,
    ) -> None:
        """Test a report is stored, written to disk and echoes its period."""
        await _seed(store)
        start, end = datetime(2026, 3, 14), datetime(2026, 3, 14, 23, 59, 59)

        result = await analytics.generate_payment_report(TENANT_ID, start, end)

        assert result.success is True
        report = result.report
        assert report.report_period.start == start
        assert report.report_period.end == end
        assert report.summary["total_revenue"] == 14000
        assert report.trends.daily_revenue == {"2026-03-14": 14000}
        assert [(r.reason, r.count, r.percentage) for r in report.top_failure_reasons] == [
            ("card_declined", 1, 100.0)
        ]
        assert report.refunds is None
        assert report.id in store.reports

        assert result.download_url.startswith("http://test/reports/payment_report_tenant_1_")
        filename = result.download_url.rsplit("/", 1)[1]
        written = Path(test_settings.reports_dir) / filename
        assert json.loads(written.read_text())["id"] == report.id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_csv_report_with_refunds(
        self,
        analytics: AnalyticsEngine,
        store: MemoryPaymentStore,
        report_writer: ReportWriter,
    ) -> None:
        await _seed(store)
        for refund_id, reason in [("re_1", RefundReason.REQUESTED_BY_CUSTOMER), ("re_2", None)]:
            await store.save_refund(
                Refund(
                    id=refund_id,
                    tenant_id=TENANT_ID,
                    payment_intent_id="pi_b",
                    amount=500,
                    currency="gbp",
                    reason=reason,
                    initiated_by=RefundInitiator.TENANT,
                    status="succeeded",
                    created_at=NOON,
                )
            )

        result = await analytics.generate_payment_report(
            TENANT_ID, DAY_START, DAY_END, include_refunds=True, format="csv"
        )

        assert result.success is True
        assert result.report.refunds.refund_count == 2
        assert result.report.refunds.total_refunded == 1000
        assert result.report.refunds.by_reason == {"requested_by_customer": 1, "unspecified": 1}
        assert result.download_url.endswith(".csv")

        path = report_writer.resolve(result.download_url.rsplit("/", 1)[1])
        lines = path.read_text().splitlines()
        assert lines[0] == "section,metric,value"
        assert "summary,total_revenue,14000" in lines
        assert "refund_reason,unspecified,1" in lines

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_request(self, analytics: AnalyticsEngine) -> None:
        """Test unsupported formats and reversed periods fail validation."""
        result = await analytics.generate_payment_report(
            TENANT_ID, DAY_END, DAY_START, format="xml"
        )

        assert result.success is False
        assert result.error_code == "validation_failed"
        assert "Unsupported report format: xml" in result.error
        assert "Start date must not be after end date" in result.error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_failure_is_reported(
        self, analytics: AnalyticsEngine, store: MemoryPaymentStore
    ) -> None:
        """Test a failing store yields success False with its message."""
        with patch.object(
            store,
            "list_payment_intents",
            AsyncMock(side_effect=StoreError("Payment store unavailable")),
        ):
            result = await analytics.generate_payment_report(TENANT_ID, DAY_START, DAY_END)

        assert result.success is False
        assert result.error == "Payment store unavailable"
        assert result.error_code == "store_error"
        assert result.download_url is None


class TestReconciliation:
    """Test suite for daily reconciliation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_day(self, analytics: AnalyticsEngine) -> None:
        """Test a day without activity reconciles to zeros."""
        result = await analytics.reconcile_payments(TENANT_ID, DAY)

        assert result.success is True
        reconciliation = result.reconciliation
        assert reconciliation.date == DAY
        assert reconciliation.total_processed == 0
        assert reconciliation.total_reconciled == 0
        assert reconciliation.discrepancies == []
        assert reconciliation.summary.model_dump() == {
            "successful_payments": 0,
            "failed_payments": 0,
            "refunded_payments": 0,
            "pending_payments": 0,
            "total_revenue": 0,
            "platform_fees": 0,
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_discrepancies(
        self,
        analytics: AnalyticsEngine,
        store: MemoryPaymentStore,
        gateway: FakeGateway,
    ) -> None:
        """Test missing, amount and status differences against the gateway are reported."""
        await _seed(store)
        gateway_intent(gateway, "pi_a", 10000, "succeeded")
        gateway_intent(gateway, "pi_b", 5500, "succeeded")
        gateway_intent(gateway, "pi_c", 2000, "succeeded")
        gateway_intent(gateway, "pi_d", 3000, "succeeded")
        gateway_intent(gateway, "pi_e", 4000, "requires_payment_method")
        gateway_intent(gateway, "pi_x", 700, "succeeded")

        result = await analytics.reconcile_payments(TENANT_ID, DAY)

        assert result.success is True
        reconciliation = result.reconciliation
        found = {(d.type, d.payment_intent_id) for d in reconciliation.discrepancies}
        assert found == {
            ("amount_mismatch", "pi_b"),
            ("status_mismatch", "pi_d"),
            ("missing_in_store", "pi_x"),
        }
        assert reconciliation.gateway_checked is True
        assert reconciliation.total_processed == 5
        assert reconciliation.total_reconciled == 3
        assert reconciliation.summary.successful_payments == 2
        assert reconciliation.summary.total_revenue == 14000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_only(
        self,
        analytics: AnalyticsEngine,
        store: MemoryPaymentStore,
        gateway: FakeGateway,
    ) -> None:
        await _seed(store)

        result = await analytics.reconcile_payments(TENANT_ID, DAY, check_gateway=False)

        assert result.reconciliation.gateway_checked is False
        assert result.reconciliation.total_reconciled == 5
        assert gateway.calls_to("list_payment_intents") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeat_runs_agree(
        self, analytics: AnalyticsEngine, store: MemoryPaymentStore
    ) -> None:
        """Test reconciling the same unchanged day twice gives the same figures."""
        await _seed(store)

        first = (await analytics.reconcile_payments(TENANT_ID, DAY)).reconciliation
        second = (await analytics.reconcile_payments(TENANT_ID, DAY)).reconciliation

        assert first.id != second.id
        assert first.total_processed == second.total_processed
        assert first.total_reconciled == second.total_reconciled
        assert first.discrepancies == second.discrepancies
        assert first.summary == second.summary
        assert len(await store.list_reconciliations(TENANT_ID)) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_unavailable(
        self,
        analytics: AnalyticsEngine,
        store: MemoryPaymentStore,
        gateway: FakeGateway,
    ) -> None:
        """Test an unreachable gateway fails the run with the classified error."""
        gateway.fail(
            "list_payment_intents", *[stripe.APIConnectionError("down") for _ in range(3)]
        )

        result = await analytics.reconcile_payments(TENANT_ID, DAY)

        assert result.success is False
        assert result.payment_error.retryable is True
        assert store.reconciliations == {}


async def _seed(store: MemoryPaymentStore) -> None:
    for record in [
        intent("pi_a", 10000, PaymentStatus.SUCCEEDED, application_fee_amount=320),
        intent(
            "pi_b",
            5000,
            PaymentStatus.SUCCEEDED,
            application_fee_amount=175,
            amount_refunded=1000,
        ),
        intent(
            "pi_c", 2000, PaymentStatus.REFUNDED, application_fee_amount=88, amount_refunded=2000
        ),
        intent("pi_d", 3000, PaymentStatus.FAILED, failure_code="card_declined"),
        intent("pi_e", 4000, PaymentStatus.PENDING),
    ]:
        await store.save_payment_intent(record)
