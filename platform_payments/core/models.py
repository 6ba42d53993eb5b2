"""
Domain models and operation result envelopes.

Records (PaymentIntent, BookingPayment, ConnectedAccount, Subscription,
Refund) are what the store persists. Result envelopes are what component
operations return: every outcome, success or failure, is a value with
``success`` set, never a bare exception.
"""
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from platform_payments.core.errors import PaymentError


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a prefixed local identifier."""
    return f"{prefix}_{uuid.uuid4().hex}"


class PaymentStatus(str, Enum):
    """Payment intent lifecycle states."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentType(str, Enum):
    """How a booking payment relates to the booking total."""

    DEPOSIT = "deposit"
    FULL_PAYMENT = "full_payment"
    REMAINING_BALANCE = "remaining_balance"


class RefundReason(str, Enum):
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer"


class RefundInitiator(str, Enum):
    PLATFORM = "platform"
    TENANT = "tenant"


class CustomerInfo(BaseModel):
    """Billing contact used when creating a platform customer."""

    email: str
    business_name: str


class BusinessInfo(BaseModel):
    """Details used to open a connected account."""

    email: str
    business_name: str
    country: str = "GB"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class PaymentIntent(BaseModel):
    """A single gateway-tracked money movement. ``id`` is the gateway id."""

    id: str
    tenant_id: str
    customer_id: Optional[str] = None
    amount: int = Field(..., gt=0, description="Amount in minor currency units")
    currency: str
    status: PaymentStatus = PaymentStatus.PENDING
    destination_account_id: Optional[str] = None
    application_fee_amount: int = 0
    amount_refunded: int = 0
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def refundable_amount(self) -> int:
        return max(self.amount - self.amount_refunded, 0)


class BookingPayment(BaseModel):
    """The platform's view of a payment intent scoped to a booking."""

    id: str = Field(default_factory=lambda: new_id("bp"))
    tenant_id: str
    booking_id: str
    customer_id: str
    payment_intent_id: str
    payment_type: PaymentType
    amount: int = Field(..., gt=0)
    total_amount: int = Field(..., gt=0, description="Booking total the amount was derived from")
    deposit_payment_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConnectedAccount(BaseModel):
    """A tenant's payable sub-merchant account on the gateway."""

    id: str
    tenant_id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    requirements: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_active(self) -> bool:
        return self.charges_enabled and self.payouts_enabled

    @computed_field  # type: ignore[prop-decorator]
    @property
    def onboarding_complete(self) -> bool:
        return self.details_submitted and not self.requirements


class Subscription(BaseModel):
    """A tenant's platform billing subscription."""

    id: str
    tenant_id: str
    customer_id: str
    plan_id: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    unit_amount: int = 0
    interval: str = "month"
    client_secret: Optional[str] = Field(default=None, exclude=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def monthly_amount(self) -> int:
        """Recurring amount normalised to one month."""
        if self.interval == "year":
            return round(self.unit_amount / 12)
        if self.interval == "week":
            return round(self.unit_amount * 52 / 12)
        if self.interval == "day":
            return round(self.unit_amount * 365 / 12)
        return self.unit_amount


class Refund(BaseModel):
    """A refund issued against a payment intent."""

    id: str
    tenant_id: str
    payment_intent_id: str
    amount: int
    currency: str
    reason: Optional[RefundReason] = None
    initiated_by: RefundInitiator
    status: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class OperationResult(BaseModel):
    """Uniform outcome envelope shared by every operation."""

    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    payment_error: Optional[PaymentError] = None

    @classmethod
    def from_exception(cls, exc: Any, **fields: Any) -> "OperationResult":
        return cls(
            success=False,
            error=str(exc),
            error_code=getattr(exc, "code", "unexpected_error"),
            **fields,
        )

    @classmethod
    def from_unexpected(cls, exc: Exception, **fields: Any) -> "OperationResult":
        """Envelope for an exception outside the payment error taxonomy."""
        return cls(
            success=False,
            error=str(exc) or type(exc).__name__,
            error_code="unexpected_error",
            **fields,
        )

    @classmethod
    def from_payment_error(cls, error: PaymentError, **fields: Any) -> "OperationResult":
        return cls(
            success=False,
            error=error.message,
            error_code=error.code,
            payment_error=error,
            **fields,
        )


class PaymentIntentResult(OperationResult):
    payment_intent: Optional[PaymentIntent] = None
    client_secret: Optional[str] = None
    attempts: int = 0


class BookingPaymentResult(OperationResult):
    booking_payment: Optional[BookingPayment] = None
    client_secret: Optional[str] = None
    attempts: int = 0


class PaymentStatusResult(OperationResult):
    status: Optional[PaymentStatus] = None


class RefundResult(OperationResult):
    refund: Optional[Refund] = None
    validation_errors: List[str] = Field(default_factory=list)


class SubscriptionResult(OperationResult):
    subscription: Optional[Subscription] = None
    client_secret: Optional[str] = None


class ConnectedAccountResult(OperationResult):
    account: Optional[ConnectedAccount] = None
    onboarding_url: Optional[str] = None


class WebhookResult(OperationResult):
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    duplicate: bool = False
    webhooks_triggered: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Analytics and reconciliation
# ---------------------------------------------------------------------------


def _zero_status_counts() -> Dict[str, int]:
    return {status.value: 0 for status in PaymentStatus}


class BookingPaymentMetrics(BaseModel):
    total_booking_revenue: int = 0
    deposit_payments: int = 0
    full_payments: int = 0
    remaining_balance_payments: int = 0


class SubscriptionMetrics(BaseModel):
    active_subscriptions: int = 0
    monthly_recurring_revenue: int = 0
    churn_rate: float = 0.0


class PaymentAnalytics(BaseModel):
    total_revenue: int = 0
    total_transactions: int = 0
    success_rate: float = 0.0
    refund_rate: float = 0.0
    average_transaction_value: float = 0.0
    platform_fees: int = 0
    by_status: Dict[str, int] = Field(default_factory=_zero_status_counts)
    booking_payments: BookingPaymentMetrics = Field(default_factory=BookingPaymentMetrics)
    subscription_metrics: SubscriptionMetrics = Field(default_factory=SubscriptionMetrics)


class ReportPeriod(BaseModel):
    start: datetime
    end: datetime


class RefundSummary(BaseModel):
    refund_count: int = 0
    total_refunded: int = 0
    by_reason: Dict[str, int] = Field(default_factory=dict)


class ReportTrends(BaseModel):
    daily_revenue: Dict[str, int] = Field(default_factory=dict)


class FailureReason(BaseModel):
    reason: str
    count: int
    percentage: float


class PaymentReport(BaseModel):
    """Report envelope around tenant analytics. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("rpt"))
    tenant_id: str
    report_period: ReportPeriod
    generated_at: datetime = Field(default_factory=utcnow)
    format: str = "json"
    analytics: PaymentAnalytics
    summary: Dict[str, Any] = Field(default_factory=dict)
    trends: ReportTrends = Field(default_factory=ReportTrends)
    top_failure_reasons: List[FailureReason] = Field(default_factory=list)
    refunds: Optional[RefundSummary] = None


class ReportResult(OperationResult):
    report: Optional[PaymentReport] = None
    download_url: Optional[str] = None


class Discrepancy(BaseModel):
    type: str
    payment_intent_id: str
    store_amount: Optional[int] = None
    gateway_amount: Optional[int] = None
    store_status: Optional[str] = None
    gateway_status: Optional[str] = None


class ReconciliationSummary(BaseModel):
    successful_payments: int = 0
    failed_payments: int = 0
    refunded_payments: int = 0
    pending_payments: int = 0
    total_revenue: int = 0
    platform_fees: int = 0


class Reconciliation(BaseModel):
    """Point-in-time reconciliation snapshot for one tenant and day."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("rec"))
    tenant_id: str
    date: date
    generated_at: datetime = Field(default_factory=utcnow)
    total_processed: int = 0
    total_reconciled: int = 0
    gateway_checked: bool = False
    discrepancies: List[Discrepancy] = Field(default_factory=list)
    summary: ReconciliationSummary = Field(default_factory=ReconciliationSummary)


class ReconciliationResult(OperationResult):
    reconciliation: Optional[Reconciliation] = None
