"""
API routes for payment processing.

Operation results are returned as-is on success. Failed results are raised
as ``HTTPException`` carrying the whole envelope as ``detail``.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import FileResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from platform_payments.core.errors import PaymentErrorType
from platform_payments.core.models import (
    BookingPaymentResult,
    ConnectedAccount,
    ConnectedAccountResult,
    OperationResult,
    PaymentAnalytics,
    PaymentIntentResult,
    PaymentStatusResult,
    ReconciliationResult,
    RefundInitiator,
    RefundResult,
    ReportResult,
    SubscriptionResult,
    WebhookResult,
)
from platform_payments.services import PaymentServices

from .schemas import (
    ConfirmPaymentRequest,
    CreateBookingPaymentRequest,
    CreateConnectedAccountRequest,
    CreatePaymentIntentRequest,
    CreateSubscriptionRequest,
    GenerateReportRequest,
    HealthCheckResponse,
    RefundRequest,
    RemainingBalanceRequest,
    SubscriptionRefundRequest,
    UpdateSubscriptionRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(tags=["payments"])
tenant_router = APIRouter(prefix="/tenants/{tenant_id}", tags=["tenants"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

NOT_FOUND_CODES = frozenset(
    {"account_not_found", "subscription_not_found", "no_invoice_found"}
)
SERVER_ERROR_CODES = frozenset(
    {"store_error", "report_generation_failed", "reconciliation_failed", "unexpected_error"}
)


def get_services(request: Request) -> PaymentServices:
    return request.app.state.services


def failure_status(result: OperationResult) -> int:
    """HTTP status for a failed operation result."""
    error = result.payment_error
    if error is not None:
        if error.type == PaymentErrorType.CARD_ERROR:
            return status.HTTP_402_PAYMENT_REQUIRED
        if error.type in (PaymentErrorType.RATE_LIMIT_ERROR, PaymentErrorType.CONNECTION_ERROR):
            return status.HTTP_503_SERVICE_UNAVAILABLE
        return status.HTTP_502_BAD_GATEWAY
    if result.error_code in NOT_FOUND_CODES:
        return status.HTTP_404_NOT_FOUND
    if result.error_code in SERVER_ERROR_CODES:
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_400_BAD_REQUEST


def unwrap(result: OperationResult, event: str, **context: Any) -> OperationResult:
    """Return a successful result or raise its HTTP failure."""
    if result.success:
        return result

    status_code = failure_status(result)
    log = logger.error if status_code >= 500 else logger.warning
    log(event, error=result.error, error_code=result.error_code, **context)
    raise HTTPException(status_code=status_code, detail=result.model_dump(mode="json"))


# Payment intents


@tenant_router.post(
    "/payment-intents",
    response_model=PaymentIntentResult,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment intent",
)
async def create_payment_intent(
    tenant_id: str,
    request: CreatePaymentIntentRequest,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    """Create a payment intent routed to the tenant's connected account."""
    result = await services.payments.create_payment_intent(
        tenant_id=tenant_id,
        amount=request.amount,
        currency=request.currency,
        customer_id=request.customer_id,
        description=request.description,
        metadata=request.metadata,
        application_fee_amount=request.application_fee_amount,
    )
    return unwrap(result, "api_create_payment_intent_error", tenant_id=tenant_id)


@payment_router.post(
    "/payment-intents/{payment_id}/confirm",
    response_model=PaymentIntentResult,
    summary="Confirm a payment intent",
)
async def confirm_payment_intent(
    payment_id: str,
    request: ConfirmPaymentRequest,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    result = await services.payments.confirm_payment_intent(payment_id, request.payment_method_id)
    return unwrap(result, "api_confirm_payment_error", payment_intent_id=payment_id)


@payment_router.get(
    "/payment-intents/{payment_id}/status",
    response_model=PaymentStatusResult,
    summary="Get payment status",
)
async def get_payment_status(
    payment_id: str,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    result = await services.payments.get_payment_status(payment_id)
    return unwrap(result, "api_get_payment_status_error", payment_intent_id=payment_id)


# Bookings


@tenant_router.post(
    "/bookings/{booking_id}/payments",
    response_model=BookingPaymentResult,
    status_code=status.HTTP_201_CREATED,
    summary="Create a booking payment",
    description="Create a deposit or full payment for a booking",
)
async def create_booking_payment(
    tenant_id: str,
    booking_id: str,
    request: CreateBookingPaymentRequest,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    logger.info(
        "api_create_booking_payment_request",
        tenant_id=tenant_id,
        booking_id=booking_id,
        payment_type=request.payment_type.value,
        total_amount=request.total_amount,
    )
    result = await services.bookings.create_booking_payment(
        tenant_id=tenant_id,
        booking_id=booking_id,
        customer_id=request.customer_id,
        total_amount=request.total_amount,
        payment_type=request.payment_type,
        deposit_percentage=request.deposit_percentage,
    )
    return unwrap(result, "api_create_booking_payment_error", booking_id=booking_id)


@tenant_router.post(
    "/bookings/{booking_id}/remaining-balance",
    response_model=BookingPaymentResult,
    status_code=status.HTTP_201_CREATED,
    summary="Collect remaining balance",
)
async def process_remaining_balance(
    tenant_id: str,
    booking_id: str,
    request: RemainingBalanceRequest,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    result = await services.bookings.process_remaining_balance(
        tenant_id, booking_id, request.customer_id
    )
    return unwrap(result, "api_remaining_balance_error", booking_id=booking_id)


@tenant_router.get(
    "/bookings/{booking_id}/payments",
    summary="List booking payments",
)
async def list_booking_payments(
    tenant_id: str,
    booking_id: str,
    services: PaymentServices = Depends(get_services),
) -> Dict[str, Any]:
    payments = await services.bookings.get_booking_payments(tenant_id, booking_id)
    return {
        "booking_id": booking_id,
        "payments": [p.model_dump(mode="json") for p in payments],
    }


# Refunds


@tenant_router.post(
    "/payments/{payment_id}/refunds",
    response_model=RefundResult,
    summary="Refund a payment",
    description="Create a full or partial refund for a payment",
)
async def refund_payment(
    tenant_id: str,
    payment_id: str,
    request: RefundRequest,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    logger.info(
        "api_refund_payment_request",
        tenant_id=tenant_id,
        payment_intent_id=payment_id,
        amount=request.amount,
    )
    result = await services.refunds.process_refund_with_validation(
        tenant_id=tenant_id,
        payment_id=payment_id,
        amount=request.amount,
        reason=request.reason,
        initiated_by=RefundInitiator.TENANT,
        metadata=request.metadata,
    )
    return unwrap(result, "api_refund_payment_error", payment_intent_id=payment_id)


# Subscriptions


@tenant_router.post(
    "/subscription",
    response_model=SubscriptionResult,
    status_code=status.HTTP_201_CREATED,
    summary="Subscribe tenant to a plan",
)
async def create_subscription(
    tenant_id: str,
    request: CreateSubscriptionRequest,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    result = await services.subscriptions.create_platform_subscription(
        tenant_id, request.price_id, request.customer
    )
    return unwrap(result, "api_create_subscription_error", tenant_id=tenant_id)


@tenant_router.put(
    "/subscription",
    response_model=SubscriptionResult,
    summary="Change subscription plan",
)
async def update_subscription(
    tenant_id: str,
    request: UpdateSubscriptionRequest,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    result = await services.subscriptions.update_platform_subscription(
        tenant_id, request.price_id
    )
    return unwrap(result, "api_update_subscription_error", tenant_id=tenant_id)


@tenant_router.delete(
    "/subscription",
    response_model=SubscriptionResult,
    summary="Cancel subscription",
)
async def cancel_subscription(
    tenant_id: str,
    immediately: bool = False,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    result = await services.subscriptions.cancel_platform_subscription(tenant_id, immediately)
    return unwrap(result, "api_cancel_subscription_error", tenant_id=tenant_id)


@tenant_router.get(
    "/subscription",
    response_model=SubscriptionResult,
    summary="Get subscription",
)
async def get_subscription(
    tenant_id: str,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    result = await services.subscriptions.get_platform_subscription(tenant_id)
    return unwrap(result, "api_get_subscription_error", tenant_id=tenant_id)


# Connected accounts


@tenant_router.post(
    "/connected-account",
    response_model=ConnectedAccountResult,
    status_code=status.HTTP_201_CREATED,
    summary="Open a connected account",
)
async def create_connected_account(
    tenant_id: str,
    request: CreateConnectedAccountRequest,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    result = await services.accounts.create_connected_account(tenant_id, request.business)
    return unwrap(result, "api_create_connected_account_error", tenant_id=tenant_id)


@tenant_router.get(
    "/connected-account",
    response_model=ConnectedAccount,
    summary="Get connected account status",
)
async def get_connected_account(
    tenant_id: str,
    services: PaymentServices = Depends(get_services),
) -> ConnectedAccount:
    account = await services.accounts.get_connected_account_status(tenant_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Connected account not found"
        )
    return account


@tenant_router.post(
    "/connected-account/onboarding-link",
    response_model=ConnectedAccountResult,
    summary="Issue a fresh onboarding link",
)
async def create_onboarding_link(
    tenant_id: str,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    result = await services.accounts.create_onboarding_link(tenant_id)
    return unwrap(result, "api_onboarding_link_error", tenant_id=tenant_id)


# Analytics and reports


@tenant_router.get(
    "/analytics",
    response_model=PaymentAnalytics,
    summary="Payment analytics",
)
async def get_analytics(
    tenant_id: str,
    start_date: datetime,
    end_date: datetime,
    services: PaymentServices = Depends(get_services),
) -> PaymentAnalytics:
    try:
        return await services.analytics.get_payment_analytics(tenant_id, start_date, end_date)
    except Exception as e:
        logger.error("api_analytics_error", tenant_id=tenant_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Analytics failed: {str(e)}",
        )


@tenant_router.post(
    "/reports",
    response_model=ReportResult,
    status_code=status.HTTP_201_CREATED,
    summary="Generate a payment report",
)
async def generate_report(
    tenant_id: str,
    request: GenerateReportRequest,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    result = await services.analytics.generate_payment_report(
        tenant_id,
        request.start_date,
        request.end_date,
        include_refunds=request.include_refunds,
        format=request.format,
    )
    return unwrap(result, "api_generate_report_error", tenant_id=tenant_id)


@payment_router.get(
    "/reports/{filename}",
    summary="Download a report",
    response_class=FileResponse,
)
async def download_report(
    filename: str,
    services: PaymentServices = Depends(get_services),
) -> FileResponse:
    path = services.report_writer.resolve(filename)
    if path is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Report not found")
    return FileResponse(path, filename=filename)


@tenant_router.post(
    "/reconciliations",
    response_model=ReconciliationResult,
    summary="Run reconciliation",
    description="Reconcile one UTC day for the tenant",
)
async def run_reconciliation(
    tenant_id: str,
    reconciliation_date: Optional[date] = Query(default=None, alias="date"),
    check_gateway: bool = True,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    """
    Run reconciliation for a specific date.

    If no date provided, reconciles yesterday.
    """
    day = reconciliation_date or datetime.now(timezone.utc).date() - timedelta(days=1)
    result = await services.analytics.reconcile_payments(
        tenant_id, day, check_gateway=check_gateway
    )
    return unwrap(result, "api_reconciliation_error", tenant_id=tenant_id, date=day.isoformat())


@admin_router.post(
    "/reconcile",
    summary="Reconcile every tenant",
    description="Manually trigger reconciliation for all tenants for a specific date",
)
async def reconcile_all_tenants(
    reconciliation_date: Optional[date] = Query(default=None, alias="date"),
    services: PaymentServices = Depends(get_services),
) -> Dict[str, Any]:
    day = reconciliation_date or datetime.now(timezone.utc).date() - timedelta(days=1)
    results = {}
    for tenant_id in await services.store.list_tenant_ids():
        result = await services.analytics.reconcile_payments(tenant_id, day)
        results[tenant_id] = result.model_dump(mode="json")

    logger.info("api_reconciliation_completed", date=day.isoformat(), tenants=len(results))
    return {"date": day.isoformat(), "tenants": results}


@admin_router.post(
    "/payments/{payment_id}/refunds",
    response_model=RefundResult,
    summary="Refund any tenant's payment",
    description="Platform-initiated refund, not limited to one tenant's payments",
)
async def platform_refund_payment(
    payment_id: str,
    request: RefundRequest,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    intent = await services.payments.get_payment_intent(payment_id)
    # An unknown payment is reported by refund validation
    tenant_id = intent.tenant_id if intent is not None else ""
    logger.info(
        "api_platform_refund_request",
        tenant_id=tenant_id,
        payment_intent_id=payment_id,
        amount=request.amount,
    )
    result = await services.refunds.process_refund_with_validation(
        tenant_id=tenant_id,
        payment_id=payment_id,
        amount=request.amount,
        reason=request.reason,
        initiated_by=RefundInitiator.PLATFORM,
        metadata=request.metadata,
    )
    return unwrap(result, "api_platform_refund_error", payment_intent_id=payment_id)


@admin_router.post(
    "/tenants/{tenant_id}/subscription/refunds",
    response_model=RefundResult,
    summary="Refund a tenant's latest subscription invoice",
)
async def refund_subscription_invoice(
    tenant_id: str,
    request: SubscriptionRefundRequest,
    services: PaymentServices = Depends(get_services),
) -> OperationResult:
    result = await services.subscriptions.refund_latest_invoice(
        tenant_id, amount=request.amount, reason=request.reason
    )
    return unwrap(result, "api_subscription_refund_error", tenant_id=tenant_id)


# Webhooks


@webhook_router.post(
    "/stripe",
    response_model=WebhookResult,
    summary="Stripe webhook endpoint",
    description="Handle Stripe webhook events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
    services: PaymentServices = Depends(get_services),
) -> WebhookResult:
    """
    Handle Stripe webhook events.

    Responds 400 on signature failure and 500 when a handler failed so the
    event is redelivered. Accepted, duplicate and ignored events get 200.
    """
    body = await request.body()
    result = await services.webhooks.handle_webhook(body, stripe_signature)

    if not result.success:
        status_code = (
            status.HTTP_400_BAD_REQUEST
            if result.error_code == "signature_invalid"
            else status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        logger.warning("api_webhook_error", error=result.error, status_code=status_code)
        raise HTTPException(status_code=status_code, detail=result.model_dump(mode="json"))

    return result


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: PaymentServices = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: PaymentServices = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: PaymentServices = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
