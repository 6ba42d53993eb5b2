"""
Pydantic schemas for API request bodies.

Responses are the operation result envelopes from ``core.models``.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from platform_payments.core.models import (
    BusinessInfo,
    CustomerInfo,
    PaymentType,
    RefundReason,
)


class CreatePaymentIntentRequest(BaseModel):
    """Request schema for creating a payment intent."""

    amount: int = Field(..., gt=0, description="Amount in minor units")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    customer_id: Optional[str] = Field(default=None, description="Gateway customer id")
    description: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None
    application_fee_amount: Optional[int] = Field(
        default=None, ge=0, description="Platform fee override (minor units)"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Gateway currencies are lower case."""
        return v.lower() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": 5000,
                    "currency": "gbp",
                    "customer_id": "cus_123",
                    "description": "Gift voucher",
                }
            ]
        }
    }


class ConfirmPaymentRequest(BaseModel):
    payment_method_id: Optional[str] = Field(default=None, description="Payment method to use")


class CreateBookingPaymentRequest(BaseModel):
    """Request schema for a booking payment (deposit or full)."""

    customer_id: str = Field(..., description="Gateway customer id")
    total_amount: int = Field(..., gt=0, description="Booking total in minor units")
    payment_type: PaymentType = Field(default=PaymentType.FULL_PAYMENT)
    deposit_percentage: Optional[float] = Field(
        default=None, description="Deposit share in (0, 1); defaults from settings"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "customer_id": "cus_123",
                    "total_amount": 10000,
                    "payment_type": "deposit",
                    "deposit_percentage": 0.3,
                }
            ]
        }
    }


class RemainingBalanceRequest(BaseModel):
    customer_id: str = Field(..., description="Gateway customer id")


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    # Bounds are enforced by refund validation so every problem is reported together
    amount: Optional[int] = Field(
        default=None, description="Partial refund amount (remaining balance if not specified)"
    )
    reason: Optional[RefundReason] = Field(default=None)
    metadata: Optional[Dict[str, str]] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount": 500, "reason": "requested_by_customer"},
                {"reason": "duplicate"},
            ]
        }
    }


class SubscriptionRefundRequest(BaseModel):
    """Request schema for refunding a tenant's latest subscription invoice."""

    amount: Optional[int] = Field(
        default=None, gt=0, description="Partial amount (full invoice if not specified)"
    )
    reason: Optional[RefundReason] = Field(default=None)


class CreateSubscriptionRequest(BaseModel):
    price_id: str = Field(..., description="Gateway price id of the plan")
    customer: CustomerInfo


class UpdateSubscriptionRequest(BaseModel):
    price_id: str = Field(..., description="Gateway price id of the new plan")


class CreateConnectedAccountRequest(BaseModel):
    business: BusinessInfo


class GenerateReportRequest(BaseModel):
    """Request schema for generating a payment report."""

    start_date: datetime
    end_date: datetime
    include_refunds: bool = False
    format: str = Field(default="json", description="Report format (json/csv)")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")
