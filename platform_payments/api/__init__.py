"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CreateBookingPaymentRequest,
    CreatePaymentIntentRequest,
    GenerateReportRequest,
    RefundRequest,
)

__all__ = [
    "create_app",
    "CreateBookingPaymentRequest",
    "CreatePaymentIntentRequest",
    "GenerateReportRequest",
    "RefundRequest",
]
