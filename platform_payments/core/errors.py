"""
Gateway error classification.

Every exception raised by a gateway call is reduced to a single
``PaymentError`` so retry decisions and caller-visible failures never
inspect SDK-specific fields at the call site.

Known shapes:
- Stripe SDK exceptions (CardError, RateLimitError, APIConnectionError, ...)
- Transport timeouts and socket errors
- Loosely typed error payloads (dicts or objects carrying a ``type`` field)
"""
import asyncio
from enum import Enum
from typing import Any, Optional

import stripe
from pydantic import BaseModel

# Card declines that describe a temporary condition on the payer's side.
RETRYABLE_DECLINE_CODES = frozenset(
    {
        "insufficient_funds",
        "processing_error",
        "try_again_later",
        "issuer_not_available",
        "reenter_transaction",
    }
)

_CARD_ERROR_TYPES = frozenset({"card_error", "StripeCardError"})
_RATE_LIMIT_TYPES = frozenset({"rate_limit_error", "StripeRateLimitError"})
_CONNECTION_TYPES = frozenset({"connection_error", "StripeConnectionError", "api_connection_error"})


class PaymentErrorType(str, Enum):
    """Closed set of caller-visible gateway error categories."""

    CARD_ERROR = "card_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    CONNECTION_ERROR = "connection_error"
    API_ERROR = "api_error"


class PaymentError(BaseModel):
    """Classified gateway failure."""

    type: PaymentErrorType
    code: str
    message: str
    decline_code: Optional[str] = None
    retryable: bool = False


def _field(raw: Any, name: str) -> Any:
    if isinstance(raw, dict):
        return raw.get(name)
    return getattr(raw, name, None)


def _decline_code(error: Any) -> Optional[str]:
    code = _field(error, "decline_code")
    if code:
        return code
    # Stripe SDK keeps the parsed error body on ``.error``
    return _field(_field(error, "error"), "decline_code")


def _message(error: Any, default: str) -> str:
    message = _field(error, "user_message") or _field(error, "message")
    if message:
        return str(message)
    if isinstance(error, BaseException) and str(error):
        return str(error)
    return default


def _card_error(error: Any) -> PaymentError:
    decline_code = _decline_code(error)
    code = _field(error, "code") or "card_declined"
    return PaymentError(
        type=PaymentErrorType.CARD_ERROR,
        code=code,
        message=_message(error, "Your card was declined."),
        decline_code=decline_code,
        retryable=(decline_code or code) in RETRYABLE_DECLINE_CODES,
    )


def _rate_limit_error(error: Any) -> PaymentError:
    return PaymentError(
        type=PaymentErrorType.RATE_LIMIT_ERROR,
        code="rate_limit",
        message=_message(error, "Too many requests made to the API too quickly"),
        retryable=True,
    )


def _connection_error(error: Any) -> PaymentError:
    return PaymentError(
        type=PaymentErrorType.CONNECTION_ERROR,
        code="connection_error",
        message=_message(error, "Network communication with the payment gateway failed"),
        retryable=True,
    )


def classify_error(raw: Any) -> PaymentError:
    """
    Classify a raised gateway error.

    Args:
        raw: Exception (or loosely typed error payload) raised by a gateway call

    Returns:
        PaymentError: Classified error with its retry decision
    """
    if isinstance(raw, stripe.CardError):
        return _card_error(raw)
    if isinstance(raw, stripe.RateLimitError):
        return _rate_limit_error(raw)
    if isinstance(
        raw, (stripe.APIConnectionError, asyncio.TimeoutError, TimeoutError, ConnectionError)
    ):
        return _connection_error(raw)

    error_type = _field(raw, "type")
    if error_type in _CARD_ERROR_TYPES:
        return _card_error(raw)
    if error_type in _RATE_LIMIT_TYPES:
        return _rate_limit_error(raw)
    if error_type in _CONNECTION_TYPES:
        return _connection_error(raw)

    if isinstance(raw, stripe.StripeError):
        return PaymentError(
            type=PaymentErrorType.API_ERROR,
            code=raw.code or "unknown_error",
            message=_message(raw, "The payment gateway rejected the request"),
            retryable=False,
        )

    return PaymentError(
        type=PaymentErrorType.API_ERROR,
        code="unknown_error",
        message=_message(raw, "An unknown error occurred"),
        retryable=False,
    )
