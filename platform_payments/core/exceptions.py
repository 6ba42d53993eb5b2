"""Domain exceptions for payment processing."""
from typing import List, Optional

from platform_payments.core.errors import PaymentError


class PaymentsError(Exception):
    """Base exception for payment engine errors."""

    code = "payments_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__doc__ or self.code)
        self.message = str(self)


class ValidationFailed(PaymentsError):
    """Request failed validation."""

    code = "validation_failed"

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors) or "Validation failed")
        self.errors = list(errors)


class NoDepositFound(PaymentsError):
    """No successful deposit payment found for this booking."""

    code = "no_deposit_found"


class AlreadySettled(PaymentsError):
    """Remaining balance has already been paid for this booking."""

    code = "already_settled"


class NoRemainingBalance(PaymentsError):
    """No remaining balance to pay."""

    code = "no_remaining_balance"


class NoActiveAccount(PaymentsError):
    """No active payment account found for tenant."""

    code = "no_active_account"


class AccountNotFound(PaymentsError):
    """No connected account found for tenant."""

    code = "account_not_found"


class SubscriptionNotFound(PaymentsError):
    """No active subscription found."""

    code = "subscription_not_found"


class SignatureInvalid(PaymentsError):
    """Invalid signature."""

    code = "signature_invalid"


class IllegalTransition(PaymentsError):
    """Payment status transition is not allowed."""

    code = "illegal_transition"

    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal payment status transition: {current} -> {target}")
        self.current = current
        self.target = target


class StoreError(PaymentsError):
    """Payment store is unavailable or rejected the operation."""

    code = "store_error"


class GatewayUnavailable(PaymentsError):
    """Gateway call failed after retries."""

    code = "gateway_unavailable"

    def __init__(self, error: PaymentError):
        super().__init__(error.message)
        self.code = error.code
        self.payment_error = error


class NoInvoiceFound(PaymentsError):
    """No invoices found for subscription."""

    code = "no_invoice_found"


class NoInvoicePayment(PaymentsError):
    """No payment intent found for latest invoice."""

    code = "no_invoice_payment"
