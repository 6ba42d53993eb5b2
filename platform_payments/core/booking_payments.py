"""
Booking payment coordinator.

A booking is paid either in full or as a deposit followed by the remaining
balance. Each payment is its own gateway intent; the lineage is kept as
BookingPayment records so the remaining balance can be derived from the
deposit's recorded total.

Invariant: pending and succeeded payments of every type for one booking
never add up to more than the booking total. Payment creation for a booking
runs under a per-booking store lock.
"""
from typing import List, Optional

import structlog

from platform_payments.config import Settings, get_settings
from platform_payments.core.exceptions import (
    AlreadySettled,
    NoDepositFound,
    NoRemainingBalance,
    PaymentsError,
    ValidationFailed,
)
from platform_payments.core.models import (
    BookingPayment,
    BookingPaymentResult,
    PaymentStatus,
    PaymentType,
)
from platform_payments.core.payments import PaymentIntentService, round_half_up
from platform_payments.monitoring.metrics import metrics
from platform_payments.storage.base import PaymentStore

logger = structlog.get_logger(__name__)

_OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.SUCCEEDED)


def _open_payments(payments: List[BookingPayment]) -> List[BookingPayment]:
    return [p for p in payments if p.status in _OPEN_STATUSES]


def _committed_amount(payments: List[BookingPayment]) -> int:
    """Amount already collected or being collected for a booking."""
    return sum(p.amount for p in _open_payments(payments))


class BookingPaymentCoordinator:
    """Computes booking amounts and creates their payment intents."""

    def __init__(
        self,
        payments: PaymentIntentService,
        store: PaymentStore,
        settings: Optional[Settings] = None,
    ):
        self.payments = payments
        self.store = store
        self.settings = settings or get_settings()

    def calculate_amount(
        self,
        total_amount: int,
        payment_type: PaymentType,
        deposit_percentage: Optional[float] = None,
    ) -> int:
        """
        Amount charged for a caller-initiated booking payment.

        Raises:
            ValidationFailed: For a remaining-balance type or a bad percentage
        """
        if payment_type == PaymentType.FULL_PAYMENT:
            return total_amount
        if payment_type == PaymentType.DEPOSIT:
            percentage = (
                deposit_percentage
                if deposit_percentage is not None
                else self.settings.default_deposit_percentage
            )
            if not 0 < percentage < 1:
                raise ValidationFailed(["Deposit percentage must be between 0 and 1"])
            return round_half_up(total_amount * percentage)
        raise ValidationFailed(
            ["Remaining balance payments are created by process_remaining_balance"]
        )

    async def create_booking_payment(
        self,
        tenant_id: str,
        booking_id: str,
        customer_id: str,
        total_amount: int,
        payment_type: PaymentType = PaymentType.FULL_PAYMENT,
        deposit_percentage: Optional[float] = None,
    ) -> BookingPaymentResult:
        """
        Create a deposit or full payment for a booking.

        Args:
            tenant_id: Tenant that owns the booking
            booking_id: Booking being paid
            customer_id: Paying customer
            total_amount: Booking total in minor units
            payment_type: ``deposit`` or ``full_payment``
            deposit_percentage: Share of the total taken as deposit, in (0, 1)

        Returns:
            BookingPaymentResult: Booking payment and client secret, or the failure
        """
        try:
            if total_amount <= 0:
                raise ValidationFailed(["Total amount must be greater than 0"])
            amount = self.calculate_amount(total_amount, payment_type, deposit_percentage)

            async with self.store.lock(f"booking:{booking_id}"):
                existing = _open_payments(await self.store.list_booking_payments(booking_id))
                if any(p.total_amount != total_amount for p in existing):
                    raise ValidationFailed(["Total amount does not match the booking total"])
                if _committed_amount(existing) + amount > total_amount:
                    raise AlreadySettled("Booking has already been paid")
                if payment_type == PaymentType.DEPOSIT and any(
                    p.payment_type == PaymentType.DEPOSIT for p in existing
                ):
                    raise AlreadySettled("A deposit has already been taken for this booking")

                return await self._create(
                    tenant_id,
                    booking_id,
                    customer_id,
                    amount,
                    total_amount,
                    payment_type,
                )
        except PaymentsError as e:
            logger.warning(
                "booking_payment_rejected",
                tenant_id=tenant_id,
                booking_id=booking_id,
                payment_type=payment_type.value,
                error_code=e.code,
            )
            return BookingPaymentResult.from_exception(e)
        except Exception as e:
            logger.error(
                "booking_payment_failed",
                tenant_id=tenant_id,
                booking_id=booking_id,
                payment_type=payment_type.value,
                error=str(e),
                exc_info=True,
            )
            return BookingPaymentResult.from_unexpected(e)

    async def process_remaining_balance(
        self, tenant_id: str, booking_id: str, customer_id: str
    ) -> BookingPaymentResult:
        """
        Collect the rest of a booking after a succeeded deposit.

        A remaining-balance payment that is pending or succeeded blocks a new
        one; only failed attempts may be re-issued. A booking that also has
        an open full payment is already paid.

        Args:
            tenant_id: Tenant that owns the booking
            booking_id: Booking being settled
            customer_id: Paying customer

        Returns:
            BookingPaymentResult: Remaining-balance payment, or the failure
            (``no_deposit_found``, ``already_settled``, ``no_remaining_balance``)
        """
        try:
            async with self.store.lock(f"booking:{booking_id}"):
                existing = [
                    p
                    for p in await self.store.list_booking_payments(booking_id)
                    if p.tenant_id == tenant_id
                ]
                deposits = [
                    p
                    for p in existing
                    if p.payment_type == PaymentType.DEPOSIT
                    and p.status == PaymentStatus.SUCCEEDED
                ]
                if not deposits:
                    raise NoDepositFound()
                deposit = deposits[-1]

                for payment in existing:
                    if payment.payment_type != PaymentType.REMAINING_BALANCE:
                        continue
                    if payment.status == PaymentStatus.SUCCEEDED:
                        raise AlreadySettled()
                    if payment.status == PaymentStatus.PENDING:
                        raise AlreadySettled(
                            "A remaining balance payment is already in progress "
                            "for this booking."
                        )

                remaining = deposit.total_amount - deposit.amount
                if remaining <= 0:
                    raise NoRemainingBalance()
                if _committed_amount(existing) + remaining > deposit.total_amount:
                    raise AlreadySettled("Booking has already been paid")

                return await self._create(
                    tenant_id,
                    booking_id,
                    customer_id,
                    remaining,
                    deposit.total_amount,
                    PaymentType.REMAINING_BALANCE,
                    deposit_payment_id=deposit.id,
                )
        except PaymentsError as e:
            logger.warning(
                "remaining_balance_rejected",
                tenant_id=tenant_id,
                booking_id=booking_id,
                error_code=e.code,
            )
            return BookingPaymentResult.from_exception(e)
        except Exception as e:
            logger.error(
                "remaining_balance_failed",
                tenant_id=tenant_id,
                booking_id=booking_id,
                error=str(e),
                exc_info=True,
            )
            return BookingPaymentResult.from_unexpected(e)

    async def _create(
        self,
        tenant_id: str,
        booking_id: str,
        customer_id: str,
        amount: int,
        total_amount: int,
        payment_type: PaymentType,
        deposit_payment_id: Optional[str] = None,
    ) -> BookingPaymentResult:
        metadata = {
            "bookingId": booking_id,
            "customerId": customer_id,
            "paymentType": payment_type.value,
            "totalAmount": str(total_amount),
        }
        if deposit_payment_id:
            metadata["depositPaymentId"] = deposit_payment_id

        result = await self.payments.create_payment_intent(
            tenant_id=tenant_id,
            amount=amount,
            description=f"Booking {booking_id} ({payment_type.value})",
            metadata=metadata,
        )
        if not result.success:
            return BookingPaymentResult(
                success=False,
                error=result.error,
                error_code=result.error_code,
                payment_error=result.payment_error,
                attempts=result.attempts,
            )

        intent = result.payment_intent
        booking_payment = BookingPayment(
            tenant_id=tenant_id,
            booking_id=booking_id,
            customer_id=customer_id,
            payment_intent_id=intent.id,
            payment_type=payment_type,
            amount=amount,
            total_amount=total_amount,
            deposit_payment_id=deposit_payment_id,
            status=intent.status,
        )
        try:
            await self.store.save_booking_payment(booking_payment)
        except Exception:
            await self.payments.cancel_payment_intent(intent.id)
            raise
        metrics.record_booking_payment(payment_type.value, booking_payment.status.value, amount)

        logger.info(
            "booking_payment_created",
            tenant_id=tenant_id,
            booking_id=booking_id,
            booking_payment_id=booking_payment.id,
            payment_intent_id=intent.id,
            payment_type=payment_type.value,
            amount=amount,
            total_amount=total_amount,
        )

        return BookingPaymentResult(
            success=True,
            booking_payment=booking_payment,
            client_secret=result.client_secret,
            attempts=result.attempts,
        )

    async def get_booking_payments(self, tenant_id: str, booking_id: str) -> List[BookingPayment]:
        """Every payment for a booking, oldest first."""
        payments = await self.store.list_booking_payments(booking_id)
        return [p for p in payments if p.tenant_id == tenant_id]
