"""
Payment intent lifecycle.

    pending --> succeeded --> refunded
       |
       +-----> failed

``failed`` and ``refunded`` are terminal. Re-applying the current state is
a no-op so repeated webhook deliveries stay idempotent.
"""
from typing import Dict, FrozenSet

import structlog

from platform_payments.core.exceptions import IllegalTransition
from platform_payments.core.models import PaymentStatus
from platform_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED}),
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in TRANSITIONS[current]


def next_status(current: PaymentStatus, target: PaymentStatus) -> bool:
    """
    Validate a status change.

    Args:
        current: Status currently recorded
        target: Requested status

    Returns:
        bool: True if the record must change, False if it already is ``target``

    Raises:
        IllegalTransition: If the table does not allow the change
    """
    if current == target:
        return False
    if not can_transition(current, target):
        metrics.record_illegal_transition(current.value, target.value)
        logger.warning(
            "illegal_payment_transition",
            from_status=current.value,
            to_status=target.value,
        )
        raise IllegalTransition(current.value, target.value)
    return True
