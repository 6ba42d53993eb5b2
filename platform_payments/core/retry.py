"""
Retry executor for gateway calls.

Wraps a single zero-argument gateway call, classifies every raised error,
retries transient ones with exponential backoff plus jitter and returns a
uniform ``RetryOutcome`` instead of raising.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from platform_payments.config import Settings, get_settings
from platform_payments.core.errors import PaymentError, classify_error
from platform_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]


@dataclass
class RetryOutcome(Generic[T]):
    """Result of an executed operation. Never persisted."""

    success: bool
    attempts: int
    result: Optional[T] = None
    error: Optional[PaymentError] = None


def _is_retryable(error: BaseException) -> bool:
    return classify_error(error).retryable


class RetryExecutor:
    """
    Executes gateway calls with bounded retry.

    The backoff curve is a tenacity wait strategy and can be swapped per
    executor or per call. Only the attempt ceiling is fixed behaviour.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        max_retries: Optional[int] = None,
        wait: Optional[wait_base] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize retry executor.

        Args:
            settings: Optional settings (uses cached settings if not provided)
            max_retries: Maximum number of attempts per operation
            wait: Tenacity wait strategy between attempts
            sleep: Awaitable used to wait between attempts
        """
        settings = settings or get_settings()
        self.max_retries = max_retries or settings.payment_retry_max_attempts
        self.wait = wait or wait_exponential_jitter(
            initial=settings.payment_retry_base_delay,
            max=settings.payment_retry_max_delay,
            jitter=settings.payment_retry_jitter,
        )
        self.sleep = sleep

    async def execute_with_retry(
        self,
        operation: Operation[T],
        max_retries: Optional[int] = None,
        wait: Optional[wait_base] = None,
        operation_name: str = "gateway_call",
    ) -> RetryOutcome[T]:
        """
        Execute operation, retrying transient failures.

        Args:
            operation: Zero-argument coroutine function calling the gateway
            max_retries: Override for the attempt ceiling
            wait: Override for the backoff strategy
            operation_name: Name used in logs

        Returns:
            RetryOutcome: success flag, attempts made and result or classified error
        """
        max_attempts = max_retries or self.max_retries
        attempts = 0

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait or self.wait,
            retry=retry_if_exception(_is_retryable),
            sleep=self.sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    if attempts > 1:
                        logger.info(
                            "retrying_operation",
                            operation=operation_name,
                            attempt=attempts,
                            max_attempts=max_attempts,
                        )
                    result = await operation()
        except Exception as e:
            error = classify_error(e)
            metrics.record_gateway_error(error.type.value, error.retryable)
            metrics.record_retry_outcome(False, attempts)
            logger.warning(
                "operation_failed",
                operation=operation_name,
                attempts=attempts,
                error_type=error.type.value,
                error_code=error.code,
                retryable=error.retryable,
            )
            return RetryOutcome(success=False, attempts=attempts, error=error)

        metrics.record_retry_outcome(True, attempts)
        return RetryOutcome(success=True, attempts=attempts, result=result)
