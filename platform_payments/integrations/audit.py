"""
Audit/notification sink.

Structured compliance events are handed off fire-and-forget: a failing
sink is logged and never fails the payment operation that emitted it.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict

import structlog

logger = structlog.get_logger(__name__)


class AuditSink(ABC):
    """Receives structured audit events."""

    @abstractmethod
    async def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        ...

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Emit an event, logging instead of raising on sink failure."""
        try:
            await self.emit(event_type, payload)
        except Exception as e:
            logger.warning(
                "audit_emit_failed",
                event_type=event_type,
                error=str(e),
                exc_info=True,
            )


class LoggingAuditSink(AuditSink):
    """Writes audit events to the structured log stream."""

    def __init__(self, logger_name: str = "platform_payments.audit"):
        self.audit_logger = structlog.get_logger(logger_name)

    async def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        self.audit_logger.info("audit_event", audit_event_type=event_type, **payload)
