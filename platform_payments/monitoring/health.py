"""
Health checks for liveness/readiness probes.

Checks:
- Payment store reachability
- Payment gateway configuration
"""
from typing import Any, Dict, Optional

import structlog

from platform_payments.config import Settings, get_settings
from platform_payments.storage.base import PaymentStore

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the payment engine's dependencies.

    Provides:
    - Store connectivity check
    - Gateway configuration check
    - Overall system health status
    """

    def __init__(self, store: PaymentStore, settings: Optional[Settings] = None) -> None:
        """Initialize health check service."""
        self.store = store
        self.settings = settings or get_settings()

    async def check_store(self) -> Dict[str, Any]:
        """
        Check payment store connectivity.

        Raises:
            HealthCheckError: If the store does not answer
        """
        try:
            reachable = await self.store.ping()
        except Exception as e:
            logger.error("store_health_check_failed", error=str(e))
            raise HealthCheckError(f"Store health check failed: {str(e)}")

        if not reachable:
            logger.error("store_health_check_failed", backend=self.settings.store_backend)
            raise HealthCheckError("Store health check failed: ping returned false")

        return {
            "status": "healthy",
            "service": "store",
            "backend": self.settings.store_backend,
            "message": "Store connection successful",
        }

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Check the gateway credentials are configured.

        Raises:
            HealthCheckError: If a credential is missing
        """
        if not self.settings.stripe_secret_key or not self.settings.stripe_webhook_secret:
            raise HealthCheckError("Gateway health check failed: credentials not configured")

        return {
            "status": "healthy",
            "service": "gateway",
            "message": "Gateway credentials configured",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("store", self.check_store), ("gateway", self.check_gateway)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Application is running. External dependencies are not checked."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Ready to accept traffic when every dependency is healthy."""
        return await self.check_all()
