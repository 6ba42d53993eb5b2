"""Payment store backends."""
from typing import Optional

from platform_payments.config import Settings, get_settings

from .base import PaymentStore
from .memory import MemoryPaymentStore
from .redis import RedisPaymentStore


def get_store(settings: Optional[Settings] = None) -> PaymentStore:
    """Build the store selected by ``store_backend``."""
    settings = settings or get_settings()
    if settings.store_backend == "redis":
        return RedisPaymentStore.from_settings(settings)
    return MemoryPaymentStore()


__all__ = ["PaymentStore", "MemoryPaymentStore", "RedisPaymentStore", "get_store"]
