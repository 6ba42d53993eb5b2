"""
Payment gateway primitives.

Components depend on this interface only. Returned resources are
mapping-like (``resource["id"]``, ``resource.get("status")``) so Stripe
objects and plain dicts are interchangeable.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

Resource = Mapping[str, Any]


class PaymentGateway(ABC):
    """Primitive operations consumed from the payment gateway."""

    # Payment intents

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_id: Optional[str] = None,
        destination_account_id: Optional[str] = None,
        application_fee_amount: Optional[int] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Resource:
        ...

    @abstractmethod
    async def retrieve_payment_intent(self, payment_intent_id: str) -> Resource:
        ...

    @abstractmethod
    async def confirm_payment_intent(
        self, payment_intent_id: str, payment_method_id: Optional[str] = None
    ) -> Resource:
        ...

    @abstractmethod
    async def cancel_payment_intent(self, payment_intent_id: str) -> Resource:
        ...

    @abstractmethod
    async def list_payment_intents(
        self, tenant_id: str, created_gte: int, created_lte: int
    ) -> List[Resource]:
        """List a tenant's intents created between two unix timestamps."""

    # Refunds

    @abstractmethod
    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        reverse_transfer: bool = False,
    ) -> Resource:
        ...

    # Customers

    @abstractmethod
    async def find_customer(self, tenant_id: str) -> Optional[Resource]:
        """Find the customer tagged with ``tenantId`` metadata."""

    @abstractmethod
    async def create_customer(
        self, email: str, name: str, metadata: Dict[str, str]
    ) -> Resource:
        ...

    # Subscriptions

    @abstractmethod
    async def create_subscription(
        self, customer_id: str, price_id: str, metadata: Dict[str, str]
    ) -> Resource:
        """Create an incomplete subscription with its first invoice intent expanded."""

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> Resource:
        ...

    @abstractmethod
    async def update_subscription_price(
        self, subscription_id: str, item_id: str, price_id: str
    ) -> Resource:
        ...

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str, immediately: bool) -> Resource:
        ...

    @abstractmethod
    async def list_invoices(self, subscription_id: str, limit: int = 1) -> List[Resource]:
        """List a subscription's invoices, newest first."""

    # Connected accounts

    @abstractmethod
    async def create_account(
        self,
        tenant_id: str,
        email: str,
        business_name: str,
        country: str,
    ) -> Resource:
        ...

    @abstractmethod
    async def retrieve_account(self, account_id: str) -> Resource:
        ...

    @abstractmethod
    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> Resource:
        ...

    # Webhooks

    @abstractmethod
    async def construct_event(self, payload: bytes, signature: str) -> Resource:
        """
        Verify a webhook signature and parse the event.

        Raises:
            SignatureInvalid: If the signature does not match the payload
        """
