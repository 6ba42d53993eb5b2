"""Tenant onboarding as a payable connected account."""
from typing import Optional

import structlog

from platform_payments.config import Settings, get_settings
from platform_payments.core.exceptions import AccountNotFound
from platform_payments.core.models import (
    BusinessInfo,
    ConnectedAccount,
    ConnectedAccountResult,
    utcnow,
)
from platform_payments.core.retry import RetryExecutor
from platform_payments.integrations.audit import AuditSink
from platform_payments.integrations.gateway import PaymentGateway, Resource
from platform_payments.storage.base import PaymentStore

logger = structlog.get_logger(__name__)


def apply_account_resource(account: ConnectedAccount, resource: Resource) -> ConnectedAccount:
    """Copy gateway capability flags onto a local record."""
    account.charges_enabled = bool(resource.get("charges_enabled"))
    account.payouts_enabled = bool(resource.get("payouts_enabled"))
    account.details_submitted = bool(resource.get("details_submitted"))
    requirements = resource.get("requirements") or {}
    account.requirements = list(requirements.get("currently_due") or [])
    account.updated_at = utcnow()
    return account


class ConnectedAccountManager:
    """
    Creates connected accounts and reports their onboarding state.

    ``is_active`` and ``onboarding_complete`` are computed from the latest
    gateway flags on every status call; they are never stored as booleans.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        store: PaymentStore,
        retry_executor: RetryExecutor,
        audit: AuditSink,
        settings: Optional[Settings] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.retry = retry_executor
        self.audit = audit
        self.settings = settings or get_settings()

    async def _onboarding_link(self, account_id: str) -> ConnectedAccountResult | str:
        base_url = self.settings.frontend_url.rstrip("/")

        async def _link() -> Resource:
            return await self.gateway.create_account_link(
                account_id=account_id,
                refresh_url=f"{base_url}/settings/payments/refresh",
                return_url=f"{base_url}/settings/payments/success",
            )

        outcome = await self.retry.execute_with_retry(_link, operation_name="create_account_link")
        if not outcome.success:
            return ConnectedAccountResult.from_payment_error(outcome.error)
        return outcome.result["url"]

    async def create_connected_account(
        self, tenant_id: str, business_info: BusinessInfo
    ) -> ConnectedAccountResult:
        """
        Open a connected account for a tenant and issue its onboarding link.

        A tenant that already has an account gets a fresh link for it
        instead of a second account.

        Args:
            tenant_id: Tenant being onboarded
            business_info: Contact and business details

        Returns:
            ConnectedAccountResult: Account and onboarding URL, or the failure
        """
        try:
            return await self._create_connected_account(tenant_id, business_info)
        except Exception as e:
            logger.error(
                "connected_account_create_failed",
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return ConnectedAccountResult.from_unexpected(e)

    async def _create_connected_account(
        self, tenant_id: str, business_info: BusinessInfo
    ) -> ConnectedAccountResult:
        account = await self.store.get_connected_account(tenant_id)

        if account is None:

            async def _create() -> Resource:
                return await self.gateway.create_account(
                    tenant_id=tenant_id,
                    email=business_info.email,
                    business_name=business_info.business_name,
                    country=business_info.country,
                )

            outcome = await self.retry.execute_with_retry(
                _create, operation_name="create_account"
            )
            if not outcome.success:
                return ConnectedAccountResult.from_payment_error(outcome.error)

            account = apply_account_resource(
                ConnectedAccount(id=outcome.result["id"], tenant_id=tenant_id), outcome.result
            )
            await self.store.save_connected_account(account)

            logger.info("connected_account_created", tenant_id=tenant_id, account_id=account.id)
            await self.audit.publish(
                "account.created", {"tenant_id": tenant_id, "account_id": account.id}
            )
        else:
            logger.info(
                "connected_account_exists", tenant_id=tenant_id, account_id=account.id
            )

        link = await self._onboarding_link(account.id)
        if isinstance(link, ConnectedAccountResult):
            link.account = account
            return link

        return ConnectedAccountResult(success=True, account=account, onboarding_url=link)

    async def get_connected_account_status(self, tenant_id: str) -> Optional[ConnectedAccount]:
        """
        Fetch the tenant's account from the gateway.

        Returns:
            Optional[ConnectedAccount]: Current account state, or None if the
            tenant has no account or its state could not be read
        """
        try:
            account = await self.store.get_connected_account(tenant_id)
            if account is None:
                return None

            async def _retrieve() -> Resource:
                return await self.gateway.retrieve_account(account.id)

            outcome = await self.retry.execute_with_retry(
                _retrieve, operation_name="retrieve_account"
            )
            if not outcome.success:
                logger.warning(
                    "connected_account_status_unavailable",
                    tenant_id=tenant_id,
                    account_id=account.id,
                    error_code=outcome.error.code,
                )
                return None

            apply_account_resource(account, outcome.result)
            await self.store.save_connected_account(account)
            return account
        except Exception as e:
            logger.error(
                "connected_account_status_failed",
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return None

    async def create_onboarding_link(self, tenant_id: str) -> ConnectedAccountResult:
        """Issue a fresh onboarding link for an existing account."""
        try:
            account = await self.store.get_connected_account(tenant_id)
            if account is None:
                return ConnectedAccountResult.from_exception(AccountNotFound())

            link = await self._onboarding_link(account.id)
        except Exception as e:
            logger.error(
                "onboarding_link_failed",
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return ConnectedAccountResult.from_unexpected(e)

        if isinstance(link, ConnectedAccountResult):
            link.account = account
            return link
        return ConnectedAccountResult(success=True, account=account, onboarding_url=link)
