"""Session Initiator: checkout and customer-portal sessions for an organization."""

import logging
from typing import Optional

from billsync.billing.errors import NoActiveSubscription
from billsync.billing.gateway import ProcessorGateway, get_gateway
from billsync.billing.types import ORGANIZATION_METADATA_KEY, OrganizationBilling
from billsync.config import get_config
from billsync.db.models import BillingStatus

logger = logging.getLogger(__name__)

# Marks the portal configuration this service manages among the account's configurations
PORTAL_CONFIGURATION_METADATA = {"managed_by": "billsync"}

_NO_PORTAL_STATUSES = {BillingStatus.NONE, BillingStatus.CANCELED, BillingStatus.INCOMPLETE_EXPIRED}


class SessionInitiator:
    """Builds Stripe checkout and portal sessions.

    Callers must already have authenticated the user and checked their
    membership in the organization. Failures are raised as
    ``GatewayUnavailable`` and never retried here; the user can click again.
    """

    def __init__(
        self,
        gateway: ProcessorGateway,
        success_url: str,
        cancel_url: str,
        portal_return_url: str,
        trial_period_days: int = 14,
    ):
        self._gateway = gateway
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._portal_return_url = portal_return_url
        self._trial_period_days = trial_period_days
        self._portal_configuration_id: Optional[str] = None

    async def create_checkout_session(self, organization: OrganizationBilling, price_id: str) -> str:
        """
        Start a subscription checkout for ``price_id``.

        An existing Stripe customer is reused so Stripe can prefill payment
        details; otherwise Stripe creates one. The organization id is stored
        on both the session and the subscription so either webhook path can
        find the organization.

        Returns:
            Stripe Checkout URL to redirect the user to
        """
        metadata = {ORGANIZATION_METADATA_KEY: organization.organization_id}
        subscription_data: dict = {"metadata": metadata}
        if self._trial_period_days > 0:
            subscription_data["trial_period_days"] = self._trial_period_days

        params = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": self._success_url,
            "cancel_url": self._cancel_url,
            "allow_promotion_codes": True,
            "client_reference_id": organization.organization_id,
            "metadata": metadata,
            "subscription_data": subscription_data,
        }
        if organization.external_customer_id:
            params["customer"] = organization.external_customer_id

        url = await self._gateway.create_checkout_session(params)
        logger.info(f"Checkout started for organization {organization.organization_id} (price={price_id})")
        return url

    async def create_portal_session(self, organization: OrganizationBilling) -> str:
        """
        Open the Stripe customer portal for an organization with a live subscription.

        Raises:
            NoActiveSubscription: If the organization has no customer or subscription
            GatewayUnavailable: On Stripe errors
        """
        if (
            not organization.external_customer_id
            or not organization.external_subscription_id
            or organization.status in _NO_PORTAL_STATUSES
        ):
            raise NoActiveSubscription(
                f"Organization {organization.organization_id} has no active subscription"
            )

        configuration_id = await self._portal_configuration()
        return await self._gateway.create_portal_session(
            organization.external_customer_id,
            configuration_id,
            self._portal_return_url,
        )

    async def _portal_configuration(self) -> str:
        if self._portal_configuration_id is not None:
            return self._portal_configuration_id

        for configuration in await self._gateway.list_portal_configurations():
            if configuration.active and all(
                configuration.metadata.get(key) == value
                for key, value in PORTAL_CONFIGURATION_METADATA.items()
            ):
                self._portal_configuration_id = configuration.id
                return configuration.id

        prices = await self._gateway.list_active_prices()
        self._portal_configuration_id = await self._gateway.create_portal_configuration(
            prices, dict(PORTAL_CONFIGURATION_METADATA)
        )
        return self._portal_configuration_id


def build_session_initiator(gateway: Optional[ProcessorGateway] = None) -> SessionInitiator:
    """Create a SessionInitiator from configuration."""
    config = get_config()
    return SessionInitiator(
        gateway=gateway or get_gateway(),
        success_url=config.checkout_return_url,
        cancel_url=config.checkout_cancel_url,
        portal_return_url=config.portal_return_url,
        trial_period_days=config.trial_period_days,
    )
