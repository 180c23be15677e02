"""Processor Gateway: typed access to the Stripe API."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import stripe

from billsync.billing.errors import GatewayUnavailable
from billsync.billing.events import object_id, subscription_period_end, subscription_product_id
from billsync.billing.types import PortalConfigurationInfo, PriceInfo, ProductInfo, SessionDetail
from billsync.config import get_config

logger = logging.getLogger(__name__)

# Subscription plus its line items' products, fetched with the session in one call
CHECKOUT_EXPAND = ["subscription", "subscription.items.data.price.product"]


class ProcessorGateway(ABC):
    """Operations the synchronizer needs from the payment processor."""

    @abstractmethod
    async def create_checkout_session(self, params: dict) -> str:
        """Create a checkout session and return its redirect URL."""

    @abstractmethod
    async def retrieve_session(self, session_id: str, expand: list[str]) -> SessionDetail:
        pass

    @abstractmethod
    async def create_portal_session(
        self, customer_id: str, configuration_id: str, return_url: str
    ) -> str:
        """Create a customer portal session and return its redirect URL."""

    @abstractmethod
    async def list_portal_configurations(self) -> list[PortalConfigurationInfo]:
        pass

    @abstractmethod
    async def create_portal_configuration(
        self, prices: list[PriceInfo], metadata: dict[str, str]
    ) -> str:
        """Create a portal configuration allowing plan switches and cancellation."""

    @abstractmethod
    async def list_active_prices(self) -> list[PriceInfo]:
        pass

    @abstractmethod
    async def list_active_products(self) -> list[ProductInfo]:
        pass


def to_plain(obj: Any) -> Any:
    """Return SDK objects as plain dicts; recent stripe releases no longer subclass dict."""
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return obj


def session_detail(session: Any, retrieved_at: int) -> SessionDetail:
    """Flatten a retrieved checkout session with an expanded subscription."""
    session = to_plain(session)
    subscription = session.get("subscription")
    if isinstance(subscription, str):
        # not expanded; only the id is known
        subscription = {"id": subscription}

    return SessionDetail(
        id=session["id"],
        status=session.get("status"),
        customer_id=object_id(session.get("customer")),
        subscription_id=subscription.get("id") if subscription else None,
        subscription_status=subscription.get("status") if subscription else None,
        product_id=subscription_product_id(subscription) if subscription else None,
        current_period_end=subscription_period_end(subscription) if subscription else None,
        retrieved_at=retrieved_at,
        metadata=dict(session.get("metadata") or {}),
    )


class StripeGateway(ProcessorGateway):
    """ProcessorGateway backed by the ``stripe`` SDK.

    The API key travels with every request, so the SDK's module-level
    ``stripe.api_key`` is never set. Blocking SDK calls run in a worker
    thread so the event loop keeps serving webhooks.
    """

    def __init__(self, api_key: str, timeout_seconds: float):
        self._api_key = api_key
        self._timeout = timeout_seconds

    async def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Stripe {operation} timed out after {self._timeout}s")
            raise GatewayUnavailable(f"Stripe {operation} timed out") from None
        except stripe.StripeError as e:
            # str(e) can quote a masked key; log class and code only
            logger.error(
                f"Stripe {operation} failed: {type(e).__name__} "
                f"(http_status={e.http_status}, code={e.code})"
            )
            raise GatewayUnavailable(f"Stripe {operation} failed ({type(e).__name__})") from None

    async def create_checkout_session(self, params: dict) -> str:
        session = await self._call("checkout session create", stripe.checkout.Session.create, **params)
        logger.info(f"Created checkout session {session.id}")
        return session.url

    async def retrieve_session(self, session_id: str, expand: list[str]) -> SessionDetail:
        session = await self._call(
            "checkout session retrieve",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=expand,
        )
        # local clock; event sequences come from Stripe's clock
        return session_detail(session, retrieved_at=int(time.time()))

    async def create_portal_session(
        self, customer_id: str, configuration_id: str, return_url: str
    ) -> str:
        session = await self._call(
            "portal session create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            configuration=configuration_id,
            return_url=return_url,
        )
        return session.url

    async def list_portal_configurations(self) -> list[PortalConfigurationInfo]:
        page = await self._call(
            "portal configuration list",
            stripe.billing_portal.Configuration.list,
            active=True,
            limit=100,
        )
        return [
            PortalConfigurationInfo(
                id=cfg["id"],
                active=bool(cfg.get("active")),
                metadata=dict(cfg.get("metadata") or {}),
            )
            for cfg in map(to_plain, to_plain(page).get("data") or [])
        ]

    async def create_portal_configuration(
        self, prices: list[PriceInfo], metadata: dict[str, str]
    ) -> str:
        by_product: dict[str, list[str]] = {}
        for price in prices:
            by_product.setdefault(price.product_id, []).append(price.id)

        features: dict[str, Any] = {
            "customer_update": {"enabled": True, "allowed_updates": ["email", "address", "tax_id"]},
            "invoice_history": {"enabled": True},
            "payment_method_update": {"enabled": True},
            "subscription_cancel": {"enabled": True, "mode": "at_period_end"},
        }
        if by_product:
            features["subscription_update"] = {
                "enabled": True,
                "default_allowed_updates": ["price"],
                "proration_behavior": "create_prorations",
                "products": [
                    {"product": product, "prices": price_ids}
                    for product, price_ids in sorted(by_product.items())
                ],
            }

        configuration = await self._call(
            "portal configuration create",
            stripe.billing_portal.Configuration.create,
            business_profile={"headline": "Manage your subscription"},
            features=features,
            metadata=metadata,
        )
        logger.info(f"Created portal configuration {configuration.id}")
        return configuration.id

    async def _list_all(self, operation: str, fn: Callable[..., Any], **params) -> list:
        def _collect(**kwargs):
            return [to_plain(item) for item in fn(**kwargs).auto_paging_iter()]

        return await self._call(operation, _collect, **params)

    async def list_active_prices(self) -> list[PriceInfo]:
        prices = await self._list_all("price list", stripe.Price.list, active=True, type="recurring", limit=100)
        return [
            PriceInfo(
                id=price["id"],
                product_id=object_id(price.get("product")),
                unit_amount=price.get("unit_amount"),
                currency=price.get("currency", ""),
                interval=(price.get("recurring") or {}).get("interval"),
            )
            for price in prices
        ]

    async def list_active_products(self) -> list[ProductInfo]:
        products = await self._list_all("product list", stripe.Product.list, active=True, limit=100)
        return [ProductInfo(id=product["id"], name=product.get("name") or product["id"]) for product in products]


_gateway: Optional[StripeGateway] = None


def get_gateway() -> StripeGateway:
    """
    Get or create the process-wide Stripe gateway.

    Built once from configuration and never mutated afterwards.

    Raises:
        ValueError: If stripe_secret is not configured
    """
    global _gateway
    if _gateway is None:
        config = get_config()
        api_key = config.stripe_secret.get_secret_value()
        if not api_key:
            raise ValueError("stripe_secret not configured")
        _gateway = StripeGateway(api_key=api_key, timeout_seconds=config.gateway_timeout_seconds)
    return _gateway
