"""Shared fixtures: in-memory ledger, fake Stripe gateway, webhook signing."""

import hashlib
import hmac
import json
import time
from dataclasses import replace
from typing import Optional

import pytest

from billsync.billing.catalog import PlanCatalog
from billsync.billing.errors import GatewayUnavailable, LedgerConflict
from billsync.billing.gateway import ProcessorGateway
from billsync.billing.ledger import LedgerStore
from billsync.billing.reconciler import Reconciler
from billsync.billing.types import (
    OrganizationBilling,
    PortalConfigurationInfo,
    PriceInfo,
    ProductInfo,
    SessionDetail,
)

WEBHOOK_SECRET = "whsec_test_secret"


class MemoryLedgerStore(LedgerStore):
    """LedgerStore kept in a dict, with the same uniqueness rules as the table."""

    def __init__(self):
        self.rows: dict[str, OrganizationBilling] = {}
        self.cas_calls = 0

    async def create(self, organization_id: str) -> OrganizationBilling:
        return self.rows.setdefault(organization_id, OrganizationBilling(organization_id))

    async def get_by_org_id(self, organization_id: str) -> Optional[OrganizationBilling]:
        return self.rows.get(organization_id)

    async def get_by_external_customer_id(self, customer_id: str) -> Optional[OrganizationBilling]:
        return next(
            (r for r in self.rows.values() if r.external_customer_id == customer_id), None
        )

    async def get_by_external_subscription_id(
        self, subscription_id: str
    ) -> Optional[OrganizationBilling]:
        return next(
            (r for r in self.rows.values() if r.external_subscription_id == subscription_id), None
        )

    async def cas_update(
        self,
        organization_id: str,
        expected_sequence: int | None,
        row: OrganizationBilling,
    ) -> bool:
        self.cas_calls += 1
        current = self.rows.get(organization_id)
        if current is None or current.last_sequence != expected_sequence:
            return False
        for other in self.rows.values():
            if other.organization_id == organization_id:
                continue
            if row.external_subscription_id and other.external_subscription_id == row.external_subscription_id:
                raise LedgerConflict("organization_billing_subscription_uq")
            if row.external_customer_id and other.external_customer_id == row.external_customer_id:
                raise LedgerConflict("organization_billing_customer_uq")
        self.rows[organization_id] = replace(row, organization_id=organization_id)
        return True


class FakeGateway(ProcessorGateway):
    """ProcessorGateway that records calls and returns canned data."""

    def __init__(self):
        self.sessions: dict[str, SessionDetail] = {}
        self.products = [ProductInfo(id="prod_base", name="Base"), ProductInfo(id="prod_pro", name="Pro")]
        self.prices = [
            PriceInfo(id="price_base", product_id="prod_base", unit_amount=900, currency="usd", interval="month"),
            PriceInfo(id="price_pro", product_id="prod_pro", unit_amount=2900, currency="usd", interval="month"),
        ]
        self.portal_configurations: list[PortalConfigurationInfo] = []
        self.checkout_params: list[dict] = []
        self.portal_sessions: list[tuple[str, str, str]] = []
        self.created_configurations: list[tuple[list[PriceInfo], dict]] = []
        self.retrieve_calls: list[tuple[str, list[str]]] = []
        self.product_list_calls = 0
        self.fail = False

    def _check(self):
        if self.fail:
            raise GatewayUnavailable("Stripe test call failed (APIConnectionError)")

    async def create_checkout_session(self, params: dict) -> str:
        self._check()
        self.checkout_params.append(params)
        return "https://checkout.stripe.com/c/pay/cs_test_1"

    async def retrieve_session(self, session_id: str, expand: list[str]) -> SessionDetail:
        self._check()
        self.retrieve_calls.append((session_id, expand))
        return self.sessions[session_id]

    async def create_portal_session(self, customer_id: str, configuration_id: str, return_url: str) -> str:
        self._check()
        self.portal_sessions.append((customer_id, configuration_id, return_url))
        return "https://billing.stripe.com/p/session/test_1"

    async def list_portal_configurations(self) -> list[PortalConfigurationInfo]:
        self._check()
        return list(self.portal_configurations)

    async def create_portal_configuration(self, prices: list[PriceInfo], metadata: dict[str, str]) -> str:
        self._check()
        self.created_configurations.append((prices, metadata))
        config_id = f"bpc_test_{len(self.created_configurations)}"
        self.portal_configurations.append(PortalConfigurationInfo(id=config_id, active=True, metadata=metadata))
        return config_id

    async def list_active_prices(self) -> list[PriceInfo]:
        self._check()
        return list(self.prices)

    async def list_active_products(self) -> list[ProductInfo]:
        self._check()
        self.product_list_calls += 1
        return list(self.products)


def make_session(
    session_id: str = "cs_test_1",
    organization_id: str | None = "org_1",
    customer_id: str | None = "cus_1",
    subscription_id: str | None = "sub_1",
    status: str | None = "trialing",
    product_id: str | None = "prod_base",
    retrieved_at: int = 1_700_000_000,
) -> SessionDetail:
    return SessionDetail(
        id=session_id,
        status="complete" if subscription_id else "open",
        customer_id=customer_id,
        subscription_id=subscription_id,
        subscription_status=status if subscription_id else None,
        product_id=product_id,
        current_period_end=1_701_209_600,
        retrieved_at=retrieved_at,
        metadata={"organization_id": organization_id} if organization_id else {},
    )


def subscription_event(
    kind: str,
    created: int,
    status: str = "active",
    subscription_id: str = "sub_1",
    customer_id: str = "cus_1",
    product_id: str = "prod_base",
    event_id: str | None = None,
    metadata: dict | None = None,
) -> dict:
    return {
        "id": event_id or f"evt_{kind.split('.')[-1]}_{created}",
        "object": "event",
        "type": kind,
        "created": created,
        "data": {
            "object": {
                "id": subscription_id,
                "object": "subscription",
                "customer": customer_id,
                "status": status,
                "metadata": metadata or {},
                "items": {
                    "object": "list",
                    "data": [
                        {
                            "id": "si_1",
                            "price": {"id": "price_base", "product": product_id},
                            "current_period_end": created + 30 * 86400,
                        }
                    ],
                },
            }
        },
    }


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header for ``payload``, computed the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def encode(event: dict) -> bytes:
    return json.dumps(event, separators=(",", ":")).encode("utf-8")


@pytest.fixture
def store() -> MemoryLedgerStore:
    return MemoryLedgerStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def reconciler(store, gateway) -> Reconciler:
    return Reconciler(store=store, gateway=gateway, catalog=PlanCatalog(gateway, ttl_seconds=300))
