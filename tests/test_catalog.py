"""Tests for the TTL product catalog."""

from datetime import datetime, timedelta, timezone

import pytest

from billsync.billing.catalog import CatalogEntry, PlanCatalog
from billsync.billing.types import ProductInfo


class TestPlanCatalog:
    """Plan label lookup."""

    @pytest.mark.asyncio
    async def test_loads_once_within_ttl(self, gateway):
        catalog = PlanCatalog(gateway, ttl_seconds=300)

        assert await catalog.plan_name("prod_base") == "Base"
        assert await catalog.plan_name("prod_pro") == "Pro"
        assert gateway.product_list_calls == 1

    @pytest.mark.asyncio
    async def test_miss_returns_none(self, gateway):
        catalog = PlanCatalog(gateway)

        assert await catalog.plan_name("prod_unknown") is None
        assert await catalog.plan_name(None) is None

    @pytest.mark.asyncio
    async def test_reloads_after_expiry(self, gateway):
        catalog = PlanCatalog(gateway, ttl_seconds=0)
        await catalog.plan_name("prod_base")
        gateway.products = [ProductInfo(id="prod_base", name="Base (2024)")]

        assert await catalog.plan_name("prod_base") == "Base (2024)"
        assert gateway.product_list_calls == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_names(self, gateway):
        catalog = PlanCatalog(gateway, ttl_seconds=0)
        await catalog.refresh()
        gateway.fail = True

        assert await catalog.plan_name("prod_base") == "Base"


def test_entry_expiry():
    fresh = CatalogEntry(names={}, fetched_at=datetime.now(timezone.utc))
    old = CatalogEntry(names={}, fetched_at=datetime.now(timezone.utc) - timedelta(seconds=600))

    assert not fresh.is_expired(300)
    assert old.is_expired(300)
    assert CatalogEntry().is_expired(300)
