"""Tests for the Postgres ledger store (mocked asyncpg pool)."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from billsync.billing.errors import LedgerConflict
from billsync.billing.ledger import PostgresLedgerStore
from billsync.billing.types import OrganizationBilling
from billsync.db.models import BillingStatus

UPDATED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _mock_pool():
    mock_conn = AsyncMock()
    mock_acquire = MagicMock()
    mock_acquire.__aenter__.return_value = mock_conn
    mock_acquire.__aexit__.return_value = None
    mock_pool = MagicMock()
    mock_pool.acquire.return_value = mock_acquire
    return mock_pool, mock_conn


def _record(**overrides):
    record = {
        "organization_id": "org_1",
        "external_customer_id": "cus_1",
        "external_subscription_id": "sub_1",
        "external_product_id": "prod_base",
        "plan_name": "Base",
        "status": "trialing",
        "updated_at": UPDATED_AT,
        "last_sequence": 1_700_000_000,
    }
    record.update(overrides)
    return record


class TestReads:
    """Row lookups."""

    @pytest.mark.asyncio
    async def test_get_by_subscription_maps_row(self):
        pool, conn = _mock_pool()
        conn.fetchrow.return_value = _record()

        row = await PostgresLedgerStore(pool).get_by_external_subscription_id("sub_1")

        assert row == OrganizationBilling(
            organization_id="org_1",
            external_customer_id="cus_1",
            external_subscription_id="sub_1",
            external_product_id="prod_base",
            plan_name="Base",
            status=BillingStatus.TRIALING,
            updated_at=UPDATED_AT,
            last_sequence=1_700_000_000,
        )
        sql, value = conn.fetchrow.call_args[0]
        assert "WHERE external_subscription_id = $1" in sql
        assert value == "sub_1"

    @pytest.mark.asyncio
    async def test_get_by_customer_missing_returns_none(self):
        pool, conn = _mock_pool()
        conn.fetchrow.return_value = None

        assert await PostgresLedgerStore(pool).get_by_external_customer_id("cus_x") is None
        assert "WHERE external_customer_id = $1" in conn.fetchrow.call_args[0][0]

    @pytest.mark.asyncio
    async def test_create_is_idempotent_insert(self):
        pool, conn = _mock_pool()
        conn.fetchrow.return_value = _record(
            external_customer_id=None,
            external_subscription_id=None,
            external_product_id=None,
            plan_name=None,
            status="none",
            last_sequence=None,
        )

        row = await PostgresLedgerStore(pool).create("org_1")

        assert row.status == BillingStatus.NONE
        assert "ON CONFLICT (organization_id) DO NOTHING" in conn.execute.call_args[0][0]


class TestCasUpdate:
    """Compare-and-swap writes."""

    @pytest.mark.asyncio
    async def test_write_is_conditional_on_sequence(self):
        pool, conn = _mock_pool()
        conn.execute.return_value = "UPDATE 1"
        row = OrganizationBilling(
            organization_id="org_1",
            external_customer_id="cus_1",
            external_subscription_id=None,
            external_product_id="prod_base",
            plan_name="Base",
            status=BillingStatus.CANCELED,
            updated_at=UPDATED_AT,
            last_sequence=1_700_000_020,
        )

        written = await PostgresLedgerStore(pool).cas_update("org_1", 1_700_000_010, row)

        assert written is True
        conn.execute.assert_called_once()
        args = conn.execute.call_args[0]
        assert "last_sequence IS NOT DISTINCT FROM $2" in args[0]
        assert args[1:] == (
            "org_1",
            1_700_000_010,
            "cus_1",
            None,
            "prod_base",
            "Base",
            "canceled",
            1_700_000_020,
            UPDATED_AT,
        )

    @pytest.mark.asyncio
    async def test_lost_race_returns_false(self):
        pool, conn = _mock_pool()
        conn.execute.return_value = "UPDATE 0"

        assert await PostgresLedgerStore(pool).cas_update("org_1", None, OrganizationBilling("org_1")) is False

    @pytest.mark.asyncio
    async def test_unique_violation_becomes_conflict(self):
        pool, conn = _mock_pool()
        conn.execute.side_effect = asyncpg.UniqueViolationError("duplicate key value")

        with pytest.raises(LedgerConflict):
            await PostgresLedgerStore(pool).cas_update("org_1", None, OrganizationBilling("org_1"))
