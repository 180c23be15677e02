"""Ledger Store: durable per-organization billing rows."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import asyncpg

from billsync.billing.errors import LedgerConflict
from billsync.billing.types import OrganizationBilling
from billsync.db.models import BillingStatus, Table

logger = logging.getLogger(__name__)


class LedgerStore(ABC):
    """Read/write contract the reconciler relies on.

    ``cas_update`` is the only mutation of billing fields. It must write all
    fields at once and only when the stored ``last_sequence`` still equals
    ``expected_sequence``.
    """

    @abstractmethod
    async def create(self, organization_id: str) -> OrganizationBilling:
        """Create the empty row for a new organization (no-op if present)."""

    @abstractmethod
    async def get_by_org_id(self, organization_id: str) -> Optional[OrganizationBilling]:
        pass

    @abstractmethod
    async def get_by_external_customer_id(self, customer_id: str) -> Optional[OrganizationBilling]:
        pass

    @abstractmethod
    async def get_by_external_subscription_id(
        self, subscription_id: str
    ) -> Optional[OrganizationBilling]:
        pass

    @abstractmethod
    async def cas_update(
        self,
        organization_id: str,
        expected_sequence: int | None,
        row: OrganizationBilling,
    ) -> bool:
        """
        Replace the billing fields of ``organization_id`` with those of ``row``.

        Returns:
            True if written, False if ``last_sequence`` no longer matched

        Raises:
            LedgerConflict: If the write violates customer/subscription uniqueness
        """


_COLUMNS = """
    organization_id, external_customer_id, external_subscription_id,
    external_product_id, plan_name, status, updated_at, last_sequence
"""


def _to_billing(record: asyncpg.Record | None) -> Optional[OrganizationBilling]:
    if record is None:
        return None
    return OrganizationBilling(
        organization_id=record["organization_id"],
        external_customer_id=record["external_customer_id"],
        external_subscription_id=record["external_subscription_id"],
        external_product_id=record["external_product_id"],
        plan_name=record["plan_name"],
        status=BillingStatus(record["status"]),
        updated_at=record["updated_at"],
        last_sequence=record["last_sequence"],
    )


class PostgresLedgerStore(LedgerStore):
    """LedgerStore on the ``organization_billing`` table."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def _fetch_one(self, column: str, value: str) -> Optional[OrganizationBilling]:
        async with self._pool.acquire() as conn:
            record = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {Table.ORGANIZATION_BILLING} WHERE {column} = $1",
                value,
            )
        return _to_billing(record)

    async def create(self, organization_id: str) -> OrganizationBilling:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {Table.ORGANIZATION_BILLING} (organization_id)
                VALUES ($1)
                ON CONFLICT (organization_id) DO NOTHING
                """,
                organization_id,
            )
            record = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {Table.ORGANIZATION_BILLING} WHERE organization_id = $1",
                organization_id,
            )
        return _to_billing(record)

    async def get_by_org_id(self, organization_id: str) -> Optional[OrganizationBilling]:
        return await self._fetch_one("organization_id", organization_id)

    async def get_by_external_customer_id(self, customer_id: str) -> Optional[OrganizationBilling]:
        return await self._fetch_one("external_customer_id", customer_id)

    async def get_by_external_subscription_id(
        self, subscription_id: str
    ) -> Optional[OrganizationBilling]:
        return await self._fetch_one("external_subscription_id", subscription_id)

    async def cas_update(
        self,
        organization_id: str,
        expected_sequence: int | None,
        row: OrganizationBilling,
    ) -> bool:
        try:
            async with self._pool.acquire() as conn:
                result = await conn.execute(
                    f"""
                    UPDATE {Table.ORGANIZATION_BILLING} SET
                        external_customer_id = $3,
                        external_subscription_id = $4,
                        external_product_id = $5,
                        plan_name = $6,
                        status = $7,
                        last_sequence = $8,
                        updated_at = $9
                    WHERE organization_id = $1
                      AND last_sequence IS NOT DISTINCT FROM $2::BIGINT
                    """,
                    organization_id,
                    expected_sequence,
                    row.external_customer_id,
                    row.external_subscription_id,
                    row.external_product_id,
                    row.plan_name,
                    row.status.value,
                    row.last_sequence,
                    row.updated_at,
                )
        except asyncpg.UniqueViolationError as e:
            raise LedgerConflict(
                f"Organization {organization_id}: {e.constraint_name} already taken by another row"
            ) from e

        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return result.split()[-1] == "1"
