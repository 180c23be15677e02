"""TTL-cached product catalog for plan labels."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from billsync.billing.errors import GatewayUnavailable
from billsync.billing.gateway import ProcessorGateway

logger = logging.getLogger(__name__)


@dataclass
class CatalogEntry:
    """Product names as of ``fetched_at``."""

    names: dict[str, str] = field(default_factory=dict)
    fetched_at: Optional[datetime] = None  # UTC

    def is_expired(self, ttl_seconds: int) -> bool:
        if self.fetched_at is None:
            return True
        age_seconds = (datetime.now(timezone.utc) - self.fetched_at).total_seconds()
        return age_seconds >= ttl_seconds


class PlanCatalog:
    """Maps Stripe product ids to display names.

    The mapping is loaded from the gateway on first use and reloaded once it
    is older than ``ttl_seconds``. If a reload fails the previous mapping
    stays in use.
    """

    def __init__(self, gateway: ProcessorGateway, ttl_seconds: int = 300):
        self._gateway = gateway
        self._ttl_seconds = ttl_seconds
        self._entry = CatalogEntry()

    async def refresh(self) -> None:
        """Reload product names now."""
        try:
            products = await self._gateway.list_active_products()
        except GatewayUnavailable as e:
            logger.warning(f"Catalog refresh failed, keeping {len(self._entry.names)} cached names: {e}")
            return

        self._entry = CatalogEntry(
            names={product.id: product.name for product in products},
            fetched_at=datetime.now(timezone.utc),
        )
        logger.debug(f"Catalog refreshed with {len(products)} products")

    async def plan_name(self, product_id: str | None) -> str | None:
        """Display name for ``product_id``, or None when unknown."""
        if product_id is None:
            return None
        if self._entry.is_expired(self._ttl_seconds):
            await self.refresh()
        return self._entry.names.get(product_id)
