"""Ledger rows, subscription snapshots and processor catalog records."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from billsync.db.models import BillingStatus

# Metadata key written on checkout sessions and subscriptions
ORGANIZATION_METADATA_KEY = "organization_id"


@dataclass(frozen=True)
class OrganizationBilling:
    """Billing state of one organization, as stored in the ledger."""

    organization_id: str
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    external_product_id: str | None = None
    plan_name: str | None = None
    status: BillingStatus = BillingStatus.NONE
    updated_at: datetime | None = None
    last_sequence: int | None = None  # sequence of the last applied snapshot

    def billing_key(self) -> tuple:
        """Fields whose equality makes a write a no-op."""
        return (
            self.external_customer_id,
            self.external_subscription_id,
            self.external_product_id,
            self.status,
        )


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Normalized subscription state from a retrieved session or a webhook event.

    ``sequence`` orders snapshots for the same organization: a snapshot is
    only applied when its sequence is strictly greater than the one last
    applied. Webhook snapshots use the event's ``created`` timestamp;
    checkout snapshots use the time the session was retrieved.
    """

    customer_id: str
    subscription_id: str | None
    product_id: str | None
    status: BillingStatus
    sequence: int
    organization_id: str | None = None  # from subscription/session metadata
    current_period_end: int | None = None  # unix seconds


class ApplyOutcome(str, Enum):
    """Result of reconciling one snapshot against the ledger."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"  # newer, but identical to the stored state
    STALE = "stale"  # not newer than the last applied snapshot
    IGNORED = "ignored"  # event kind not modeled


@dataclass(frozen=True)
class SessionDetail:
    """Checkout session retrieved with its subscription expanded."""

    id: str
    status: str | None  # 'open' | 'complete' | 'expired'
    customer_id: str | None
    subscription_id: str | None
    subscription_status: str | None
    product_id: str | None
    current_period_end: int | None
    retrieved_at: int  # unix seconds
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceInfo:
    """Active recurring price from the processor catalog."""

    id: str
    product_id: str
    unit_amount: int | None
    currency: str
    interval: str | None


@dataclass(frozen=True)
class ProductInfo:
    """Active product from the processor catalog."""

    id: str
    name: str


@dataclass(frozen=True)
class PortalConfigurationInfo:
    """Customer portal configuration as listed by the processor."""

    id: str
    active: bool
    metadata: dict[str, str] = field(default_factory=dict)
