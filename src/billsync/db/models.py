"""Table-name constants and column enums for the billing ledger."""

from enum import Enum


class Table:
    """Database table names."""

    ORGANIZATION_BILLING = "organization_billing"
    SCHEMA_MIGRATIONS = "schema_migrations"


class BillingStatus(str, Enum):
    """Subscription lifecycle status stored on ``organization_billing.status``.

    Mirrors Stripe's subscription statuses plus ``none`` for organizations
    that never subscribed.
    """

    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"

    @classmethod
    def from_stripe(cls, raw: str | None) -> "BillingStatus":
        """Map a Stripe status string; unknown values become ``incomplete``."""
        if raw is None:
            return cls.NONE
        try:
            return cls(raw)
        except ValueError:
            # e.g. "paused": not billable, not canceled
            return cls.INCOMPLETE
