"""Failure taxonomy for billing synchronization.

Messages never include the webhook secret or Stripe credentials; callers
may show them to users or return them to Stripe.
"""


class BillingError(Exception):
    """Base class for billing synchronization failures."""

    #: Whether repeating the same call later can succeed.
    retryable = False


class SignatureInvalid(BillingError):
    """Webhook payload did not verify against the signing secret."""


class MalformedEvent(BillingError):
    """Verified webhook payload lacks fields its event kind guarantees."""


class OrphanedSession(BillingError):
    """Checkout session carries no organization id in its metadata."""

    def __init__(self, session_id: str):
        super().__init__(f"Checkout session {session_id} has no organization metadata")
        self.session_id = session_id


class CheckoutIncomplete(BillingError):
    """Checkout session has not produced a subscription yet."""

    retryable = True

    def __init__(self, session_id: str, status: str | None):
        super().__init__(f"Checkout session {session_id} is not complete (status={status})")
        self.session_id = session_id
        self.status = status


class UnknownOrganization(BillingError):
    """No ledger row matches the subscription, customer or organization id."""

    def __init__(self, customer_id: str | None, subscription_id: str | None):
        super().__init__(
            f"No organization linked to customer={customer_id} subscription={subscription_id}"
        )
        self.customer_id = customer_id
        self.subscription_id = subscription_id


class LedgerConflict(BillingError):
    """Applying the snapshot would break a ledger uniqueness rule."""


class ConcurrentUpdate(BillingError):
    """Compare-and-swap kept losing to concurrent writers."""

    retryable = True


class GatewayUnavailable(BillingError):
    """Stripe call failed or timed out."""

    retryable = True


class NoActiveSubscription(BillingError):
    """Portal requested for an organization without a live subscription."""
