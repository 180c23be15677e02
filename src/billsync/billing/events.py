"""Typed Stripe lifecycle events.

Every verified payload becomes exactly one of the event classes below,
selected by its ``type``. Kinds we do not model become ``UnrecognizedEvent``
and carry nothing but their id and kind.
"""

from dataclasses import dataclass, field
from typing import Any, Literal, Union

from billsync.billing.errors import MalformedEvent
from billsync.billing.types import ORGANIZATION_METADATA_KEY, SubscriptionSnapshot
from billsync.db.models import BillingStatus

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    snapshot: SubscriptionSnapshot
    kind: Literal["customer.subscription.updated"] = field(default=SUBSCRIPTION_UPDATED, init=False)


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    snapshot: SubscriptionSnapshot
    kind: Literal["customer.subscription.deleted"] = field(default=SUBSCRIPTION_DELETED, init=False)


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    session_id: str
    kind: Literal["checkout.session.completed"] = field(default=CHECKOUT_SESSION_COMPLETED, init=False)


@dataclass(frozen=True)
class UnrecognizedEvent:
    event_id: str
    kind: str


VerifiedEvent = Union[SubscriptionUpdated, SubscriptionDeleted, CheckoutCompleted, UnrecognizedEvent]


def object_id(value: Any) -> str | None:
    """Id of a Stripe reference that may be a bare id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _first_item(subscription: dict) -> dict | None:
    items = subscription.get("items") or {}
    data = items.get("data") or []
    return data[0] if data else None


def subscription_product_id(subscription: dict) -> str | None:
    """Product of the subscription's first line item."""
    item = _first_item(subscription)
    if item is not None:
        price = item.get("price") or item.get("plan") or {}
        product = object_id(price.get("product"))
        if product:
            return product
    # legacy single-plan subscriptions
    plan = subscription.get("plan") or {}
    return object_id(plan.get("product"))


def subscription_period_end(subscription: dict) -> int | None:
    """End of the current period; newer API versions keep it on the item."""
    if subscription.get("current_period_end") is not None:
        return subscription["current_period_end"]
    item = _first_item(subscription)
    if item is not None:
        return item.get("current_period_end")
    return None


def snapshot_from_subscription(subscription: dict, sequence: int) -> SubscriptionSnapshot:
    """Build a snapshot from a Stripe subscription object."""
    customer_id = object_id(subscription.get("customer"))
    subscription_id = subscription.get("id")
    if not customer_id or not subscription_id:
        raise MalformedEvent("Subscription object without customer or id")

    metadata = subscription.get("metadata") or {}
    return SubscriptionSnapshot(
        customer_id=customer_id,
        subscription_id=subscription_id,
        product_id=subscription_product_id(subscription),
        status=BillingStatus.from_stripe(subscription.get("status")),
        sequence=sequence,
        organization_id=metadata.get(ORGANIZATION_METADATA_KEY),
        current_period_end=subscription_period_end(subscription),
    )


def parse_event(payload: dict) -> VerifiedEvent:
    """
    Convert a verified event payload into its typed variant.

    Raises:
        MalformedEvent: If the envelope or a modeled kind's object is incomplete
    """
    event_id = payload.get("id")
    kind = payload.get("type")
    created = payload.get("created")
    if not event_id or not kind or not isinstance(created, int):
        raise MalformedEvent("Event envelope missing id, type or created")

    obj = (payload.get("data") or {}).get("object")

    if kind in (SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
        if not isinstance(obj, dict):
            raise MalformedEvent(f"{kind} {event_id} has no subscription object")
        snapshot = snapshot_from_subscription(obj, sequence=created)
        if kind == SUBSCRIPTION_UPDATED:
            return SubscriptionUpdated(event_id=event_id, snapshot=snapshot)
        return SubscriptionDeleted(event_id=event_id, snapshot=snapshot)

    if kind == CHECKOUT_SESSION_COMPLETED:
        session_id = obj.get("id") if isinstance(obj, dict) else None
        if not session_id:
            raise MalformedEvent(f"{kind} {event_id} has no session id")
        return CheckoutCompleted(event_id=event_id, session_id=session_id)

    return UnrecognizedEvent(event_id=event_id, kind=kind)
