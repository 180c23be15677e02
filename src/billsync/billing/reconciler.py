"""Reconciler: merges Stripe-reported subscription state into the ledger.

Both the checkout return path and the webhook path end in
``Reconciler.apply_snapshot``. Writes are idempotent and order-safe:

* a snapshot is applied only if its sequence is strictly greater than the
  row's ``last_sequence``, so redelivered or late events cannot roll the row
  back (in particular a late ``updated`` cannot revive a deleted
  subscription). A deletion also wins a tie on the same second;
* a newer snapshot identical to the stored state only advances
  ``last_sequence``, so ``updated_at`` only moves when something changed
  while older snapshots arriving later are still recognized as stale;
* the write is a compare-and-swap on ``last_sequence``; losing the race
  means re-reading the row and deciding again.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from billsync.billing.catalog import PlanCatalog
from billsync.billing.errors import (
    CheckoutIncomplete,
    ConcurrentUpdate,
    LedgerConflict,
    OrphanedSession,
    UnknownOrganization,
)
from billsync.billing.events import (
    CheckoutCompleted,
    SubscriptionDeleted,
    SubscriptionUpdated,
    VerifiedEvent,
)
from billsync.billing.gateway import CHECKOUT_EXPAND, ProcessorGateway
from billsync.billing.ledger import LedgerStore
from billsync.billing.types import (
    ORGANIZATION_METADATA_KEY,
    ApplyOutcome,
    OrganizationBilling,
    SubscriptionSnapshot,
)
from billsync.db.models import BillingStatus

logger = logging.getLogger(__name__)


class Reconciler:
    """Applies checkout confirmations and lifecycle events to the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        gateway: ProcessorGateway,
        catalog: PlanCatalog,
        max_attempts: int = 5,
    ):
        self._store = store
        self._gateway = gateway
        self._catalog = catalog
        self._max_attempts = max_attempts

    async def confirm_checkout(self, session_id: str) -> ApplyOutcome:
        """
        Record the result of a completed checkout session.

        Safe to call repeatedly for the same session (e.g. the user reloads
        the success page): later calls find the stored state identical.

        Raises:
            GatewayUnavailable: If the session cannot be retrieved
            OrphanedSession: If the session has no organization metadata
            CheckoutIncomplete: If the session has no subscription yet
            UnknownOrganization: If the organization has no ledger row
        """
        detail = await self._gateway.retrieve_session(session_id, expand=CHECKOUT_EXPAND)

        organization_id = detail.metadata.get(ORGANIZATION_METADATA_KEY)
        if not organization_id:
            logger.error(f"Checkout session {session_id} has no {ORGANIZATION_METADATA_KEY} metadata")
            raise OrphanedSession(session_id)

        if detail.customer_id is None or detail.subscription_id is None:
            logger.warning(f"Checkout session {session_id} not complete (status={detail.status})")
            raise CheckoutIncomplete(session_id, detail.status)

        snapshot = SubscriptionSnapshot(
            customer_id=detail.customer_id,
            subscription_id=detail.subscription_id,
            product_id=detail.product_id,
            status=BillingStatus.from_stripe(detail.subscription_status),
            sequence=detail.retrieved_at,
            organization_id=organization_id,
            current_period_end=detail.current_period_end,
        )
        return await self.apply_snapshot(organization_id, snapshot)

    async def apply_event(self, event: VerifiedEvent) -> ApplyOutcome:
        """Apply a verified webhook event; unmodeled kinds are ignored."""
        if isinstance(event, SubscriptionUpdated):
            return await self.apply_snapshot(event.snapshot.organization_id, event.snapshot)

        if isinstance(event, SubscriptionDeleted):
            # deletion is final whatever status the payload reports
            snapshot = replace(event.snapshot, status=BillingStatus.CANCELED)
            return await self.apply_snapshot(snapshot.organization_id, snapshot, deleted=True)

        if isinstance(event, CheckoutCompleted):
            return await self.confirm_checkout(event.session_id)

        logger.info(f"Ignoring event {event.event_id} of kind {event.kind}")
        return ApplyOutcome.IGNORED

    async def apply_snapshot(
        self,
        organization_id: Optional[str],
        snapshot: SubscriptionSnapshot,
        deleted: bool = False,
    ) -> ApplyOutcome:
        """
        Apply ``snapshot`` to the organization's ledger row.

        The row is found by subscription id, then customer id, then
        ``organization_id``.

        Args:
            organization_id: Organization from session/subscription metadata, if known
            snapshot: State to apply
            deleted: The subscription was deleted; clear it and mark canceled

        Raises:
            UnknownOrganization: If no row matches
            LedgerConflict: If the row is linked to a different customer
            ConcurrentUpdate: If every compare-and-swap attempt lost
        """
        plan_name = await self._catalog.plan_name(snapshot.product_id)

        for attempt in range(1, self._max_attempts + 1):
            row = await self._resolve(organization_id, snapshot)
            outcome, target = self._decide(row, snapshot, plan_name, deleted)
            if target is None:
                return outcome

            if await self._store.cas_update(row.organization_id, row.last_sequence, target):
                if outcome == ApplyOutcome.APPLIED:
                    logger.info(
                        f"Organization {row.organization_id}: {row.status.value} -> {target.status.value} "
                        f"(subscription={target.external_subscription_id}, sequence={snapshot.sequence})"
                    )
                return outcome

            logger.info(
                f"Organization {row.organization_id} changed concurrently, "
                f"retrying (attempt {attempt}/{self._max_attempts})"
            )

        raise ConcurrentUpdate(
            f"Gave up applying sequence {snapshot.sequence} after {self._max_attempts} attempts"
        )

    async def _resolve(
        self, organization_id: Optional[str], snapshot: SubscriptionSnapshot
    ) -> OrganizationBilling:
        row = None
        if snapshot.subscription_id:
            row = await self._store.get_by_external_subscription_id(snapshot.subscription_id)
        if row is None:
            row = await self._store.get_by_external_customer_id(snapshot.customer_id)
        if row is None and organization_id:
            row = await self._store.get_by_org_id(organization_id)

        if row is None:
            logger.error(
                f"No organization for customer {snapshot.customer_id} "
                f"subscription {snapshot.subscription_id}"
            )
            raise UnknownOrganization(snapshot.customer_id, snapshot.subscription_id)

        if row.external_customer_id and row.external_customer_id != snapshot.customer_id:
            logger.error(
                f"Organization {row.organization_id} is linked to customer "
                f"{row.external_customer_id}, refusing {snapshot.customer_id}"
            )
            raise LedgerConflict(
                f"Organization {row.organization_id} already linked to another customer"
            )
        return row

    @staticmethod
    def _is_newer(row: OrganizationBilling, snapshot: SubscriptionSnapshot, deleted: bool) -> bool:
        """Whether ``snapshot`` supersedes the state last written to ``row``.

        Event timestamps have one-second resolution. On a tie a deletion of
        the row's current subscription wins over whatever was written in the
        same second, so deletion stays final regardless of delivery order.
        """
        if row.last_sequence is None or snapshot.sequence > row.last_sequence:
            return True
        return (
            snapshot.sequence == row.last_sequence
            and deleted
            and snapshot.subscription_id is not None
            and row.external_subscription_id == snapshot.subscription_id
        )

    def _decide(
        self,
        row: OrganizationBilling,
        snapshot: SubscriptionSnapshot,
        plan_name: str | None,
        deleted: bool,
    ) -> tuple[ApplyOutcome, Optional[OrganizationBilling]]:
        """Return the outcome and, when a write is needed, the new row."""
        if not self._is_newer(row, snapshot, deleted):
            logger.info(
                f"Dropping stale snapshot for {row.organization_id}: "
                f"sequence {snapshot.sequence} <= {row.last_sequence}"
            )
            return ApplyOutcome.STALE, None

        if deleted:
            if row.external_subscription_id not in (None, snapshot.subscription_id):
                # an older subscription of this customer; the current one stands
                logger.info(
                    f"Dropping deletion of superseded subscription {snapshot.subscription_id} "
                    f"for {row.organization_id}"
                )
                return ApplyOutcome.STALE, None
            subscription_id = None
        else:
            subscription_id = snapshot.subscription_id

        product_id = snapshot.product_id or row.external_product_id
        if plan_name is None or product_id != snapshot.product_id:
            plan_name = row.plan_name

        target = replace(
            row,
            external_customer_id=row.external_customer_id or snapshot.customer_id,
            external_subscription_id=subscription_id,
            external_product_id=product_id,
            status=snapshot.status,
        )
        if target.billing_key() == row.billing_key():
            # billing fields and updated_at stay put; last_sequence still records the newest snapshot
            logger.debug(f"Snapshot {snapshot.sequence} matches stored state for {row.organization_id}")
            return ApplyOutcome.UNCHANGED, replace(row, last_sequence=snapshot.sequence)

        now = datetime.now(timezone.utc)
        if row.updated_at is not None and row.updated_at > now:
            now = row.updated_at
        return ApplyOutcome.APPLIED, replace(
            target,
            plan_name=plan_name,
            last_sequence=snapshot.sequence,
            updated_at=now,
        )
