"""Stripe subscription lifecycle synchronization.

Checkout and portal sessions, webhook verification, and reconciliation of
Stripe subscription state into the organization billing ledger.
"""

from billsync.billing.reconciler import Reconciler
from billsync.billing.sessions import SessionInitiator, build_session_initiator
from billsync.billing.verifier import verify
from billsync.billing.webhooks import handle_webhook

__all__ = [
    "Reconciler",
    "SessionInitiator",
    "build_session_initiator",
    "handle_webhook",
    "verify",
]
