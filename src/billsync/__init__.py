"""Subscription lifecycle synchronizer between Stripe and the local billing ledger."""

__version__ = "0.1.0"
