"""Stripe webhook handling and HTTP status mapping."""

import logging

from aiohttp import web

from billsync.billing.errors import (
    BillingError,
    LedgerConflict,
    MalformedEvent,
    OrphanedSession,
    SignatureInvalid,
    UnknownOrganization,
)
from billsync.billing.reconciler import Reconciler
from billsync.billing.verifier import verify

logger = logging.getLogger(__name__)


async def handle_webhook(
    payload: bytes,
    sig_header: str,
    reconciler: Reconciler,
    webhook_secret: str,
    tolerance: int,
) -> web.Response:
    """
    Verify a Stripe delivery and apply it.

    Stripe redelivers anything that is not a 2xx, so 200 is returned only
    when the event was applied or is a known no-op (duplicate, stale,
    unmodeled kind).

    Args:
        payload: Raw request body, untouched
        sig_header: Stripe-Signature header value
        reconciler: Reconciler to apply the event with
        webhook_secret: Endpoint signing secret
        tolerance: Signature timestamp tolerance in seconds

    Returns:
        aiohttp.web.Response: 200 handled, 400 rejected, 422 unlinked, 503 transient
    """
    if not webhook_secret:
        logger.error("stripe_webhook_secret not configured")
        return web.Response(status=500, text="Webhook secret not configured")

    try:
        event = verify(payload, sig_header, webhook_secret, tolerance)
    except SignatureInvalid:
        return web.Response(status=400, text="Invalid signature")
    except MalformedEvent as e:
        logger.error(f"Malformed webhook payload: {e}")
        return web.Response(status=400, text="Invalid payload")

    logger.info(f"Received webhook {event.event_id}: {event.kind}")

    try:
        outcome = await reconciler.apply_event(event)
    except (UnknownOrganization, OrphanedSession, LedgerConflict) as e:
        logger.error(f"Webhook {event.event_id} needs operator attention: {e}")
        return web.Response(status=422, text=type(e).__name__)
    except BillingError as e:
        if not e.retryable:
            logger.error(f"Webhook {event.event_id} failed: {e}")
            return web.Response(status=500, text=type(e).__name__)
        logger.warning(f"Webhook {event.event_id} failed transiently: {e}")
        return web.Response(status=503, text=type(e).__name__)
    except Exception as e:
        logger.exception(f"Error processing webhook {event.event_id}: {e}")
        return web.Response(status=500, text="Internal error")

    logger.info(f"Webhook {event.event_id} {outcome.value}")
    return web.Response(status=200, text=outcome.value)
