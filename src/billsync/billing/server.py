"""HTTP server for the Stripe webhook and the checkout return path."""

import asyncio
import logging
from typing import Optional

from aiohttp import web

from billsync.billing.catalog import PlanCatalog
from billsync.billing.errors import (
    CheckoutIncomplete,
    GatewayUnavailable,
    LedgerConflict,
    OrphanedSession,
    UnknownOrganization,
)
from billsync.billing.gateway import get_gateway
from billsync.billing.ledger import PostgresLedgerStore
from billsync.billing.reconciler import Reconciler
from billsync.billing.webhooks import handle_webhook
from billsync.config import get_config
from billsync.db.pool import close_pool, get_pool

logger = logging.getLogger(__name__)

RECONCILER_KEY = web.AppKey("reconciler", Reconciler)


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /webhooks/stripe."""
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header")
        return web.Response(status=400, text="Missing signature")

    # signature covers the exact bytes; never parse before verifying
    payload = await request.read()

    config = get_config()
    return await handle_webhook(
        payload,
        sig_header,
        request.app[RECONCILER_KEY],
        config.stripe_webhook_secret.get_secret_value(),
        config.webhook_tolerance_seconds,
    )


async def checkout_complete_endpoint(request: web.Request) -> web.Response:
    """Handle GET /billing/checkout/complete?session_id=...

    Stripe redirects the user here after payment. The subscription is
    recorded before the user is sent on to the app, so the billing page
    shows the new plan even if the webhook has not arrived yet.
    """
    session_id = request.query.get("session_id")
    if not session_id:
        return web.Response(status=400, text="Missing session_id")

    try:
        await request.app[RECONCILER_KEY].confirm_checkout(session_id)
    except (GatewayUnavailable, CheckoutIncomplete) as e:
        logger.warning(f"Checkout confirmation for {session_id} failed: {e}")
        return web.Response(status=503, text="Could not confirm checkout, please reload this page")
    except (OrphanedSession, UnknownOrganization, LedgerConflict) as e:
        logger.error(f"Checkout session {session_id} cannot be linked: {e}")
        return web.Response(status=422, text="Checkout could not be linked to an organization")

    raise web.HTTPFound(get_config().checkout_success_url)


def build_reconciler(pool) -> Reconciler:
    """Wire the reconciler from configuration and an open pool."""
    config = get_config()
    gateway = get_gateway()
    return Reconciler(
        store=PostgresLedgerStore(pool),
        gateway=gateway,
        catalog=PlanCatalog(gateway, ttl_seconds=config.catalog_ttl_seconds),
        max_attempts=config.cas_max_attempts,
    )


async def create_app(reconciler: Reconciler) -> web.Application:
    """Create the aiohttp application with the billing routes."""
    app = web.Application()
    app[RECONCILER_KEY] = reconciler
    app.router.add_post("/webhooks/stripe", webhook_endpoint)
    app.router.add_get("/billing/checkout/complete", checkout_complete_endpoint)
    return app


async def run_server(shutdown_event: Optional[asyncio.Event] = None) -> None:
    """
    Serve until ``shutdown_event`` is set (forever if not given).

    Opens the ledger pool on start and closes it on shutdown.
    """
    config = get_config()
    pool = await get_pool()
    app = await create_app(build_reconciler(pool))

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", config.webhook_server_port)
    await site.start()
    logger.info(f"Billing server listening on port {config.webhook_server_port}")

    try:
        await (shutdown_event or asyncio.Event()).wait()
    finally:
        logger.info("Shutting down billing server...")
        await runner.cleanup()
        await close_pool()

