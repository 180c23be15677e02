"""Stripe webhook signature verification."""

import json
import logging
import time

import stripe

from billsync.billing.errors import SignatureInvalid
from billsync.billing.events import VerifiedEvent, parse_event

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def _signed_timestamp(signature_header: str) -> int | None:
    for item in signature_header.split(","):
        key, _, value = item.partition("=")
        if key.strip() == "t":
            try:
                return int(value.strip())
            except ValueError:
                return None
    return None


def verify(
    raw_payload: bytes,
    signature_header: str,
    shared_secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> VerifiedEvent:
    """
    Verify a webhook delivery and return its typed event.

    The signature covers the exact transport bytes, so ``raw_payload`` must be
    the untouched request body. Deliveries signed more than ``tolerance``
    seconds in the past or in the future are rejected even when the signature
    matches.

    Args:
        raw_payload: Request body bytes as received
        signature_header: ``Stripe-Signature`` header value
        shared_secret: Endpoint signing secret (``whsec_...``)
        tolerance: Allowed clock skew in seconds

    Returns:
        The parsed event variant

    Raises:
        SignatureInvalid: If the payload is not authentic or outside tolerance
        MalformedEvent: If an authentic payload lacks required fields
        ValueError: If ``shared_secret`` is empty
    """
    if not shared_secret:
        raise ValueError("Webhook signing secret is not configured")

    try:
        payload = raw_payload.decode("utf-8")
    except UnicodeDecodeError:
        raise SignatureInvalid("Payload is not valid UTF-8") from None

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, shared_secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Rejected webhook, possible tampering or replay: {e}")
        raise SignatureInvalid(str(e)) from None

    # stripe only bounds the past; bound clock skew into the future as well
    timestamp = _signed_timestamp(signature_header)
    if timestamp is not None and timestamp > time.time() + tolerance:
        logger.warning(f"Rejected webhook signed {timestamp - int(time.time())}s in the future")
        raise SignatureInvalid("Timestamp outside the tolerance zone")

    try:
        data = json.loads(payload)
    except ValueError:
        raise SignatureInvalid("Payload is not valid JSON") from None
    if not isinstance(data, dict):
        raise SignatureInvalid("Payload is not a JSON object")

    return parse_event(data)
