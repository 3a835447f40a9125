"""
Stripe webhook signature verification.

Header format: t=<unix seconds>,v1=<hex hmac sha256>[,v1=...]
Signed string: "<t>.<raw payload>"

stripe.WebhookSignature checks the v1 candidates; the timestamp window is
checked here against the caller's clock so that both stale and future
timestamps are rejected.
"""
import logging
import time
from typing import Optional

import stripe

from utils.errors import invalid_signature

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def signed_timestamp(header: str) -> int:
    """Read the t= value of a header stripe has already accepted."""
    for piece in header.split(","):
        key, _, value = piece.partition("=")
        if key == "t":
            return int(value)
    raise invalid_signature("Invalid Stripe signature header")


def verify_stripe_signature(
    payload: str,
    header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> int:
    """
    Verify a webhook signature header against the raw payload.

    Args:
        payload: Raw request body, exactly as received
        header: Value of the Stripe-Signature header
        secret: Shared webhook signing secret
        tolerance: Maximum allowed distance in seconds between t and now
        now: Current unix time (defaults to time.time())

    Returns:
        The verified timestamp

    Raises:
        AppError(invalid_signature): missing/malformed header, stale or
        future timestamp, or no matching v1 signature
    """
    if not header:
        raise invalid_signature("Stripe signature header is required")

    try:
        # tolerance=None: the window is enforced below with our clock
        stripe.WebhookSignature.verify_header(payload, header, secret, tolerance=None)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        raise invalid_signature("Stripe signature verification failed")

    timestamp = signed_timestamp(header)
    current = int(time.time() if now is None else now)
    if abs(current - timestamp) > tolerance:
        raise invalid_signature("Stripe signature timestamp is outside tolerance")

    return timestamp
