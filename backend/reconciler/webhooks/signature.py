"""Webhook signature verification over the raw request body.

Stripe signs `{timestamp}.{raw_body}` with HMAC-SHA256 and sends
`Stripe-Signature: t=<timestamp>,v1=<sig>[,v1=<sig>...]`. Verification is
delegated to the SDK, which compares in constant time and enforces the
timestamp tolerance. The body is never re-serialized before verification.
"""

from collections.abc import Sequence

import stripe
import structlog

from reconciler.core.exceptions import InvalidSignature

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def verify_signature(
    body: bytes,
    signature_header: str | None,
    secrets: Sequence[str],
    tolerance: int = 300,
) -> None:
    """Verify the signature header against any of the configured secrets.

    Several secrets are accepted so an endpoint keeps working while its
    signing secret is rolled.

    Raises:
        InvalidSignature: header missing, malformed, stale, or matching no secret
    """
    if not signature_header:
        raise InvalidSignature("Missing signature header")

    secrets = [s for s in secrets if s]
    if not secrets:
        raise InvalidSignature("No webhook secret configured")

    try:
        payload = body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidSignature("Body is not valid UTF-8") from e

    for secret in secrets:
        try:
            stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
            return
        except stripe.SignatureVerificationError:
            continue

    logger.warning("webhook_signature_rejected")
    raise InvalidSignature("Signature does not match payload")
