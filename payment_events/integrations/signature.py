"""
Stripe webhook signature verification.

The Stripe-Signature header carries `t=<timestamp>,v1=<hmac>`; the HMAC
is SHA-256 over `"<timestamp>.<raw body>"` keyed with the endpoint secret.
"""
from typing import Optional

import stripe
import structlog

from payment_events.exceptions import InvalidSignatureError

logger = structlog.get_logger(__name__)


class SignatureVerifier:
    """Hard authorization gate in front of every webhook."""

    def __init__(self, secret: str, tolerance_seconds: int = 300):
        """
        Initialize the verifier.

        Args:
            secret: Endpoint signing secret (whsec_...)
            tolerance_seconds: Maximum accepted age of the signed timestamp
        """
        if not secret:
            raise ValueError("Webhook signing secret is required")
        self._secret = secret
        self.tolerance_seconds = tolerance_seconds

    def verify(self, payload: bytes, signature_header: Optional[str]) -> None:
        """
        Verify a webhook signature.

        Args:
            payload: Raw request body as bytes
            signature_header: Stripe-Signature header value

        Raises:
            InvalidSignatureError: If the signature is missing or does not match
        """
        if not signature_header:
            logger.warning("webhook_signature_missing")
            raise InvalidSignatureError("Missing Stripe-Signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature_header,
                self._secret,
                self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_verification_failed", error=str(e))
            raise InvalidSignatureError(f"Invalid webhook signature: {e}") from e
        except UnicodeDecodeError as e:
            logger.warning("webhook_body_not_utf8")
            raise InvalidSignatureError("Webhook body is not valid UTF-8") from e

        logger.debug("webhook_signature_verified")
