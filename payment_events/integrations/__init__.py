"""External integrations: Stripe signatures and the email channel."""
from .email_client import EmailClient, ResendEmailClient, create_http_client
from .signature import SignatureVerifier

__all__ = ["EmailClient", "ResendEmailClient", "SignatureVerifier", "create_http_client"]
