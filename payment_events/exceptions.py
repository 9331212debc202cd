"""
Exception taxonomy for webhook processing.

The HTTP boundary maps these to the provider-facing status codes:
signature and payload errors are 4xx (no retry), store outages are 5xx
(retry wanted), escalations are acknowledged.
"""
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class PaymentEventError(Exception):
    """Base exception for the payment event core."""

    pass


class InvalidSignatureError(PaymentEventError):
    """Raised when a webhook signature is missing, forged or stale."""

    pass


class MalformedPayloadError(PaymentEventError):
    """Raised when a payload lacks the fields its event type requires."""

    pass


class StoreUnavailableError(PaymentEventError):
    """Raised when the durable store cannot be reached."""

    pass


class NotificationError(PaymentEventError):
    """Raised by email clients when a message cannot be delivered."""

    pass


# Errors that mean "the database is not reachable right now"
TRANSIENT_STORE_ERRORS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    PoolTimeoutError,
    ConnectionError,
)
