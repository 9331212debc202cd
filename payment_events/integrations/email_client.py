"""
Transactional email client backed by the Resend HTTP API.

Features:
- Bearer-token authenticated POST per message
- Shared httpx.AsyncClient (connection pooling)
- Every transport or API failure surfaces as NotificationError
"""
from typing import Optional, Protocol

import httpx
import structlog

from payment_events.exceptions import NotificationError
from payment_events.monitoring.logging import mask_email

logger = structlog.get_logger(__name__)


class EmailClient(Protocol):
    """Anything that can deliver one rendered email."""

    async def send(self, to: str, subject: str, html: str) -> str:
        ...


class ResendEmailClient:
    """Sends emails through https://api.resend.com/emails."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        http_client: httpx.AsyncClient,
        api_url: str = "https://api.resend.com/emails",
    ):
        """
        Initialize the client.

        Args:
            api_key: Resend API key
            from_address: Sender, e.g. "Payments <billing@example.com>"
            http_client: Shared async HTTP client (owned by the caller)
            api_url: Resend send endpoint
        """
        self._api_key = api_key
        self.from_address = from_address
        self.http_client = http_client
        self.api_url = api_url

    async def send(self, to: str, subject: str, html: str) -> str:
        """
        Send one email.

        Args:
            to: Recipient address
            subject: Subject line
            html: HTML body

        Returns:
            str: Provider message id (empty if the API returned none)

        Raises:
            NotificationError: On transport errors or non-2xx responses
        """
        try:
            response = await self.http_client.post(
                self.api_url,
                json={
                    "from": self.from_address,
                    "to": [to],
                    "subject": subject,
                    "html": html,
                },
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"Email transport error: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                "email_api_rejected",
                status_code=response.status_code,
                recipient=mask_email(to),
            )
            raise NotificationError(f"Email API returned {response.status_code}")

        message_id: Optional[str] = None
        try:
            message_id = response.json().get("id")
        except ValueError:
            pass
        return message_id or ""


def create_http_client(timeout_seconds: float) -> httpx.AsyncClient:
    """Build the shared HTTP client used for outbound notifications."""
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
