"""FastAPI application and routes."""
from .main import create_app
from .schemas import ErrorResponse, HealthCheckResponse, WebhookResponse

__all__ = [
    "create_app",
    "ErrorResponse",
    "HealthCheckResponse",
    "WebhookResponse",
]
