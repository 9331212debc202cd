"""
Pydantic schemas for API responses.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the payment provider."""

    received: bool = Field(default=True, description="Delivery accepted")
    status: str = Field(
        ...,
        description="processed, ignored, duplicate, in_flight or escalated",
    )
    event_id: str = Field(..., description="Stripe event ID")
    event_type: str = Field(..., description="Stripe event type")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "received": True,
                    "status": "processed",
                    "event_id": "evt_1PZ2bC2eZvKYlo2C",
                    "event_type": "checkout.session.completed",
                }
            ]
        }
    }


class ErrorResponse(BaseModel):
    """Error body for rejected or failed deliveries."""

    detail: str = Field(..., description="Error description")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
