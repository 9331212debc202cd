"""
API routes for webhook ingestion and monitoring.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    HTTPException,
    Request,
    Response,
    status,
)
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_events.exceptions import (
    InvalidSignatureError,
    MalformedPayloadError,
    StoreUnavailableError,
)
from payment_events.monitoring.metrics import metrics
from payment_events.services import Services

from .schemas import ErrorResponse, HealthCheckResponse, WebhookResponse

logger = structlog.get_logger(__name__)

# Provider callbacks and operational endpoints
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_services(request: Request) -> Services:
    """Service graph attached to the application at creation."""
    return request.app.state.services


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify, deduplicate and process Stripe webhook events",
    responses={
        400: {"model": ErrorResponse, "description": "Bad signature or malformed payload"},
        500: {"model": ErrorResponse, "description": "Processing failed, provider should retry"},
        503: {"model": ErrorResponse, "description": "Store unavailable, provider should retry"},
    },
)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Duplicates and concurrent redeliveries are acknowledged with 200 so the
    provider stops retrying; only store outages and processing failures
    return 5xx. Notifications are sent after the response.
    """
    body = await request.body()

    try:
        event = services.pipeline.parse(body, stripe_signature)
    except InvalidSignatureError as e:
        metrics.record_webhook_rejection("invalid_signature")
        logger.warning("api_webhook_rejected", reason="invalid_signature", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    except MalformedPayloadError as e:
        metrics.record_webhook_rejection("malformed_payload")
        logger.warning("api_webhook_rejected", reason="malformed_payload", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    structlog.contextvars.bind_contextvars(event_id=event.event_id, event_type=event.event_type)
    logger.info("api_webhook_received")

    try:
        result = await services.pipeline.process(event)
    except StoreUnavailableError as e:
        logger.error("api_webhook_store_unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Store unavailable, retry later",
        )
    except Exception as e:
        logger.error("api_webhook_unexpected_error", error=str(e), error_type=type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )

    if result.notifications:
        background_tasks.add_task(services.dispatcher.dispatch_all, result.notifications)

    return {
        "received": True,
        "status": result.status,
        "event_id": result.event_id,
        "event_type": result.event_type,
    }


@monitoring_router.get("/health", response_model=HealthCheckResponse, summary="Dependency status")
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Full dependency report; answered with 200 even when unhealthy."""
    return await services.health.check_all()


@monitoring_router.get("/health/live", response_model=HealthCheckResponse, summary="Liveness")
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get("/health/ready", response_model=HealthCheckResponse, summary="Readiness")
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """503 while the database is unreachable."""
    report = await services.health.readiness()
    if report["status"] == "healthy":
        return report
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=report)


@monitoring_router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Prometheus text exposition of the default registry."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
