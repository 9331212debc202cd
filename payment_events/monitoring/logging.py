"""
Structured logging configuration.

structlog renders each event as JSON and hands it to a python-json-logger
handler on stdout. Request ids arrive through contextvars. Customer
addresses are masked before they reach a log line.
"""
import logging
import sys
from typing import Any, Callable, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payment_events import __version__
from payment_events.config import Settings

# Event keys that may carry a raw customer address
EMAIL_FIELDS = ("email", "customer_email", "recipient", "to")


def mask_email(email: Optional[str]) -> str:
    """
    Mask an email address for logging.

    Keeps the first two characters of the local part and the domain:
    `jane.doe@example.com` -> `ja***@example.com`.

    Args:
        email: Address to mask

    Returns:
        str: Masked address, or "***" if the value is not an email
    """
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    return f"{local[:2]}***@{domain}"


def redact_emails(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask address-bearing fields that were logged unmasked."""
    for field in EMAIL_FIELDS:
        value = event_dict.get(field)
        if isinstance(value, str) and "***" not in value:
            event_dict[field] = mask_email(value)
    return event_dict


def make_app_context_processor(settings: Settings) -> Callable[..., dict[str, Any]]:
    """Stamp every event with the service name, environment and version."""
    context = {
        "service": settings.app_name,
        "environment": settings.app_env,
        "version": __version__,
    }

    def add_service_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service_context


def _processors(settings: Settings) -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        make_app_context_processor(settings),
        redact_emails,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]


def setup_logging(settings: Settings) -> None:
    """
    Route structlog and stdlib logging to a single JSON stream on stdout.

    Safe to call more than once; the root handlers are replaced each time.

    Args:
        settings: Application settings
    """
    structlog.configure(
        processors=_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    quiet = {
        "httpx": logging.WARNING,
        "stripe": logging.INFO,
        "sqlalchemy.engine": logging.INFO if settings.database_echo else logging.WARNING,
        "uvicorn.access": logging.WARNING,
    }
    for name, level in quiet.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, environment=settings.app_env
    )
