"""Monitoring and observability package."""
from .health import HealthCheck
from .logging import mask_email, setup_logging
from .metrics import metrics

__all__ = ["metrics", "mask_email", "setup_logging", "HealthCheck"]
