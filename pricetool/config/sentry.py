"""Sentry error tracking configuration."""
import os
from typing import Any, Dict, Optional

import sentry_sdk
from pydantic import Field
from pydantic_settings import BaseSettings
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from pricetool.utils.logger import get_logger

logger = get_logger(__name__)


class SentrySettings(BaseSettings):
    """Sentry configuration settings."""

    dsn: Optional[str] = Field(None, alias="SENTRY_DSN")
    environment: str = Field("development", alias="SENTRY_ENVIRONMENT")
    release: Optional[str] = Field(None, alias="SENTRY_RELEASE")
    traces_sample_rate: float = Field(0.0, alias="SENTRY_TRACES_SAMPLE_RATE")
    enable_celery_integration: bool = Field(True, alias="SENTRY_ENABLE_CELERY_INTEGRATION")
    enable_sqlalchemy_integration: bool = Field(True, alias="SENTRY_ENABLE_SQLALCHEMY_INTEGRATION")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"
        populate_by_name = True


settings = SentrySettings()


def init_sentry() -> bool:
    """
    Initialize Sentry error tracking.

    Disabled when SENTRY_DSN is unset or when running under tests
    (TESTING=true).

    Returns:
        True if Sentry was initialized
    """
    if not settings.dsn:
        logger.info("Sentry DSN not configured, error tracking disabled")
        return False

    if os.getenv("TESTING") == "true":
        logger.info("Skipping Sentry initialization in test environment")
        return False

    integrations = [
        # Log records become breadcrumbs; errors are captured explicitly
        LoggingIntegration(level=None, event_level=None),
    ]
    if settings.enable_celery_integration:
        integrations.append(CeleryIntegration())
    if settings.enable_sqlalchemy_integration:
        integrations.append(SqlalchemyIntegration())

    sentry_sdk.init(
        dsn=settings.dsn,
        environment=settings.environment,
        release=settings.release,
        traces_sample_rate=settings.traces_sample_rate,
        send_default_pii=False,
        integrations=integrations,
    )
    logger.info("Sentry initialized", environment=settings.environment, release=settings.release)
    return True


def capture_exception(
    exception: BaseException,
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture an exception to Sentry with additional context.

    Returns:
        Event ID if Sentry is configured, None otherwise
    """
    with sentry_sdk.new_scope() as scope:
        for key, value in (context or {}).items():
            scope.set_context(key, value if isinstance(value, dict) else {"value": value})
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        return sentry_sdk.capture_exception(exception)


def add_breadcrumb(
    message: str,
    category: str = "ingestion",
    level: str = "info",
    data: Optional[Dict[str, Any]] = None,
) -> None:
    """Add a breadcrumb describing a load step."""
    sentry_sdk.add_breadcrumb(message=message, category=category, level=level, data=data or {})
