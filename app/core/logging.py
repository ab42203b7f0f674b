"""
Centralized logging configuration with Sentry integration.

Provides stdout logging setup, error tracking and scrubbing of
authentication secrets before anything leaves the process.
"""

import logging
import sys
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from app.core.config import settings

SENSITIVE_FIELDS = [
    'password', 'new_password', 'token', 'secret', 'authorization',
    'access_token', 'refresh_token', 'partial_token', 'code', 'otp',
    'two_factor_secret', 'backup_code', 'backup_codes',
]

SENSITIVE_HEADERS = ['Authorization', 'Cookie', 'X-API-Key', 'X-Auth-Token']


def init_sentry() -> bool:
    """
    Initialize Sentry for error tracking.

    Only initializes if SENTRY_DSN is configured.

    Returns:
        True if Sentry was initialized
    """
    if not settings.SENTRY_DSN:
        logging.info("SENTRY_DSN not configured. Sentry disabled.")
        return False

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.SENTRY_ENVIRONMENT or settings.MODE,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            integrations=[
                FastApiIntegration(),
                SqlalchemyIntegration(),
                RedisIntegration(),
            ],
            before_send=filter_sensitive_data,
            send_default_pii=False,
            attach_stacktrace=True,
            max_breadcrumbs=50,
        )
        logging.info(f"Sentry initialized successfully for environment: {settings.MODE}")
        return True
    except Exception as e:
        logging.error(f"Failed to initialize Sentry: {e}")
        return False


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any] = None) -> Optional[Dict[str, Any]]:
    """
    Filter sensitive data before sending to Sentry.

    Passwords, one-time codes, TOTP secrets, backup codes and every kind of
    token are replaced in request bodies and headers.

    Args:
        event: Sentry event dictionary
        hint: Sentry hint dictionary

    Returns:
        Modified event with sensitive data removed
    """
    request = event.get('request')
    if not isinstance(request, dict):
        return event

    data = request.get('data')
    if isinstance(data, dict):
        for field in SENSITIVE_FIELDS:
            if field in data:
                data[field] = '[FILTERED]'

    headers = request.get('headers')
    if isinstance(headers, dict):
        for header in SENSITIVE_HEADERS:
            if header in headers:
                headers[header] = '[FILTERED]'
            if header.lower() in headers:
                headers[header.lower()] = '[FILTERED]'

    return event


def capture_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None
) -> Optional[str]:
    """
    Capture an error and send to Sentry with context.

    Args:
        error: Exception to capture
        context: Additional context dict to attach
        tags: Tags to attach to the event

    Returns:
        Sentry event ID if sent, None otherwise
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if context:
                for key, value in context.items():
                    scope.set_context(key, value)
            if tags:
                for key, value in tags.items():
                    scope.set_tag(key, value)
            return sentry_sdk.capture_exception(error)
    except Exception as e:
        logging.error(f"Failed to capture error in Sentry: {e}")
        logging.error(f"Original error: {error}", exc_info=True)
        return None


def setup_logging():
    """
    Configure the root logger.

    A single stdout handler; every module logger (and CustomLogger) propagates here.
    """
    log_level = settings.LOG_LEVEL.upper()

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level))
    logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level))
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(console_handler)

    logging.info(f"Logging configured with level: {log_level}")
