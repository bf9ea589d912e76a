"""
Sentry Error Tracking
=====================

Centralized error tracking for failures the attribution core catches and
degrades around (cache outages, store timeouts, background task errors).

Related files:
- clickcredit/main.py: Initializes Sentry on app startup
- clickcredit/workers/arq_worker.py: Initializes Sentry on worker startup
- clickcredit/services/attribution/*.py: capture_exception on degraded paths

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


def init_sentry(dsn: Optional[str] = None, environment: Optional[str] = None) -> bool:
    """
    Initialize Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    dsn = dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = environment or os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR,
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        logger.debug("[SENTRY] Initialized for %s environment", environment)
        return True
    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Report an exception that was caught and handled.

    Example:
        try:
            await store.save_click(click)
        except Exception as e:
            capture_exception(e, extra={"operation": "save_click", "click_id": click.click_id})
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Report a notable non-exception event (e.g. a retrain that made weights worse)."""
    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
