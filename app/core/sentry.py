"""Sentry error tracking.

Only enabled when SENTRY_DSN is set. Gateway errors that describe the
caller's input or usage (validation, quota, content rejection) are expected
traffic and are dropped before sending; remote outages and bugs are kept.
"""

import logging

from app.core.config import settings
from app.gateway.errors import GatewayError

logger = logging.getLogger(__name__)


def drop_expected_errors(event: dict, hint: dict) -> dict | None:
    """``before_send`` hook: discard events for client-side gateway errors."""
    exc_info = hint.get("exc_info")
    if exc_info:
        exc = exc_info[1]
        if isinstance(exc, GatewayError) and exc.status_code < 500:
            return None
    return event


def init_sentry() -> bool:
    """Initialize Sentry if SENTRY_DSN is configured. Returns True when enabled."""
    if not settings.sentry_dsn:
        logger.debug("Sentry disabled: no DSN configured")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.httpx import HttpxIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        before_send=drop_expected_errors,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            HttpxIntegration(),
        ],
    )
    sentry_sdk.set_tag("vendor", "gemini")
    logger.info("Sentry initialized (env=%s)", settings.app_env)
    return True
