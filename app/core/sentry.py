"""Optional Sentry error reporting, enabled by SENTRY_DSN."""

import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

# Headers that carry provider or caller credentials
SCRUBBED_HEADERS = frozenset({"authorization", "x-api-key", "xi-api-key", "x-provider-api-key", "cookie"})


def scrub_credentials(event: dict, hint: dict | None = None) -> dict:
    """before_send hook: blank credential headers on the captured request."""
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in SCRUBBED_HEADERS:
                headers[name] = "[Filtered]"
    return event


def init_sentry() -> bool:
    """Initialize the SDK; returns False when no DSN is configured."""
    if not settings.sentry_dsn:
        logger.debug("SENTRY_DSN empty, error reporting disabled")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.httpx import HttpxIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        max_request_body_size="never",
        before_send=scrub_credentials,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            HttpxIntegration(),
        ],
    )
    logger.info("Sentry initialized (env=%s)", settings.app_env)
    return True
