# coding: utf-8
"""
Sentry configuration for error monitoring and tracking
"""
import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from loguru import logger

from config.config import SENTRY_DSN, ENVIRONMENT


def init_sentry() -> None:
    """
    Initialize Sentry SDK for error monitoring

    FastAPI/Starlette integrations are enabled automatically by the SDK.
    """
    if not SENTRY_DSN:
        logger.warning("SENTRY_DSN not configured - error monitoring disabled")
        return

    try:
        sentry_sdk.init(
            dsn=SENTRY_DSN,
            environment=ENVIRONMENT,
            integrations=[
                AsyncioIntegration(),
                SqlalchemyIntegration(),
            ],
            traces_sample_rate=0.1 if ENVIRONMENT == "production" else 1.0,
            sample_rate=1.0,
            attach_stacktrace=True,
            send_default_pii=False,
            max_breadcrumbs=50,
            before_send=before_send_hook,
        )

        logger.info(f"Sentry initialized successfully (Environment: {ENVIRONMENT})")

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


def before_send_hook(event, hint):
    """
    Filter events before sending to Sentry

    Node secrets travel in heartbeat bodies and payment signatures in
    callback params, so both are masked.
    """
    if 'exc_info' in hint:
        exc_type, exc_value, tb = hint['exc_info']

        if isinstance(exc_value, KeyboardInterrupt):
            return None

    request = event.get('request')
    if request:
        data = request.get('data')
        if isinstance(data, dict):
            for key in ('secret', 'sign'):
                if key in data:
                    data[key] = '[Filtered]'

        query = request.get('query_string')
        if isinstance(query, str) and 'sign=' in query:
            request['query_string'] = '[Filtered]'

    return event
