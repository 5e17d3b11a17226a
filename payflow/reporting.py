import sentry_sdk
import structlog

from payflow.config import Settings

logger = structlog.get_logger(__name__)


def init_error_reporting(settings: Settings) -> bool:
    dsn = settings.get("SENTRY_DSN")
    if not dsn:
        return False

    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=dsn,
        environment=settings.app_env,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # Don't send PII to Sentry
    )
    logger.info("error_reporting.enabled", environment=settings.app_env)
    return True


def capture_exception(error: BaseException, **context) -> None:
    """Report ``error`` with correlation context. No-op until Sentry is initialised."""
    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            if value is not None:
                scope.set_tag(key, str(value))
        sentry_sdk.capture_exception(error)
