"""프로세스 역할(api·pool·celery)별 로깅·Sentry 초기화. 각 진입점에서 한 번 호출."""

import logging
import sys

from app.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def setup_logging(level: str | None = None) -> None:
    """루트 로거 설정. 이미 핸들러가 있으면(uvicorn·celery가 설정한 경우) 레벨만 맞춤."""
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    # SQL 로그는 디버깅 시에만.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def init_sentry(role: str) -> bool:
    """SENTRY_DSN이 있으면 Sentry 초기화. role은 태그(api | pool | celery)로 구분."""
    if not settings.sentry_dsn:
        return False
    import sentry_sdk
    from sentry_sdk.integrations.logging import LoggingIntegration

    integrations: list = [LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)]
    if role == "api":
        from sentry_sdk.integrations.fastapi import FastApiIntegration

        integrations.append(FastApiIntegration())
    elif role == "celery":
        from sentry_sdk.integrations.celery import CeleryIntegration

        integrations.append(CeleryIntegration())

    sentry_sdk.init(
        dsn=settings.sentry_dsn.get_secret_value(),
        integrations=integrations,
        traces_sample_rate=0.1,
        environment=settings.environment,
    )
    sentry_sdk.set_tag("process_role", role)
    logging.getLogger(__name__).info("Sentry initialized for %s", role)
    return True
