"""
Celery 워커 진입점 (스케줄러 tick·Lease Reaper·학기 동기화). broker=Redis.
celery -A app.worker worker -B
redis://·rediss://(TLS) 모두 지원. TLS 시 ssl_cert_reqs 적용.
"""

import ssl

from celery import Celery

from app.core.config import settings
from app.core.logging_config import init_sentry

# broker_url 없으면 기본값(로컬 개발 시 수동 설정 필요)
broker_url = settings.redis_url or "redis://localhost:6379/0"
result_backend = settings.redis_url or "redis://localhost:6379/0"

app = Celery(
    "app",
    broker=broker_url,
    backend=result_backend,
    include=["app.services.tasks"],
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    broker_connection_retry_on_startup=True,
    result_expires=3600,
    # 주기 태스크는 다음 주기에 다시 돌므로 밀린 실행은 버림.
    task_acks_late=False,
    worker_prefetch_multiplier=1,
)

# Reaper는 tick과 별도 주기. 어느 쪽이 밀려도 다른 쪽은 진행.
app.conf.beat_schedule = {
    "scheduler-tick": {
        "task": "app.services.tasks.scheduler_tick_task",
        "schedule": float(settings.scheduler_tick_seconds),
        "options": {"expires": float(settings.scheduler_tick_seconds)},
    },
    "lease-reaper": {
        "task": "app.services.tasks.reap_stale_leases_task",
        "schedule": float(settings.reaper_interval_seconds),
        "options": {"expires": float(settings.reaper_interval_seconds)},
    },
    "term-sync": {
        "task": "app.services.tasks.sync_terms_task",
        "schedule": float(settings.term_sync_interval_seconds),
    },
}

# rediss://(TLS)일 때 SSL 옵션 적용
if broker_url.startswith("rediss://"):
    app.conf.broker_use_ssl = {
        "ssl_cert_reqs": ssl.CERT_NONE,
    }
    app.conf.redis_backend_use_ssl = {
        "ssl_cert_reqs": ssl.CERT_NONE,
    }

# 태스크 등록 (app.services.tasks가 이 app에 바인딩되도록 로드)
from app.services import tasks  # noqa: F401, E402

init_sentry("celery")
