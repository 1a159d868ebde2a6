"""환경 변수 기반 설정. pydantic-settings 사용."""

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """앱 설정. 환경변수에서 로드. 스케줄링 상수는 이름 붙은 설정값으로만 관리(코드 하드코딩 금지)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    sentry_dsn: SecretStr | None = None
    environment: str = "development"  # Sentry/로깅용. production, staging, development 등.
    log_level: str = "INFO"

    # DB (Job Store)
    database_url: str | None = None
    db_connect_retries: int = Field(5, ge=1, le=20)  # 연결 실패 시 재시도 횟수.
    db_connect_retry_interval_sec: float = Field(2.0, ge=0.5, le=60.0)  # 재시도 간격(초).

    # Redis: Celery broker + 이벤트 채널
    redis_url: str | None = None
    redis_socket_timeout: float = Field(5.0, ge=1.0, le=60.0)
    redis_socket_connect_timeout: float = Field(2.0, ge=0.5, le=30.0)
    scrape_events_channel: str = "catalog:scrape_events"

    # 내부 API(수동 트리거·토글) 보안 키. Header로만 받음.
    scrape_trigger_secret: SecretStr | None = None

    # Upstream 레코드 API
    upstream_base_url: str = "https://registration.example.edu/api"
    upstream_max_response_bytes: int = Field(5 * 1024 * 1024, ge=1024)
    fetch_timeout_seconds: float = Field(30.0, ge=1.0, le=600.0)
    # 호출 예산. burst=순간 최대, per_second=지속 예산. REDIS_URL이 있으면 모든 프로세스가 한 예산을 공유.
    rate_limit_burst: int = Field(5, ge=1, le=100)
    rate_limit_per_second: float = Field(2.0, gt=0.0, le=100.0)
    rate_limit_key_prefix: str = "catalog:ratelimit"

    # Worker Pool / Lease
    worker_pool_size: int = Field(4, ge=1, le=64)
    poll_interval_seconds: float = Field(5.0, ge=0.1, le=300.0)
    lease_timeout_seconds: int = Field(300, ge=10, le=86400)
    reaper_interval_seconds: int = Field(60, ge=5, le=3600)
    scheduler_tick_seconds: int = Field(60, ge=5, le=3600)
    term_sync_interval_seconds: int = Field(8 * 3600, ge=60)

    # 적응형 주기 (tier별 기본값)
    active_base_interval_seconds: int = Field(15 * 60, ge=1)
    min_interval_seconds: int = Field(2 * 60, ge=1)
    archived_base_interval_seconds: int = Field(48 * 3600, ge=1)
    archived_widening_days: int = Field(180, ge=1)  # 학기 종료 후 N일마다 archived 주기 +1배.
    archived_max_interval_seconds: int = Field(30 * 86400, ge=1)
    quiet_step: float = Field(0.25, ge=0.0, le=5.0)  # 연속 무변경 1회당 주기 배수 증가분.
    quiet_max_multiplier: float = Field(3.0, ge=1.0, le=20.0)
    volatility_interval_factor: float = Field(2.0, ge=0.0, le=20.0)
    offhours_multiplier: float = Field(2.0, ge=1.0, le=10.0)
    offhours_start_hour: int = Field(0, ge=0, le=23)
    offhours_end_hour: int = Field(6, ge=0, le=23)
    scrape_timezone: str = "America/Chicago"
    volatility_smoothing: float = Field(0.3, gt=0.0, le=1.0)  # EMA alpha.

    # Retry / Backoff
    backoff_base_seconds: float = Field(30.0, gt=0.0)
    backoff_max_seconds: float = Field(30 * 60.0, gt=0.0)
    backoff_jitter: bool = True
    max_retries_default: int = Field(3, ge=1, le=50)

    # 우선순위 가중치. 합계는 manual override 값(MAX_PRIORITY)보다 항상 작아야 함.
    priority_tier_weight_active: int = Field(1000, ge=0)
    priority_tier_weight_archived: int = Field(0, ge=0)
    priority_tier_weight_entity: int = Field(200, ge=0)
    priority_recency_per_hour: float = Field(10.0, ge=0.0)
    priority_recency_cap: int = Field(500, ge=0)
    priority_volatility_weight: int = Field(300, ge=0)

    # Secondary schedule (외부 프로필 리뷰)
    entity_review_interval_seconds: int = Field(14 * 86400, ge=60)

    @model_validator(mode="after")
    def validate_schedule_constants(self: "Settings") -> "Settings":
        """스케줄 상수 모순 시 부팅 거부(Fail-Fast). active 최대 주기가 archived 기본 주기보다 짧아야 함."""
        if self.min_interval_seconds > self.active_base_interval_seconds:
            raise ValueError("MIN_INTERVAL_SECONDS must not exceed ACTIVE_BASE_INTERVAL_SECONDS")
        if self.backoff_base_seconds > self.backoff_max_seconds:
            raise ValueError("BACKOFF_BASE_SECONDS must not exceed BACKOFF_MAX_SECONDS")
        if self.archived_base_interval_seconds > self.archived_max_interval_seconds:
            raise ValueError(
                "ARCHIVED_BASE_INTERVAL_SECONDS must not exceed ARCHIVED_MAX_INTERVAL_SECONDS"
            )
        active_ceiling = (
            self.active_base_interval_seconds * self.quiet_max_multiplier * self.offhours_multiplier
        )
        if active_ceiling >= self.archived_base_interval_seconds:
            raise ValueError(
                "Active tier interval ceiling (base * quiet_max * offhours) must stay below "
                "ARCHIVED_BASE_INTERVAL_SECONDS so active terms are always rescraped sooner."
            )
        weight_sum = (
            max(
                self.priority_tier_weight_active,
                self.priority_tier_weight_archived,
                self.priority_tier_weight_entity,
            )
            + self.priority_recency_cap
            + self.priority_volatility_weight
        )
        if weight_sum >= 1_000_000:
            raise ValueError("Priority weights must sum below the manual override priority (1000000)")
        if (self.environment or "").strip().lower() == "production":
            missing: list[str] = []
            if not (self.database_url or "").strip():
                missing.append("DATABASE_URL")
            if not (self.redis_url or "").strip():
                missing.append("REDIS_URL")
            if missing:
                raise ValueError(
                    f"Production environment requires these variables to be set: {', '.join(missing)}."
                )
        return self


settings = Settings()
