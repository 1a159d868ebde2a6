"""스크랩 스케줄러 내부 API 스키마."""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field


class TriggerRequest(BaseModel):
    """수동 트리거. subject 없으면 학기 전체."""

    term_code: str = Field(..., min_length=1, max_length=16)
    subject: str | None = Field(None, min_length=1, max_length=16)


class TriggerResponse(BaseModel):
    triggered: int
    target_keys: list[str]


class TermToggleRequest(BaseModel):
    scrape_enabled: bool


class TermResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    description: str | None = None
    tier: str
    scrape_enabled: bool
    start_date: date | None = None
    end_date: date | None = None
    last_scraped_at: datetime | None = None


class ScrapeJobResponse(BaseModel):
    """잡 1건. state는 derive_state 결과(pending | claimed | stale | completed | terminal_failed)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    target_key: str
    term_code: str | None = None
    subject: str | None = None
    entity_id: str | None = None
    state: str
    priority: int
    manual_override: bool
    triggered_at: datetime | None = None
    next_run_at: datetime
    locked_at: datetime | None = None
    locked_by: str | None = None
    retry_count: int
    max_retries: int
    permanent_failure: bool
    last_error: str | None = None
    last_success_at: datetime | None = None
    volatility: float
