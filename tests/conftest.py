"""Pytest fixtures. 테스트 시 Postgres/Redis 없이 실행 가능하도록 환경 조정."""

import os

# CI에서 DATABASE_URL이 주입되면 그대로 사용. 로컬에서 비어 있으면 DB 없이 부팅 가능하도록 빈 문자열.
if not os.environ.get("DATABASE_URL"):
    os.environ["DATABASE_URL"] = ""
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SCRAPE_TRIGGER_SECRET", "test-trigger-secret")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import UTC, date, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.core.config import settings  # noqa: E402
from app.core.database_sync import override_sync_db_for_testing  # noqa: E402
from app.models import Base, ReviewProfile, ScrapeJob, Term  # noqa: E402
from app.models.scrape_job import KIND_SUBJECT, subject_target_key  # noqa: E402
from app.services.events import ScrapeEvent  # noqa: E402

# 고정 기준 시각. America/Chicago 13:00(CDT)이라 심야 배수 구간 밖.
NOW = datetime(2026, 10, 19, 18, 0, tzinfo=UTC)
TRIGGER_HEADERS = {"X-Scrape-Trigger-Secret": "test-trigger-secret"}


@pytest.fixture(autouse=True)
def _deterministic_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    """백오프 jitter 끔. 재시도 시각 검증을 결정적으로."""
    monkeypatch.setattr(settings, "backoff_jitter", False)


@pytest.fixture
def engine():
    """인메모리 SQLite. StaticPool로 모든 세션이 같은 연결을 공유(스레드 포함)."""
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    """get_sync_session()이 테스트 엔진을 쓰도록 교체."""
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    override_sync_db_for_testing(engine, factory)
    yield factory
    override_sync_db_for_testing(None, None)


@pytest.fixture
def file_engine(tmp_path):
    """
    파일 SQLite. 스레드마다 별도 연결로 실제 동시 claim 재현.
    SQLite엔 행 잠금이 없으므로 트랜잭션을 BEGIN IMMEDIATE로 직렬화하고, 승자는 조건부 UPDATE가 결정.
    """
    eng = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'jobs.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(eng, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(eng, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    """file_engine용 팩토리. get_sync_session()(워커 풀 기본 scope)도 이 엔진을 씀."""
    factory = sessionmaker(bind=file_engine, autocommit=False, autoflush=False, expire_on_commit=False)
    override_sync_db_for_testing(file_engine, factory)
    yield factory
    override_sync_db_for_testing(None, None)


@pytest.fixture
def session(session_factory) -> Session:
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def make_term(session):
    def _make(
        code: str = "202610",
        *,
        tier: str = "active",
        enabled: bool = True,
        end_date: date | None = None,
    ) -> Term:
        term = Term(code=code, description=f"Term {code}", tier=tier, scrape_enabled=enabled, end_date=end_date)
        session.add(term)
        session.commit()
        return term

    return _make


@pytest.fixture
def make_job(session):
    def _make(
        term_code: str | None = "202610",
        subject: str = "CS",
        *,
        priority: int = 1000,
        next_run_at: datetime | None = None,
        locked_at: datetime | None = None,
        locked_by: str | None = None,
        retry_count: int = 0,
        max_retries: int = 3,
        manual_override: bool = False,
        last_success_at: datetime | None = None,
    ) -> ScrapeJob:
        job = ScrapeJob(
            kind=KIND_SUBJECT,
            target_key=subject_target_key(term_code or "none", subject),
            term_code=term_code,
            subject=subject,
            priority=priority,
            next_run_at=next_run_at or NOW - timedelta(minutes=1),
            locked_at=locked_at,
            locked_by=locked_by,
            retry_count=retry_count,
            max_retries=max_retries,
            manual_override=manual_override,
            last_success_at=last_success_at,
        )
        session.add(job)
        session.commit()
        return job

    return _make


@pytest.fixture
def make_profile(session):
    def _make(external_id: str = "prof-1", review_count: int = 0) -> ReviewProfile:
        profile = ReviewProfile(external_id=external_id, display_name=external_id, review_count=review_count)
        session.add(profile)
        session.commit()
        return profile

    return _make


class CollectingEmitter:
    """발행된 이벤트를 메모리에 모음."""

    def __init__(self) -> None:
        self.events: list[ScrapeEvent] = []

    def emit(self, event: ScrapeEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [str(e.kind) for e in self.events]


@pytest.fixture
def emitter() -> CollectingEmitter:
    return CollectingEmitter()


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient. lifespan 없이 /health 등 테스트용."""
    from app.main import app

    return TestClient(app)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def trigger_headers() -> dict[str, str]:
    return dict(TRIGGER_HEADERS)
