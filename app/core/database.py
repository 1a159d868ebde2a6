"""비동기 DB 연결 (내부 API 조회·헬스 체크 전용). SQLAlchemy 2.0 + asyncpg.

Job Store 쓰기(수동 트리거·토글·리셋)는 워커와 같은 동기 repository를 asyncio.to_thread로 호출한다.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings
from app.core.database_sync import DatastoreUnavailableError

logger = logging.getLogger(__name__)

# 조회 전용 API라 작은 풀로 충분. 워커 풀 연결 예산(worker_pool_size + 2)과 별개.
API_POOL_SIZE = 5
API_APPLICATION_NAME = "scrape-scheduler-api"


class _ReadDb:
    engine: AsyncEngine | None = None
    session_maker: async_sessionmaker[AsyncSession] | None = None


_read_db = _ReadDb()


def _async_database_url(url: str) -> str:
    """Postgres면 드라이버만 asyncpg로. sqlite 등은 그대로."""
    parsed = make_url(url.strip())
    if parsed.get_backend_name() != "postgresql":
        return str(parsed)
    return str(parsed.set(drivername="postgresql+asyncpg"))


def get_engine() -> AsyncEngine | None:
    return _read_db.engine


def get_async_session_maker() -> async_sessionmaker[AsyncSession] | None:
    return _read_db.session_maker


def init_db() -> None:
    """DATABASE_URL이 있으면 조회용 엔진·세션 팩토리 초기화. 없으면 조회 엔드포인트는 503."""
    if not settings.database_url:
        logger.warning("DATABASE_URL not set. Read endpoints disabled.")
        return

    url = _async_database_url(settings.database_url)
    engine_kwargs: dict = {"echo": False, "pool_pre_ping": True}
    if make_url(url).get_backend_name() == "postgresql":
        engine_kwargs.update(
            pool_size=API_POOL_SIZE,
            max_overflow=0,
            connect_args={"server_settings": {"application_name": API_APPLICATION_NAME}},
        )
    _read_db.engine = create_async_engine(url, **engine_kwargs)
    _read_db.session_maker = async_sessionmaker(
        _read_db.engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def ping_db() -> bool:
    """SELECT 1. 미초기화면 False, 연결 오류는 호출부로 전파."""
    maker = get_async_session_maker()
    if maker is None:
        return False
    async with maker() as session:
        await session.execute(text("SELECT 1"))
    return True


async def verify_db_connection() -> None:
    """
    부팅 시 Job Store 연결 검증. db_connect_retries만큼 재시도 후 실패하면 Sentry 보고 + 부팅 중단.
    DB 미설정이면 검증 생략.
    """
    if get_async_session_maker() is None:
        return

    last_exc: Exception | None = None
    retries = max(1, settings.db_connect_retries)
    interval = max(0.5, settings.db_connect_retry_interval_sec)

    for attempt in range(1, retries + 1):
        try:
            await ping_db()
            return
        except Exception as exc:
            last_exc = exc
            if attempt < retries:
                logger.warning(
                    "Job store connection attempt %d/%d failed: %s. Retrying in %.1fs...",
                    attempt,
                    retries,
                    exc,
                    interval,
                )
                await asyncio.sleep(interval)

    if settings.sentry_dsn:
        import sentry_sdk

        sentry_sdk.capture_exception(last_exc)

    logger.critical("Job store unreachable after %d attempts: %s. Aborting startup.", retries, last_exc)
    raise DatastoreUnavailableError(f"Job store unreachable after {retries} attempts: {last_exc}") from last_exc


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI Depends용 조회 세션. DB 미설정이면 DatastoreUnavailableError(→ 503)."""
    maker = get_async_session_maker()
    if maker is None:
        raise DatastoreUnavailableError("Read database not initialized. Set DATABASE_URL.")

    async with maker() as session:
        yield session
