"""FastAPI 앱 진입점 (내부 운영 API). app.main:app"""

import asyncio
import logging
from contextlib import asynccontextmanager

from app.core.logging_config import init_sentry, setup_logging

# 환경 변수 로드 직후 Sentry 초기화. 임포트/라우터 등록 단계 예외도 수집.
setup_logging()
init_sentry("api")

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.exceptions import HTTPException  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from app.api import health, internal  # noqa: E402
from app.core.database import get_engine, init_db, verify_db_connection  # noqa: E402
from app.core.database_sync import DatastoreUnavailableError, PersistenceFailure, init_sync_db  # noqa: E402
from app.core.redis import create_async_health_client  # noqa: E402
from app.services.events import default_emitter  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """앱 수명 주기: DB(비동기 조회·동기 쓰기), 이벤트 발행기, Redis 헬스 클라이언트."""
    init_db()
    init_sync_db()
    await verify_db_connection()
    app.state.event_emitter = default_emitter()
    app.state.redis_health_client = create_async_health_client()
    yield
    if getattr(app.state, "redis_health_client", None) is not None:
        await app.state.redis_health_client.aclose()
    eng = get_engine()
    if eng is not None:
        await eng.dispose()


app = FastAPI(
    title="Catalog Scrape Scheduler",
    description="적응형 스크랩 스케줄러·작업 큐 내부 API",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(internal.router)


def _error(status_code: int, detail: object) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@app.exception_handler(DatastoreUnavailableError)
async def datastore_unavailable_handler(request: Request, exc: DatastoreUnavailableError) -> JSONResponse:
    """Job Store 연결 불가 → 503. 운영자는 재시도, 워커 상태와 무관."""
    logger.warning("Job store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return _error(503, "Job store temporarily unavailable")


@app.exception_handler(PersistenceFailure)
async def persistence_failure_handler(request: Request, exc: PersistenceFailure) -> JSONResponse:
    logger.error("Job store write failed on %s %s: %s", request.method, request.url.path, exc.__cause__ or exc)
    return _error(500, "Job store write failed")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """HTTPException은 status 그대로. 나머지는 500 + traceback 로그(Sentry 전송)."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc
    if isinstance(exc, HTTPException):
        return _error(exc.status_code, exc.detail)
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "Internal server error")
