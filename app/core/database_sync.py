"""
동기 DB 연결 (Worker Pool 스레드·Celery 태스크 전용). SQLAlchemy 2.0 + psycopg (sync).
FastAPI 웹은 asyncpg, 워커는 이 모듈만 사용. 풀 크기는 worker_pool_size에 맞춤.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings

logger = logging.getLogger(__name__)

sync_engine: Engine | None = None
sync_session_factory: sessionmaker[Session] | None = None


class DatastoreUnavailableError(Exception):
    """Job Store 연결 불가. 워커 루프는 진행 불가이므로 종료하고 supervisor 재시작에 맡김."""

    pass


class PersistenceFailure(Exception):
    """결과/해제 쓰기 실패. 잡은 claimed 상태로 남고 Lease Reaper가 회수."""

    pass


def is_connection_error(exc: BaseException) -> bool:
    """연결 계층 오류 여부. OperationalError/InterfaceError 또는 DBAPI connection_invalidated."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


def translate_db_error(exc: SQLAlchemyError) -> Exception:
    """SQLAlchemy 예외 → DatastoreUnavailableError 또는 PersistenceFailure. 원인은 __cause__로 보존."""
    if is_connection_error(exc):
        err: Exception = DatastoreUnavailableError(f"Job store unavailable: {exc}")
    else:
        err = PersistenceFailure(f"Job store write failed: {exc}")
    err.__cause__ = exc
    return err


def sync_database_url() -> str | None:
    """asyncpg URL을 동기 드라이버(psycopg3)용으로 변환. plain postgresql:// → +psycopg."""
    url = settings.database_url
    if not url:
        return None
    if "postgresql+asyncpg" in url:
        return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
    if url.startswith("postgresql://") and "postgresql+" not in url:
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def init_sync_db() -> None:
    """DATABASE_URL이 있으면 동기 엔진·세션 팩토리 초기화 (워커에서 호출)."""
    global sync_engine, sync_session_factory
    url = sync_database_url()
    if not url:
        logger.warning("DATABASE_URL not set. Sync DB features disabled.")
        return
    # 워커 스레드 수 + Reaper/스케줄러 여유분.
    sync_engine = create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=settings.worker_pool_size + 2,
        max_overflow=0,
    )
    sync_session_factory = sessionmaker(
        bind=sync_engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def override_sync_db_for_testing(
    engine: Engine | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> None:
    """테스트용. 엔진/세션 팩토리를 SQLite 등 테스트 엔진으로 교체."""
    global sync_engine, sync_session_factory
    sync_engine = engine
    sync_session_factory = session_factory


def get_session_factory() -> sessionmaker[Session]:
    """현재 세션 팩토리. 미초기화 시 init 후 반환. DATABASE_URL 없으면 RuntimeError."""
    if not sync_session_factory:
        init_sync_db()
    if not sync_session_factory:
        raise RuntimeError("Sync database not initialized. Set DATABASE_URL.")
    return sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """동기 세션 컨텍스트. with get_sync_session() as session: 형태로 사용. 성공 시 commit, 예외 시 rollback."""
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
