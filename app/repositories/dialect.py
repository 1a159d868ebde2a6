"""방언별 INSERT ... ON CONFLICT 생성. 운영은 PostgreSQL, 테스트는 SQLite."""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def insert_for(session: Session, model: Any) -> Any:
    """세션 바인드 방언에 맞는 insert(). 두 방언 모두 on_conflict_do_update/do_nothing 지원."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Unsupported dialect for upsert: {name}")
