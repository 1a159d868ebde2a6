"""Term / TermSubject / ReviewProfile Repository (동기). 스케줄러 tick·학기 동기화·내부 API용."""

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from app.models.review_profile import ReviewProfile
from app.models.term import Term, TermSubject
from app.repositories.dialect import insert_for
from app.services.scheduling import classify_tier

logger = logging.getLogger(__name__)


def get_term(session: Session, code: str) -> Term | None:
    return session.get(Term, code)


def get_enabled_terms(session: Session) -> list[Term]:
    """scrape_enabled 학기. active 먼저."""
    stmt = select(Term).where(Term.scrape_enabled.is_(True)).order_by(Term.tier.asc(), Term.code.desc())
    return list(session.execute(stmt).scalars().all())


def list_terms(session: Session) -> list[Term]:
    return list(session.execute(select(Term).order_by(Term.code.desc())).scalars().all())


def set_scrape_enabled(session: Session, code: str, enabled: bool, *, now: datetime) -> Term | None:
    """학기 수집 on/off. 비활성 학기의 잡은 다음 claim부터 제외됨(진행 중 lease는 그대로)."""
    result = session.execute(
        update(Term).where(Term.code == code).values(scrape_enabled=enabled, updated_at=now)
    )
    if result.rowcount != 1:
        return None
    return session.get(Term, code, populate_existing=True)


def _parse_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def sync_terms(session: Session, rows: list[dict[str, Any]], *, now: datetime) -> int:
    """
    upstream 학기 목록 반영. tier는 end_date로 재분류, scrape_enabled는 기존 값 유지(운영자 설정).
    신규 학기는 active면 활성, archived면 비활성으로 생성.
    """
    if not rows:
        return 0
    today = now.date()
    values = []
    for row in rows:
        end_date = _parse_date(row.get("end_date"))
        tier = classify_tier(end_date, today)
        values.append(
            {
                "code": str(row["code"]),
                "description": row.get("description"),
                "tier": tier,
                "scrape_enabled": tier == "active",
                "start_date": _parse_date(row.get("start_date")),
                "end_date": end_date,
                "created_at": now,
                "updated_at": now,
            }
        )
    base = insert_for(session, Term).values(values)
    stmt = base.on_conflict_do_update(
        index_elements=["code"],
        set_={
            "description": base.excluded.description,
            "tier": base.excluded.tier,
            "start_date": base.excluded.start_date,
            "end_date": base.excluded.end_date,
            "updated_at": now,
        },
    )
    session.execute(stmt)
    session.flush()
    logger.info("Synced %d terms", len(values))
    return len(values)


def get_cached_subjects(session: Session, term_code: str) -> list[TermSubject]:
    stmt = select(TermSubject).where(TermSubject.term_code == term_code).order_by(TermSubject.code)
    return list(session.execute(stmt).scalars().all())


def cache_subjects(
    session: Session,
    term_code: str,
    subjects: list[dict[str, Any]],
    *,
    now: datetime,
) -> int:
    """학기 과목 캐시 교체. upstream 목록에서 사라진 과목은 캐시에서도 제거(잡은 남겨 이력 보존)."""
    codes = [s["code"] for s in subjects]
    session.execute(
        delete(TermSubject).where(
            TermSubject.term_code == term_code,
            TermSubject.code.not_in(codes) if codes else TermSubject.term_code == term_code,
        )
    )
    if subjects:
        base = insert_for(session, TermSubject).values(
            [
                {
                    "term_code": term_code,
                    "code": s["code"],
                    "description": s.get("description"),
                    "cached_at": now,
                }
                for s in subjects
            ]
        )
        stmt = base.on_conflict_do_update(
            index_elements=["term_code", "code"],
            set_={"description": base.excluded.description, "cached_at": now},
        )
        session.execute(stmt)
    session.flush()
    return len(subjects)


def update_last_scraped_at(session: Session, term_code: str, when: datetime) -> None:
    session.execute(update(Term).where(Term.code == term_code).values(last_scraped_at=when))


def list_review_profiles(session: Session) -> list[ReviewProfile]:
    return list(session.execute(select(ReviewProfile).order_by(ReviewProfile.id)).scalars().all())


def get_review_profile(session: Session, external_id: str) -> ReviewProfile | None:
    stmt = select(ReviewProfile).where(ReviewProfile.external_id == external_id).limit(1)
    return session.execute(stmt).scalars().one_or_none()


def record_profile_scrape(session: Session, external_id: str, *, review_count: int, when: datetime) -> None:
    """리뷰 수집 완료 반영. review_count는 다음 주기 산정 입력."""
    session.execute(
        update(ReviewProfile)
        .where(ReviewProfile.external_id == external_id)
        .values(review_count=max(0, review_count), reviews_last_scraped_at=when)
    )
