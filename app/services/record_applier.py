"""
Diff/Persist 기본 구현. listing을 catalog_records와 비교해 created/changed/unchanged 카운트 반환.
content_hash(sha256, 정렬된 JSON)가 실제로 바뀐 행만 upsert.
해석할 수 없는 레코드는 PermanentResponseError (호환성 깨짐 신호).
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.catalog_http import PermanentResponseError
from app.models.catalog_record import CatalogRecord
from app.repositories.dialect import insert_for
from app.services.catalog_client import Listing

logger = logging.getLogger(__name__)

# 레코드 식별자 후보 키. 섹션은 crn, 리뷰는 id.
RECORD_ID_KEYS = ("crn", "id", "external_id")

# 한 번에 upsert할 행 수. 대형 과목(수백 섹션)에서 파라미터 수 제한 회피.
UPSERT_CHUNK_SIZE = 200


@dataclass(frozen=True)
class ApplyCounts:
    created: int
    changed: int
    unchanged: int


def record_external_id(record: Any) -> str:
    if not isinstance(record, dict):
        raise PermanentResponseError(f"Record is not an object: {type(record).__name__}")
    for key in RECORD_ID_KEYS:
        value = record.get(key)
        if value not in (None, ""):
            return str(value)
    raise PermanentResponseError(f"Record missing identifier (one of {RECORD_ID_KEYS})")


def content_hash(record: dict[str, Any]) -> str:
    try:
        raw = json.dumps(record, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise PermanentResponseError("Record is not JSON-serializable") from e
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ContentHashApplier:
    """catalog_records 기반 diff/persist. 세션 트랜잭션 경계는 호출부(워커)가 관리."""

    def apply(self, session: Session, listing: Listing) -> ApplyCounts:
        incoming: dict[str, tuple[dict[str, Any], str]] = {}
        for record in listing.records:
            ext_id = record_external_id(record)
            incoming[ext_id] = (record, content_hash(record))

        if not incoming:
            return ApplyCounts(created=0, changed=0, unchanged=0)

        existing: dict[str, str] = {}
        ids = list(incoming)
        for i in range(0, len(ids), UPSERT_CHUNK_SIZE):
            rows = session.execute(
                select(CatalogRecord.external_id, CatalogRecord.content_hash).where(
                    CatalogRecord.scope == listing.scope,
                    CatalogRecord.external_id.in_(ids[i : i + UPSERT_CHUNK_SIZE]),
                )
            ).all()
            existing.update({ext_id: digest for ext_id, digest in rows})

        created = [k for k in incoming if k not in existing]
        changed = [k for k in incoming if k in existing and existing[k] != incoming[k][1]]
        to_write = created + changed

        now = datetime.now(UTC)
        for i in range(0, len(to_write), UPSERT_CHUNK_SIZE):
            rows = [
                {
                    "scope": listing.scope,
                    "external_id": k,
                    "payload": incoming[k][0],
                    "content_hash": incoming[k][1],
                    "created_at": now,
                    "updated_at": now,
                }
                for k in to_write[i : i + UPSERT_CHUNK_SIZE]
            ]
            base = insert_for(session, CatalogRecord).values(rows)
            stmt = base.on_conflict_do_update(
                index_elements=["scope", "external_id"],
                set_={
                    "payload": base.excluded.payload,
                    "content_hash": base.excluded.content_hash,
                    "updated_at": now,
                },
                where=CatalogRecord.content_hash != base.excluded.content_hash,
            )
            session.execute(stmt)
        session.flush()

        # 중복 id가 섞인 listing이면 len(records) > 고유 id 수. 음수 방지는 결과 기록 단계에서 한 번 더.
        unchanged = len(incoming) - len(created) - len(changed)
        logger.debug(
            "apply scope=%s fetched=%d created=%d changed=%d unchanged=%d",
            listing.scope,
            len(listing.records),
            len(created),
            len(changed),
            unchanged,
        )
        return ApplyCounts(created=len(created), changed=len(changed), unchanged=max(0, unchanged))
