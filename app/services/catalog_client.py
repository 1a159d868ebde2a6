"""
Upstream Fetch Client. 레코드 API 호출 + 공유 rate limiter.
계약: fetch(term, subject, timeout) -> Listing | TransientUpstreamError | PermanentResponseError.
스레드마다 requests.Session 분리. 호출 예산은 upstream 호스트 단위로 전 프로세스가 공유(Redis).
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote, urlparse

import requests

from app.core.catalog_http import (
    PermanentResponseError,
    TransientUpstreamError,
    fetch_json,
)
from app.core.config import settings
from app.core.rate_limit import RateBudgetExceeded, RateLimiter, create_rate_limiter
from app.models.scrape_job import profile_target_key, subject_target_key

logger = logging.getLogger(__name__)

# term/subject 목록 조회는 잡 실행이 아니라 스케줄러 tick에서 호출. 별도 타임아웃.
LIST_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class Listing:
    """한 잡 단위로 가져온 레코드 묶음. scope는 잡의 target_key와 같음."""

    scope: str
    records: list[Any] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)


def _unwrap_data(body: Any, url_hint: str) -> list[Any]:
    """{"data": [...]} 봉투만 허용. 그 외 형태는 호환성 깨짐으로 보고 permanent."""
    if not isinstance(body, dict) or not isinstance(body.get("data"), list):
        raise PermanentResponseError(f"Unexpected response envelope: {url_hint}")
    return body["data"]


class CatalogClient:
    """레코드 API 클라이언트. 모든 호출은 rate limiter를 거친 뒤 deadline 안에서만 수행."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        rate_limiter: RateLimiter | None = None,
        max_bytes: int | None = None,
    ) -> None:
        self.base_url = (base_url or settings.upstream_base_url).rstrip("/")
        # 호스트별 예산. 같은 upstream을 부르는 모든 프로세스가 공유.
        self.rate_limiter = rate_limiter or create_rate_limiter(urlparse(self.base_url).netloc or self.base_url)
        self.max_bytes = max_bytes or settings.upstream_max_response_bytes
        self._local = threading.local()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    def close(self) -> None:
        session = getattr(self._local, "session", None)
        if session is not None:
            session.close()
            self._local.session = None

    def _get(self, path: str, *, timeout: float, params: dict[str, Any] | None = None) -> Any:
        deadline = time.monotonic() + timeout
        try:
            self.rate_limiter.acquire(deadline)
        except RateBudgetExceeded as e:
            raise TransientUpstreamError(f"rate budget exhausted: {path}") from e
        return fetch_json(
            self._session(),
            f"{self.base_url}{path}",
            deadline=deadline,
            params=params,
            max_bytes=self.max_bytes,
        )

    def fetch(self, term: str, subject: str, *, timeout: float) -> Listing:
        """(term, subject) 섹션 목록. timeout 초과는 FetchDeadlineExceeded(transient)."""
        path = f"/terms/{quote(term, safe='')}/subjects/{quote(subject, safe='')}/sections"
        body = self._get(path, timeout=timeout)
        return Listing(scope=subject_target_key(term, subject), records=_unwrap_data(body, path))

    def fetch_profile_reviews(self, external_id: str, *, timeout: float) -> Listing:
        """외부 프로필 1건의 리뷰 목록 (secondary schedule)."""
        path = f"/profiles/{quote(external_id, safe='')}/reviews"
        body = self._get(path, timeout=timeout)
        return Listing(scope=profile_target_key(external_id), records=_unwrap_data(body, path))

    def list_subjects(self, term: str, *, timeout: float = LIST_TIMEOUT_SECONDS) -> list[dict[str, Any]]:
        """학기 과목 목록. [{"code": "CS", "description": "..."}]."""
        path = f"/terms/{quote(term, safe='')}/subjects"
        rows = _unwrap_data(self._get(path, timeout=timeout), path)
        out: list[dict[str, Any]] = []
        for row in rows:
            if not isinstance(row, dict) or not row.get("code"):
                raise PermanentResponseError(f"Subject row missing code: {path}")
            out.append({"code": str(row["code"]), "description": row.get("description")})
        return out

    def list_terms(self, *, timeout: float = LIST_TIMEOUT_SECONDS) -> list[dict[str, Any]]:
        """학기 목록. [{"code", "description", "start_date", "end_date"}] (날짜는 ISO 문자열 또는 null)."""
        rows = _unwrap_data(self._get("/terms", timeout=timeout), "/terms")
        for row in rows:
            if not isinstance(row, dict) or not row.get("code"):
                raise PermanentResponseError("Term row missing code: /terms")
        return rows
