"""
Upstream 레코드 API 공통 HTTP 래퍼. OOM 방지: Content-Length fail-fast + 무조건 stream chunking.
호출부가 넘긴 deadline(monotonic)을 전체 요청 기준으로 강제(소켓 타임아웃만으로는 느린 스트림을 못 끊음).
오류는 TransientUpstreamError(재시도) / PermanentResponseError(해석 불가)로만 밖에 노출.
"""

import json
import logging
import time
from typing import Any

import requests

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESPONSE_BYTES = 5 * 1024 * 1024
CHUNK_SIZE = 64 * 1024

UPSTREAM_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "catalog-sync/0.1 (+scrape scheduler)",
}

# 재시도하면 회복될 수 있는 HTTP 상태. 그 외 4xx는 호환성 문제로 보고 permanent.
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class UpstreamError(Exception):
    """Upstream 호출 실패 공통 베이스."""

    pass


class TransientUpstreamError(UpstreamError):
    """타임아웃·네트워크·rate-limit. 백오프 후 재시도."""

    pass


class FetchDeadlineExceeded(TransientUpstreamError):
    """호출부 deadline 초과. 네트워크 실패와 동일하게 취급."""

    pass


class PermanentResponseError(UpstreamError):
    """응답을 해석할 수 없음(스키마 변경 등). retry_count는 올리되 운영자 확인 대상."""

    pass


class ResponseTooLargeError(PermanentResponseError):
    """응답 본문이 max_bytes를 초과함 (OOM 방지)."""

    pass


def _remaining(deadline: float) -> float:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise FetchDeadlineExceeded("fetch deadline exceeded")
    return remaining


def fetch_json(
    session: requests.Session,
    url: str,
    *,
    deadline: float,
    params: dict[str, Any] | None = None,
    max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
    headers: dict[str, str] | None = None,
) -> Any:
    """
    URL에서 JSON을 안전하게 가져옴.
    - deadline: time.monotonic() 기준 절대 시각. 연결·청크 읽기마다 남은 시간으로 timeout 설정.
    - Content-Length가 max_bytes 초과면 본문 읽기 전에 ResponseTooLargeError.
    - 429/5xx·타임아웃·연결 오류 → TransientUpstreamError, 그 외 4xx·디코드 실패 → PermanentResponseError.
    """
    h = headers or UPSTREAM_HEADERS
    try:
        resp = session.get(
            url,
            params=params,
            headers=h,
            timeout=_remaining(deadline),
            stream=True,
        )
    except requests.Timeout as e:
        raise FetchDeadlineExceeded(f"timeout: url={url[:200]}") from e
    except requests.RequestException as e:
        raise TransientUpstreamError(f"{type(e).__name__}: url={url[:200]}") from e

    try:
        if resp.status_code in TRANSIENT_STATUS_CODES:
            raise TransientUpstreamError(f"HTTP {resp.status_code}: url={url[:200]}")
        if resp.status_code >= 400:
            raise PermanentResponseError(f"HTTP {resp.status_code}: url={url[:200]}")

        cl = resp.headers.get("Content-Length")
        if cl:
            try:
                if int(cl) > max_bytes:
                    raise ResponseTooLargeError(
                        f"Content-Length {cl} > max_bytes {max_bytes}; url={url[:200]}"
                    )
            except ValueError:
                pass

        accumulated = 0
        chunks: list[bytes] = []
        try:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                _remaining(deadline)
                if chunk:
                    accumulated += len(chunk)
                    if accumulated > max_bytes:
                        raise ResponseTooLargeError(
                            f"Accumulated {accumulated} > max_bytes {max_bytes}; url={url[:200]}"
                        )
                    chunks.append(chunk)
        except requests.RequestException as e:
            raise TransientUpstreamError(f"stream interrupted: url={url[:200]}") from e
    finally:
        resp.close()

    try:
        return json.loads(b"".join(chunks).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PermanentResponseError(f"Undecodable JSON body: url={url[:200]}") from e
