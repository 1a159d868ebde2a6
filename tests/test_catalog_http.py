"""Upstream HTTP 래퍼·CatalogClient 테스트. requests.Session은 mock."""

import json
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from app.core.catalog_http import (
    FetchDeadlineExceeded,
    PermanentResponseError,
    ResponseTooLargeError,
    TransientUpstreamError,
    fetch_json,
)
from app.core.rate_limit import RateBudgetExceeded, TokenBucket
from app.services.catalog_client import CatalogClient


def _response(status: int = 200, body: bytes = b"{}", headers: dict | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.iter_content.return_value = [body]
    return resp


def _session(resp: MagicMock) -> MagicMock:
    session = MagicMock(spec=requests.Session)
    session.get.return_value = resp
    return session


def _deadline() -> float:
    return time.monotonic() + 10.0


def test_fetch_json_success() -> None:
    resp = _response(body=json.dumps({"data": [1, 2]}).encode())
    assert fetch_json(_session(resp), "https://x/api", deadline=_deadline()) == {"data": [1, 2]}
    resp.close.assert_called_once()


@pytest.mark.parametrize("status", [429, 500, 503])
def test_retryable_status_is_transient(status: int) -> None:
    with pytest.raises(TransientUpstreamError):
        fetch_json(_session(_response(status)), "https://x/api", deadline=_deadline())


@pytest.mark.parametrize("status", [400, 404, 410])
def test_client_error_is_permanent(status: int) -> None:
    with pytest.raises(PermanentResponseError):
        fetch_json(_session(_response(status)), "https://x/api", deadline=_deadline())


def test_undecodable_body_is_permanent() -> None:
    with pytest.raises(PermanentResponseError):
        fetch_json(_session(_response(body=b"<html>maintenance</html>")), "https://x/api", deadline=_deadline())


def test_content_length_over_limit_fails_before_read() -> None:
    resp = _response(headers={"Content-Length": str(10_000)})
    with pytest.raises(ResponseTooLargeError):
        fetch_json(_session(resp), "https://x/api", deadline=_deadline(), max_bytes=1024)
    resp.iter_content.assert_not_called()


def test_streamed_body_over_limit() -> None:
    resp = _response(body=b"x" * 2048)
    with pytest.raises(ResponseTooLargeError):
        fetch_json(_session(resp), "https://x/api", deadline=_deadline(), max_bytes=1024)


def test_timeout_is_deadline_exceeded() -> None:
    session = MagicMock(spec=requests.Session)
    session.get.side_effect = requests.Timeout("read timeout")
    with pytest.raises(FetchDeadlineExceeded):
        fetch_json(session, "https://x/api", deadline=_deadline())


def test_connection_error_is_transient() -> None:
    session = MagicMock(spec=requests.Session)
    session.get.side_effect = requests.ConnectionError("reset")
    with pytest.raises(TransientUpstreamError):
        fetch_json(session, "https://x/api", deadline=_deadline())


def test_expired_deadline_skips_request() -> None:
    session = MagicMock(spec=requests.Session)
    with pytest.raises(FetchDeadlineExceeded):
        fetch_json(session, "https://x/api", deadline=time.monotonic() - 1.0)
    session.get.assert_not_called()


@pytest.fixture
def catalog() -> CatalogClient:
    return CatalogClient("https://catalog.test/api/", rate_limiter=TokenBucket(100, 100.0))


def test_catalog_fetch_unwraps_envelope(catalog: CatalogClient) -> None:
    body = {"data": [{"id": "10001", "title": "Intro"}]}
    with patch("app.services.catalog_client.fetch_json", return_value=body) as fetch:
        listing = catalog.fetch("202610", "CS", timeout=5.0)
    assert listing.scope == "202610:CS"
    assert len(listing) == 1
    assert fetch.call_args.args[1] == "https://catalog.test/api/terms/202610/subjects/CS/sections"


def test_catalog_bad_envelope_is_permanent(catalog: CatalogClient) -> None:
    with patch("app.services.catalog_client.fetch_json", return_value=[{"id": "1"}]):
        with pytest.raises(PermanentResponseError):
            catalog.fetch("202610", "CS", timeout=5.0)


def test_catalog_list_subjects_requires_code(catalog: CatalogClient) -> None:
    with patch("app.services.catalog_client.fetch_json", return_value={"data": [{"description": "x"}]}):
        with pytest.raises(PermanentResponseError):
            catalog.list_subjects("202610")
    with patch(
        "app.services.catalog_client.fetch_json",
        return_value={"data": [{"code": "CS", "description": "Computer Science"}]},
    ):
        assert catalog.list_subjects("202610") == [{"code": "CS", "description": "Computer Science"}]


def test_catalog_rate_budget_exhausted_is_transient() -> None:
    bucket = MagicMock(spec=TokenBucket)
    bucket.acquire.side_effect = RateBudgetExceeded("no tokens")
    catalog = CatalogClient("https://catalog.test/api", rate_limiter=bucket)
    with pytest.raises(TransientUpstreamError):
        catalog.fetch_profile_reviews("prof-1", timeout=1.0)
