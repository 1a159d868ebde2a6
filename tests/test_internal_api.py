"""내부 운영 API 테스트. 동기 Job Store는 SQLite로 교체, 시크릿은 Header로만."""

from unittest.mock import AsyncMock

import pytest
from pydantic import SecretStr
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from app.core.config import settings
from app.core.database import get_db
from app.main import app
from app.models import ScrapeJob
from app.services.scheduling import MAX_PRIORITY


@pytest.fixture(autouse=True)
def _trigger_secret(monkeypatch: pytest.MonkeyPatch, session_factory) -> None:
    monkeypatch.setattr(settings, "scrape_trigger_secret", SecretStr("test-trigger-secret"))


@pytest.fixture
def api_emitter(monkeypatch: pytest.MonkeyPatch, emitter):
    monkeypatch.setattr(app.state, "event_emitter", emitter, raising=False)
    return emitter


def test_missing_secret_rejected(client) -> None:
    assert client.get("/internal/terms").status_code == 401
    bad = client.get("/internal/terms", headers={"X-Scrape-Trigger-Secret": "wrong"})
    assert bad.status_code == 401


def test_bearer_secret_accepted(client) -> None:
    response = client.get("/internal/terms", headers={"Authorization": "Bearer test-trigger-secret"})
    assert response.status_code == 200


def test_query_secret_not_accepted(client) -> None:
    response = client.get("/internal/terms", params={"secret": "test-trigger-secret"})
    assert response.status_code == 401


def test_unconfigured_secret_is_503(client, monkeypatch: pytest.MonkeyPatch, trigger_headers) -> None:
    monkeypatch.setattr(settings, "scrape_trigger_secret", None)
    assert client.get("/internal/terms", headers=trigger_headers).status_code == 503


def test_trigger_creates_max_priority_job(client, session, make_term, trigger_headers, api_emitter) -> None:
    make_term()
    response = client.post(
        "/internal/scrape/trigger",
        json={"term_code": "202610", "subject": "CS"},
        headers=trigger_headers,
    )
    assert response.status_code == 200
    assert response.json() == {"triggered": 1, "target_keys": ["202610:CS"]}
    job = session.execute(
        select(ScrapeJob).where(ScrapeJob.target_key == "202610:CS").execution_options(populate_existing=True)
    ).scalar_one()
    assert job.priority == MAX_PRIORITY
    assert job.manual_override
    assert api_emitter.kinds() == ["triggered"]


def test_trigger_unknown_term_404(client, trigger_headers) -> None:
    response = client.post("/internal/scrape/trigger", json={"term_code": "199910"}, headers=trigger_headers)
    assert response.status_code == 404


def test_trigger_validation(client, trigger_headers) -> None:
    response = client.post("/internal/scrape/trigger", json={"term_code": ""}, headers=trigger_headers)
    assert response.status_code == 422


def test_trigger_profile(client, make_profile, trigger_headers) -> None:
    make_profile("prof-1")
    response = client.post("/internal/scrape/profiles/prof-1/trigger", headers=trigger_headers)
    assert response.status_code == 200
    assert response.json()["target_keys"] == ["profile:prof-1"]
    missing = client.post("/internal/scrape/profiles/nobody/trigger", headers=trigger_headers)
    assert missing.status_code == 404


def test_toggle_term(client, make_term, trigger_headers, api_emitter) -> None:
    make_term()
    response = client.patch("/internal/terms/202610", json={"scrape_enabled": False}, headers=trigger_headers)
    assert response.status_code == 200
    assert response.json()["scrape_enabled"] is False
    assert api_emitter.events[-1].details == {"term_code": "202610", "scrape_enabled": False}
    listed = client.get("/internal/terms", headers=trigger_headers).json()
    assert [(t["code"], t["scrape_enabled"]) for t in listed] == [("202610", False)]
    missing = client.patch("/internal/terms/000000", json={"scrape_enabled": True}, headers=trigger_headers)
    assert missing.status_code == 404


def test_terminal_jobs_and_reset(client, make_term, make_job, trigger_headers, api_emitter) -> None:
    make_term()
    job = make_job(retry_count=3, max_retries=3)
    terminal = client.get("/internal/jobs/terminal", headers=trigger_headers).json()
    assert [j["id"] for j in terminal] == [job.id]
    assert terminal[0]["state"] == "terminal_failed"

    response = client.post(f"/internal/jobs/{job.id}/reset", headers=trigger_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["retry_count"] == 0
    assert body["state"] == "pending"
    assert api_emitter.kinds() == ["reset"]
    assert client.get("/internal/jobs/terminal", headers=trigger_headers).json() == []


def test_get_job(client, make_term, make_job, trigger_headers) -> None:
    make_term()
    job = make_job()
    response = client.get(f"/internal/jobs/{job.id}", headers=trigger_headers)
    assert response.status_code == 200
    assert response.json()["target_key"] == "202610:CS"
    assert client.get("/internal/jobs/999999", headers=trigger_headers).status_code == 404
    assert client.post("/internal/jobs/999999/reset", headers=trigger_headers).status_code == 404


def test_scrape_stats(client, make_term, make_job, trigger_headers) -> None:
    make_term()
    make_job(subject="CS")
    make_job(subject="MATH", retry_count=3)
    response = client.get("/internal/scrape-stats", params={"hours": 6}, headers=trigger_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["queue"]["total"] == 2
    assert data["queue"]["terminal_failed"] == 1
    assert data["results"]["runs"] == 0
    assert data["results"]["avg_duration_ms"] is None


def test_scrape_results(client, trigger_headers, monkeypatch: pytest.MonkeyPatch) -> None:
    rows = [{"job_id": 1, "target_key": "202610:CS", "success": True}]
    fake = AsyncMock(return_value=rows)
    monkeypatch.setattr("app.api.internal.get_recent_results", fake)

    async def _fake_db():
        yield None

    app.dependency_overrides[get_db] = _fake_db
    try:
        response = client.get("/internal/scrape-results", params={"limit": 5}, headers=trigger_headers)
    finally:
        app.dependency_overrides.pop(get_db, None)
    assert response.status_code == 200
    assert response.json() == {"results": rows, "limit": 5}
    assert fake.await_args.kwargs == {"limit": 5, "term_code": None}


def test_datastore_unavailable_is_503(client, trigger_headers, monkeypatch: pytest.MonkeyPatch) -> None:
    def _down():
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    monkeypatch.setattr("app.api.internal.get_sync_session", _down)
    response = client.get("/internal/terms", headers=trigger_headers)
    assert response.status_code == 503


def test_write_failure_is_500(client, trigger_headers, monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken():
        raise IntegrityError("UPDATE terms", {}, ValueError("constraint"))

    monkeypatch.setattr("app.api.internal.get_sync_session", _broken)
    response = client.get("/internal/terms", headers=trigger_headers)
    assert response.status_code == 500
    assert response.json() == {"detail": "Job store write failed"}
