"""Health 엔드포인트 테스트."""

from unittest.mock import AsyncMock

import pytest

from app.main import app


def test_health_without_database_is_degraded(client):
    """테스트 환경은 DATABASE_URL 미설정 → db error, Redis 미설정은 ok."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "degraded", "db": "error", "redis": "ok"}


def test_health_ok_when_db_and_redis_respond(client, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr("app.api.health.ping_db", AsyncMock(return_value=True))
    redis_client = AsyncMock()
    redis_client.ping.return_value = True
    monkeypatch.setattr(app.state, "redis_health_client", redis_client, raising=False)
    assert client.get("/health").json()["status"] == "ok"
    redis_client.ping.assert_awaited_once()


def test_health_redis_failure_is_degraded(client, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr("app.api.health.ping_db", AsyncMock(return_value=True))
    redis_client = AsyncMock()
    redis_client.ping.side_effect = ConnectionError("redis down")
    monkeypatch.setattr(app.state, "redis_health_client", redis_client, raising=False)
    data = client.get("/health").json()
    assert data["db"] == "ok"
    assert data["redis"] == "error"
    assert data["status"] == "degraded"
