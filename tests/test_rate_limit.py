import pytest
from fastapi.testclient import TestClient

from followup.core.rate_limit import _limiter
from followup.main import create_app


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_RPS", "0.1")
    monkeypatch.setenv("RATE_LIMIT_BURST", "1")
    monkeypatch.setenv("RUN_RATE_LIMIT_RPS", "0.1")
    monkeypatch.setenv("RUN_RATE_LIMIT_BURST", "1")
    _limiter.reset()
    with TestClient(create_app()) as test_client:
        yield test_client
    _limiter.reset()


def test_rate_limit_blocks(client):
    headers = {"X-Tenant-Id": "tenant-rl"}
    resp1 = client.get("/api/v1/rules", headers=headers)
    resp2 = client.get("/api/v1/rules", headers=headers)
    assert resp1.status_code == 200
    assert resp2.status_code == 429
    assert resp2.json()["issues"][0]["code"] == "RATE_LIMITED"
    assert int(resp2.headers["Retry-After"]) >= 1


def test_run_budget_is_separate(client):
    headers = {"X-Tenant-Id": "tenant-rl-run"}
    assert client.get("/api/v1/rules", headers=headers).status_code == 200
    assert client.get("/api/v1/rules", headers=headers).status_code == 429

    first_run = client.post("/api/v1/followup/cron-run", headers=headers)
    second_run = client.post("/api/v1/followup/cron-run", headers=headers)
    assert first_run.status_code == 200
    assert second_run.status_code == 429


def test_callers_have_separate_buckets(client):
    assert client.get("/api/v1/rules", headers={"X-Tenant-Id": "tenant-x"}).status_code == 200
    assert client.get("/api/v1/rules", headers={"X-Tenant-Id": "tenant-y"}).status_code == 200
