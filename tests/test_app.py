"""Tests for health checks, search helpers, response headers and the lifespan."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from findclass.app import _run_maintenance, app
from findclass.config import SERVICE_NAME


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["service"] == SERVICE_NAME
        assert body["version"]
        assert body["timestamp"]

    def test_liveness(self, client):
        assert client.get("/health/live").json()["status"] == "alive"

    def test_readiness_with_memory_store(self, client):
        resp = client.get("/health/ready")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ready"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"


class TestSearch:
    """Tests for popular keywords and suggestions."""

    def test_popular(self, client):
        data = client.get("/api/v1/search/popular").json()["data"]
        assert len(data) == 5
        assert all(isinstance(keyword, str) for keyword in data)

    def test_suggestions(self, client, teacher_setup):
        headers, _ = teacher_setup
        for title in ("Piano basics", "Piano advanced", "Violin"):
            client.post(
                "/api/v1/courses",
                json={
                    "title": title,
                    "description": "Music lessons",
                    "category": "MUSIC",
                    "price": 30,
                    "price_type": "PER_HOUR",
                },
                headers=headers,
            )
        data = client.get("/api/v1/search/suggestions", params={"q": "piano"}).json()["data"]
        assert sorted(s["title"] for s in data) == ["Piano advanced", "Piano basics"]
        assert data[0]["type"] == "course"
        assert data[0]["teacher_name"] == "Ms Teacher"
        assert data[0]["subject"] == "MUSIC"

    def test_empty_query(self, client):
        assert client.get("/api/v1/search/suggestions", params={"q": " "}).json()["data"] == []

    def test_limit_capped(self, client):
        resp = client.get("/api/v1/search/suggestions", params={"q": "x", "limit": 6})
        assert resp.status_code == 400


class TestHeaders:
    def test_api_responses_not_cached(self, client):
        resp = client.get("/api/v1/search/popular")
        assert "no-store" in resp.headers["Cache-Control"]
        assert resp.headers["API-Version"]

    def test_cors_preflight(self, client):
        resp = client.options(
            "/api/v1/courses/search",
            headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "GET"},
        )
        assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"

    def test_request_id_echoed(self, client):
        resp = client.get("/health/live", headers={"X-Request-ID": "trace-42"})
        assert resp.headers["X-Request-ID"] == "trace-42"

    def test_malformed_request_id_replaced(self, client):
        resp = client.get("/health/live", headers={"X-Request-ID": "bad id with spaces"})
        assert resp.headers["X-Request-ID"] != "bad id with spaces"
        assert len(resp.headers["X-Request-ID"]) == 36


class TestCreateApp:
    def test_build_comes_from_settings(self):
        from fastapi.testclient import TestClient

        from findclass.app import create_app
        from findclass.config import Settings

        application = create_app(Settings(jwt_secret="x" * 40, build_sha="abc123"))
        assert TestClient(application).get("/health").json()["build"] == "abc123"


class _CountingRuntime:
    def __init__(self, fail_first=False):
        self.calls = 0
        self.fail_first = fail_first

    async def run_maintenance(self):
        self.calls += 1
        if self.fail_first and self.calls == 1:
            raise RuntimeError("database went away")


class TestMaintenanceTask:
    """Tests for the periodic cleanup loop started by the lifespan."""

    @pytest.mark.asyncio
    async def test_runs_until_cancelled(self):
        runtime = _CountingRuntime()
        task = asyncio.create_task(_run_maintenance(runtime, 0))
        for _ in range(5):
            await asyncio.sleep(0)
        task.cancel()
        await task
        assert runtime.calls >= 2
        assert task.done()

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_the_loop(self):
        runtime = _CountingRuntime(fail_first=True)
        task = asyncio.create_task(_run_maintenance(runtime, 0))
        for _ in range(5):
            await asyncio.sleep(0)
        task.cancel()
        await task
        assert runtime.calls >= 2

    def test_lifespan_starts_and_stops_cleanly(self):
        with TestClient(app) as lifespan_client:
            assert lifespan_client.get("/health/live").status_code == 200
