"""Tests for the in-process token bucket and the 429 responses it drives."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from findclass.service.runtime import check_rate_limit, get_runtime, redact_url


@pytest.mark.asyncio
async def test_local_bucket_allows_up_to_limit():
    runtime = get_runtime()
    assert runtime.cache is None
    results = [await check_rate_limit(runtime, "unit:bucket", 3, 60) for _ in range(4)]
    assert results == [True, True, True, False]


@pytest.mark.asyncio
async def test_keys_are_independent():
    runtime = get_runtime()
    assert await check_rate_limit(runtime, "unit:a", 1, 60)
    assert not await check_rate_limit(runtime, "unit:a", 1, 60)
    assert await check_rate_limit(runtime, "unit:b", 1, 60)


@pytest.mark.asyncio
async def test_remaining_and_reset():
    runtime = get_runtime()
    allowed, remaining, reset = await check_rate_limit(
        runtime, "unit:remaining", 2, 60, return_remaining=True
    )
    assert (allowed, remaining, reset) == (True, 1, 0)
    await check_rate_limit(runtime, "unit:remaining", 2, 60)
    allowed, remaining, reset = await check_rate_limit(
        runtime, "unit:remaining", 2, 60, return_remaining=True
    )
    assert not allowed
    assert remaining == 0
    assert 0 < reset <= 31


@pytest.mark.asyncio
async def test_zero_limit_disables_check():
    runtime = get_runtime()
    for _ in range(5):
        assert await check_rate_limit(runtime, "unit:off", 0, 60)


@pytest.mark.asyncio
async def test_invalid_window_falls_back():
    runtime = get_runtime()
    assert await check_rate_limit(runtime, "unit:window", 1, 0)
    assert not await check_rate_limit(runtime, "unit:window", 1, 0)


@pytest.mark.asyncio
async def test_idle_buckets_pruned():
    runtime = get_runtime()
    await check_rate_limit(runtime, "unit:busy", 2, 60)
    runtime._local_rate_limits["unit:idle"] = (0.0, time.monotonic() - 120, 60)
    assert await runtime.prune_rate_limits() == 1
    assert set(runtime._local_rate_limits) == {"unit:busy"}


@pytest.mark.asyncio
async def test_pruned_bucket_starts_full():
    runtime = get_runtime()
    runtime._local_rate_limits["unit:drained"] = (0.0, time.monotonic() - 61, 60)
    await runtime.prune_rate_limits()
    allowed, remaining, _ = await check_rate_limit(
        runtime, "unit:drained", 3, 60, return_remaining=True
    )
    assert (allowed, remaining) == (True, 2)


@pytest.mark.asyncio
async def test_run_maintenance():
    runtime = get_runtime()
    runtime._local_rate_limits["unit:idle"] = (0.0, time.monotonic() - 120, 60)
    runtime.auth._revoked_jtis["gone"] = datetime.now(timezone.utc) - timedelta(hours=1)
    await runtime.run_maintenance()
    assert "unit:idle" not in runtime._local_rate_limits
    assert "gone" not in runtime.auth._revoked_jtis


class TestEndpointLimits:
    """429 responses from rate-limited endpoints."""

    def test_login_limit(self, client):
        body = {"email": "nobody@example.com", "password": "wrong-password"}
        statuses = [client.post("/api/v1/auth/login", json=body).status_code for _ in range(10)]
        assert set(statuses) == {401}

        resp = client.post("/api/v1/auth/login", json=body)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert resp.headers["X-RateLimit-Limit"] == "10"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert int(resp.headers["Retry-After"]) > 0

    def test_login_limit_is_per_email(self, client):
        body = {"email": "first@example.com", "password": "wrong-password"}
        for _ in range(11):
            client.post("/api/v1/auth/login", json=body)
        other = client.post(
            "/api/v1/auth/login", json={"email": "second@example.com", "password": "wrong-password"}
        )
        assert other.status_code == 401

    def test_register_limit(self, client):
        body = {"email": "flood@example.com", "password": "weak", "name": "Flood", "role": "PARENT"}
        statuses = [client.post("/api/v1/auth/register", json=body).status_code for _ in range(6)]
        assert statuses[:5] == [400] * 5
        assert statuses[5] == 429


class TestRedactUrl:
    def test_password_masked(self):
        assert redact_url("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert redact_url("postgresql://app:s3cret@db/findclass") == "postgresql://app:***@db/findclass"

    def test_url_without_password_unchanged(self):
        assert redact_url("redis://cache:6379/0") == "redis://cache:6379/0"
        assert redact_url(None) is None
