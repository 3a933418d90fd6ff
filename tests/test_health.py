"""Tests for HTTP health checks."""

from __future__ import annotations

import requests

from conftest import health_session, json_response, stub_session
from edge_deploy.platform.health import HealthChecker


def checker(session, attempts=3):
    sleeps = []
    health = HealthChecker(attempts=attempts, interval=1.5, session=session, sleep=sleeps.append)
    return health, sleeps


class TestHealthChecker:
    def test_healthy_payload(self):
        health, sleeps = checker(health_session(200, {"status": "healthy", "version": "1"}))

        result = health.wait_until_healthy("https://example.com.acme.workers.dev/")

        assert result.healthy
        assert result.url == "https://example.com.acme.workers.dev/health"
        assert result.details["version"] == "1"
        assert result.attempts == 1
        assert sleeps == []

    def test_non_json_success_is_healthy(self):
        health, _ = checker(stub_session(lambda request: json_response(request, 204)))

        assert health.check("https://example.com").healthy

    def test_unhealthy_status_is_reported(self):
        health, _ = checker(health_session(200, {"status": "degraded"}), attempts=1)

        result = health.wait_until_healthy("https://example.com")

        assert not result.healthy
        assert "degraded" in result.message

    def test_polls_until_healthy(self):
        statuses = iter([503, 503, 200])
        session = stub_session(lambda request: json_response(request, next(statuses), {"status": "ok"}))
        health, sleeps = checker(session)

        result = health.wait_until_healthy("https://example.com")

        assert result.healthy
        assert result.attempts == 3
        assert sleeps == [1.5, 1.5]

    def test_gives_up_after_attempts(self):
        health, sleeps = checker(health_session(500), attempts=2)

        result = health.wait_until_healthy("https://example.com")

        assert not result.healthy
        assert result.status_code == 500
        assert result.attempts == 2
        assert len(sleeps) == 1

    def test_transport_errors_are_unhealthy(self):
        def refuse(request):
            raise requests.ConnectionError("connection refused", request=request)

        health, _ = checker(stub_session(refuse), attempts=1)

        result = health.check("https://example.com")

        assert not result.healthy
        assert result.message.startswith("HTTP error")
        assert result.to_dict()["statusCode"] is None

    def test_timeouts_are_unhealthy(self):
        def slow(request):
            raise requests.ReadTimeout("read timed out", request=request)

        health, _ = checker(stub_session(slow), attempts=1)

        assert health.check("https://example.com").message == "HTTP timeout after 5.0s"
