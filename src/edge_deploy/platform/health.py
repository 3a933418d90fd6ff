"""HTTP health checks for deployed workers."""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)

HEALTHY_STATUSES = ("ok", "healthy")


@dataclass
class HealthCheckResult:
    """Result of a health check against one URL."""

    url: str
    healthy: bool
    status_code: Optional[int] = None
    message: str = ""
    response_time_ms: float = 0.0
    attempts: int = 1
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "healthy": self.healthy,
            "statusCode": self.status_code,
            "message": self.message,
            "responseTimeMs": round(self.response_time_ms, 1),
            "attempts": self.attempts,
        }


class HealthChecker:
    """Polls ``<url><path>`` until the service reports healthy."""

    def __init__(
        self,
        path: str = "/health",
        timeout: float = 5.0,
        attempts: int = 3,
        interval: float = 2.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize health checker.

        Args:
            path: Health endpoint path appended to the base URL
            timeout: Per-request timeout in seconds
            attempts: Number of polls before giving up
            interval: Seconds between polls
            session: Shared requests session (one request per check when omitted)
            sleep: Sleep function
        """
        self.path = path
        self.timeout = timeout
        self.attempts = attempts
        self.interval = interval
        self.session = session
        self.sleep = sleep

    def check(self, base_url: str) -> HealthCheckResult:
        """Single health check request."""
        url = base_url.rstrip("/") + self.path
        start_time = time.time()

        try:
            http = self.session if self.session is not None else requests
            response = http.get(url, timeout=self.timeout)
        except requests.Timeout:
            elapsed_ms = (time.time() - start_time) * 1000
            return HealthCheckResult(url, False, message=f"HTTP timeout after {self.timeout}s", response_time_ms=elapsed_ms)
        except requests.RequestException as e:
            elapsed_ms = (time.time() - start_time) * 1000
            return HealthCheckResult(url, False, message=f"HTTP error: {e}", response_time_ms=elapsed_ms)

        elapsed_ms = (time.time() - start_time) * 1000
        if not 200 <= response.status_code < 300:
            return HealthCheckResult(
                url, False, response.status_code, f"HTTP {response.status_code}", elapsed_ms
            )

        try:
            payload = response.json()
        except ValueError:
            return HealthCheckResult(url, True, response.status_code, f"HTTP {response.status_code}", elapsed_ms)

        status = str(payload.get("status", "ok")).lower() if isinstance(payload, dict) else "ok"
        if status in HEALTHY_STATUSES:
            return HealthCheckResult(
                url, True, response.status_code, "Service is healthy", elapsed_ms,
                details=payload if isinstance(payload, dict) else {},
            )
        return HealthCheckResult(
            url, False, response.status_code, f"Service reported unhealthy: {status}", elapsed_ms,
            details=payload if isinstance(payload, dict) else {},
        )

    def wait_until_healthy(self, base_url: str) -> HealthCheckResult:
        """Poll until healthy or attempts are exhausted."""
        result = None
        for attempt in range(1, self.attempts + 1):
            result = self.check(base_url)
            result.attempts = attempt
            if result.healthy:
                logger.info(f"{result.url} healthy after {attempt} attempt(s)")
                return result
            logger.debug(f"Health attempt {attempt}/{self.attempts} for {result.url}: {result.message}")
            if attempt < self.attempts:
                self.sleep(self.interval)
        return result
