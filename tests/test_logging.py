"""Tests for structured logging helpers."""

from __future__ import annotations

import json
import logging
import threading

from edge_deploy.orchestrator.strategies.base import DeploymentStrategy
from edge_deploy.utils.logging import JSONFormatter, LogContext, get_logger, redact

logger = get_logger("edge_deploy.tests")


class LoggingStrategy(DeploymentStrategy):
    """Logs one line from every hook."""

    def _hook(self, name):
        logger.info(f"running {name}")
        return {}

    def on_initialize(self, ctx):
        return self._hook("initialize")

    def on_validation(self, ctx):
        return self._hook("validate")

    def on_prepare(self, ctx):
        return self._hook("prepare")

    def on_deploy(self, ctx):
        return self._hook("deploy")

    def on_verify(self, ctx):
        return self._hook("verify")

    def on_monitor(self, ctx):
        return self._hook("monitor")


class TestLogContext:
    def test_fields_reach_json_output(self, caplog):
        caplog.set_level(logging.INFO)

        with LogContext(deployment_id="deploy-1", domain="example.com"):
            with LogContext(phase="prepare"):
                logger.info("creating database")
            logger.info("after phase")

        first, second = caplog.records[-2:]
        payload = json.loads(JSONFormatter().format(first))
        assert payload["deployment_id"] == "deploy-1"
        assert payload["domain"] == "example.com"
        assert payload["phase"] == "prepare"
        assert "phase" not in json.loads(JSONFormatter().format(second))

    def test_extra_takes_precedence(self, caplog):
        caplog.set_level(logging.INFO)

        with LogContext(domain="example.com", phase="deploy"):
            logger.info("explicit", extra={"domain": "api.example.com"})

        payload = json.loads(JSONFormatter().format(caplog.records[-1]))
        assert payload["domain"] == "api.example.com"
        assert payload["phase"] == "deploy"

    def test_context_is_per_thread(self, caplog):
        caplog.set_level(logging.INFO)

        with LogContext(domain="example.com"):
            worker = threading.Thread(target=lambda: logger.info("from worker"))
            worker.start()
            worker.join()

        record = next(r for r in caplog.records if r.getMessage() == "from worker")
        assert "domain" not in json.loads(JSONFormatter().format(record))

    def test_pipeline_binds_phase_fields(self, services, descriptor, caplog):
        caplog.set_level(logging.INFO)

        ctx = services.orchestrator(LoggingStrategy(), descriptor).execute()

        record = next(r for r in caplog.records if r.getMessage() == "running prepare")
        payload = json.loads(JSONFormatter().format(record))
        assert payload["deployment_id"] == ctx.deployment_id
        assert payload["domain"] == "example.com"
        assert payload["phase"] == "prepare"


class TestRedaction:
    def test_tokens_are_masked(self):
        text = redact("CLOUDFLARE_API_TOKEN=abcdefghijklmnopqrstuvwxyz123456 api_token: s3cr3tvalue")

        assert "abcdefghijklmnopqrstuvwxyz123456" not in text
        assert "s3cr3tvalue" not in text
        assert text.count("[REDACTED]") == 2
