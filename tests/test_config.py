"""Tests for the settings file."""

from __future__ import annotations

import pytest
import yaml

from edge_deploy.config.models import EnterpriseSettings, RetrySettings, Settings
from edge_deploy.config.parser import Config, ConfigValidationError, load_settings


def write_settings(tmp_path, data):
    path = tmp_path / "edge-deploy.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestConfig:
    def test_loads_valid_settings(self, tmp_path):
        path = write_settings(tmp_path, {
            "retry": {"max_attempts": 4, "base_delay_ms": 200},
            "portfolio": {"max_parallel": 2},
            "enterprise": {"compliance_levels": ["SOX", "pci"]},
            "domains": [
                {"name": "auth.example.com"},
                {"name": "api.example.com", "depends_on": ["auth.example.com"],
                 "secrets": {"JWT_SECRET": "API_JWT_SECRET"}},
            ],
        })

        settings = Config(str(path)).load().settings

        assert settings.retry.max_attempts == 4
        assert settings.portfolio.max_parallel == 2
        assert settings.enterprise.compliance_levels == ["sox", "pci"]
        assert settings.get_domain("api.example.com").depends_on == ["auth.example.com"]
        assert settings.get_domain("missing.example.com") is None

    def test_unknown_section_is_reported(self, tmp_path):
        path = write_settings(tmp_path, {"retries": {"max_attempts": 2}})

        with pytest.raises(ConfigValidationError) as exc_info:
            Config(str(path)).load()

        assert "Unknown section 'retries'" in str(exc_info.value)

    def test_schema_errors_carry_locations(self, tmp_path):
        path = write_settings(tmp_path, {"retry": {"max_attempts": 0}})

        with pytest.raises(ConfigValidationError) as exc_info:
            Config(str(path)).load()

        assert exc_info.value.errors[0]["loc"][:2] == ["retry", "max_attempts"]
        assert "retry -> max_attempts" in str(exc_info.value)

    def test_unknown_dependency_is_rejected(self, tmp_path):
        path = write_settings(tmp_path, {
            "domains": [{"name": "api.example.com", "depends_on": ["auth.example.com"]}],
        })

        with pytest.raises(ConfigValidationError, match="validation failed"):
            Config(str(path)).load()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "edge-deploy.yaml"
        path.write_text("retry: [unclosed\n")

        with pytest.raises(ConfigValidationError, match="Failed to parse YAML"):
            Config(str(path)).load()

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "nope.yaml"))

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        settings = load_settings()

        assert settings == Settings()
        assert settings.health.path == "/health"


class TestModels:
    def test_max_delay_must_cover_base_delay(self):
        with pytest.raises(ValueError):
            RetrySettings(base_delay_ms=5000, max_delay_ms=1000)

    def test_unknown_compliance_level(self):
        with pytest.raises(ValueError, match="Unknown compliance level"):
            EnterpriseSettings(compliance_levels=["gdpr"])
