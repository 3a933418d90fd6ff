"""Tests for enterprise compliance gates and disaster recovery."""

from __future__ import annotations

import pytest

from conftest import build_coordinator
from edge_deploy.config.models import AuditSettings, EnterpriseSettings
from edge_deploy.config.wrangler import WranglerConfig
from edge_deploy.orchestrator.models import DeploymentMode, DeploymentRequest, FinalStatus, Phase
from edge_deploy.orchestrator.strategies.enterprise import EnterpriseStrategy
from edge_deploy.orchestrator.strategies.portfolio import DomainFanOut, PortfolioStrategy
from edge_deploy.utils.errors import ConfigurationError, ErrorKind

DOMAINS = ["auth.example.com", "api.example.com"]


def check_statuses(report, domain):
    checks = report.context.phase_results[Phase.VALIDATE].data["checks"][domain]
    return {f"{check['group']}/{check['check']}": check["status"] for check in checks}


def failed_checks(report):
    return report.context.last_error.cause.details["checks"]


class TestComplianceGates:
    def test_sox_deployment_succeeds(self, tmp_path, runner, http_session):
        coordinator = build_coordinator(tmp_path, runner, http_session, DOMAINS)

        report = coordinator.deploy(DeploymentRequest(domains=DOMAINS, compliance_levels=["SOX"]))

        assert report.mode == DeploymentMode.ENTERPRISE
        assert report.final_status == FinalStatus.SUCCEEDED
        statuses = check_statuses(report, "auth.example.com")
        assert statuses["sox/audit-trail"] == "passed"
        assert statuses["security/tls-certificate"] == "passed"
        assert len(runner.calls_for("deploy")) == 2

    def test_sox_requires_audit_trail(self, tmp_path, runner, http_session):
        coordinator = build_coordinator(
            tmp_path, runner, http_session, DOMAINS,
            audit=AuditSettings(enabled=False, path=str(tmp_path / "audit.jsonl")),
        )

        report = coordinator.deploy(DeploymentRequest(domains=DOMAINS, compliance_levels=["sox"]))

        assert report.final_status == FinalStatus.FAILED
        assert report.failed_phase == Phase.VALIDATE
        assert report.error_kind == ErrorKind.VALIDATION.value
        assert "2 enterprise check(s) failed" in report.error_message
        assert runner.calls_for("deploy") == []
        assert not (tmp_path / "audit.jsonl").exists()

    def test_hipaa_rejects_plaintext_secrets(self, tmp_path, runner, http_session):
        coordinator = build_coordinator(tmp_path, runner, http_session, DOMAINS)
        toml = tmp_path / "api.example.com" / "wrangler.toml"
        toml.write_text(toml.read_text() + '\n[vars]\nJWT_SECRET = "hunter2"\nLOG_LEVEL = "info"\n')

        report = coordinator.deploy(DeploymentRequest(domains=DOMAINS, compliance_levels=["hipaa"]))

        assert report.failed_phase == Phase.VALIDATE
        suggestions = report.context.last_error.suggestions
        assert any(s.startswith("api.example.com: hipaa/phi-protection") and "JWT_SECRET" in s for s in suggestions)
        assert not any("LOG_LEVEL" in s for s in suggestions)
        api_checks = {c["check"]: c["status"] for c in failed_checks(report)["api.example.com"]}
        assert api_checks["phi-protection"] == "failed"
        assert api_checks["encryption"] == "failed"
        assert all(c["status"] == "passed" for c in failed_checks(report)["auth.example.com"])

    def test_pci_requires_routes(self, tmp_path, runner, http_session):
        coordinator = build_coordinator(tmp_path, runner, http_session, DOMAINS)
        toml = tmp_path / "auth.example.com" / "wrangler.toml"
        toml.write_text(toml.read_text() + '\n[[routes]]\npattern = "auth.example.com/*"\nzone_name = "example.com"\n')

        report = coordinator.deploy(DeploymentRequest(domains=DOMAINS, compliance_levels=["pci"]))

        assert report.failed_phase == Phase.VALIDATE
        statuses = {
            domain: {c["check"]: c["status"] for c in checks}
            for domain, checks in failed_checks(report).items()
        }
        assert statuses["auth.example.com"]["network-segmentation"] == "passed"
        assert statuses["api.example.com"]["network-segmentation"] == "failed"

    def test_dry_run_skips_credential_checks(self, tmp_path, runner, http_session):
        coordinator = build_coordinator(tmp_path, runner, http_session, DOMAINS, environ={})

        report = coordinator.deploy(DeploymentRequest(domains=DOMAINS, compliance_levels=["sox"], dry_run=True))

        assert report.final_status == FinalStatus.SUCCEEDED
        statuses = check_statuses(report, "api.example.com")
        assert statuses["sox/financial-controls"] == "skipped"
        assert statuses["security/authentication"] == "skipped"
        assert statuses["security/encryption"] == "passed"
        assert all("--dry-run" in call for call in runner.calls_for("deploy"))

    def test_settings_levels_apply_without_request_levels(self, tmp_path, runner, http_session):
        coordinator = build_coordinator(
            tmp_path, runner, http_session, DOMAINS,
            enterprise=EnterpriseSettings(compliance_levels=["pci"]),
        )

        report = coordinator.deploy(DeploymentRequest(domains=DOMAINS, mode=DeploymentMode.ENTERPRISE))

        assert report.failed_phase == Phase.VALIDATE
        assert "pci" in report.context.phase_results[Phase.INITIALIZE].data["complianceLevels"]


class TestAvailabilityPlanning:
    def test_disaster_recovery_snapshots_configuration(self, tmp_path, runner, http_session):
        coordinator = build_coordinator(tmp_path, runner, http_session, DOMAINS)

        report = coordinator.deploy(DeploymentRequest(domains=DOMAINS, compliance_levels=["sox"]))

        prepare = report.context.phase_results[Phase.PREPARE].data
        snapshots = prepare["disasterRecovery"]["snapshots"]
        assert set(snapshots) == set(DOMAINS)
        for domain in DOMAINS:
            backups = WranglerConfig(str(tmp_path / domain / "wrangler.toml")).list_backups()
            assert [str(path) for path in backups] == [snapshots[domain]]

    def test_high_availability_plan_uses_regions(self, tmp_path, runner, http_session):
        coordinator = build_coordinator(
            tmp_path, runner, http_session, DOMAINS,
            enterprise=EnterpriseSettings(regions=["weur", "enam"], disaster_recovery=False),
        )

        report = coordinator.deploy(DeploymentRequest(domains=DOMAINS, mode=DeploymentMode.ENTERPRISE))

        prepare = report.context.phase_results[Phase.PREPARE].data
        assert prepare["highAvailability"]["api.example.com"] == {"regions": ["weur", "enam"], "failover": "automatic"}
        assert "disasterRecovery" not in prepare
        assert WranglerConfig(str(tmp_path / "api.example.com" / "wrangler.toml")).list_backups() == []

    def test_unknown_compliance_level(self):
        portfolio = PortfolioStrategy([], DomainFanOut(lambda descriptor: None))

        with pytest.raises(ConfigurationError, match="gdpr"):
            EnterpriseStrategy(portfolio, compliance_levels=["gdpr"])
