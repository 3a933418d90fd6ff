"""Enterprise deployment: compliance and security gates, HA/DR planning, then portfolio fan-out."""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from edge_deploy.config.models import EnterpriseSettings
from edge_deploy.config.wrangler import WranglerConfig
from edge_deploy.orchestrator.models import DeploymentContext, DeploymentMode, DomainDescriptor
from edge_deploy.orchestrator.resolver import DOMAIN_PATTERN
from edge_deploy.orchestrator.strategies.base import DeploymentStrategy
from edge_deploy.orchestrator.strategies.portfolio import PortfolioStrategy
from edge_deploy.utils.errors import ConfigurationError, ValidationError
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)

SECRET_NAME_PATTERN = re.compile(r"TOKEN|SECRET|PASSWORD|PRIVATE|API_KEY|CREDENTIAL", re.IGNORECASE)


@dataclass
class CheckInput:
    """Everything a compliance or security check may look at for one domain."""

    descriptor: DomainDescriptor
    document: Dict[str, Any]
    routes: List[str]
    audit_enabled: bool
    dry_run: bool


@dataclass
class CheckResult:
    """Outcome of one check for one domain."""

    group: str
    name: str
    domain: str
    passed: bool
    message: str = ""
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        status = "skipped" if self.skipped else ("passed" if self.passed else "failed")
        return {"group": self.group, "check": self.name, "status": status, "message": self.message}


# Returns None when the check passes, otherwise the failure message
Check = Callable[[CheckInput], Optional[str]]


def _audit_trail(data: CheckInput) -> Optional[str]:
    return None if data.audit_enabled else "audit trail is disabled in settings"


def _attributable_account(data: CheckInput) -> Optional[str]:
    return None if data.descriptor.account_id else "no account id; deployment cannot be attributed"


def _declared_worker(data: CheckInput) -> Optional[str]:
    return None if data.document.get("name") else "wrangler.toml does not declare a worker name"


def _no_plaintext_secrets(data: CheckInput) -> Optional[str]:
    variables = data.document.get("vars") or {}
    leaked = sorted(name for name in variables if SECRET_NAME_PATTERN.search(str(name)))
    if leaked:
        return f"secret-like values stored as plain [vars]: {', '.join(leaked)}"
    return None


def _api_token(data: CheckInput) -> Optional[str]:
    return None if data.descriptor.api_token else "no API token configured"


def _routes_declared(data: CheckInput) -> Optional[str]:
    return None if data.routes else "no routes declared; worker would only be reachable on the shared workers.dev zone"


def _valid_hostname(data: CheckInput) -> Optional[str]:
    if DOMAIN_PATTERN.match(data.descriptor.hostname):
        return None
    return f"hostname {data.descriptor.hostname} cannot carry a TLS certificate"


def _compatibility_date(data: CheckInput) -> Optional[str]:
    return None if data.document.get("compatibility_date") else "compatibility_date is not pinned"


COMPLIANCE_CHECKS: Dict[str, List[Tuple[str, Check]]] = {
    "sox": [
        ("financial-controls", _attributable_account),
        ("audit-trail", _audit_trail),
        ("change-management", _declared_worker),
    ],
    "hipaa": [
        ("phi-protection", _no_plaintext_secrets),
        ("access-controls", _api_token),
        ("audit-logging", _audit_trail),
    ],
    "pci": [
        ("payment-data-security", _no_plaintext_secrets),
        ("network-segmentation", _routes_declared),
    ],
}

SECURITY_CHECKS: List[Tuple[str, Check]] = [
    ("authentication", _api_token),
    ("authorization", _attributable_account),
    ("encryption", _no_plaintext_secrets),
    ("tls-certificate", _valid_hostname),
    ("api-security", _compatibility_date),
]

# Credentials are not required for dry runs
CREDENTIAL_CHECKS = {_api_token, _attributable_account}


class EnterpriseStrategy(DeploymentStrategy):
    """Portfolio deployment gated by compliance and security checks.

    Validation runs the configured compliance frameworks (``sox``, ``hipaa``,
    ``pci``) and the security checks for every domain and fails with all
    findings at once. Prepare records the high-availability plan and, for
    disaster recovery, snapshots each domain's wrangler.toml. Deploy, verify
    and monitor are delegated to the wrapped ``PortfolioStrategy``.
    """

    mode = DeploymentMode.ENTERPRISE
    supports_binding_recovery = False

    def __init__(
        self,
        portfolio: PortfolioStrategy,
        settings: Optional[EnterpriseSettings] = None,
        compliance_levels: Sequence[str] = (),
        audit_enabled: bool = True,
        dry_run: bool = False,
        run_compliance: bool = True,
        run_security: bool = True,
        high_availability: Optional[bool] = None,
        disaster_recovery: Optional[bool] = None,
        multi_region_databases: bool = False
    ):
        """Initialize strategy.

        Args:
            portfolio: Strategy running the per-domain fan-out
            settings: Enterprise settings (compliance levels, regions, HA/DR defaults)
            compliance_levels: Frameworks requested for this deployment, added to the settings
            audit_enabled: Whether the audit trail is written
            dry_run: Credential checks are skipped for dry runs
            run_compliance: Run the compliance checks
            run_security: Run the security checks
            high_availability: Plan multi-region failover (settings default when None)
            disaster_recovery: Snapshot configuration before deploy (settings default when None)
            multi_region_databases: Plan one database replica per region
        """
        self.portfolio = portfolio
        self.settings = settings or EnterpriseSettings()
        levels = list(self.settings.compliance_levels)
        for level in compliance_levels:
            if level.lower() not in levels:
                levels.append(level.lower())
        unknown = [level for level in levels if level not in COMPLIANCE_CHECKS]
        if unknown:
            raise ConfigurationError(f"Unknown compliance level(s): {', '.join(unknown)}")
        self.compliance_levels = levels
        self.audit_enabled = audit_enabled
        self.dry_run = dry_run
        self.run_compliance = run_compliance
        self.run_security = run_security
        self.high_availability = self.settings.high_availability if high_availability is None else high_availability
        self.disaster_recovery = self.settings.disaster_recovery if disaster_recovery is None else disaster_recovery
        self.multi_region_databases = multi_region_databases
        self.logger = get_logger(__name__)

    @property
    def descriptors(self) -> List[DomainDescriptor]:
        return self.portfolio.descriptors

    def on_initialize(self, ctx: DeploymentContext) -> Dict[str, Any]:
        data = self.portfolio.on_initialize(ctx)
        data.update({
            "complianceLevels": self.compliance_levels,
            "highAvailability": self.high_availability,
            "disasterRecovery": self.disaster_recovery,
            "regions": list(self.settings.regions),
        })
        return data

    def on_validation(self, ctx: DeploymentContext) -> Dict[str, Any]:
        data = self.portfolio.on_validation(ctx)
        inputs = [self._check_input(descriptor) for descriptor in self.descriptors]

        results: List[CheckResult] = []
        if self.run_compliance:
            for level in self.compliance_levels:
                results.extend(self._run_checks(level, COMPLIANCE_CHECKS[level], inputs))
        if self.run_security:
            results.extend(self._run_checks("security", SECURITY_CHECKS, inputs))

        failures = [result for result in results if not result.passed and not result.skipped]
        if failures:
            raise ValidationError(
                f"{len(failures)} enterprise check(s) failed",
                suggestions=[f"{f.domain}: {f.group}/{f.name}: {f.message}" for f in failures],
                details={"checks": self._by_domain(results)},
            )

        data["checks"] = self._by_domain(results)
        data["complianceLevels"] = self.compliance_levels
        return data

    def on_prepare(self, ctx: DeploymentContext) -> Dict[str, Any]:
        data = self.portfolio.on_prepare(ctx)
        regions = list(self.settings.regions)

        if self.high_availability:
            data["highAvailability"] = {
                descriptor.name: {
                    "regions": regions,
                    "failover": "automatic" if len(regions) > 1 else "none",
                }
                for descriptor in self.descriptors
            }

        if self.multi_region_databases:
            data["databases"] = {
                descriptor.name: {
                    "primary": descriptor.database_name,
                    "replicas": [f"{descriptor.database_name}-{region}" for region in regions[1:]],
                }
                for descriptor in self.descriptors
            }

        if self.disaster_recovery:
            snapshots = {}
            for descriptor in self.descriptors:
                ctx.check_cancelled()
                if not descriptor.config_path:
                    continue
                wrangler_config = WranglerConfig(descriptor.config_path)
                if not wrangler_config.exists():
                    continue
                with wrangler_config:
                    snapshots[descriptor.name] = str(wrangler_config.backup())
            data["disasterRecovery"] = {"snapshots": snapshots}
            self.logger.info(
                f"Disaster recovery snapshots taken for {len(snapshots)} domain(s)",
                extra={'deployment_id': ctx.deployment_id, 'phase': 'prepare'},
            )
        return data

    def on_deploy(self, ctx: DeploymentContext) -> Dict[str, Any]:
        return self.portfolio.on_deploy(ctx)

    def on_verify(self, ctx: DeploymentContext) -> Dict[str, Any]:
        return self.portfolio.on_verify(ctx)

    def on_monitor(self, ctx: DeploymentContext) -> Dict[str, Any]:
        data = self.portfolio.on_monitor(ctx)
        data["enterprise"] = {
            "complianceLevels": self.compliance_levels,
            "highAvailability": self.high_availability,
            "disasterRecovery": self.disaster_recovery,
        }
        return data

    def child_orchestrators(self):
        return self.portfolio.child_orchestrators()

    def _check_input(self, descriptor: DomainDescriptor) -> CheckInput:
        document: Dict[str, Any] = {}
        routes: List[str] = []
        if descriptor.config_path:
            wrangler_config = WranglerConfig(descriptor.config_path)
            if wrangler_config.exists():
                document = wrangler_config.load().unwrap()
                routes = wrangler_config.routes()
        return CheckInput(
            descriptor=descriptor,
            document=document,
            routes=routes,
            audit_enabled=self.audit_enabled,
            dry_run=self.dry_run,
        )

    def _run_checks(self, group: str, checks: List[Tuple[str, Check]], inputs: List[CheckInput]) -> List[CheckResult]:
        results = []
        for data in inputs:
            for name, check in checks:
                if data.dry_run and check in CREDENTIAL_CHECKS:
                    results.append(CheckResult(group, name, data.descriptor.name, True, "dry run", skipped=True))
                    continue
                message = check(data)
                results.append(CheckResult(group, name, data.descriptor.name, message is None, message or ""))
        passed = sum(1 for result in results if result.passed)
        self.logger.info(f"{group} checks: {passed}/{len(results)} passed")
        return results

    @staticmethod
    def _by_domain(results: List[CheckResult]) -> Dict[str, List[Dict[str, Any]]]:
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for result in results:
            grouped.setdefault(result.domain, []).append(result.to_dict())
        return grouped
