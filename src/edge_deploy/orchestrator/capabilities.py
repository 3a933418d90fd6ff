"""Capability-driven (unified) deployment.

Capabilities are a closed set of feature toggles with a static dependency
table. They are resolved entirely before the pipeline starts: enabling one
whose dependencies are off fails immediately, and the set is frozen once a
strategy has been built from it.
"""

import re
import threading
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from edge_deploy.config.wrangler import WranglerConfig
from edge_deploy.orchestrator.models import (
    DeploymentContext,
    DeploymentMode,
    DomainDescriptor,
    ExecuteOptions,
)
from edge_deploy.orchestrator.pipeline import PhaseOrchestrator
from edge_deploy.orchestrator.services import DeploymentServices
from edge_deploy.orchestrator.strategies.base import DeploymentStrategy
from edge_deploy.orchestrator.strategies.enterprise import EnterpriseStrategy
from edge_deploy.orchestrator.strategies.portfolio import DomainFanOut, PortfolioStrategy, portfolio_descriptor
from edge_deploy.orchestrator.strategies.single import SingleDomainStrategy
from edge_deploy.utils.errors import CapabilityError
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class Capability(Enum):
    """Every capability the unified orchestrator understands."""
    # Deployment
    SINGLE_DEPLOY = "single_deploy"
    MULTI_DEPLOY = "multi_deploy"
    PORTFOLIO_DEPLOY = "portfolio_deploy"
    # Validation
    BASIC_VALIDATION = "basic_validation"
    STANDARD_VALIDATION = "standard_validation"
    COMPREHENSIVE_VALIDATION = "comprehensive_validation"
    # Testing
    HEALTH_CHECK = "health_check"
    ENDPOINT_TESTING = "endpoint_testing"
    INTEGRATION_TESTING = "integration_testing"
    PRODUCTION_TESTING = "production_testing"
    # Database
    DB_MIGRATION = "db_migration"
    D1_MANAGEMENT = "d1_management"
    MULTI_REGION_DB = "multi_region_db"
    # Secrets
    SECRET_GENERATION = "secret_generation"
    SECRET_COORDINATION = "secret_coordination"
    SECRET_DISTRIBUTION = "secret_distribution"
    # Enterprise
    HA_SETUP = "ha_setup"
    DISASTER_RECOVERY = "disaster_recovery"
    COMPLIANCE_CHECK = "compliance_check"
    AUDIT_LOGGING = "audit_logging"
    # Cleanup and recovery
    DEPLOYMENT_CLEANUP = "deployment_cleanup"
    ROLLBACK = "rollback"

    @classmethod
    def parse(cls, name: Union[str, "Capability"]) -> "Capability":
        """Accept ``single_deploy``, ``singleDeploy`` or ``single-deploy``.

        Raises:
            CapabilityError: If the name is unknown
        """
        if isinstance(name, cls):
            return name
        key = re.sub(r"(?<!^)(?=[A-Z])", "_", str(name).strip()).replace("-", "_").lower()
        key = CAPABILITY_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise CapabilityError(
                f"Unknown capability: {name}",
                suggestions=[f"Known capabilities: {', '.join(c.value for c in cls)}"],
            ) from None


CAPABILITY_ALIASES = {
    "high_availability": "ha_setup",
}

DESCRIPTIONS = {
    Capability.SINGLE_DEPLOY: "Single domain deployment",
    Capability.MULTI_DEPLOY: "Parallel deployment of several domains",
    Capability.PORTFOLIO_DEPLOY: "Portfolio deployment honouring domain dependencies",
    Capability.BASIC_VALIDATION: "Domain, credential and configuration checks",
    Capability.STANDARD_VALIDATION: "Worker entry point and compatibility checks",
    Capability.COMPREHENSIVE_VALIDATION: "Account verification and security checks",
    Capability.HEALTH_CHECK: "Health endpoint polling after deploy",
    Capability.ENDPOINT_TESTING: "Custom hostname check after deploy",
    Capability.INTEGRATION_TESTING: "Re-check every domain once the whole set is live",
    Capability.PRODUCTION_TESTING: "Full post-deploy testing suite",
    Capability.DB_MIGRATION: "Apply pending database migrations",
    Capability.D1_MANAGEMENT: "Create the domain database when missing",
    Capability.MULTI_REGION_DB: "Plan database replicas per region",
    Capability.SECRET_GENERATION: "Obtain secret values from the configured secret source",
    Capability.SECRET_COORDINATION: "Require the same secret names across domains",
    Capability.SECRET_DISTRIBUTION: "Upload secrets to the platform",
    Capability.HA_SETUP: "High availability planning",
    Capability.DISASTER_RECOVERY: "Configuration snapshots before deploy",
    Capability.COMPLIANCE_CHECK: "Compliance verification (SOX, HIPAA, PCI)",
    Capability.AUDIT_LOGGING: "Audit record per deployed domain",
    Capability.DEPLOYMENT_CLEANUP: "Prune old configuration backups after success",
    Capability.ROLLBACK: "Unwind side effects on failure",
}

DEPENDENCIES: Dict[Capability, frozenset] = {
    Capability.SINGLE_DEPLOY: frozenset(),
    Capability.MULTI_DEPLOY: frozenset({Capability.SINGLE_DEPLOY}),
    Capability.PORTFOLIO_DEPLOY: frozenset({Capability.MULTI_DEPLOY}),
    Capability.BASIC_VALIDATION: frozenset(),
    Capability.STANDARD_VALIDATION: frozenset({Capability.BASIC_VALIDATION}),
    Capability.COMPREHENSIVE_VALIDATION: frozenset({Capability.STANDARD_VALIDATION}),
    Capability.HEALTH_CHECK: frozenset(),
    Capability.ENDPOINT_TESTING: frozenset({Capability.HEALTH_CHECK}),
    Capability.INTEGRATION_TESTING: frozenset({Capability.HEALTH_CHECK}),
    Capability.PRODUCTION_TESTING: frozenset({
        Capability.HEALTH_CHECK, Capability.ENDPOINT_TESTING, Capability.INTEGRATION_TESTING,
    }),
    Capability.DB_MIGRATION: frozenset(),
    Capability.D1_MANAGEMENT: frozenset(),
    Capability.MULTI_REGION_DB: frozenset({Capability.D1_MANAGEMENT}),
    Capability.SECRET_GENERATION: frozenset({Capability.SECRET_DISTRIBUTION}),
    Capability.SECRET_COORDINATION: frozenset({Capability.SECRET_DISTRIBUTION, Capability.MULTI_DEPLOY}),
    Capability.SECRET_DISTRIBUTION: frozenset(),
    Capability.HA_SETUP: frozenset({Capability.SINGLE_DEPLOY}),
    Capability.DISASTER_RECOVERY: frozenset({Capability.HA_SETUP, Capability.ROLLBACK}),
    Capability.COMPLIANCE_CHECK: frozenset({Capability.COMPREHENSIVE_VALIDATION, Capability.AUDIT_LOGGING}),
    Capability.AUDIT_LOGGING: frozenset(),
    Capability.DEPLOYMENT_CLEANUP: frozenset(),
    Capability.ROLLBACK: frozenset(),
}

MODE_RECOMMENDATIONS: Dict[DeploymentMode, List[Capability]] = {
    DeploymentMode.SINGLE: [
        Capability.SINGLE_DEPLOY,
        Capability.STANDARD_VALIDATION,
        Capability.HEALTH_CHECK,
        Capability.DB_MIGRATION,
        Capability.D1_MANAGEMENT,
        Capability.SECRET_DISTRIBUTION,
        Capability.AUDIT_LOGGING,
        Capability.ROLLBACK,
    ],
    DeploymentMode.PORTFOLIO: [
        Capability.MULTI_DEPLOY,
        Capability.PORTFOLIO_DEPLOY,
        Capability.COMPREHENSIVE_VALIDATION,
        Capability.PRODUCTION_TESTING,
        Capability.DB_MIGRATION,
        Capability.D1_MANAGEMENT,
        Capability.SECRET_DISTRIBUTION,
        Capability.SECRET_COORDINATION,
        Capability.AUDIT_LOGGING,
        Capability.ROLLBACK,
    ],
    DeploymentMode.ENTERPRISE: [
        Capability.PORTFOLIO_DEPLOY,
        Capability.COMPREHENSIVE_VALIDATION,
        Capability.PRODUCTION_TESTING,
        Capability.D1_MANAGEMENT,
        Capability.MULTI_REGION_DB,
        Capability.SECRET_COORDINATION,
        Capability.HA_SETUP,
        Capability.DISASTER_RECOVERY,
        Capability.COMPLIANCE_CHECK,
        Capability.AUDIT_LOGGING,
        Capability.ROLLBACK,
    ],
}
MODE_RECOMMENDATIONS[DeploymentMode.UNIFIED] = MODE_RECOMMENDATIONS[DeploymentMode.SINGLE]


def with_dependencies(capabilities: Iterable[Capability]) -> List[Capability]:
    """Expand ``capabilities`` with their transitive dependencies, dependencies first."""
    ordered: List[Capability] = []

    def visit(capability: Capability) -> None:
        if capability in ordered:
            return
        for dependency in sorted(DEPENDENCIES[capability], key=lambda c: c.value):
            visit(dependency)
        ordered.append(capability)

    for capability in capabilities:
        visit(Capability.parse(capability))
    return ordered


class CapabilitySet:
    """Enabled capabilities with dependency enforcement."""

    def __init__(self):
        self._enabled: List[Capability] = []
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def enabled(self) -> List[Capability]:
        return list(self._enabled)

    def has(self, capability: Union[str, Capability]) -> bool:
        return Capability.parse(capability) in self._enabled

    def enable(self, capability: Union[str, Capability]) -> Capability:
        """Enable one capability.

        Raises:
            CapabilityError: If the set is frozen, the name is unknown or a dependency is not enabled
        """
        capability = Capability.parse(capability)
        with self._lock:
            self._check_mutable()
            missing = sorted(dep.value for dep in DEPENDENCIES[capability] if dep not in self._enabled)
            if missing:
                raise CapabilityError(
                    f"Cannot enable '{capability.value}': requires {', '.join(missing)}",
                    suggestions=[f"Enable {', '.join(missing)} first"],
                )
            if capability not in self._enabled:
                self._enabled.append(capability)
        return capability

    def disable(self, capability: Union[str, Capability]) -> List[Capability]:
        """Disable a capability and everything that depends on it.

        Returns:
            Every capability that was turned off
        """
        capability = Capability.parse(capability)
        with self._lock:
            self._check_mutable()
            removed = []
            pending = [capability]
            while pending:
                current = pending.pop()
                if current not in self._enabled:
                    continue
                self._enabled.remove(current)
                removed.append(current)
                pending.extend(c for c in self._enabled if current in DEPENDENCIES[c])
        return removed

    def freeze(self) -> None:
        self._frozen = True

    def _check_mutable(self) -> None:
        if self._frozen:
            raise CapabilityError("Capabilities are frozen once a deployment has started")


class UnifiedStrategy(DeploymentStrategy):
    """Strategy whose phase behavior follows the enabled capabilities.

    Sub-strategies are configured from the capability set when the strategy
    is built; the hooks only pick which of them runs.
    """

    mode = DeploymentMode.UNIFIED

    def __init__(
        self,
        capabilities: CapabilitySet,
        single: SingleDomainStrategy,
        fanout: Optional[DeploymentStrategy] = None,
        cleanup_keep: int = 5
    ):
        self.capabilities = capabilities
        self.single = single
        self.fanout = fanout
        self.cleanup_keep = cleanup_keep
        self.supports_binding_recovery = fanout is None
        self.logger = get_logger(__name__)

    def has_capability(self, capability: Union[str, Capability]) -> bool:
        return self.capabilities.has(capability)

    def on_initialize(self, ctx: DeploymentContext) -> Dict[str, Any]:
        data = self._target().on_initialize(ctx)
        data["capabilities"] = [capability.value for capability in self.capabilities.enabled]
        return data

    def on_validation(self, ctx: DeploymentContext) -> Dict[str, Any]:
        return self._target().on_validation(ctx)

    def on_prepare(self, ctx: DeploymentContext) -> Dict[str, Any]:
        return self._target().on_prepare(ctx)

    def on_deploy(self, ctx: DeploymentContext) -> Dict[str, Any]:
        if self.fanout is not None:
            return self.fanout.on_deploy(ctx)
        if self.has_capability(Capability.SINGLE_DEPLOY):
            return self.single.on_deploy(ctx)
        raise CapabilityError("No deployment capability is enabled")

    def on_verify(self, ctx: DeploymentContext) -> Dict[str, Any]:
        testing = (
            Capability.HEALTH_CHECK,
            Capability.ENDPOINT_TESTING,
            Capability.INTEGRATION_TESTING,
            Capability.PRODUCTION_TESTING,
        )
        if not any(self.has_capability(capability) for capability in testing):
            return {"verification": "disabled"}
        return self._target().on_verify(ctx)

    def on_monitor(self, ctx: DeploymentContext) -> Dict[str, Any]:
        data = self._target().on_monitor(ctx)
        data["audit"] = "enabled" if self.has_capability(Capability.AUDIT_LOGGING) else "disabled"

        if self.has_capability(Capability.DEPLOYMENT_CLEANUP):
            cleaned = {}
            for descriptor in self._descriptors(ctx):
                if descriptor.config_path and WranglerConfig(descriptor.config_path).exists():
                    removed = WranglerConfig(descriptor.config_path).prune_backups(self.cleanup_keep)
                    cleaned[descriptor.name] = len(removed)
            data["cleanup"] = cleaned
        return data

    def child_orchestrators(self) -> List[PhaseOrchestrator]:
        return self.fanout.child_orchestrators() if self.fanout is not None else []

    def _target(self) -> DeploymentStrategy:
        return self.fanout if self.fanout is not None else self.single

    def _descriptors(self, ctx: DeploymentContext) -> List[DomainDescriptor]:
        if self.fanout is not None:
            return self.fanout.descriptors
        return [ctx.config]


class CapabilityOrchestrator:
    """Runtime-configurable orchestrator driven by named capabilities."""

    def __init__(
        self,
        services: DeploymentServices,
        mode: DeploymentMode = DeploymentMode.UNIFIED,
        capabilities: Iterable[Union[str, Capability]] = (),
        auto_configure: bool = True
    ):
        """Initialize capability orchestrator.

        Args:
            services: Shared deployment collaborators
            mode: Deployment mode whose recommended capabilities are enabled
            capabilities: Additional capabilities, enabled in the given order
            auto_configure: Enable the mode's recommended capabilities
        """
        self.services = services
        self.mode = mode
        self.capabilities = CapabilitySet()
        self.strategy: Optional[UnifiedStrategy] = None
        self.orchestrator: Optional[PhaseOrchestrator] = None
        self.logger = get_logger(__name__)

        self.set_deployment_mode(mode, auto_configure)
        for capability in capabilities:
            self.enable_capability(capability)

    def enable_capability(self, name: Union[str, Capability]) -> "CapabilityOrchestrator":
        """Enable a capability whose dependencies are already enabled.

        Raises:
            CapabilityError: If a dependency is missing or execution has started
        """
        capability = self.capabilities.enable(name)
        self.logger.debug(f"Capability enabled: {capability.value}")
        return self

    def disable_capability(self, name: Union[str, Capability]) -> List[Capability]:
        """Disable a capability and its dependents."""
        removed = self.capabilities.disable(name)
        if len(removed) > 1:
            self.logger.info(f"Disabled {', '.join(c.value for c in removed)}")
        return removed

    def has_capability(self, name: Union[str, Capability]) -> bool:
        return self.capabilities.has(name)

    def enabled_capabilities(self) -> List[str]:
        return [capability.value for capability in self.capabilities.enabled]

    def set_deployment_mode(self, mode: DeploymentMode, auto_configure: bool = True) -> "CapabilityOrchestrator":
        """Switch mode and, optionally, enable its recommended capabilities.

        Recommended capabilities are enabled together with their dependencies.
        """
        self.mode = mode
        if auto_configure:
            for capability in with_dependencies(MODE_RECOMMENDATIONS[mode]):
                self.capabilities.enable(capability)
        return self

    def apply_overrides(self, overrides: Mapping[str, bool]) -> "CapabilityOrchestrator":
        """Apply ``{capability: enabled}`` overrides; enables run before disables."""
        to_enable = [name for name, enabled in overrides.items() if enabled]
        to_disable = [name for name, enabled in overrides.items() if not enabled]
        for capability in with_dependencies(to_enable):
            self.capabilities.enable(capability)
        for capability in to_disable:
            self.disable_capability(capability)
        return self

    def get_capability_report(self) -> Dict[str, Any]:
        """Describe every capability and whether it is enabled."""
        recommended = set(MODE_RECOMMENDATIONS[self.mode])
        return {
            "timestamp": datetime.utcnow().isoformat(),
            "mode": self.mode.value,
            "frozen": self.capabilities.frozen,
            "totalAvailable": len(Capability),
            "totalEnabled": len(self.capabilities.enabled),
            "capabilities": {
                capability.value: {
                    "enabled": self.capabilities.has(capability),
                    "description": DESCRIPTIONS[capability],
                    "dependsOn": sorted(dep.value for dep in DEPENDENCIES[capability]),
                    "recommended": capability in recommended,
                }
                for capability in Capability
            },
        }

    def build_strategy(
        self,
        descriptors: Sequence[DomainDescriptor],
        dry_run: bool = False,
        fail_fast: bool = False,
        dependencies: Optional[Mapping[str, Sequence[str]]] = None,
        compliance_levels: Sequence[str] = (),
        child_options: Optional[ExecuteOptions] = None,
        variables: Optional[Dict[str, str]] = None
    ) -> UnifiedStrategy:
        """Resolve the capability set into a strategy and freeze it.

        Raises:
            CapabilityError: If the enabled capabilities cannot deploy ``descriptors``
        """
        has = self.capabilities.has
        if not (has(Capability.SINGLE_DEPLOY) or has(Capability.MULTI_DEPLOY)):
            raise CapabilityError("No deployment capability is enabled")
        if len(descriptors) > 1 and not has(Capability.MULTI_DEPLOY):
            raise CapabilityError(
                f"{len(descriptors)} domains requested but multi_deploy is not enabled",
                suggestions=["Enable multi_deploy or deploy one domain at a time"],
            )
        self.capabilities.freeze()

        services = self.services
        settings = services.settings
        single = SingleDomainStrategy(
            wrangler=services.wrangler,
            health_checker=services.health_checker if has(Capability.HEALTH_CHECK) else None,
            dry_run=dry_run,
            run_migrations=has(Capability.DB_MIGRATION),
            variables=variables,
            manage_databases=has(Capability.D1_MANAGEMENT),
            distribute_secrets=has(Capability.SECRET_DISTRIBUTION),
            secret_source=services.secret_source if has(Capability.SECRET_GENERATION) else None,
            validation_level=self._validation_level(),
            check_hostname=has(Capability.ENDPOINT_TESTING),
        )

        enterprise_features = (
            Capability.COMPLIANCE_CHECK,
            Capability.HA_SETUP,
            Capability.DISASTER_RECOVERY,
            Capability.MULTI_REGION_DB,
        )
        wants_enterprise = any(has(capability) for capability in enterprise_features)
        fanout = None
        if len(descriptors) > 1 or has(Capability.PORTFOLIO_DEPLOY) or wants_enterprise:
            fanout = PortfolioStrategy(
                descriptors=descriptors,
                fanout=DomainFanOut(
                    pipeline_factory=lambda descriptor: services.orchestrator(single, descriptor),
                    max_parallel=settings.portfolio.max_parallel,
                    fail_fast=fail_fast or settings.portfolio.fail_fast,
                    dependencies=dependencies if has(Capability.PORTFOLIO_DEPLOY) else None,
                    batch_pause=settings.portfolio.batch_pause_ms / 1000.0,
                    child_options=child_options,
                    sleep=services.sleep,
                ),
                health_checker=services.health_checker if has(Capability.INTEGRATION_TESTING) else None,
                require_shared_secrets=has(Capability.SECRET_COORDINATION),
            )
            if wants_enterprise:
                fanout = EnterpriseStrategy(
                    portfolio=fanout,
                    settings=settings.enterprise,
                    compliance_levels=compliance_levels,
                    audit_enabled=has(Capability.AUDIT_LOGGING) and settings.audit.enabled,
                    dry_run=dry_run,
                    run_compliance=has(Capability.COMPLIANCE_CHECK),
                    run_security=has(Capability.COMPREHENSIVE_VALIDATION),
                    high_availability=has(Capability.HA_SETUP),
                    disaster_recovery=has(Capability.DISASTER_RECOVERY),
                    multi_region_databases=has(Capability.MULTI_REGION_DB),
                )

        self.strategy = UnifiedStrategy(self.capabilities, single, fanout)
        self.logger.info(
            f"Unified strategy built with {len(self.capabilities.enabled)} capabilities "
            f"({'fan-out' if fanout is not None else 'single domain'})"
        )
        return self.strategy

    def execute(
        self,
        descriptors: Sequence[DomainDescriptor],
        options: Optional[ExecuteOptions] = None,
        deployment_id: Optional[str] = None,
        **build_args
    ) -> DeploymentContext:
        """Build the strategy from the current capabilities and run the pipeline.

        Capabilities cannot change after this call.

        Returns:
            The parent run's DeploymentContext
        """
        options = replace(options or ExecuteOptions(), rollback_on_failure=self.has_capability(Capability.ROLLBACK))
        strategy = self.build_strategy(descriptors, child_options=options, **build_args)

        if strategy.fanout is not None:
            parent = portfolio_descriptor(descriptors, descriptors[0].environment)
        else:
            parent = descriptors[0]
        self.orchestrator = self.services.orchestrator(strategy, parent, deployment_id)
        return self.orchestrator.execute(options)

    def _validation_level(self) -> str:
        for capability, level in (
            (Capability.COMPREHENSIVE_VALIDATION, "comprehensive"),
            (Capability.STANDARD_VALIDATION, "standard"),
            (Capability.BASIC_VALIDATION, "basic"),
        ):
            if self.capabilities.has(capability):
                return level
        return "none"
