"""Top-level entry point: request in, report out."""

import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from edge_deploy.config.models import Settings
from edge_deploy.orchestrator.audit import AuditLog, AuditRecord
from edge_deploy.orchestrator.capabilities import Capability, CapabilityOrchestrator
from edge_deploy.orchestrator.models import (
    AnyEvent,
    DeploymentContext,
    DeploymentMode,
    DeploymentRequest,
    DomainDescriptor,
    ExecuteOptions,
    FinalStatus,
    Phase,
)
from edge_deploy.orchestrator.pipeline import PhaseOrchestrator
from edge_deploy.orchestrator.resolver import DomainResolver
from edge_deploy.orchestrator.rollback import RollbackActionResult
from edge_deploy.orchestrator.services import DeploymentServices
from edge_deploy.orchestrator.strategies.base import DeploymentStrategy
from edge_deploy.orchestrator.strategies.enterprise import EnterpriseStrategy
from edge_deploy.orchestrator.strategies.portfolio import (
    DomainFanOut,
    DomainOutcome,
    PortfolioStrategy,
    portfolio_descriptor,
)
from edge_deploy.orchestrator.strategies.single import SingleDomainStrategy
from edge_deploy.utils.errors import ValidationError
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DeploymentReport:
    """Outcome of a coordinated deployment."""

    deployment_id: str
    mode: DeploymentMode
    final_status: FinalStatus
    failed_phase: Optional[Phase] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    rollback_performed: bool = False
    rollback_succeeded: Optional[bool] = None
    per_domain: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    audit_records: List[AuditRecord] = field(default_factory=list)
    context: Optional[DeploymentContext] = field(default=None, repr=False)
    orchestrator: Optional[PhaseOrchestrator] = field(default=None, repr=False)
    children: List[PhaseOrchestrator] = field(default_factory=list, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.final_status == FinalStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'deploymentId': self.deployment_id,
            'mode': self.mode.value,
            'finalStatus': self.final_status.value,
            'failedPhase': self.failed_phase.value if self.failed_phase else None,
            'errorKind': self.error_kind,
            'errorMessage': self.error_message,
            'rollbackPerformed': self.rollback_performed,
            'rollbackSucceeded': self.rollback_succeeded,
            'perDomain': self.per_domain,
            'phases': [result.to_dict() for result in self.context.phase_results.values()] if self.context else [],
        }


class DeploymentCoordinator:
    """Resolves domains, picks a mode, runs the pipeline and writes the audit trail."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        services: Optional[DeploymentServices] = None,
        resolver: Optional[DomainResolver] = None,
        audit_log: Optional[AuditLog] = None
    ):
        """
        Initialize coordinator.

        Args:
            settings: Tool settings (defaults when omitted)
            services: Shared collaborators, built from settings when omitted
            resolver: Domain resolver, built from settings when omitted
            audit_log: Audit trail, built from settings when omitted
        """
        self.settings = settings or (services.settings if services is not None else Settings())
        self.services = services or DeploymentServices.from_settings(self.settings)
        self.resolver = resolver or DomainResolver(self.settings)
        self.audit_log = audit_log or AuditLog(self.settings.audit.path, enabled=self.settings.audit.enabled)
        self._cancel_event = threading.Event()
        self.logger = get_logger(__name__)

    def cancel(self) -> None:
        """Cancel the running deployment; in-flight domains roll back their own side effects."""
        self._cancel_event.set()

    @staticmethod
    def select_mode(request: DeploymentRequest) -> DeploymentMode:
        """Explicit mode, else unified for capability overrides, enterprise for compliance, then by domain count."""
        if request.mode is not None:
            return request.mode
        if request.capability_overrides:
            return DeploymentMode.UNIFIED
        if request.compliance_levels:
            return DeploymentMode.ENTERPRISE
        if len(request.domains) > 1:
            return DeploymentMode.PORTFOLIO
        return DeploymentMode.SINGLE

    def resolve(self, request: DeploymentRequest) -> List[DomainDescriptor]:
        """
        Resolve every requested domain.

        Raises:
            ValidationError: If a domain name is invalid
            ConfigurationError: If a domain's configuration cannot be read
        """
        return [
            self.resolver.resolve(
                domain,
                request.environment,
                credentials_ref=request.credentials_ref,
                credentials=request.credentials,
                config_path=request.config_path,
                secrets=request.secrets,
            )
            for domain in request.domains
        ]

    def deploy(self, request: DeploymentRequest, options: Optional[ExecuteOptions] = None) -> DeploymentReport:
        """
        Deploy the requested domains.

        Args:
            request: Deployment request
            options: Pipeline options, applied to every domain

        Returns:
            DeploymentReport; failures are reported, not raised

        Raises:
            ValidationError: If the request cannot be resolved into deployable domains
        """
        options = options or ExecuteOptions()
        options = replace(options, cancel_event=AnyEvent(options.cancel_event, self._cancel_event))
        descriptors = self.resolve(request)
        mode = self.select_mode(request)

        self.logger.info(
            f"Deploying {len(descriptors)} domain(s) to {request.environment.value} in {mode.value} mode"
        )

        audit_enabled = self.settings.audit.enabled
        if mode == DeploymentMode.UNIFIED:
            capabilities = CapabilityOrchestrator(self.services, self._recommendation_mode(request))
            capabilities.apply_overrides(request.capability_overrides)
            ctx = capabilities.execute(
                descriptors,
                options,
                dry_run=request.dry_run,
                fail_fast=request.fail_fast,
                dependencies=self._dependencies(request),
                compliance_levels=request.compliance_levels,
            )
            orchestrator = capabilities.orchestrator
            children = capabilities.strategy.child_orchestrators()
            audit_enabled = audit_enabled and capabilities.has_capability(Capability.AUDIT_LOGGING)
        else:
            strategy = self.build_strategy(mode, request, descriptors, options)
            parent = descriptors[0] if mode == DeploymentMode.SINGLE else portfolio_descriptor(
                descriptors, request.environment
            )
            orchestrator = self.services.orchestrator(strategy, parent)
            ctx = orchestrator.execute(options)
            children = strategy.child_orchestrators()

        report = self._report(mode, ctx, orchestrator, children, descriptors)
        if audit_enabled:
            self.audit_log.append(report.audit_records)

        self.logger.info(f"Deployment {report.deployment_id}: {report.final_status.value}")
        return report

    def build_strategy(
        self,
        mode: DeploymentMode,
        request: DeploymentRequest,
        descriptors: List[DomainDescriptor],
        options: ExecuteOptions
    ) -> DeploymentStrategy:
        """
        Strategy for one of the fixed modes.

        Raises:
            ValidationError: If single mode is asked to deploy several domains
        """
        services = self.services
        single = SingleDomainStrategy(
            wrangler=services.wrangler,
            health_checker=services.health_checker,
            dry_run=request.dry_run,
            secret_source=services.secret_source,
        )
        if mode == DeploymentMode.SINGLE:
            if len(descriptors) != 1:
                raise ValidationError(
                    f"Single mode deploys exactly one domain, got {len(descriptors)}",
                    suggestions=["Use --mode portfolio for several domains"],
                )
            return single

        portfolio_settings = self.settings.portfolio
        portfolio = PortfolioStrategy(
            descriptors=descriptors,
            fanout=DomainFanOut(
                pipeline_factory=lambda descriptor: services.orchestrator(single, descriptor),
                max_parallel=portfolio_settings.max_parallel,
                fail_fast=request.fail_fast or portfolio_settings.fail_fast,
                dependencies=self._dependencies(request),
                batch_pause=portfolio_settings.batch_pause_ms / 1000.0,
                child_options=options,
                sleep=services.sleep,
            ),
        )
        if mode == DeploymentMode.PORTFOLIO:
            return portfolio

        return EnterpriseStrategy(
            portfolio=portfolio,
            settings=self.settings.enterprise,
            compliance_levels=request.compliance_levels,
            audit_enabled=self.settings.audit.enabled,
            dry_run=request.dry_run,
        )

    def rollback(self, report: DeploymentReport) -> List[RollbackActionResult]:
        """
        Unwind the actions a finished deployment retained.

        Only deployments run with ``retain_rollback`` (or left in place by a
        disabled rollback) still hold actions; calling this twice is harmless.

        Returns:
            Results of every undo attempted
        """
        orchestrators = list(report.children)
        if report.orchestrator is not None:
            orchestrators.append(report.orchestrator)

        results: List[RollbackActionResult] = []
        for orchestrator in orchestrators:
            results.extend(orchestrator.rollback())

        report.rollback_performed = True
        report.rollback_succeeded = all(result.succeeded for result in results)
        self.logger.info(
            f"Explicit rollback of {report.deployment_id}: {len(results)} action(s), "
            f"{'all succeeded' if report.rollback_succeeded else 'some failed'}"
        )
        return results

    def _recommendation_mode(self, request: DeploymentRequest) -> DeploymentMode:
        if request.compliance_levels:
            return DeploymentMode.ENTERPRISE
        if len(request.domains) > 1:
            return DeploymentMode.PORTFOLIO
        return DeploymentMode.SINGLE

    def _dependencies(self, request: DeploymentRequest) -> Dict[str, List[str]]:
        dependencies = {domain.name: list(domain.depends_on) for domain in self.settings.domains if domain.depends_on}
        dependencies.update(request.dependencies)
        return dependencies

    def _report(
        self,
        mode: DeploymentMode,
        ctx: DeploymentContext,
        orchestrator: PhaseOrchestrator,
        children: List[PhaseOrchestrator],
        descriptors: List[DomainDescriptor]
    ) -> DeploymentReport:
        fanout = ctx.state.get("fanout")
        per_domain: Dict[str, Dict[str, Any]] = {}
        records: List[AuditRecord] = []

        for descriptor in descriptors:
            outcome = fanout.outcomes.get(descriptor.name) if fanout is not None else None
            if outcome is None:
                outcome = DomainOutcome(descriptor.name, ctx.final_status.value, orchestrator)
            per_domain[descriptor.name] = outcome.to_dict()

            if outcome.context is not None:
                records.append(AuditRecord.from_context(outcome.context, descriptor.name))
            else:
                records.append(AuditRecord(
                    deployment_id=ctx.deployment_id,
                    domain=descriptor.name,
                    phases=[],
                    final_status=outcome.status,
                    duration_ms=0,
                    rollback_performed=False,
                ))

        rollback_performed = ctx.rollback_performed or any(c.context.rollback_performed for c in children)
        rollback_results = list(ctx.rollback_results)
        for child in children:
            rollback_results.extend(child.context.rollback_results)

        error = ctx.last_error
        return DeploymentReport(
            deployment_id=ctx.deployment_id,
            mode=mode,
            final_status=ctx.final_status,
            failed_phase=ctx.failed_phase,
            error_kind=error.kind.value if error else None,
            error_message=error.message if error else None,
            rollback_performed=rollback_performed,
            rollback_succeeded=all(r.succeeded for r in rollback_results) if rollback_performed else None,
            per_domain=per_domain,
            audit_records=records,
            context=ctx,
            orchestrator=orchestrator,
            children=children,
        )
