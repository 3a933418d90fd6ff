"""Multi-domain deployment: per-domain pipelines fanned out over a thread pool."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from edge_deploy.orchestrator.dependency_graph import DomainDependencyGraph
from edge_deploy.orchestrator.models import (
    AnyEvent,
    DeploymentContext,
    DeploymentMode,
    DomainDescriptor,
    Environment,
    ExecuteOptions,
    FinalStatus,
    Phase,
)
from edge_deploy.orchestrator.pipeline import PhaseOrchestrator
from edge_deploy.orchestrator.resolver import DOMAIN_PATTERN
from edge_deploy.orchestrator.strategies.base import DeploymentStrategy
from edge_deploy.platform.health import HealthChecker
from edge_deploy.utils.errors import CancelledError, DeploymentError, ValidationError
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)

PipelineFactory = Callable[[DomainDescriptor], PhaseOrchestrator]


@dataclass
class DomainOutcome:
    """What happened to one domain of a fan-out."""

    domain: str
    status: str  # a FinalStatus value, or "skipped" when the pipeline never ran
    orchestrator: Optional[PhaseOrchestrator] = None
    reason: Optional[str] = None

    @property
    def context(self) -> Optional[DeploymentContext]:
        return self.orchestrator.context if self.orchestrator is not None else None

    @property
    def succeeded(self) -> bool:
        return self.status == FinalStatus.SUCCEEDED.value

    def to_dict(self) -> Dict[str, Any]:
        ctx = self.context
        data: Dict[str, Any] = {"status": self.status}
        if self.reason:
            data["reason"] = self.reason
        if ctx is None or not ctx.phase_results:
            return data

        deploy = ctx.phase_results.get(Phase.DEPLOY)
        data.update({
            "deploymentId": ctx.deployment_id,
            "failedPhase": ctx.failed_phase.value if ctx.failed_phase else None,
            "errorKind": ctx.last_error.kind.value if ctx.last_error else None,
            "url": deploy.data.get("url") if deploy is not None and deploy.is_success() else None,
            "rollbackPerformed": ctx.rollback_performed,
            "rollbackSucceeded": ctx.rollback_succeeded,
            "phases": ctx.phase_statuses(),
        })
        return data


@dataclass
class FanOutResult:
    """Outcomes of a fan-out, in request order."""

    outcomes: Dict[str, DomainOutcome] = field(default_factory=dict)
    waves: List[List[str]] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [name for name, outcome in self.outcomes.items() if outcome.succeeded]

    @property
    def failed(self) -> List[str]:
        return [name for name, outcome in self.outcomes.items() if not outcome.succeeded]

    def per_domain(self) -> Dict[str, Dict[str, Any]]:
        return {name: outcome.to_dict() for name, outcome in self.outcomes.items()}


class DomainFanOut:
    """Runs one full pipeline per domain on a bounded thread pool.

    Domains are grouped into waves by their dependency graph; a wave starts
    only after the previous one finished, and a domain whose dependency did
    not succeed is skipped. One domain failing does not stop its siblings
    unless ``fail_fast`` is set. Each child owns its context and rollback
    stack, so a cancelled or failed child unwinds only its own actions.
    """

    def __init__(
        self,
        pipeline_factory: PipelineFactory,
        max_parallel: int = 3,
        fail_fast: bool = False,
        dependencies: Optional[Mapping[str, Sequence[str]]] = None,
        batch_pause: float = 0.0,
        child_options: Optional[ExecuteOptions] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize fan-out.

        Args:
            pipeline_factory: Builds the child orchestrator for a domain
            max_parallel: Worker threads per wave
            fail_fast: Stop starting new domains after the first failure
            dependencies: ``{domain: [domains it waits for]}``
            batch_pause: Seconds to pause between waves
            child_options: Template for the children's execute options
            sleep: Sleep function
        """
        self.pipeline_factory = pipeline_factory
        self.max_parallel = max_parallel
        self.fail_fast = fail_fast
        self.dependencies = dict(dependencies or {})
        self.batch_pause = batch_pause
        self.child_options = child_options or ExecuteOptions()
        self.sleep = sleep
        self.logger = get_logger(__name__)

    def plan(self, descriptors: Sequence[DomainDescriptor]) -> List[List[str]]:
        """Deployment waves for ``descriptors``.

        Raises:
            ValidationError: On dependency cycles or dependencies outside the deployment
        """
        return self._graph(descriptors).get_deployment_waves()

    def run(
        self,
        descriptors: Sequence[DomainDescriptor],
        cancel_event: Optional[Any] = None,
        deadline: Optional[float] = None
    ) -> FanOutResult:
        """Deploy every domain.

        Args:
            descriptors: Resolved domains
            cancel_event: Parent cancellation signal, propagated to every child
            deadline: ``time.monotonic()`` deadline shared by all children

        Returns:
            FanOutResult with one outcome per domain
        """
        by_name = {descriptor.name: descriptor for descriptor in descriptors}
        graph = self._graph(descriptors)
        waves = graph.get_deployment_waves()
        stop_event = threading.Event()
        signal = AnyEvent(cancel_event, stop_event)
        outcomes: Dict[str, DomainOutcome] = {}

        for index, wave in enumerate(waves):
            runnable = []
            for name in wave:
                blocked = [dep for dep in graph.get_dependencies(name)
                           if dep in outcomes and not outcomes[dep].succeeded]
                if blocked:
                    outcomes[name] = DomainOutcome(name, "skipped", reason=f"dependency failed: {', '.join(blocked)}")
                elif signal.is_set() or self._past(deadline):
                    outcomes[name] = self._not_started(name, cancel_event, deadline)
                else:
                    runnable.append(name)

            if runnable:
                self.logger.info(f"Wave {index + 1}/{len(waves)}: deploying {', '.join(runnable)}")
                outcomes.update(self._run_wave(
                    [by_name[name] for name in runnable], signal, stop_event, cancel_event, deadline
                ))

            if index < len(waves) - 1 and self.batch_pause > 0 and not signal.is_set():
                self.sleep(self.batch_pause)

        ordered = {name: outcomes[name] for name in by_name}
        succeeded = sum(1 for outcome in ordered.values() if outcome.succeeded)
        self.logger.info(f"Fan-out finished: {succeeded}/{len(ordered)} domain(s) succeeded")
        return FanOutResult(outcomes=ordered, waves=waves)

    def _run_wave(
        self,
        descriptors: List[DomainDescriptor],
        signal: AnyEvent,
        stop_event: threading.Event,
        cancel_event: Optional[Any],
        deadline: Optional[float]
    ) -> Dict[str, DomainOutcome]:
        results = {}

        with ThreadPoolExecutor(max_workers=self.max_parallel) as executor:
            future_to_domain = {
                executor.submit(self._run_domain, descriptor, signal, cancel_event, deadline): descriptor.name
                for descriptor in descriptors
            }

            for future in as_completed(future_to_domain):
                domain = future_to_domain[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    self.logger.error(f"Unexpected error deploying {domain}: {str(e)}", extra={'domain': domain})
                    outcome = DomainOutcome(domain, FinalStatus.FAILED.value, reason=f"Unexpected error: {str(e)}")

                results[domain] = outcome
                if not outcome.succeeded and self.fail_fast:
                    if not stop_event.is_set():
                        self.logger.warning(f"{domain} failed; fail-fast stops remaining domains")
                    stop_event.set()

        return results

    def _run_domain(
        self,
        descriptor: DomainDescriptor,
        signal: AnyEvent,
        cancel_event: Optional[Any],
        deadline: Optional[float]
    ) -> DomainOutcome:
        if signal.is_set() or self._past(deadline):
            return self._not_started(descriptor.name, cancel_event, deadline)

        orchestrator = self.pipeline_factory(descriptor)
        template = self.child_options
        options = ExecuteOptions(
            continue_on_error=template.continue_on_error,
            skip_validation=template.skip_validation,
            skip_phases=template.skip_phases,
            timeout_seconds=max(deadline - time.monotonic(), 0.0) if deadline is not None else template.timeout_seconds,
            cancel_event=signal,
            rollback_on_failure=template.rollback_on_failure,
            retain_rollback=template.retain_rollback,
        )
        ctx = orchestrator.execute(options)
        return DomainOutcome(descriptor.name, ctx.final_status.value, orchestrator)

    def _not_started(
        self,
        name: str,
        cancel_event: Optional[Any],
        deadline: Optional[float],
        reason: Optional[str] = None
    ) -> DomainOutcome:
        if (cancel_event is not None and cancel_event.is_set()) or self._past(deadline):
            return DomainOutcome(name, FinalStatus.CANCELLED.value, reason=reason or "cancelled before start")
        return DomainOutcome(name, "skipped", reason=reason or "fail-fast")

    def _graph(self, descriptors: Sequence[DomainDescriptor]) -> DomainDependencyGraph:
        names = [descriptor.name for descriptor in descriptors]
        dependencies = {name: deps for name, deps in self.dependencies.items() if name in names}
        return DomainDependencyGraph.from_mapping(names, dependencies)

    @staticmethod
    def _past(deadline: Optional[float]) -> bool:
        return deadline is not None and time.monotonic() >= deadline


def portfolio_descriptor(descriptors: Sequence[DomainDescriptor], environment: Environment) -> DomainDescriptor:
    """Descriptor for the parent run that drives a multi-domain fan-out."""
    return DomainDescriptor(
        name=f"portfolio[{len(descriptors)}]",
        clean_name="portfolio",
        environment=environment,
        hostname=",".join(descriptor.hostname for descriptor in descriptors),
        worker_name="",
        database_name="",
        config_path=None,
    )


class PortfolioStrategy(DeploymentStrategy):
    """Deploys several domains, each through its own single-domain pipeline.

    The parent pipeline validates the set as a whole; the deploy phase runs
    the fan-out and records ``per_domain`` outcomes. Children recover and roll
    back on their own, so the parent never routes binding errors.
    """

    mode = DeploymentMode.PORTFOLIO
    supports_binding_recovery = False

    def __init__(
        self,
        descriptors: Sequence[DomainDescriptor],
        fanout: DomainFanOut,
        health_checker: Optional[HealthChecker] = None,
        require_shared_secrets: bool = False
    ):
        """Initialize strategy.

        Args:
            descriptors: Resolved domains to deploy
            fanout: Runner for the per-domain pipelines
            health_checker: Re-checks every deployed domain once the whole set is live
            require_shared_secrets: Every domain must receive the same secret names
        """
        self.descriptors = list(descriptors)
        self.fanout = fanout
        self.health_checker = health_checker
        self.require_shared_secrets = require_shared_secrets
        self.result: Optional[FanOutResult] = None
        self.logger = get_logger(__name__)

    @property
    def domains(self) -> List[str]:
        return [descriptor.name for descriptor in self.descriptors]

    def on_initialize(self, ctx: DeploymentContext) -> Dict[str, Any]:
        return {
            "domains": self.domains,
            "maxParallel": self.fanout.max_parallel,
            "failFast": self.fanout.fail_fast,
        }

    def on_validation(self, ctx: DeploymentContext) -> Dict[str, Any]:
        if not self.descriptors:
            raise ValidationError("Portfolio deployment needs at least one domain")

        invalid = [name for name in self.domains if not DOMAIN_PATTERN.match(name)]
        if invalid:
            raise ValidationError(f"Invalid domain name(s): {', '.join(invalid)}")

        waves = self.fanout.plan(self.descriptors)
        ctx.state["waves"] = waves
        return {"domains": len(self.descriptors), "waves": waves}

    def on_prepare(self, ctx: DeploymentContext) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "secrets": {descriptor.name: sorted(descriptor.secrets) for descriptor in self.descriptors},
        }
        if self.require_shared_secrets:
            expected = set(self.descriptors[0].secrets)
            mismatched = [d.name for d in self.descriptors if set(d.secrets) != expected]
            if mismatched:
                raise ValidationError(
                    f"Shared secrets differ across domains: {', '.join(mismatched)}",
                    suggestions=["Provide the same secret names for every domain in the portfolio"],
                )
            data["sharedSecrets"] = sorted(expected)
        return data

    def on_deploy(self, ctx: DeploymentContext) -> Dict[str, Any]:
        result = self.fanout.run(self.descriptors, cancel_event=ctx.cancel_event, deadline=ctx.deadline)
        self.result = result
        ctx.state["fanout"] = result
        per_domain = result.per_domain()

        if ctx.is_cancelled():
            raise CancelledError(
                f"Portfolio deployment cancelled ({len(result.succeeded)} of {len(per_domain)} domain(s) deployed)",
                details={"per_domain": per_domain},
            )
        if not result.succeeded:
            raise DeploymentError(
                f"All {len(per_domain)} domain(s) failed to deploy",
                retryable=False,
                details={"per_domain": per_domain},
            )
        if result.failed:
            ctx.partial = True
            self.logger.warning(
                f"Partial portfolio deployment: {', '.join(result.failed)} failed",
                extra={'deployment_id': ctx.deployment_id, 'phase': 'deploy'},
            )

        return {
            "per_domain": per_domain,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "waves": result.waves,
        }

    def on_verify(self, ctx: DeploymentContext) -> Dict[str, Any]:
        result = self._result(ctx)
        verified = {}
        for name, outcome in result.outcomes.items():
            child = outcome.context
            verify = child.phase_results.get(Phase.VERIFY) if child is not None else None
            verified[name] = verify.status.value if verify is not None else "not-run"

        data: Dict[str, Any] = {"per_domain": verified}
        if self.health_checker is None:
            return data

        unhealthy = []
        rechecks = {}
        for name in result.succeeded:
            url = result.outcomes[name].to_dict().get("url")
            if not url:
                continue
            check = self.health_checker.check(url)
            rechecks[name] = check.to_dict()
            if not check.healthy:
                unhealthy.append(name)
        data["integration"] = rechecks
        if unhealthy:
            raise DeploymentError(
                f"Domains unhealthy after portfolio rollout: {', '.join(unhealthy)}",
                retryable=False,
                details={"integration": rechecks},
            )
        return data

    def on_monitor(self, ctx: DeploymentContext) -> Dict[str, Any]:
        result = self._result(ctx)
        report = {
            "total": len(result.outcomes),
            "succeeded": len(result.succeeded),
            "failed": len(result.failed),
            "urls": {
                name: outcome.to_dict().get("url")
                for name, outcome in result.outcomes.items() if outcome.succeeded
            },
        }
        self.logger.info(
            f"Portfolio live: {report['succeeded']}/{report['total']} domain(s)",
            extra={'deployment_id': ctx.deployment_id, 'phase': 'monitor'},
        )
        return report

    def child_orchestrators(self) -> List[PhaseOrchestrator]:
        """Orchestrators of the domains that actually ran."""
        if self.result is None:
            return []
        return [outcome.orchestrator for outcome in self.result.outcomes.values() if outcome.orchestrator is not None]

    def _result(self, ctx: DeploymentContext) -> FanOutResult:
        result = ctx.state.get("fanout")
        if result is None:
            raise DeploymentError("Portfolio deploy phase has not run", retryable=False)
        return result
