"""Collaborators shared by every pipeline of a deployment."""

import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import requests

from edge_deploy.config.models import Settings
from edge_deploy.orchestrator.binding_recovery import BindingErrorRecovery, DatabaseSelector
from edge_deploy.orchestrator.models import DomainDescriptor
from edge_deploy.orchestrator.pipeline import PhaseListener, PhaseOrchestrator
from edge_deploy.orchestrator.strategies.base import DeploymentStrategy
from edge_deploy.orchestrator.strategies.single import SecretSource
from edge_deploy.platform.health import HealthChecker
from edge_deploy.platform.runner import CommandRunner
from edge_deploy.platform.wrangler import WranglerClient
from edge_deploy.utils.errors import ErrorClassifier
from edge_deploy.utils.retry import CircuitBreaker, RetryPolicy


@dataclass
class DeploymentServices:
    """Platform client, health checker, recovery and retry state for one deployment.

    The retry policy (and its circuit breaker) is shared by all domains of a
    deployment, so repeated platform failures in one domain also stop the
    others from hammering the API.
    """

    settings: Settings
    wrangler: WranglerClient
    health_checker: Optional[HealthChecker] = None
    binding_recovery: Optional[BindingErrorRecovery] = None
    classifier: ErrorClassifier = field(default_factory=ErrorClassifier)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    listeners: List[PhaseListener] = field(default_factory=list)
    sleep: Callable[[float], None] = time.sleep
    secret_source: Optional[SecretSource] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        runner: Optional[CommandRunner] = None,
        http_session: Optional[requests.Session] = None,
        selector: Optional[DatabaseSelector] = None,
        listeners: Sequence[PhaseListener] = (),
        sleep: Callable[[float], None] = time.sleep,
        secret_source: Optional[SecretSource] = None
    ) -> "DeploymentServices":
        """Build services from settings.

        Args:
            settings: Tool settings
            runner: Command runner for the platform CLI (subprocess by default)
            http_session: requests session for health checks
            selector: Picks a database when binding recovery finds several candidates
            listeners: Pipeline observers
            sleep: Sleep function for backoff, health polling and wave pauses
            secret_source: Supplies secret values per domain

        Returns:
            DeploymentServices
        """
        platform = settings.platform
        wrangler = WranglerClient(
            runner=runner,
            command=platform.command,
            deploy_timeout=platform.deploy_timeout_seconds,
            database_timeout=platform.database_timeout_seconds,
        )

        health_checker = None
        if settings.health.enabled:
            health_checker = HealthChecker(
                path=settings.health.path,
                timeout=settings.health.timeout_seconds,
                attempts=settings.health.attempts,
                interval=settings.health.interval_seconds,
                session=http_session,
                sleep=sleep,
            )

        classifier = ErrorClassifier()
        retry = settings.retry
        breaker = CircuitBreaker(
            failure_threshold=settings.circuit_breaker.failure_threshold,
            window_seconds=settings.circuit_breaker.window_seconds,
        )
        retry_policy = RetryPolicy(
            max_attempts=retry.max_attempts,
            base_delay_ms=retry.base_delay_ms,
            max_delay_ms=retry.max_delay_ms,
            max_deployment_attempts=retry.max_deployment_attempts,
            jitter_ratio=retry.jitter_ratio,
            circuit_breaker=breaker,
        )

        return cls(
            settings=settings,
            wrangler=wrangler,
            health_checker=health_checker,
            binding_recovery=BindingErrorRecovery(
                wrangler, selector=selector, lock_timeout=platform.lock_timeout_seconds, classifier=classifier
            ),
            classifier=classifier,
            retry_policy=retry_policy,
            listeners=list(listeners),
            sleep=sleep,
            secret_source=secret_source,
        )

    def orchestrator(
        self,
        strategy: DeploymentStrategy,
        descriptor: DomainDescriptor,
        deployment_id: Optional[str] = None
    ) -> PhaseOrchestrator:
        """Phase driver for ``descriptor`` wired to these services."""
        return PhaseOrchestrator(
            strategy=strategy,
            config=descriptor,
            classifier=self.classifier,
            retry_policy=self.retry_policy,
            binding_recovery=self.binding_recovery,
            listeners=self.listeners,
            sleep=self.sleep,
            deployment_id=deployment_id,
        )
