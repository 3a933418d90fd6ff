"""Strategy interface implemented by every deployment mode."""

from abc import ABC, abstractmethod
from typing import Any, Dict

from edge_deploy.orchestrator.models import DeploymentContext, DeploymentMode


class DeploymentStrategy(ABC):
    """The six phase hooks driven by ``PhaseOrchestrator``.

    Each hook receives the run's ``DeploymentContext`` and returns the data
    recorded in that phase's ``PhaseResult``. Hooks raise on failure; the
    driver owns classification, retries and rollback.
    """

    mode: DeploymentMode = DeploymentMode.SINGLE

    # Deploy failures with a binding signature are routed to BindingErrorRecovery
    supports_binding_recovery: bool = True

    @abstractmethod
    def on_initialize(self, ctx: DeploymentContext) -> Dict[str, Any]:
        ...

    @abstractmethod
    def on_validation(self, ctx: DeploymentContext) -> Dict[str, Any]:
        ...

    @abstractmethod
    def on_prepare(self, ctx: DeploymentContext) -> Dict[str, Any]:
        ...

    @abstractmethod
    def on_deploy(self, ctx: DeploymentContext) -> Dict[str, Any]:
        ...

    @abstractmethod
    def on_verify(self, ctx: DeploymentContext) -> Dict[str, Any]:
        ...

    @abstractmethod
    def on_monitor(self, ctx: DeploymentContext) -> Dict[str, Any]:
        ...

    def describe(self) -> Dict[str, Any]:
        return {"mode": self.mode.value, "strategy": type(self).__name__}

    def child_orchestrators(self) -> list:
        """Per-domain pipelines started by this strategy, if it fans out."""
        return []
