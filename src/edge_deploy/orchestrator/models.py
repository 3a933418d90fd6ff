"""Data model for orchestrated deployments."""

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from edge_deploy.orchestrator.rollback import RollbackActionResult, RollbackStack
from edge_deploy.utils.errors import CancelledError, ClassifiedError


class Phase(Enum):
    """Pipeline phases, declared in execution order."""
    INITIALIZE = "initialize"
    VALIDATE = "validate"
    PREPARE = "prepare"
    DEPLOY = "deploy"
    VERIFY = "verify"
    MONITOR = "monitor"

    @property
    def hook_name(self) -> str:
        return PHASE_HOOKS[self]

    @classmethod
    def ordered(cls) -> List["Phase"]:
        return list(cls)


PHASE_HOOKS = {
    Phase.INITIALIZE: "on_initialize",
    Phase.VALIDATE: "on_validation",
    Phase.PREPARE: "on_prepare",
    Phase.DEPLOY: "on_deploy",
    Phase.VERIFY: "on_verify",
    Phase.MONITOR: "on_monitor",
}

# A failure here halts the pipeline even with continue_on_error
CRITICAL_PHASES = frozenset({Phase.INITIALIZE, Phase.DEPLOY})


class PhaseStatus(Enum):
    """Recorded outcome of a phase."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class FinalStatus(Enum):
    """Overall outcome of a deployment."""
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Environment(Enum):
    """Deployment environments."""
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"

    @property
    def platform_name(self) -> str:
        """Environment name as used in wrangler.toml ``[env.*]`` sections."""
        return {"dev": "development", "staging": "staging", "prod": "production"}[self.value]


ENVIRONMENT_ALIASES = {
    "dev": "dev",
    "development": "dev",
    "staging": "staging",
    "stage": "staging",
    "prod": "prod",
    "production": "prod",
}


class DeploymentMode(Enum):
    """Deployment shapes."""
    SINGLE = "single"
    PORTFOLIO = "portfolio"
    ENTERPRISE = "enterprise"
    UNIFIED = "unified"


@dataclass(frozen=True)
class PhaseResult:
    """Immutable record of one executed (or skipped) phase."""

    phase: Phase
    status: PhaseStatus
    data: Mapping[str, Any] = field(default_factory=dict)
    error: Optional[ClassifiedError] = None
    attempts: int = 0
    duration_ms: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'data', MappingProxyType(dict(self.data)))

    def is_success(self) -> bool:
        return self.status == PhaseStatus.SUCCEEDED

    def is_failed(self) -> bool:
        return self.status == PhaseStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'phase': self.phase.value,
            'status': self.status.value,
            'attempts': self.attempts,
            'durationMs': self.duration_ms,
            'error': self.error.to_dict() if self.error else None,
        }


class DeploymentRequest(BaseModel):
    """Immutable deployment input."""

    model_config = ConfigDict(frozen=True)

    domains: List[str] = Field(..., min_length=1)
    environment: Environment = Environment.DEV
    credentials_ref: Optional[str] = Field(
        None, description="Prefix of environment variables holding the API token and account id"
    )
    credentials: Dict[str, str] = Field(default_factory=dict, repr=False)
    mode: Optional[DeploymentMode] = None
    capability_overrides: Dict[str, bool] = Field(default_factory=dict)
    compliance_levels: List[str] = Field(default_factory=list)
    secrets: Dict[str, str] = Field(default_factory=dict, repr=False)
    dependencies: Dict[str, List[str]] = Field(default_factory=dict)
    config_path: Optional[str] = None
    dry_run: bool = False
    fail_fast: bool = False

    @field_validator("domains")
    @classmethod
    def validate_domains(cls, v: List[str]) -> List[str]:
        """Normalise domain names and drop duplicates, keeping order."""
        seen = []
        for domain in v:
            name = domain.strip().lower()
            if not name:
                raise ValueError("Domain names cannot be empty")
            if name not in seen:
                seen.append(name)
        return seen

    @field_validator("environment", mode="before")
    @classmethod
    def normalise_environment(cls, v: Any) -> Any:
        """Accept long environment names such as ``production``."""
        if isinstance(v, str):
            alias = ENVIRONMENT_ALIASES.get(v.strip().lower())
            if alias is None:
                raise ValueError(f"Unknown environment '{v}'. Use dev, staging or prod")
            return alias
        return v


@dataclass(frozen=True)
class DomainDescriptor:
    """A fully resolved deployment target."""

    name: str
    clean_name: str
    environment: Environment
    hostname: str
    worker_name: str
    database_name: str
    database_binding: str = "DB"
    existing_database_id: Optional[str] = None
    config_path: Optional[str] = None
    account_id: Optional[str] = None
    api_token: Optional[str] = field(default=None, repr=False)
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)
    warnings: Tuple[str, ...] = ()

    @property
    def credentials_env(self) -> Dict[str, str]:
        """Environment variables handed to the platform CLI."""
        env = {}
        if self.api_token:
            env["CLOUDFLARE_API_TOKEN"] = self.api_token
        if self.account_id:
            env["CLOUDFLARE_ACCOUNT_ID"] = self.account_id
        return env


@dataclass
class ExecuteOptions:
    """Options for one pipeline run."""

    continue_on_error: bool = False
    skip_validation: bool = False
    skip_phases: FrozenSet[Phase] = frozenset()
    timeout_seconds: Optional[float] = None
    cancel_event: Optional[threading.Event] = None
    rollback_on_failure: bool = True
    retain_rollback: bool = False  # keep the stack after success for an explicit rollback

    def should_skip(self, phase: Phase) -> bool:
        if phase in self.skip_phases:
            return True
        return self.skip_validation and phase == Phase.VALIDATE


def new_deployment_id() -> str:
    return f"deploy-{uuid.uuid4().hex}"


@dataclass
class DeploymentContext:
    """Mutable state of one orchestrator run.

    Owned by the orchestrator executing it; never shared between domains.
    """

    config: DomainDescriptor
    deployment_id: str = field(default_factory=new_deployment_id)
    rollback_stack: RollbackStack = field(default_factory=RollbackStack)
    current_phase: Optional[Phase] = None
    phase_results: Dict[Phase, PhaseResult] = field(default_factory=dict)
    errors: List[ClassifiedError] = field(default_factory=list)
    start_time: datetime = field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    rollback_performed: bool = False
    rollback_results: List[RollbackActionResult] = field(default_factory=list)
    cancelled: bool = False
    partial: bool = False
    state: Dict[str, Any] = field(default_factory=dict)
    cancel_event: Optional[threading.Event] = field(default=None, repr=False)
    deadline: Optional[float] = None  # time.monotonic() value

    def is_cancelled(self) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check_cancelled(self) -> None:
        """Raise between side effects once cancellation or the deadline is reached."""
        if self.is_cancelled():
            reason = "timeout reached" if self.deadline is not None and time.monotonic() >= self.deadline else "cancel requested"
            raise CancelledError(f"Deployment of {self.config.name} cancelled: {reason}")

    def record(self, result: PhaseResult) -> None:
        """Record a phase result; a phase is recorded at most once."""
        if result.phase in self.phase_results:
            raise ValueError(f"Phase {result.phase.value} already recorded")
        self.phase_results[result.phase] = result

    @property
    def phases(self) -> List[Phase]:
        return list(self.phase_results)

    def phase_statuses(self) -> List[Dict[str, str]]:
        """Executed phases in order, as ``{"phase", "status"}`` pairs."""
        return [{"phase": phase.value, "status": result.status.value} for phase, result in self.phase_results.items()]

    @property
    def failed_phase(self) -> Optional[Phase]:
        for phase, result in self.phase_results.items():
            if result.is_failed():
                return phase
        return None

    @property
    def last_error(self) -> Optional[ClassifiedError]:
        return self.errors[-1] if self.errors else None

    @property
    def final_status(self) -> FinalStatus:
        if self.cancelled:
            return FinalStatus.CANCELLED
        if self.failed_phase is not None:
            return FinalStatus.FAILED
        if self.partial:
            return FinalStatus.PARTIAL
        return FinalStatus.SUCCEEDED

    @property
    def rollback_succeeded(self) -> Optional[bool]:
        """None when no rollback was attempted."""
        if not self.rollback_performed:
            return None
        return all(result.succeeded for result in self.rollback_results)

    @property
    def duration_ms(self) -> int:
        end = self.end_time or datetime.utcnow()
        return int((end - self.start_time).total_seconds() * 1000)

    def summary(self) -> Dict[str, Any]:
        """Execution statistics for the run."""
        results = list(self.phase_results.values())
        completed = sum(1 for r in results if r.status == PhaseStatus.SUCCEEDED)
        failed = sum(1 for r in results if r.status == PhaseStatus.FAILED)
        skipped = sum(1 for r in results if r.status == PhaseStatus.SKIPPED)
        executed = completed + failed
        return {
            'deploymentId': self.deployment_id,
            'domain': self.config.name,
            'completed': completed,
            'failed': failed,
            'skipped': skipped,
            'successRate': round(completed / executed * 100, 1) if executed else 0.0,
            'durationMs': self.duration_ms,
            'finalStatus': self.final_status.value,
        }


class AnyEvent:
    """Read-only view that is set when any wrapped event is set."""

    def __init__(self, *events):
        self._events = [event for event in events if event is not None]

    def is_set(self) -> bool:
        return any(event.is_set() for event in self._events)
