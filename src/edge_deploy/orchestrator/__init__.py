"""Orchestrator module for phased edge deployments."""

from edge_deploy.orchestrator.models import (
    Phase,
    PhaseStatus,
    PhaseResult,
    FinalStatus,
    Environment,
    DeploymentMode,
    DeploymentRequest,
    DomainDescriptor,
    DeploymentContext,
    ExecuteOptions,
)
from edge_deploy.orchestrator.rollback import RollbackAction, RollbackActionResult, RollbackStack
from edge_deploy.orchestrator.binding_recovery import BindingErrorRecovery, RecoveryResult
from edge_deploy.orchestrator.resolver import DomainResolver
from edge_deploy.orchestrator.dependency_graph import DomainDependencyGraph
from edge_deploy.orchestrator.pipeline import PhaseOrchestrator, PhaseListener
from edge_deploy.orchestrator.services import DeploymentServices
from edge_deploy.orchestrator.capabilities import Capability, CapabilitySet, CapabilityOrchestrator, UnifiedStrategy
from edge_deploy.orchestrator.audit import AuditLog, AuditRecord
from edge_deploy.orchestrator.coordinator import DeploymentCoordinator, DeploymentReport

__all__ = [
    # Model
    'Phase',
    'PhaseStatus',
    'PhaseResult',
    'FinalStatus',
    'Environment',
    'DeploymentMode',
    'DeploymentRequest',
    'DomainDescriptor',
    'DeploymentContext',
    'ExecuteOptions',

    # Rollback and recovery
    'RollbackAction',
    'RollbackActionResult',
    'RollbackStack',
    'BindingErrorRecovery',
    'RecoveryResult',

    # Resolution
    'DomainResolver',
    'DomainDependencyGraph',

    # Execution
    'PhaseOrchestrator',
    'PhaseListener',
    'DeploymentServices',

    # Capabilities
    'Capability',
    'CapabilitySet',
    'CapabilityOrchestrator',
    'UnifiedStrategy',

    # Coordination
    'AuditLog',
    'AuditRecord',
    'DeploymentCoordinator',
    'DeploymentReport',
]
