"""Deployment audit trail (JSON lines)."""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from edge_deploy.orchestrator.models import DeploymentContext
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AuditRecord:
    """One audited domain deployment."""

    deployment_id: str
    domain: str
    phases: List[Dict[str, str]]
    final_status: str
    duration_ms: int
    rollback_performed: bool
    rollback_succeeded: Optional[bool] = None
    failed_phase: Optional[str] = None
    error_kind: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    @classmethod
    def from_context(cls, ctx: DeploymentContext, domain: Optional[str] = None) -> "AuditRecord":
        return cls(
            deployment_id=ctx.deployment_id,
            domain=domain or ctx.config.name,
            phases=ctx.phase_statuses(),
            final_status=ctx.final_status.value,
            duration_ms=ctx.duration_ms,
            rollback_performed=ctx.rollback_performed,
            rollback_succeeded=ctx.rollback_succeeded,
            failed_phase=ctx.failed_phase.value if ctx.failed_phase else None,
            error_kind=ctx.last_error.kind.value if ctx.last_error else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'deploymentId': self.deployment_id,
            'domain': self.domain,
            'phases': self.phases,
            'finalStatus': self.final_status,
            'durationMs': self.duration_ms,
            'rollbackPerformed': self.rollback_performed,
            'rollbackSucceeded': self.rollback_succeeded,
            'failedPhase': self.failed_phase,
            'errorKind': self.error_kind,
        }


class AuditLog:
    """Appends audit records to a JSONL file."""

    def __init__(self, path: str, enabled: bool = True):
        """
        Initialize audit log.

        Args:
            path: JSONL file; parent directories are created on first write
            enabled: When False, records are returned but not written
        """
        self.path = Path(path)
        self.enabled = enabled
        self._lock = threading.Lock()

    def append(self, records: List[AuditRecord]) -> None:
        if not self.enabled or not records:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            with open(self.path, "a") as f:
                for record in records:
                    f.write(json.dumps(record.to_dict()) + "\n")
        logger.debug(f"Wrote {len(records)} audit record(s) to {self.path}")

    def read(self) -> List[Dict[str, Any]]:
        """All records written so far, oldest first."""
        if not self.path.exists():
            return []
        with open(self.path, "r") as f:
            return [json.loads(line) for line in f if line.strip()]
