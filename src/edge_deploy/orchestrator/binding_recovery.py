"""Recovery for database binding mismatches reported during deploy."""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from edge_deploy.config.wrangler import DatabaseBinding, WranglerConfig
from edge_deploy.orchestrator.models import DomainDescriptor
from edge_deploy.orchestrator.rollback import RollbackAction, RollbackStack
from edge_deploy.platform.wrangler import DatabaseInfo, WranglerClient
from edge_deploy.utils.errors import ErrorClassifier, ErrorContext, PlatformCommandError
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)

DATABASE_NOT_FOUND_PATTERNS = [
    re.compile(r"Couldn't find a D1 DB with the name or binding '([^']+)'"),
    re.compile(r"Database '([^']+)' not found"),
    re.compile(r"Unknown database: ([^\s]+)"),
    re.compile(r"D1 database ([^\s]+) does not exist"),
    re.compile(r"Missing D1 database: ([^\s]+)"),
]
BINDING_CONFIGURATION_PATTERN = re.compile(r"binding \S* ?(?:not found|invalid|missing)|invalid binding", re.IGNORECASE)
PERMISSION_PATTERN = re.compile(r"permission|unauthorized|forbidden", re.IGNORECASE)

# Selector receives the candidates and returns the chosen one, or None to decline
DatabaseSelector = Callable[[List[DatabaseInfo], DomainDescriptor], Optional[DatabaseInfo]]


@dataclass(frozen=True)
class RecoveryResult:
    """Outcome of a binding recovery attempt."""

    handled: bool
    retry: bool
    action: str
    backup_path: Optional[Path] = None
    database_name: Optional[str] = None
    database_id: Optional[str] = None
    message: str = ""


class BindingErrorRecovery:
    """Repairs the declared database binding so a failed deploy can be retried.

    Policy, in order:

    1. No matching database exists: create it and write the binding.
    2. A database exists but the binding does not point at it: auto-select
       when there is exactly one candidate, otherwise ask ``selector``.
    3. The binding entry is malformed: rewrite it.

    Every write to wrangler.toml is preceded by a timestamped backup, and a
    ``restore-config-backup`` rollback action is pushed for it. The whole
    read-modify-write runs under the file's advisory lock.
    """

    CREATED = "created_and_configured"
    SELECTED = "database_selected_and_configured"
    UPDATED = "binding_updated"
    ALREADY_CONFIGURED = "already-configured"

    def __init__(
        self,
        wrangler: WranglerClient,
        selector: Optional[DatabaseSelector] = None,
        lock_timeout: float = 30.0,
        classifier: Optional[ErrorClassifier] = None
    ):
        self.wrangler = wrangler
        self.selector = selector
        self.classifier = classifier or ErrorClassifier()
        self.lock_timeout = lock_timeout
        self.logger = get_logger(__name__)

    def analyze(self, error: BaseException) -> Optional[str]:
        """Identify the binding problem described by an error.

        Returns:
            ``database_not_found``, ``binding_configuration_error``,
            ``permission_error`` or None when unrelated
        """
        text = self._error_text(error)
        if PERMISSION_PATTERN.search(text):
            return "permission_error"
        if any(pattern.search(text) for pattern in DATABASE_NOT_FOUND_PATTERNS):
            return "database_not_found"
        if BINDING_CONFIGURATION_PATTERN.search(text):
            return "binding_configuration_error"
        return None

    def recover(
        self,
        error: BaseException,
        config: DomainDescriptor,
        rollback_stack: Optional[RollbackStack] = None
    ) -> RecoveryResult:
        """Attempt to repair the binding behind ``error``.

        Args:
            error: The deploy failure
            config: Resolved domain
            rollback_stack: Stack receiving undo actions for every mutation

        Returns:
            RecoveryResult; the caller retries deploy only when ``retry`` is true.
            Errors raised while repairing come back as action ``failed``.
        """
        error_type = self.analyze(error)
        if error_type is None:
            return RecoveryResult(False, False, "not-a-binding-error", message=str(error))
        if error_type == "permission_error":
            return RecoveryResult(False, False, "permission-denied", message="Permission errors are not recoverable")
        if not config.config_path:
            return RecoveryResult(False, False, "no-config", message="Domain has no wrangler.toml to repair")

        wrangler_config = WranglerConfig(config.config_path, lock_timeout=self.lock_timeout)

        try:
            with wrangler_config:
                environment = self._binding_environment(wrangler_config, config)
                return self._recover_locked(wrangler_config, environment, config, rollback_stack)
        except Exception as e:
            classified = self.classifier.classify(
                e, ErrorContext(domain=config.name, phase="deploy", operation="binding_recovery")
            )
            self.logger.warning(f"Binding recovery for {config.name} failed: {classified.message}")
            return RecoveryResult(False, False, "failed", message=classified.message)

    def _recover_locked(
        self,
        wrangler_config: WranglerConfig,
        environment: Optional[str],
        config: DomainDescriptor,
        rollback_stack: Optional[RollbackStack]
    ) -> RecoveryResult:
        wrangler = self.wrangler.with_credentials(config.credentials_env)
        declared = wrangler_config.find_binding(config.database_binding, environment)
        databases = wrangler.list_databases()
        known_ids = {db.id for db in databases}

        if declared is not None and declared.is_complete() and declared.database_id in known_ids:
            self.logger.info(f"Binding '{declared.binding}' for {config.name} is already configured")
            return RecoveryResult(
                True, False, self.ALREADY_CONFIGURED,
                database_name=declared.database_name,
                database_id=declared.database_id,
                message="Binding already points at an existing database",
            )

        expected_name = (declared.database_name if declared and declared.database_name else config.database_name)
        candidates = self._candidates(databases, expected_name, config)

        if not candidates:
            database = wrangler.create_database(expected_name)
            if rollback_stack is not None:
                rollback_stack.push(RollbackAction(
                    type="delete-database",
                    description=f"Delete database {database.name}",
                    undo=lambda ctx, name=database.name: wrangler.delete_database(name),
                ))
            action = self.CREATED
        else:
            database = self._choose(candidates, config)
            if database is None:
                return RecoveryResult(
                    False, False, "selection-required",
                    message=f"{len(candidates)} candidate databases and no selection was made",
                )
            action = self.UPDATED if declared is not None and not declared.is_complete() else self.SELECTED

        backup_path = wrangler_config.backup()
        if rollback_stack is not None:
            rollback_stack.push(RollbackAction(
                type="restore-config-backup",
                description=f"Restore {wrangler_config.path.name} from {backup_path.name}",
                undo=lambda ctx, path=backup_path: self._restore(wrangler_config.path, path),
            ))

        wrangler_config.upsert_binding(
            DatabaseBinding(
                binding=config.database_binding,
                database_name=database.name,
                database_id=database.id,
            ),
            environment,
        )

        self.logger.info(f"Binding recovery for {config.name}: {action} ({database.name})")
        return RecoveryResult(
            True, True, action,
            backup_path=backup_path,
            database_name=database.name,
            database_id=database.id,
            message=f"Binding '{config.database_binding}' now points at {database.name}",
        )

    def _candidates(
        self,
        databases: List[DatabaseInfo],
        expected_name: str,
        config: DomainDescriptor
    ) -> List[DatabaseInfo]:
        exact = [db for db in databases if db.name == expected_name]
        if exact:
            return exact
        return [db for db in databases if db.name.startswith(config.clean_name)]

    def _choose(self, candidates: List[DatabaseInfo], config: DomainDescriptor) -> Optional[DatabaseInfo]:
        if len(candidates) == 1:
            return candidates[0]
        if self.selector is None:
            return None
        return self.selector(candidates, config)

    def _restore(self, config_path: Path, backup_path: Path) -> None:
        with WranglerConfig(str(config_path), lock_timeout=self.lock_timeout) as wrangler_config:
            wrangler_config.restore(backup_path)

    @staticmethod
    def _binding_environment(wrangler_config: WranglerConfig, config: DomainDescriptor) -> Optional[str]:
        """Use the ``[env.*]`` section when the file declares one for this environment."""
        env_name = config.environment.platform_name
        document = wrangler_config.load()
        envs = document.get("env")
        if envs is not None and env_name in envs:
            return env_name
        return None

    @staticmethod
    def _error_text(error: BaseException) -> str:
        if isinstance(error, PlatformCommandError):
            return f"{error.message}\n{error.output}"
        return str(error)
