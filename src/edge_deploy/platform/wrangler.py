"""Wrangler CLI client: command construction and output parsing."""

import json
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from edge_deploy.platform.runner import CommandResult, CommandRunner, SubprocessRunner
from edge_deploy.utils.errors import PlatformCommandError
from edge_deploy.utils.logging import get_logger, redact

logger = get_logger(__name__)

# Wrangler prints failures as "✘ [ERROR] ..." even when the exit code is 0
ERROR_MARKER = re.compile(r"^\s*(?:✘\s*)?\[ERROR\]", re.MULTILINE)

URL_PATTERNS = [
    re.compile(r"Deployed to:\s*(https://[^\s>]+)", re.IGNORECASE),
    re.compile(r"Your worker has been deployed to:\s*(https://[^\s>]+)", re.IGNORECASE),
    re.compile(r"Worker URL:\s*(https://[^\s>]+)", re.IGNORECASE),
    re.compile(r"Available at:\s*(https://[^\s>]+)", re.IGNORECASE),
    re.compile(r"(https://[^\s>]+)"),
]

DATABASE_ID_PATTERN = re.compile(r'database_id\W*[=:]\s*"([0-9a-fA-F-]{8,})"')
UUID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)


@dataclass(frozen=True)
class DatabaseInfo:
    """A provisioned D1 database."""

    id: str
    name: str


@dataclass(frozen=True)
class DeployOutcome:
    """Result of a successful ``wrangler deploy``."""

    url: Optional[str]
    worker_name: Optional[str]
    dry_run: bool = False
    output: str = ""


def extract_deployment_url(
    output: str,
    worker_name: Optional[str] = None,
    routes: Sequence[str] = ()
) -> Optional[str]:
    """Find the deployed URL in ``wrangler deploy`` output.

    Explicit markers are tried first; among bare URLs a ``workers.dev`` address
    is preferred. Falls back to the first route, then to the default
    ``workers.dev`` hostname of the worker.
    """
    candidates: List[str] = []
    for pattern in URL_PATTERNS:
        for match in pattern.finditer(output or ""):
            url = match.group(1).rstrip(".,)")
            if url not in candidates:
                candidates.append(url)
        if candidates and pattern is not URL_PATTERNS[-1]:
            return candidates[0]

    workers_dev = [url for url in candidates if ".workers.dev" in url]
    if workers_dev:
        return workers_dev[0]
    if candidates:
        return candidates[0]

    for route in routes:
        if route.startswith("https://"):
            return route.rstrip("/*")
        host = route.split("/")[0].lstrip("*.")
        if host:
            return f"https://{host}"

    if worker_name:
        return f"https://{worker_name}.workers.dev"
    return None


def parse_database_list(output: str) -> List[DatabaseInfo]:
    """Parse ``wrangler d1 list`` output (JSON or table form)."""
    text = (output or "").strip()
    if text.startswith("["):
        try:
            entries = json.loads(text)
        except json.JSONDecodeError:
            entries = None
        if isinstance(entries, list):
            return [
                DatabaseInfo(id=str(entry.get("uuid") or entry.get("id")), name=str(entry["name"]))
                for entry in entries
                if isinstance(entry, dict) and entry.get("name")
            ]

    databases = []
    for line in text.splitlines():
        if not line.strip() or set(line.strip()) <= set("-─┌┐└┘├┤┬┴┼│ "):
            continue
        match = UUID_PATTERN.search(line)
        if not match:
            continue
        rest = line[match.end():]
        tokens = [token for token in re.split(r"[\s│|]+", rest) if token]
        if tokens:
            databases.append(DatabaseInfo(id=match.group(0), name=tokens[0]))
    return databases


def parse_created_database_id(output: str) -> Optional[str]:
    """Extract the new database id from ``wrangler d1 create`` output."""
    match = DATABASE_ID_PATTERN.search(output or "")
    if match:
        return match.group(1)
    match = UUID_PATTERN.search(output or "")
    return match.group(0) if match else None


class WranglerClient:
    """Narrow interface over the wrangler CLI."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        command: Sequence[str] = ("wrangler",),
        deploy_timeout: float = 300.0,
        database_timeout: float = 60.0,
        credentials: Optional[Dict[str, str]] = None
    ):
        """Initialize wrangler client.

        Args:
            runner: Command runner (subprocess by default)
            command: Executable prefix, e.g. ``["npx", "wrangler"]``
            deploy_timeout: Seconds allowed for ``wrangler deploy``
            database_timeout: Seconds allowed for D1 operations
            credentials: Environment variables carrying the API token and account id
        """
        self.runner = runner or SubprocessRunner()
        self.command = list(command)
        self.deploy_timeout = deploy_timeout
        self.database_timeout = database_timeout
        self.credentials = credentials or {}
        self.logger = get_logger(__name__)

    def with_credentials(self, credentials: Dict[str, str]) -> "WranglerClient":
        """Client sharing this runner but authenticating with ``credentials``."""
        if not credentials:
            return self
        return WranglerClient(
            runner=self.runner,
            command=self.command,
            deploy_timeout=self.deploy_timeout,
            database_timeout=self.database_timeout,
            credentials={**self.credentials, **credentials},
        )

    def deploy(
        self,
        environment: Optional[str] = None,
        config_path: Optional[str] = None,
        dry_run: bool = False,
        variables: Optional[Dict[str, str]] = None,
        worker_name: Optional[str] = None,
        routes: Sequence[str] = ()
    ) -> DeployOutcome:
        """Run ``wrangler deploy``.

        Returns:
            DeployOutcome with the URL parsed from stdout

        Raises:
            PlatformCommandError: If the command fails
        """
        args = ["deploy"]
        args += self._common_flags(environment, config_path)
        if dry_run:
            args.append("--dry-run")
        for key, value in (variables or {}).items():
            args += ["--var", f"{key}:{value}"]

        result = self._run(args, timeout=self.deploy_timeout, operation="deploy")
        url = None if dry_run else extract_deployment_url(result.stdout, worker_name, routes)
        self.logger.info(f"Deployed {worker_name or 'worker'}" + (f" to {url}" if url else ""))
        return DeployOutcome(url=url, worker_name=worker_name, dry_run=dry_run, output=result.stdout)

    def list_databases(self) -> List[DatabaseInfo]:
        result = self._run(["d1", "list", "--json"], timeout=self.database_timeout, operation="d1-list")
        return parse_database_list(result.stdout)

    def create_database(self, name: str) -> DatabaseInfo:
        """Create a D1 database.

        Raises:
            PlatformCommandError: If creation fails or no id is reported
        """
        result = self._run(["d1", "create", name], timeout=self.database_timeout, operation="d1-create")
        database_id = parse_created_database_id(result.stdout)
        if not database_id:
            raise PlatformCommandError(
                f"Could not determine id of created database '{name}'",
                command=result.args,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        self.logger.info(f"Created database {name} ({database_id})")
        return DatabaseInfo(id=database_id, name=name)

    def delete_database(self, name: str) -> None:
        self._run(
            ["d1", "delete", name, "--skip-confirmation"],
            timeout=self.database_timeout,
            operation="d1-delete",
        )
        self.logger.info(f"Deleted database {name}")

    def apply_migrations(
        self,
        binding: str,
        environment: Optional[str] = None,
        remote: bool = True,
        config_path: Optional[str] = None
    ) -> CommandResult:
        """Apply pending migrations to the database behind ``binding``.

        The positional argument is the binding identifier declared in
        wrangler.toml, not the database name.
        """
        args = ["d1", "migrations", "apply", binding]
        args += self._common_flags(environment, config_path)
        args.append("--remote" if remote else "--local")
        return self._run(args, timeout=self.database_timeout, operation="d1-migrations-apply")

    def put_secret(
        self,
        name: str,
        value: str,
        environment: Optional[str] = None,
        config_path: Optional[str] = None
    ) -> None:
        args = ["secret", "put", name] + self._common_flags(environment, config_path)
        self._run(args, timeout=self.database_timeout, operation="secret-put", input_text=value)

    def delete_secret(
        self,
        name: str,
        environment: Optional[str] = None,
        config_path: Optional[str] = None
    ) -> None:
        args = ["secret", "delete", name] + self._common_flags(environment, config_path)
        self._run(args, timeout=self.database_timeout, operation="secret-delete", input_text="y\n")

    def rollback_worker(self, worker_name: Optional[str] = None, message: str = "edge-deploy rollback") -> None:
        args = ["rollback", "--message", message]
        if worker_name:
            args += ["--name", worker_name]
        self._run(args, timeout=self.deploy_timeout, operation="rollback", input_text="y\n")

    def whoami(self) -> Dict[str, Optional[str]]:
        """Return the authenticated account as reported by ``wrangler whoami``."""
        result = self._run(["whoami"], timeout=self.database_timeout, operation="whoami")
        email = re.search(r"(\S+@\S+\.\S+)", result.stdout)
        account_id = re.search(r"\b([0-9a-f]{32})\b", result.stdout)
        return {
            "email": email.group(1).rstrip(".") if email else None,
            "account_id": account_id.group(1) if account_id else None,
        }

    def _common_flags(self, environment: Optional[str], config_path: Optional[str]) -> List[str]:
        flags = []
        if config_path:
            flags += ["--config", str(config_path)]
        if environment:
            flags += ["--env", environment]
        return flags

    def _run(
        self,
        args: List[str],
        timeout: float,
        operation: str,
        input_text: Optional[str] = None
    ) -> CommandResult:
        full_args = self.command + args
        result = self.runner.run(full_args, timeout=timeout, env=self.credentials, input_text=input_text)

        if result.ok and not ERROR_MARKER.search(result.output):
            return result

        detail = self._error_summary(result)
        raise PlatformCommandError(
            f"wrangler {operation} failed (exit {result.exit_code}): {redact(detail)}",
            command=list(full_args),
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    @staticmethod
    def _error_summary(result: CommandResult) -> str:
        for line in result.output.splitlines():
            if ERROR_MARKER.search(line):
                return ERROR_MARKER.sub("", line).strip()
        lines = [line.strip() for line in result.stderr.splitlines() if line.strip()]
        if lines:
            return lines[-1]
        return "no output"
