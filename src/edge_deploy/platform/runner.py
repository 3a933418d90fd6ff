"""Subprocess adapter for the platform CLI."""

import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

from edge_deploy.utils.logging import get_logger, redact


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one CLI invocation."""

    args: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class CommandRunner:
    """Interface for running deployment commands.

    Implementations return a ``CommandResult`` and never raise on a
    non-zero exit code. Timeouts surface as ``subprocess.TimeoutExpired``.
    """

    def run(
        self,
        args: List[str],
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
        cwd: Optional[str] = None
    ) -> CommandResult:
        raise NotImplementedError


class SubprocessRunner(CommandRunner):
    """Runs commands with :mod:`subprocess`."""

    def __init__(self, base_env: Optional[Dict[str, str]] = None):
        """Initialize runner.

        Args:
            base_env: Variables layered over ``os.environ`` for every command
        """
        self.base_env = base_env or {}
        self.logger = get_logger(__name__)

    def run(
        self,
        args: List[str],
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
        cwd: Optional[str] = None
    ) -> CommandResult:
        merged_env = {**os.environ, **self.base_env, **(env or {})}
        self.logger.debug(f"Running: {' '.join(args)}")

        completed = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=merged_env,
            input=input_text,
            cwd=cwd,
            check=False,
        )

        result = CommandResult(
            args=list(args),
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

        if not result.ok:
            self.logger.debug(
                f"Command exited with {result.exit_code}: {redact(result.stderr.strip())[:500]}"
            )
        return result
