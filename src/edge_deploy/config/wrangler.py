"""Read-modify-write access to the platform's wrangler.toml."""

import fcntl
import os
import shutil
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomlkit
from tomlkit.exceptions import ParseError
from tomlkit.items import Table

from edge_deploy.utils.errors import ConfigurationError, LockError
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DatabaseBinding:
    """One ``[[d1_databases]]`` entry."""

    binding: str
    database_name: Optional[str] = None
    database_id: Optional[str] = None

    def is_complete(self) -> bool:
        """Check that the binding names and identifies a database."""
        return bool(self.binding and self.database_name and self.database_id)

    def to_dict(self) -> Dict[str, str]:
        data = {"binding": self.binding}
        if self.database_name:
            data["database_name"] = self.database_name
        if self.database_id:
            data["database_id"] = self.database_id
        return data


def backup_path_for(path: Path, now: Optional[datetime] = None) -> Path:
    """Build ``<file>.backup.<timestamp>`` for a configuration file."""
    now = now or datetime.utcnow()
    stamp = now.isoformat().replace(":", "-").replace(".", "-")
    return path.with_name(f"{path.name}.backup.{stamp}")


class WranglerConfig:
    """Format-preserving access to a wrangler.toml file with advisory locking."""

    def __init__(self, path: str, lock_timeout: float = 30.0):
        """
        Initialize WranglerConfig.

        Args:
            path: Path to wrangler.toml
            lock_timeout: Seconds to wait for the advisory lock
        """
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self._lock_fd: Optional[int] = None

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> tomlkit.TOMLDocument:
        """
        Parse the configuration file.

        Returns:
            tomlkit document

        Raises:
            ConfigurationError: If the file is missing or cannot be parsed
        """
        if not self.path.exists():
            raise ConfigurationError(f"Platform configuration not found: {self.path}")

        try:
            return tomlkit.parse(self.path.read_text())
        except ParseError as e:
            raise ConfigurationError(f"Invalid TOML in {self.path}: {e}", cause=e)

    def save(self, document: tomlkit.TOMLDocument) -> None:
        """
        Write the document atomically.

        Args:
            document: Document to write
        """
        temp_path = self.path.with_name(self.path.name + ".tmp")
        temp_path.write_text(tomlkit.dumps(document))
        temp_path.replace(self.path)

    def worker_name(self, environment: Optional[str] = None) -> Optional[str]:
        """Get the worker name, honouring an environment override."""
        document = self.load()
        section = self._env_section(document, environment)
        if section is not None and "name" in section:
            return str(section["name"])
        name = document.get("name")
        return str(name) if name is not None else None

    def routes(self, environment: Optional[str] = None) -> List[str]:
        """Get route patterns declared for an environment."""
        document = self.load()
        section = self._env_section(document, environment)
        source = section if section is not None and ("routes" in section or "route" in section) else document

        patterns = []
        if "route" in source:
            patterns.append(self._route_pattern(source["route"]))
        for route in source.get("routes", []):
            patterns.append(self._route_pattern(route))
        return [pattern for pattern in patterns if pattern]

    def get_bindings(self, environment: Optional[str] = None) -> List[DatabaseBinding]:
        """
        Get declared database bindings.

        Args:
            environment: Platform environment name; falls back to top level

        Returns:
            List of declared bindings
        """
        document = self.load()
        section = self._binding_section(document, environment)
        return [
            DatabaseBinding(
                binding=str(entry.get("binding", "")),
                database_name=self._optional_str(entry.get("database_name")),
                database_id=self._optional_str(entry.get("database_id")),
            )
            for entry in section.get("d1_databases", [])
        ]

    def find_binding(self, binding: str, environment: Optional[str] = None) -> Optional[DatabaseBinding]:
        for entry in self.get_bindings(environment):
            if entry.binding == binding:
                return entry
        return None

    def upsert_binding(self, binding: DatabaseBinding, environment: Optional[str] = None) -> None:
        """
        Insert or replace a database binding and save.

        Args:
            binding: Binding to write
            environment: Platform environment name; falls back to top level
        """
        document = self.load()
        section = self._binding_section(document, environment)

        databases = section.get("d1_databases")
        if databases is None:
            databases = tomlkit.aot()
            section["d1_databases"] = databases

        for entry in databases:
            if entry.get("binding") == binding.binding:
                for key, value in binding.to_dict().items():
                    entry[key] = value
                break
        else:
            entry = tomlkit.table()
            for key, value in binding.to_dict().items():
                entry[key] = value
            databases.append(entry)

        self.save(document)
        logger.info(f"Updated binding '{binding.binding}' in {self.path}")

    def backup(self) -> Path:
        """
        Copy the configuration to a timestamped backup.

        Returns:
            Path of the backup file
        """
        base_path = backup_path_for(self.path)
        backup_path = base_path
        counter = 1
        while backup_path.exists():
            backup_path = base_path.with_name(f"{base_path.name}-{counter}")
            counter += 1

        shutil.copy2(self.path, backup_path)
        logger.debug(f"Backed up {self.path} to {backup_path}")
        return backup_path

    def restore(self, backup_path: Path) -> None:
        """
        Restore the configuration from a backup.

        Raises:
            ConfigurationError: If the backup does not exist
        """
        backup_path = Path(backup_path)
        if not backup_path.exists():
            raise ConfigurationError(f"Backup not found: {backup_path}")

        temp_path = self.path.with_name(self.path.name + ".tmp")
        shutil.copy2(backup_path, temp_path)
        temp_path.replace(self.path)
        logger.info(f"Restored {self.path} from {backup_path}")

    def list_backups(self) -> List[Path]:
        """Backups of this file, oldest first."""
        backups = self.path.parent.glob(f"{self.path.name}.backup.*")
        return sorted(backups, key=lambda p: (p.stat().st_mtime, p.name))

    def prune_backups(self, keep: int = 5) -> List[Path]:
        """
        Delete all but the newest ``keep`` backups.

        Returns:
            Paths that were removed
        """
        backups = self.list_backups()
        removed = backups[:-keep] if keep > 0 else backups
        for backup_path in removed:
            backup_path.unlink()
            logger.debug(f"Removed old backup {backup_path}")
        return removed

    def lock(self) -> None:
        """
        Acquire an exclusive advisory lock.

        Raises:
            LockError: If lock cannot be acquired within the timeout
        """
        lock_path = self.path.with_name(self.path.name + ".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock_fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(self._lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() - start_time > self.lock_timeout:
                    os.close(self._lock_fd)
                    self._lock_fd = None
                    raise LockError(
                        f"Failed to acquire lock on {self.path} after {self.lock_timeout}s"
                    )
                time.sleep(0.05)

    def unlock(self) -> None:
        """Release the advisory lock."""
        if self._lock_fd is not None:
            try:
                fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
                os.close(self._lock_fd)
            finally:
                self._lock_fd = None

    def __enter__(self):
        self.lock()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unlock()

    def _env_section(self, document: tomlkit.TOMLDocument, environment: Optional[str]) -> Optional[Table]:
        if not environment:
            return None
        envs = document.get("env")
        if envs is None or environment not in envs:
            return None
        return envs[environment]

    def _binding_section(self, document: tomlkit.TOMLDocument, environment: Optional[str]):
        section = self._env_section(document, environment)
        return section if section is not None else document

    @staticmethod
    def _route_pattern(route: Any) -> Optional[str]:
        if isinstance(route, str):
            return route
        if hasattr(route, "get"):
            pattern = route.get("pattern")
            return str(pattern) if pattern else None
        return None

    @staticmethod
    def _optional_str(value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)
