"""YAML settings parser for edge-deploy."""

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from .models import Settings

DEFAULT_SETTINGS_FILE = "edge-deploy.yaml"

SECTIONS = (
    "retry",
    "circuit_breaker",
    "portfolio",
    "enterprise",
    "health",
    "audit",
    "platform",
    "domains",
)


class ConfigValidationError(Exception):
    """Exception raised when settings validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


class Config:
    """Settings manager for edge-deploy."""

    def __init__(self, config_path: str = DEFAULT_SETTINGS_FILE):
        """Initialize settings manager.

        Args:
            config_path: Path to edge-deploy.yaml
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.settings: Settings = Settings()

    def load(self) -> "Config":
        """Load and validate settings from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If settings are invalid
            FileNotFoundError: If settings file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Settings file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Settings validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.settings = Settings(**self.data)
        return self

    def validate(self) -> List[Dict]:
        """Validate settings against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not isinstance(self.data, dict):
            return [{"loc": [], "msg": "Settings file must contain a mapping"}]

        for key in self.data:
            if key not in SECTIONS:
                errors.append({"loc": [key], "msg": f"Unknown section '{key}'"})

        if "domains" in self.data and not isinstance(self.data["domains"], list):
            errors.append({"loc": ["domains"], "msg": "Domains must be a list"})
            return errors

        if errors:
            return errors

        try:
            Settings(**self.data)
        except ValidationError as e:
            for error in e.errors():
                errors.append({"loc": list(error["loc"]), "msg": error["msg"]})

        return errors

    def to_dict(self) -> Dict:
        """Convert settings to dictionary."""
        return self.settings.model_dump()


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings, falling back to defaults when no file exists.

    Args:
        config_path: Explicit settings path; an explicit path must exist

    Returns:
        Validated settings
    """
    if config_path is None:
        if not Path(DEFAULT_SETTINGS_FILE).exists():
            return Settings()
        config_path = DEFAULT_SETTINGS_FILE
    return Config(config_path).load().settings
