"""Configuration management for edge-deploy."""

from .models import (
    Settings,
    RetrySettings,
    CircuitBreakerSettings,
    PortfolioSettings,
    EnterpriseSettings,
    HealthSettings,
    AuditSettings,
    PlatformSettings,
    DomainSettings,
    COMPLIANCE_LEVELS,
)
from .parser import Config, ConfigValidationError, load_settings
from .wrangler import WranglerConfig, DatabaseBinding, backup_path_for

__all__ = [
    "Settings",
    "RetrySettings",
    "CircuitBreakerSettings",
    "PortfolioSettings",
    "EnterpriseSettings",
    "HealthSettings",
    "AuditSettings",
    "PlatformSettings",
    "DomainSettings",
    "COMPLIANCE_LEVELS",
    "Config",
    "ConfigValidationError",
    "load_settings",
    "WranglerConfig",
    "DatabaseBinding",
    "backup_path_for",
]
