"""Pydantic models for the edge-deploy settings file."""

from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


COMPLIANCE_LEVELS = ("sox", "hipaa", "pci")


class RetrySettings(BaseModel):
    """Backoff settings for retryable failures."""

    max_attempts: int = Field(3, ge=1, le=10)
    base_delay_ms: int = Field(1000, ge=0)
    max_delay_ms: int = Field(30000, ge=0)
    max_deployment_attempts: int = Field(2, ge=1, le=10)
    jitter_ratio: float = Field(0.0, ge=0.0, le=1.0, description="Upper bound of jitter as a fraction of the delay")

    @model_validator(mode="after")
    def validate_delays(self):
        """Validate that the cap is not below the base delay."""
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be greater than or equal to base_delay_ms")
        return self


class CircuitBreakerSettings(BaseModel):
    """Circuit breaker thresholds."""

    failure_threshold: int = Field(5, ge=1)
    window_seconds: float = Field(60.0, gt=0)


class PortfolioSettings(BaseModel):
    """Fan-out settings for multi-domain deployments."""

    max_parallel: int = Field(3, ge=1, le=16)
    fail_fast: bool = False
    batch_pause_ms: int = Field(0, ge=0)


class EnterpriseSettings(BaseModel):
    """Compliance and availability settings for enterprise deployments."""

    compliance_levels: List[str] = Field(default_factory=list)
    high_availability: bool = True
    disaster_recovery: bool = True
    regions: List[str] = Field(default_factory=lambda: ["primary"])

    @field_validator("compliance_levels")
    @classmethod
    def validate_compliance_levels(cls, v: List[str]) -> List[str]:
        """Validate compliance levels against the supported frameworks."""
        normalized = [level.lower() for level in v]
        unknown = [level for level in normalized if level not in COMPLIANCE_LEVELS]
        if unknown:
            raise ValueError(
                f"Unknown compliance level(s): {', '.join(unknown)}. "
                f"Supported: {', '.join(COMPLIANCE_LEVELS)}"
            )
        return normalized


class HealthSettings(BaseModel):
    """Post-deployment health check settings."""

    enabled: bool = True
    path: str = Field("/health", pattern="^/")
    timeout_seconds: float = Field(5.0, gt=0)
    attempts: int = Field(3, ge=1)
    interval_seconds: float = Field(2.0, ge=0)


class AuditSettings(BaseModel):
    """Audit trail output."""

    enabled: bool = True
    path: str = ".edge-deploy/audit/deployments.jsonl"


class PlatformSettings(BaseModel):
    """Platform CLI invocation settings."""

    command: List[str] = Field(default_factory=lambda: ["wrangler"], min_length=1)
    config_path: str = "wrangler.toml"
    deploy_timeout_seconds: float = Field(300.0, gt=0)
    database_timeout_seconds: float = Field(60.0, gt=0)
    lock_timeout_seconds: float = Field(30.0, gt=0)


class DomainSettings(BaseModel):
    """Per-domain overrides for portfolio deployments."""

    name: str = Field(..., min_length=3)
    config_path: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    secrets: Dict[str, str] = Field(default_factory=dict, description="Secret name to environment variable")

    @field_validator("secrets")
    @classmethod
    def validate_secrets(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Validate secret names follow the platform's naming rules."""
        for key in v:
            if not key or not key.replace("_", "").isalnum() or not key[0].isalpha():
                raise ValueError(f"Invalid secret name: {key}")
        return v


class Settings(BaseModel):
    """Complete settings file."""

    retry: RetrySettings = Field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    portfolio: PortfolioSettings = Field(default_factory=PortfolioSettings)
    enterprise: EnterpriseSettings = Field(default_factory=EnterpriseSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    platform: PlatformSettings = Field(default_factory=PlatformSettings)
    domains: List[DomainSettings] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_domain_dependencies(self):
        """Validate that every declared dependency names a configured domain."""
        names = {domain.name for domain in self.domains}
        for domain in self.domains:
            missing = [dep for dep in domain.depends_on if dep not in names]
            if missing:
                raise ValueError(
                    f"Domain '{domain.name}' depends on unknown domain(s): {', '.join(missing)}"
                )
        return self

    def get_domain(self, name: str) -> Optional[DomainSettings]:
        for domain in self.domains:
            if domain.name == name:
                return domain
        return None
