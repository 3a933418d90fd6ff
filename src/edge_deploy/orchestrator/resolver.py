"""Resolution of requested domains into deployment descriptors."""

import os
import re
import threading
from typing import Dict, Mapping, Optional, Tuple

from edge_deploy.config.models import Settings
from edge_deploy.config.wrangler import WranglerConfig
from edge_deploy.orchestrator.models import DomainDescriptor, Environment
from edge_deploy.utils.errors import ConfigurationError, ValidationError
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)

DOMAIN_PATTERN = re.compile(r"^(?=.{4,253}$)([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$")

DEFAULT_CREDENTIALS_REF = "CLOUDFLARE"


def clean_domain_name(domain: str) -> str:
    """``api.example.com`` -> ``api-example-com``."""
    return re.sub(r"[^a-zA-Z0-9-]", "", domain.replace(".", "-"))


def hostname_for(domain: str, environment: Environment) -> str:
    if environment == Environment.PROD:
        return domain
    if environment == Environment.STAGING:
        return f"staging.{domain}"
    return f"dev.{domain}"


class DomainResolver:
    """Turns a domain name into a ``DomainDescriptor``.

    Naming follows the platform conventions used by the deployment templates:
    worker ``<clean>-data-service``, database ``<clean>-auth-db`` bound as ``DB``.
    Existing resource ids are read from the domain's wrangler.toml when present.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        environ: Optional[Mapping[str, str]] = None,
        default_config_path: Optional[str] = None,
        binding: str = "DB"
    ):
        self.settings = settings or Settings()
        self.environ = environ if environ is not None else os.environ
        self.default_config_path = default_config_path or self.settings.platform.config_path
        self.binding = binding
        self._cache: Dict[Tuple, DomainDescriptor] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def validate_domain(self, domain: str) -> None:
        """
        Raises:
            ValidationError: If the domain is not a valid hostname
        """
        if not domain or not DOMAIN_PATTERN.match(domain):
            raise ValidationError(
                f"Invalid domain name: '{domain}'",
                suggestions=["Use a fully qualified hostname such as api.example.com"],
            )

    def resolve(
        self,
        domain: str,
        environment: Environment,
        credentials_ref: Optional[str] = None,
        credentials: Optional[Mapping[str, str]] = None,
        config_path: Optional[str] = None,
        secrets: Optional[Mapping[str, str]] = None
    ) -> DomainDescriptor:
        """Resolve one domain.

        Args:
            domain: Requested domain name
            environment: Target environment
            credentials_ref: Prefix of the environment variables carrying credentials
            credentials: Explicit ``api_token``/``account_id`` values (take precedence)
            config_path: Explicit wrangler.toml path
            secrets: Secret values to distribute, by secret name

        Returns:
            Resolved descriptor (cached per domain, environment and config path)

        Raises:
            ValidationError: If the domain name is invalid
            ConfigurationError: If the wrangler.toml exists but cannot be parsed
        """
        domain = domain.strip().lower()
        self.validate_domain(domain)

        domain_settings = self.settings.get_domain(domain)
        path = config_path or (domain_settings.config_path if domain_settings else None) or self.default_config_path
        cache_key = (domain, environment, path, credentials_ref, tuple(sorted((credentials or {}).items())))

        with self._lock:
            cached = self._cache.get(cache_key)
        if cached is not None and not secrets:
            return cached

        clean = clean_domain_name(domain)
        worker_name = f"{clean}-data-service"
        database_name = f"{clean}-auth-db"
        existing_database_id = None
        warnings = []

        wrangler_config = WranglerConfig(path)
        if wrangler_config.exists():
            env_name = environment.platform_name
            declared = wrangler_config.find_binding(self.binding, env_name)
            if declared is not None:
                database_name = declared.database_name or database_name
                existing_database_id = declared.database_id
            worker_name = wrangler_config.worker_name(env_name) or worker_name
        else:
            warnings.append(f"No platform configuration at {path}")

        api_token, account_id = self._credentials(credentials_ref, credentials)
        if not api_token:
            warnings.append("CLOUDFLARE_API_TOKEN is not set")
        if not account_id:
            warnings.append("CLOUDFLARE_ACCOUNT_ID is not set")
        for warning in warnings:
            self.logger.warning(f"{domain}: {warning}", extra={'domain': domain})

        descriptor = DomainDescriptor(
            name=domain,
            clean_name=clean,
            environment=environment,
            hostname=hostname_for(domain, environment),
            worker_name=worker_name,
            database_name=database_name,
            database_binding=self.binding,
            existing_database_id=existing_database_id,
            config_path=path,
            account_id=account_id,
            api_token=api_token,
            secrets=self._secrets(domain_settings, secrets),
            warnings=tuple(warnings),
        )

        with self._lock:
            self._cache[cache_key] = descriptor
        return descriptor

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _credentials(
        self,
        credentials_ref: Optional[str],
        credentials: Optional[Mapping[str, str]]
    ) -> Tuple[Optional[str], Optional[str]]:
        credentials = credentials or {}
        prefix = credentials_ref or DEFAULT_CREDENTIALS_REF
        api_token = credentials.get("api_token") or self.environ.get(f"{prefix}_API_TOKEN")
        account_id = credentials.get("account_id") or self.environ.get(f"{prefix}_ACCOUNT_ID")
        return api_token, account_id

    def _secrets(self, domain_settings, secrets: Optional[Mapping[str, str]]) -> Dict[str, str]:
        resolved = {}
        if domain_settings is not None:
            for name, variable in domain_settings.secrets.items():
                value = self.environ.get(variable)
                if value is None:
                    raise ConfigurationError(
                        f"Secret '{name}' for {domain_settings.name} expects environment variable {variable}",
                    )
                resolved[name] = value
        resolved.update(secrets or {})
        return resolved
