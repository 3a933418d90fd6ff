"""Single-domain deployment strategy."""

from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from edge_deploy.config.wrangler import WranglerConfig
from edge_deploy.orchestrator.models import DeploymentContext, DeploymentMode, DomainDescriptor
from edge_deploy.orchestrator.resolver import DOMAIN_PATTERN
from edge_deploy.orchestrator.rollback import RollbackAction
from edge_deploy.orchestrator.strategies.base import DeploymentStrategy
from edge_deploy.platform.health import HealthChecker
from edge_deploy.platform.wrangler import WranglerClient
from edge_deploy.utils.errors import ConfigurationError, DeploymentError, ValidationError
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)

# Produces secret values for a domain; generation itself lives outside this package
SecretSource = Callable[[DomainDescriptor], Mapping[str, str]]

VALIDATION_LEVELS = ("none", "basic", "standard", "comprehensive")


class SingleDomainStrategy(DeploymentStrategy):
    """Deploys ``ctx.config`` directly: database, migrations, secrets, worker."""

    mode = DeploymentMode.SINGLE

    def __init__(
        self,
        wrangler: WranglerClient,
        health_checker: Optional[HealthChecker] = None,
        dry_run: bool = False,
        run_migrations: bool = True,
        variables: Optional[Dict[str, str]] = None,
        manage_databases: bool = True,
        distribute_secrets: bool = True,
        secret_source: Optional[SecretSource] = None,
        validation_level: str = "standard",
        check_hostname: bool = False
    ):
        """Initialize strategy.

        Args:
            wrangler: Platform CLI client
            health_checker: Health checker for the verify phase (skipped when None)
            dry_run: Validate and build without creating resources
            run_migrations: Apply pending migrations during prepare
            variables: Plain-text variables passed to ``wrangler deploy --var``
            manage_databases: Create the domain's database when it does not exist
            distribute_secrets: Upload the domain's secrets during prepare
            secret_source: Extra secret values per domain, merged under explicit ones
            validation_level: ``none``, ``basic``, ``standard`` or ``comprehensive``
            check_hostname: Also health check the custom hostname during verify
        """
        self.wrangler = wrangler
        self.health_checker = health_checker
        self.dry_run = dry_run
        self.run_migrations = run_migrations
        self.variables = variables or {}
        self.manage_databases = manage_databases
        self.distribute_secrets = distribute_secrets
        self.secret_source = secret_source
        if validation_level not in VALIDATION_LEVELS:
            raise ValueError(f"Unknown validation level: {validation_level}")
        self.validation_level = validation_level
        self.check_hostname = check_hostname
        self.logger = get_logger(__name__)

    def on_initialize(self, ctx: DeploymentContext) -> Dict[str, Any]:
        config = ctx.config
        ctx.state["client"] = self.wrangler.with_credentials(config.credentials_env)
        return {
            "domain": config.name,
            "environment": config.environment.value,
            "hostname": config.hostname,
            "worker": config.worker_name,
            "dryRun": self.dry_run,
            "warnings": list(config.warnings),
        }

    def on_validation(self, ctx: DeploymentContext) -> Dict[str, Any]:
        config = ctx.config
        if self.validation_level == "none":
            data = self.load_platform_config(ctx)
            data["validation"] = "disabled"
            return data

        if not DOMAIN_PATTERN.match(config.name):
            raise ValidationError(f"Invalid domain name: '{config.name}'")

        missing = [
            name for name, value in (
                ("CLOUDFLARE_API_TOKEN", config.api_token),
                ("CLOUDFLARE_ACCOUNT_ID", config.account_id),
            ) if not value
        ]
        if missing and not self.dry_run:
            raise ValidationError(
                f"Missing credentials for {config.name}: {', '.join(missing)}",
                suggestions=[f"Export {name}" for name in missing],
            )

        data = self.load_platform_config(ctx)
        data["credentialsPresent"] = not missing
        data["validation"] = self.validation_level

        if self.validation_level in ("standard", "comprehensive"):
            document = WranglerConfig(config.config_path).load()
            main = document.get("main")
            if main and not (Path(config.config_path).parent / str(main)).exists():
                raise ConfigurationError(
                    f"Worker entry point {main} declared in {config.config_path} does not exist",
                    suggestions=["Fix 'main' in wrangler.toml or build the worker first"],
                )
            if not document.get("compatibility_date"):
                self.logger.warning(
                    f"{config.config_path} does not pin compatibility_date",
                    extra={'domain': config.name, 'phase': 'validate'},
                )

        if self.validation_level == "comprehensive" and not self.dry_run:
            account = self._client(ctx).whoami()
            if account["account_id"] and config.account_id and account["account_id"] != config.account_id:
                raise ValidationError(
                    f"Authenticated account {account['account_id']} does not match "
                    f"CLOUDFLARE_ACCOUNT_ID {config.account_id}",
                    suggestions=["Use an API token issued for the target account"],
                )
            data["account"] = account
        return data

    def load_platform_config(self, ctx: DeploymentContext) -> Dict[str, Any]:
        """Read the domain's wrangler.toml into ``ctx.state``.

        Raises:
            ConfigurationError: If the file is missing or cannot be parsed
        """
        config = ctx.config
        if not config.config_path or not WranglerConfig(config.config_path).exists():
            raise ConfigurationError(
                f"Platform configuration not found for {config.name}: {config.config_path}",
                suggestions=["Create wrangler.toml or set config_path for this domain"],
            )

        wrangler_config = WranglerConfig(config.config_path)
        platform_env = self._platform_environment(wrangler_config, ctx)
        bindings = wrangler_config.get_bindings(platform_env)
        ctx.state["platform_env"] = platform_env
        ctx.state["bindings"] = bindings
        return {
            "configPath": config.config_path,
            "platformEnvironment": platform_env,
            "bindings": [binding.to_dict() for binding in bindings],
        }

    def on_prepare(self, ctx: DeploymentContext) -> Dict[str, Any]:
        """Provision the database, apply migrations and upload secrets.

        Safe to re-run after a transient failure: the database created and
        the secrets uploaded by an earlier attempt are remembered in
        ``ctx.state`` and neither redone nor registered for rollback twice.
        Migrations wait for deploy when the binding is not yet complete.
        """
        config = ctx.config
        secrets = self._secrets(config)
        if self.dry_run:
            return {"dryRun": True, "database": config.database_name, "secrets": sorted(secrets)}

        client = self._client(ctx)
        data: Dict[str, Any] = {}

        if self.manage_databases:
            ctx.check_cancelled()
            database = ctx.state.get("created_database")
            if database is None:
                databases = client.list_databases()
                database = next(
                    (db for db in databases if db.id == config.existing_database_id or db.name == config.database_name),
                    None,
                )
            if database is None:
                database = client.create_database(config.database_name)
                ctx.state["created_database"] = database
                ctx.rollback_stack.push(RollbackAction(
                    type="delete-database",
                    description=f"Delete database {database.name}",
                    undo=lambda _ctx, name=database.name: client.delete_database(name),
                ))
            if ctx.state.get("created_database") is not None:
                data["databaseCreated"] = True
            data["database"] = {"name": database.name, "id": database.id}

        declared = next(
            (b for b in ctx.state.get("bindings", []) if b.binding == config.database_binding),
            None,
        )
        ctx.state["migrations_pending"] = False
        if self.run_migrations and declared is not None and declared.is_complete():
            self._apply_migrations(ctx, client)
            data["migrations"] = {"binding": config.database_binding, "applied": True}
        else:
            ctx.state["migrations_pending"] = self.run_migrations
            data["migrations"] = {"binding": config.database_binding, "applied": False}

        distributed = ctx.state.setdefault("distributed_secrets", [])
        if self.distribute_secrets:
            platform_env = ctx.state.get("platform_env")
            for name, value in secrets.items():
                if name in distributed:
                    continue
                ctx.check_cancelled()
                client.put_secret(name, value, platform_env, config.config_path)
                ctx.rollback_stack.push(RollbackAction(
                    type="delete-secret",
                    description=f"Delete secret {name}",
                    undo=lambda _ctx, secret=name: client.delete_secret(secret, platform_env, config.config_path),
                ))
                distributed.append(name)
        data["secrets"] = list(distributed)
        return data

    def on_deploy(self, ctx: DeploymentContext) -> Dict[str, Any]:
        config = ctx.config
        ctx.check_cancelled()

        client = self._client(ctx)
        platform_env = ctx.state.get("platform_env")
        data: Dict[str, Any] = {}

        # Binding recovery may have completed the binding since prepare
        if ctx.state.get("migrations_pending") and config.config_path and not self.dry_run:
            binding = WranglerConfig(config.config_path).find_binding(config.database_binding, platform_env)
            if binding is not None and binding.is_complete():
                self._apply_migrations(ctx, client)
                ctx.state["migrations_pending"] = False
                data["migrations"] = {"binding": config.database_binding, "applied": True}

        routes = WranglerConfig(config.config_path).routes(platform_env) if config.config_path else []
        outcome = client.deploy(
            environment=platform_env,
            config_path=config.config_path,
            dry_run=self.dry_run,
            variables=self.variables,
            worker_name=config.worker_name,
            routes=routes,
        )
        if not outcome.dry_run:
            ctx.rollback_stack.push(RollbackAction(
                type="rollback-worker",
                description=f"Roll back worker {config.worker_name}",
                undo=lambda _ctx: client.rollback_worker(config.worker_name),
            ))

        ctx.state["url"] = outcome.url
        data.update({"url": outcome.url, "worker": config.worker_name, "dryRun": outcome.dry_run})
        return data

    def on_verify(self, ctx: DeploymentContext) -> Dict[str, Any]:
        url = ctx.state.get("url")
        if self.dry_run or self.health_checker is None or not url:
            reason = "dry run" if self.dry_run else ("health checks disabled" if self.health_checker is None else "no url")
            return {"healthCheck": "skipped", "reason": reason}

        result = self.health_checker.wait_until_healthy(url)
        ctx.state["health"] = result
        if not result.healthy:
            raise DeploymentError(
                f"Health check failed for {result.url}: {result.message}",
                retryable=False,
                suggestions=["Inspect logs with: wrangler tail"],
            )
        data = {"healthCheck": result.to_dict()}

        if self.check_hostname:
            hostname_result = self.health_checker.check(f"https://{ctx.config.hostname}")
            if not hostname_result.healthy:
                raise DeploymentError(
                    f"Custom hostname check failed for {hostname_result.url}: {hostname_result.message}",
                    retryable=False,
                    suggestions=["Check the route and DNS records for the custom domain"],
                )
            data["hostnameCheck"] = hostname_result.to_dict()
        return data

    def on_monitor(self, ctx: DeploymentContext) -> Dict[str, Any]:
        health = ctx.state.get("health")
        report = {
            "url": ctx.state.get("url"),
            "worker": ctx.config.worker_name,
            "healthy": health.healthy if health is not None else None,
            "rollbackActions": ctx.rollback_stack.peek_types(),
        }
        self.logger.info(
            f"{ctx.config.name} live at {report['url'] or 'n/a'}",
            extra={'deployment_id': ctx.deployment_id, 'domain': ctx.config.name, 'phase': 'monitor'},
        )
        return report

    def _client(self, ctx: DeploymentContext) -> WranglerClient:
        client = ctx.state.get("client")
        if client is None:
            client = self.wrangler.with_credentials(ctx.config.credentials_env)
            ctx.state["client"] = client
        return client

    def _secrets(self, config: DomainDescriptor) -> Dict[str, str]:
        secrets = dict(self.secret_source(config)) if self.secret_source is not None else {}
        secrets.update(config.secrets)
        return secrets

    @staticmethod
    def _platform_environment(wrangler_config: WranglerConfig, ctx: DeploymentContext) -> Optional[str]:
        """``--env`` value, only when wrangler.toml declares that environment."""
        env_name = ctx.config.environment.platform_name
        envs = wrangler_config.load().get("env")
        if envs is not None and env_name in envs:
            return env_name
        return None

    @staticmethod
    def _apply_migrations(ctx: DeploymentContext, client: WranglerClient) -> None:
        ctx.check_cancelled()
        client.apply_migrations(
            binding=ctx.config.database_binding,
            environment=ctx.state.get("platform_env"),
            remote=True,
            config_path=ctx.config.config_path,
        )
