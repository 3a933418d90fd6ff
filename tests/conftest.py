"""Shared test fixtures."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import requests
from requests.adapters import BaseAdapter

from edge_deploy.config.models import AuditSettings, DomainSettings, HealthSettings, Settings
from edge_deploy.orchestrator.coordinator import DeploymentCoordinator
from edge_deploy.orchestrator.models import DomainDescriptor, Environment
from edge_deploy.orchestrator.resolver import DomainResolver
from edge_deploy.orchestrator.services import DeploymentServices
from edge_deploy.platform.health import HealthChecker
from edge_deploy.platform.runner import CommandResult, CommandRunner
from edge_deploy.platform.wrangler import WranglerClient

API_TOKEN = "tok_" + "x" * 36
ACCOUNT_ID = "0123456789abcdef0123456789abcdef"
DATABASE_ID = "11111111-2222-3333-4444-555555555555"
OTHER_DATABASE_ID = "99999999-8888-7777-6666-555555555555"

Response = Union[CommandResult, Callable[[List[str]], CommandResult]]


def ok(stdout: str = "") -> Callable[[List[str]], CommandResult]:
    return lambda args: CommandResult(args=args, exit_code=0, stdout=stdout)


def fail(stderr: str, exit_code: int = 1, stdout: str = "") -> Callable[[List[str]], CommandResult]:
    return lambda args: CommandResult(args=args, exit_code=exit_code, stdout=stdout, stderr=stderr)


def config_dir_name(args: List[str]) -> str:
    """Directory holding the wrangler.toml passed with ``--config``."""
    if "--config" in args:
        return Path(args[args.index("--config") + 1]).parent.name
    return "worker"


def default_deploy(args: List[str]) -> CommandResult:
    name = config_dir_name(args)
    return CommandResult(
        args=args,
        exit_code=0,
        stdout=f"Uploaded {name}\nDeployed {name} triggers\n  https://{name}.acme.workers.dev\n",
    )


def default_create(args: List[str]) -> CommandResult:
    return CommandResult(
        args=args,
        exit_code=0,
        stdout=(
            f"✅ Successfully created DB '{args[-1]}'\n\n"
            "[[d1_databases]]\n"
            'binding = "DB"\n'
            f'database_name = "{args[-1]}"\n'
            f'database_id = "{DATABASE_ID}"\n'
        ),
    )


class FakeRunner(CommandRunner):
    """Replays scripted wrangler output and records every invocation.

    Responses are keyed by subcommand (``deploy``, ``d1 list``, ``secret put``...).
    Scripted responses are consumed in order; the last one is repeated.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []
        self.inputs: List[Optional[str]] = []
        self._scripts: Dict[str, List[Response]] = {}
        self._defaults: Dict[str, Response] = {
            "deploy": default_deploy,
            "d1 list": ok("[]"),
            "d1 create": default_create,
        }
        self._lock = threading.Lock()

    def script(self, key: str, *responses: Response) -> "FakeRunner":
        self._scripts[key] = list(responses)
        return self

    def run(self, args, timeout=None, env=None, input_text=None, cwd=None) -> CommandResult:
        key = self.key(args)
        with self._lock:
            self.calls.append(list(args))
            self.envs.append(dict(env or {}))
            self.inputs.append(input_text)
            queue = self._scripts.get(key)
            if queue:
                response = queue.pop(0) if len(queue) > 1 else queue[0]
            else:
                response = self._defaults.get(key, ok(""))

        if isinstance(response, CommandResult):
            return response
        return response(list(args))

    def calls_for(self, key: str) -> List[List[str]]:
        with self._lock:
            return [call for call in self.calls if self.key(call) == key]

    @staticmethod
    def key(args: List[str]) -> str:
        command = args[1:]
        if command and command[0] in ("d1", "secret"):
            if command[1:2] == ["migrations"]:
                return "d1 migrations"
            return " ".join(command[:2])
        return command[0] if command else ""


def write_wrangler_toml(
    directory: Path,
    name: str = "example-com-data-service",
    database_name: Optional[str] = "example-com-auth-db",
    database_id: Optional[str] = DATABASE_ID,
    extra: str = "",
    main: str = "src/index.js"
) -> Path:
    """Write a wrangler.toml plus its entry point and return the toml path."""
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "src").mkdir(exist_ok=True)
    (directory / "src" / "index.js").write_text("export default { fetch() { return new Response('ok') } }\n")

    lines = [
        f'name = "{name}"',
        f'main = "{main}"',
        'compatibility_date = "2024-09-01"',
        "",
    ]
    if database_name is not None:
        lines += ["[[d1_databases]]", 'binding = "DB"', f'database_name = "{database_name}"']
        if database_id is not None:
            lines.append(f'database_id = "{database_id}"')
        lines.append("")
    if extra:
        lines.append(extra)

    path = directory / "wrangler.toml"
    path.write_text("\n".join(lines) + "\n")
    return path


def make_descriptor(
    config_path: Optional[Path],
    name: str = "example.com",
    environment: Environment = Environment.PROD,
    api_token: Optional[str] = API_TOKEN,
    account_id: Optional[str] = ACCOUNT_ID,
    secrets: Optional[Dict[str, str]] = None,
    existing_database_id: Optional[str] = None
) -> DomainDescriptor:
    clean = name.replace(".", "-")
    return DomainDescriptor(
        name=name,
        clean_name=clean,
        environment=environment,
        hostname=name,
        worker_name=f"{clean}-data-service",
        database_name=f"{clean}-auth-db",
        existing_database_id=existing_database_id,
        config_path=str(config_path) if config_path else None,
        account_id=account_id,
        api_token=api_token,
        secrets=secrets or {},
    )


def json_response(request: requests.PreparedRequest, status_code: int = 200, payload: Optional[Any] = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.url = request.url
    response.request = request
    response._content = json.dumps(payload).encode() if payload is not None else b""
    if payload is not None:
        response.headers["Content-Type"] = "application/json"
    return response


class StubAdapter(BaseAdapter):
    """Answers every request with ``respond(request)``; no network access."""

    def __init__(self, respond: Callable[[requests.PreparedRequest], requests.Response]):
        super().__init__()
        self.respond = respond
        self.requests: List[requests.PreparedRequest] = []

    def send(self, request, **kwargs):
        self.requests.append(request)
        return self.respond(request)

    def close(self):
        pass


def stub_session(respond: Callable[[requests.PreparedRequest], requests.Response]) -> requests.Session:
    session = requests.Session()
    adapter = StubAdapter(respond)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def health_session(status_code: int = 200, payload: Optional[dict] = None) -> requests.Session:
    body = payload if payload is not None else {"status": "ok"}
    return stub_session(lambda request: json_response(request, status_code, body))


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def wrangler(runner: FakeRunner) -> WranglerClient:
    return WranglerClient(runner=runner)


@pytest.fixture
def http_session():
    session = health_session()
    yield session
    session.close()


@pytest.fixture
def health_checker(http_session: requests.Session) -> HealthChecker:
    return HealthChecker(attempts=2, interval=0, session=http_session, sleep=lambda seconds: None)


@pytest.fixture
def wrangler_toml(tmp_path: Path) -> Path:
    return write_wrangler_toml(tmp_path / "example.com")


@pytest.fixture
def descriptor(wrangler_toml: Path) -> DomainDescriptor:
    return make_descriptor(wrangler_toml)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        audit=AuditSettings(path=str(tmp_path / "audit" / "deployments.jsonl")),
        health=HealthSettings(attempts=2, interval_seconds=0),
    )


@pytest.fixture
def services(settings: Settings, runner: FakeRunner, http_session: requests.Session) -> DeploymentServices:
    return DeploymentServices.from_settings(
        settings,
        runner=runner,
        http_session=http_session,
        sleep=lambda seconds: None,
    )


def deploy_failing_for(*domains: str, stderr: str = "Build failed with 1 error: SyntaxError"):
    """Deploy response that fails only for the given domains' config directories."""
    def respond(args: List[str]) -> CommandResult:
        if config_dir_name(args) in domains:
            return CommandResult(args=args, exit_code=1, stderr=stderr)
        return default_deploy(args)

    return respond


def build_coordinator(
    tmp_path: Path,
    runner: FakeRunner,
    http_session: requests.Session,
    domains: List[str],
    depends_on: Optional[Dict[str, List[str]]] = None,
    environ: Optional[Dict[str, str]] = None,
    **settings_fields
) -> DeploymentCoordinator:
    """Coordinator whose domains each own a wrangler.toml under ``tmp_path``."""
    depends_on = depends_on or {}
    domain_settings = []
    for domain in domains:
        clean = domain.replace(".", "-")
        path = write_wrangler_toml(tmp_path / domain, name=f"{clean}-data-service", database_name=f"{clean}-auth-db")
        domain_settings.append(DomainSettings(name=domain, config_path=str(path), depends_on=depends_on.get(domain, [])))

    settings_fields.setdefault("audit", AuditSettings(path=str(tmp_path / "audit" / "deployments.jsonl")))
    settings_fields.setdefault("health", HealthSettings(attempts=2, interval_seconds=0))
    settings = Settings(domains=domain_settings, **settings_fields)

    services = DeploymentServices.from_settings(settings, runner=runner, http_session=http_session, sleep=lambda s: None)
    if environ is None:
        environ = {"CLOUDFLARE_API_TOKEN": API_TOKEN, "CLOUDFLARE_ACCOUNT_ID": ACCOUNT_ID}
    return DeploymentCoordinator(settings, services, DomainResolver(settings, environ=environ))
