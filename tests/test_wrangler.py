"""Tests for the wrangler client and wrangler.toml access."""

from __future__ import annotations

import json
import time

import pytest

from conftest import DATABASE_ID, OTHER_DATABASE_ID, fail, ok, write_wrangler_toml
from edge_deploy.config.wrangler import DatabaseBinding, WranglerConfig
from edge_deploy.platform.wrangler import (
    extract_deployment_url,
    parse_created_database_id,
    parse_database_list,
)
from edge_deploy.utils.errors import ConfigurationError, PlatformCommandError

D1_TABLE = """\
┌──────────────────────────────────────┬─────────────────────┬────────────┐
│ uuid                                 │ name                │ created_at │
├──────────────────────────────────────┼─────────────────────┼────────────┤
│ 11111111-2222-3333-4444-555555555555 │ example-com-auth-db │ 2024-09-01 │
└──────────────────────────────────────┴─────────────────────┴────────────┘
"""


class TestOutputParsing:
    def test_url_prefers_workers_dev(self):
        output = "Published https://docs.example.com\n  https://shop.acme.workers.dev\n"

        assert extract_deployment_url(output) == "https://shop.acme.workers.dev"

    def test_url_marker_wins(self):
        output = "Deployed to: https://api.example.com\nhttps://other.acme.workers.dev"

        assert extract_deployment_url(output) == "https://api.example.com"

    def test_url_falls_back_to_route_then_worker_name(self):
        assert extract_deployment_url("done", routes=["api.example.com/*"]) == "https://api.example.com"
        assert extract_deployment_url("done", worker_name="shop") == "https://shop.workers.dev"
        assert extract_deployment_url("done") is None

    def test_database_list_json(self):
        output = json.dumps([{"uuid": DATABASE_ID, "name": "example-com-auth-db"}, {"uuid": "x"}])

        databases = parse_database_list(output)

        assert [(db.id, db.name) for db in databases] == [(DATABASE_ID, "example-com-auth-db")]

    def test_database_list_table(self):
        databases = parse_database_list(D1_TABLE)

        assert [(db.id, db.name) for db in databases] == [(DATABASE_ID, "example-com-auth-db")]

    def test_created_database_id(self):
        assert parse_created_database_id(f'database_id = "{DATABASE_ID}"') == DATABASE_ID
        assert parse_created_database_id("nothing here") is None


class TestWranglerClient:
    def test_deploy_builds_flags_and_parses_url(self, runner, wrangler, wrangler_toml):
        outcome = wrangler.deploy(
            environment="production",
            config_path=str(wrangler_toml),
            variables={"DOMAIN": "example.com"},
            worker_name="example-com-data-service",
        )

        args = runner.calls_for("deploy")[0]
        assert args[:2] == ["wrangler", "deploy"]
        assert args[args.index("--config") + 1] == str(wrangler_toml)
        assert args[args.index("--env") + 1] == "production"
        assert "DOMAIN:example.com" in args
        assert outcome.url == "https://example.com.acme.workers.dev"

    def test_dry_run_has_no_url(self, runner, wrangler):
        outcome = wrangler.deploy(dry_run=True)

        assert "--dry-run" in runner.calls_for("deploy")[0]
        assert outcome.url is None

    def test_error_marker_fails_on_zero_exit(self, runner, wrangler):
        runner.script("deploy", ok("✘ [ERROR] A request to the Cloudflare API failed."))

        with pytest.raises(PlatformCommandError, match="A request to the Cloudflare API failed"):
            wrangler.deploy()

    def test_non_zero_exit_raises_with_output(self, runner, wrangler):
        runner.script("d1 create", fail("Error: quota exceeded", exit_code=2))

        with pytest.raises(PlatformCommandError) as exc_info:
            wrangler.create_database("example-com-auth-db")

        assert exc_info.value.exit_code == 2
        assert "quota exceeded" in exc_info.value.output

    def test_create_without_reported_id_fails(self, runner, wrangler):
        runner.script("d1 create", ok("created"))

        with pytest.raises(PlatformCommandError, match="Could not determine id"):
            wrangler.create_database("example-com-auth-db")

    def test_migrations_target_the_binding(self, runner, wrangler, wrangler_toml):
        wrangler.apply_migrations("DB", environment="production", config_path=str(wrangler_toml))

        args = runner.calls_for("d1 migrations")[0]
        assert args[:5] == ["wrangler", "d1", "migrations", "apply", "DB"]
        assert "example-com-auth-db" not in args
        assert args[-1] == "--remote"

    def test_secret_value_is_passed_on_stdin(self, runner, wrangler):
        wrangler.put_secret("JWT_SECRET", "s3cr3t")

        assert runner.calls_for("secret put")[0][-1] == "JWT_SECRET"
        assert "s3cr3t" not in runner.calls[0]
        assert runner.inputs[0] == "s3cr3t"

    def test_credentials_are_passed_as_environment(self, runner, wrangler):
        scoped = wrangler.with_credentials({"CLOUDFLARE_API_TOKEN": "tok"})

        scoped.list_databases()

        assert runner.envs[0] == {"CLOUDFLARE_API_TOKEN": "tok"}
        assert scoped.runner is wrangler.runner
        assert wrangler.with_credentials({}) is wrangler

    def test_whoami(self, runner, wrangler):
        runner.script("whoami", ok(
            "You are logged in with an API Token, associated with the email dev@example.com.\n"
            "│ Acme │ 0123456789abcdef0123456789abcdef │"
        ))

        assert wrangler.whoami() == {
            "email": "dev@example.com",
            "account_id": "0123456789abcdef0123456789abcdef",
        }


class TestWranglerConfig:
    def test_reads_bindings_and_name(self, wrangler_toml):
        config = WranglerConfig(str(wrangler_toml))

        assert config.worker_name() == "example-com-data-service"
        assert config.find_binding("DB") == DatabaseBinding("DB", "example-com-auth-db", DATABASE_ID)
        assert config.find_binding("CACHE") is None

    def test_environment_sections(self, tmp_path):
        path = write_wrangler_toml(
            tmp_path,
            extra=(
                "[env.production]\n"
                'name = "example-com-prod"\n'
                'routes = [{ pattern = "example.com/*", zone_name = "example.com" }]\n\n'
                "[[env.production.d1_databases]]\n"
                'binding = "DB"\n'
                'database_name = "example-com-prod-db"\n'
            ),
        )
        config = WranglerConfig(str(path))

        assert config.worker_name("production") == "example-com-prod"
        assert config.routes("production") == ["example.com/*"]
        assert config.find_binding("DB", "production").database_id is None
        assert config.find_binding("DB", "staging").database_id == DATABASE_ID

    def test_upsert_preserves_other_content(self, tmp_path):
        path = write_wrangler_toml(tmp_path, database_id=None, extra='[vars]\nMODE = "live"  # keep\n')
        config = WranglerConfig(str(path))

        config.upsert_binding(DatabaseBinding("DB", "example-com-auth-db", OTHER_DATABASE_ID))
        config.upsert_binding(DatabaseBinding("CACHE", "example-com-cache"))

        text = path.read_text()
        assert f'database_id = "{OTHER_DATABASE_ID}"' in text
        assert 'MODE = "live"  # keep' in text
        assert [b.binding for b in config.get_bindings()] == ["DB", "CACHE"]

    def test_backup_restore_and_prune(self, wrangler_toml):
        config = WranglerConfig(str(wrangler_toml))
        original = wrangler_toml.read_text()

        first = config.backup()
        config.upsert_binding(DatabaseBinding("DB", "other-db", OTHER_DATABASE_ID))
        config.restore(first)

        assert wrangler_toml.read_text() == original

        for _ in range(3):
            time.sleep(0.01)
            config.backup()
        assert len(config.list_backups()) == 4

        removed = config.prune_backups(keep=2)

        assert first in removed
        assert len(config.list_backups()) == 2

    def test_missing_and_invalid_files(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            WranglerConfig(str(tmp_path / "wrangler.toml")).load()

        broken = tmp_path / "broken.toml"
        broken.write_text("name = \n")
        with pytest.raises(ConfigurationError, match="Invalid TOML"):
            WranglerConfig(str(broken)).load()

    def test_lock_is_released_on_exit(self, wrangler_toml):
        with WranglerConfig(str(wrangler_toml)):
            pass
        with WranglerConfig(str(wrangler_toml), lock_timeout=0.1) as config:
            assert config.exists()
