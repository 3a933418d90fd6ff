"""Tests for database binding recovery."""

from __future__ import annotations

import json

import pytest

from conftest import DATABASE_ID, OTHER_DATABASE_ID, make_descriptor, ok, write_wrangler_toml
from edge_deploy.config.wrangler import WranglerConfig
from edge_deploy.orchestrator.binding_recovery import BindingErrorRecovery
from edge_deploy.orchestrator.rollback import RollbackStack
from edge_deploy.utils.errors import PlatformCommandError

NOT_FOUND = "✘ [ERROR] Couldn't find a D1 DB with the name or binding 'DB'"


def deploy_error(stderr: str = NOT_FOUND) -> PlatformCommandError:
    return PlatformCommandError(
        "wrangler deploy failed (exit 1)",
        command=["wrangler", "deploy"],
        exit_code=1,
        stderr=stderr,
    )


def database_list(*databases):
    return ok(json.dumps([{"uuid": uuid, "name": name} for uuid, name in databases]))


@pytest.fixture
def recovery(wrangler) -> BindingErrorRecovery:
    return BindingErrorRecovery(wrangler)


class TestAnalyze:
    @pytest.mark.parametrize("text,expected", [
        (NOT_FOUND, "database_not_found"),
        ("Database 'example-com-auth-db' not found", "database_not_found"),
        ("Invalid binding DB in wrangler.toml", "binding_configuration_error"),
        ("Authentication error: permission denied for D1", "permission_error"),
        ("Build failed", None),
    ])
    def test_error_types(self, recovery, text, expected):
        assert recovery.analyze(deploy_error(text)) == expected


class TestRecover:
    def test_selects_existing_database_and_rewrites_binding(self, runner, recovery, wrangler_toml, descriptor):
        runner.script("d1 list", database_list((OTHER_DATABASE_ID, "example-com-auth-db")))
        stack = RollbackStack()

        result = recovery.recover(deploy_error(), descriptor, stack)

        assert result.handled and result.retry
        assert result.action == BindingErrorRecovery.SELECTED
        assert result.database_id == OTHER_DATABASE_ID
        assert result.backup_path.exists()
        assert WranglerConfig(str(wrangler_toml)).find_binding("DB").database_id == OTHER_DATABASE_ID
        assert stack.peek_types() == ["restore-config-backup"]
        assert runner.envs[0]["CLOUDFLARE_API_TOKEN"] == descriptor.api_token

    def test_second_recovery_is_a_no_op(self, runner, recovery, wrangler_toml, descriptor):
        runner.script("d1 list", database_list((OTHER_DATABASE_ID, "example-com-auth-db")))
        config = WranglerConfig(str(wrangler_toml))

        recovery.recover(deploy_error(), descriptor)
        contents = wrangler_toml.read_text()
        second = recovery.recover(deploy_error(), descriptor)

        assert second.handled is True
        assert second.retry is False
        assert second.action == BindingErrorRecovery.ALREADY_CONFIGURED
        assert wrangler_toml.read_text() == contents
        assert len(config.list_backups()) == 1
        assert runner.calls_for("d1 create") == []

    def test_creates_database_when_none_exists(self, runner, recovery, tmp_path):
        path = write_wrangler_toml(tmp_path / "example.com", database_id=None)
        stack = RollbackStack()

        result = recovery.recover(deploy_error(), make_descriptor(path), stack)

        assert result.action == BindingErrorRecovery.CREATED
        assert result.database_id == DATABASE_ID
        assert runner.calls_for("d1 create")[0][-1] == "example-com-auth-db"
        assert stack.peek_types() == ["restore-config-backup", "delete-database"]

        stack.unwind_all()

        assert WranglerConfig(str(path)).find_binding("DB").database_id is None
        assert runner.calls_for("d1 delete")[0][3] == "example-com-auth-db"

    def test_incomplete_binding_is_updated(self, runner, recovery, tmp_path):
        path = write_wrangler_toml(tmp_path / "example.com", database_id=None)
        runner.script("d1 list", database_list((DATABASE_ID, "example-com-auth-db")))

        result = recovery.recover(deploy_error(), make_descriptor(path))

        assert result.action == BindingErrorRecovery.UPDATED
        assert WranglerConfig(str(path)).find_binding("DB").is_complete()

    def test_ambiguous_candidates_use_selector(self, runner, wrangler, tmp_path):
        path = write_wrangler_toml(tmp_path / "example.com", database_name="example-com-legacy-db", database_id=None)
        runner.script("d1 list", database_list(
            (DATABASE_ID, "example-com-auth-db-old"),
            (OTHER_DATABASE_ID, "example-com-auth-db-new"),
        ))

        declined = BindingErrorRecovery(wrangler).recover(deploy_error(), make_descriptor(path))
        chosen = BindingErrorRecovery(
            wrangler, selector=lambda candidates, config: candidates[-1]
        ).recover(deploy_error(), make_descriptor(path))

        assert declined.action == "selection-required"
        assert not declined.retry
        assert chosen.database_name == "example-com-auth-db-new"
        assert chosen.retry

    def test_environment_section_is_repaired(self, runner, recovery, tmp_path):
        path = write_wrangler_toml(
            tmp_path / "example.com",
            extra=(
                "[env.production]\n"
                'name = "example-com-prod"\n\n'
                "[[env.production.d1_databases]]\n"
                'binding = "DB"\n'
                'database_name = "example-com-auth-db"\n'
                f'database_id = "{DATABASE_ID}"\n'
            ),
        )
        runner.script("d1 list", database_list((OTHER_DATABASE_ID, "example-com-auth-db")))

        recovery.recover(deploy_error(), make_descriptor(path))

        config = WranglerConfig(str(path))
        assert config.find_binding("DB", "production").database_id == OTHER_DATABASE_ID
        assert config.find_binding("DB").database_id == DATABASE_ID

    def test_unrelated_and_permission_errors_are_not_handled(self, runner, recovery, descriptor):
        unrelated = recovery.recover(deploy_error("Build failed"), descriptor)
        denied = recovery.recover(deploy_error("permission denied"), descriptor)

        assert not unrelated.handled
        assert denied.action == "permission-denied"
        assert runner.calls == []

    def test_platform_failure_during_recovery(self, runner, recovery, descriptor):
        runner.script("d1 list", ok("✘ [ERROR] Authentication error [code: 10000]"))

        result = recovery.recover(deploy_error(), descriptor)

        assert result.action == "failed"
        assert not result.retry
