"""Tests for the rollback stack."""

from __future__ import annotations

from edge_deploy.orchestrator.rollback import RollbackAction, RollbackStack
from edge_deploy.utils.errors import ErrorKind


def recording_action(log, name, fail=False):
    def undo(ctx):
        log.append(name)
        if fail:
            raise RuntimeError(f"{name} could not be undone")

    return RollbackAction(type=name, description=f"undo {name}", undo=undo)


class TestRollbackStack:
    def test_unwinds_in_reverse_order(self):
        log = []
        stack = RollbackStack(owner="example.com")
        for name in ("create-database", "put-secret", "deploy-worker"):
            stack.push(recording_action(log, name))

        assert stack.peek_types() == ["deploy-worker", "put-secret", "create-database"]

        results = stack.unwind_all()

        assert log == ["deploy-worker", "put-secret", "create-database"]
        assert all(result.succeeded for result in results)
        assert stack.is_empty()

    def test_failed_undo_does_not_stop_unwind(self):
        log = []
        stack = RollbackStack()
        stack.push(recording_action(log, "create-database"))
        stack.push(recording_action(log, "put-secret", fail=True))
        stack.push(recording_action(log, "deploy-worker"))

        results = stack.unwind_all()

        assert log == ["deploy-worker", "put-secret", "create-database"]
        assert [result.succeeded for result in results] == [True, False, True]
        assert results[1].error.kind == ErrorKind.ROLLBACK
        assert results[1].to_dict()["error"] == "put-secret could not be undone"

    def test_each_undo_runs_once(self):
        log = []
        stack = RollbackStack()
        stack.push(recording_action(log, "create-database"))

        stack.unwind_all()
        second = stack.unwind_all()

        assert log == ["create-database"]
        assert second == []

    def test_undo_receives_context(self):
        seen = []
        stack = RollbackStack()
        stack.push(RollbackAction("noop", "record context", undo=seen.append))

        stack.unwind_all("ctx")

        assert seen == ["ctx"]

    def test_discard_drops_actions(self):
        log = []
        stack = RollbackStack()
        stack.push(recording_action(log, "create-database"))

        assert stack.discard() == 1
        assert stack.unwind_all() == []
        assert log == []
