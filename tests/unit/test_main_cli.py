"""Unit tests for the taskloop.main CLI module.

The repository root is resolved through ``open_session``, which is patched to
return a session bound to in-memory providers.
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from taskloop.enums import WorkflowState
from taskloop.main import Session, cli, open_session
from taskloop.models.tickets import Ticket

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def task_root(settings) -> Path:
    path = settings.workspaces_path / "20261019-101500-add-export-command" / "repo"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def write_record(task_root, settings):
    """Write a record into the task workspace."""

    def _write(record) -> Path:
        path = task_root / settings.workflow_dir / settings.workflow_file
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(record.to_json())
        return path

    return _write


@pytest.fixture
def task_session(settings, task_root, tracker, vcs) -> Session:
    return Session(settings, task_root, tracker, vcs)


@pytest.fixture
def main_session(settings, tracker, vcs) -> Session:
    vcs.root_path.mkdir(parents=True)
    return Session(settings, vcs.root_path, tracker, vcs)


def use_session(session: Session):
    return patch("taskloop.main.open_session", new=AsyncMock(return_value=session))


# =============================================================================
# Help and configuration
# =============================================================================


class TestCLIHelpText:
    def test_cli_main_help(self, cli_runner):
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "deterministic ticket workflow" in result.output
        assert "--config" in result.output
        assert "--log-level" in result.output

    def test_task_help(self, cli_runner):
        result = cli_runner.invoke(cli, ["task", "--help"])

        assert result.exit_code == 0
        assert "--user-message" in result.output
        assert "lgtm" in result.output

    def test_invalid_config(self, cli_runner, tmp_path):
        config = tmp_path / "taskloop.yaml"
        config.write_text("log_level: LOUD\n")

        result = cli_runner.invoke(cli, ["--config", str(config), "status"])

        assert result.exit_code == 1
        assert "Error: Invalid configuration" in result.output


# =============================================================================
# turn
# =============================================================================


class TestTurnCommand:
    def test_applies_transition(self, cli_runner, task_session, write_record, make_record):
        write_record(make_record())

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["turn", "--message-id", "m-1"], input="<transition>plan</transition>")

        assert result.exit_code == 0, result.output
        assert "workflow transition v1->v2: refine/t-root -> plan/t-root" in result.output

    def test_reads_output_file(self, cli_runner, task_session, write_record, make_record, tmp_path):
        write_record(make_record(WorkflowState.PLAN))
        reply = tmp_path / "reply.md"
        reply.write_text("Plan written.\n<transition>review-plan</transition>\n")

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["turn", "--output", str(reply), "--state", "plan"])

        assert result.exit_code == 0, result.output
        assert "plan/t-root -> review-plan/t-root" in result.output

    def test_ignored_turn(self, cli_runner, task_session, write_record, make_record):
        write_record(make_record())

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["turn"], input="Which format do you want?")

        assert result.exit_code == 0
        assert "No transition" in result.output

    def test_directive_error_exits_1(self, cli_runner, task_session, write_record, make_record):
        path = write_record(make_record())
        before = path.read_text()

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["turn"], input="<transition>implement</transition>")

        assert result.exit_code == 1
        assert "Error: Expected <transition>plan</transition>" in result.output
        assert path.read_text() == before

    def test_stale_state_rejected(self, cli_runner, task_session, write_record, make_record):
        write_record(make_record(WorkflowState.PLAN))

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["turn", "--state", "refine"], input="<transition>plan</transition>")

        assert result.exit_code == 1
        assert "Stale event" in result.output

    def test_completion_notice(self, cli_runner, task_session, write_record, make_record):
        write_record(make_record(WorkflowState.COMMIT))

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["turn"], input="<commit-message>Add export</commit-message>")

        assert result.exit_code == 0, result.output
        assert "Final commit succeeded. Task workspace is ready to merge." in result.output

    def test_side_effect_error_exits_1(self, cli_runner, task_session, write_record, make_record, vcs):
        write_record(make_record(WorkflowState.COMMIT))
        vcs.fail_on.add("commit")

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["turn"], input="<commit-message>Add export</commit-message>")

        assert result.exit_code == 1
        assert "jj commit failed" in result.output

    def test_outside_task_workspace(self, cli_runner, main_session):
        with use_session(main_session):
            result = cli_runner.invoke(cli, ["turn"], input="<transition>plan</transition>")

        assert result.exit_code == 1
        assert "only available inside a task workspace" in result.output

    def test_unexpected_error(self, cli_runner, settings):
        with patch("taskloop.main.open_session", new=AsyncMock(side_effect=RuntimeError("boom"))):
            result = cli_runner.invoke(cli, ["turn"], input="x")

        assert result.exit_code == 1
        assert "Unexpected error: boom" in result.output


# =============================================================================
# task (task workspace)
# =============================================================================


class TestTaskInTaskWorkspace:
    def test_prints_prompt_and_binds_session(self, cli_runner, task_session, write_record, make_record):
        path = write_record(make_record(session_leaf_id="unbound"))

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["task", "--session-leaf", "leaf-7"])

        assert result.exit_code == 0, result.output
        assert "## Ticket Metadata" in result.output
        assert "- Workflow State: refine" in result.output
        assert '"session_leaf_id": "leaf-7"' in path.read_text()

    def test_manual_confirmation(self, cli_runner, task_session, write_record, make_record):
        write_record(make_record(WorkflowState.MANUAL_TEST))

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["task", "--user-message", "MANUAL TESTS PASSED"])

        assert result.exit_code == 0, result.output
        assert "manual-test/t-root -> commit/t-root" in result.output
        assert "- Workflow State: commit" in result.output

    def test_manual_test_waits(self, cli_runner, task_session, write_record, make_record):
        write_record(make_record(WorkflowState.MANUAL_TEST))

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["task", "--user-message", "looks fine"])

        assert result.exit_code == 0
        assert "Waiting for explicit user confirmation" in result.output

    def test_replays_pending_output(self, cli_runner, task_session, write_record, make_record, tmp_path):
        write_record(make_record())
        pending = tmp_path / "last.md"
        pending.write_text("<transition>plan</transition>")

        with use_session(task_session):
            result = cli_runner.invoke(
                cli, ["task", "--last-output", str(pending), "--last-message-id", "m-3"]
            )

        assert result.exit_code == 0, result.output
        assert "refine/t-root -> plan/t-root" in result.output
        assert "- Workflow State: plan" in result.output

    def test_complete_workflow(self, cli_runner, task_session, write_record, make_record):
        write_record(make_record(WorkflowState.COMPLETE))

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["task"])

        assert result.exit_code == 0
        assert "Workflow already complete" in result.output

    def test_missing_record_is_fatal(self, cli_runner, task_session):
        with use_session(task_session):
            result = cli_runner.invoke(cli, ["task"])

        assert result.exit_code == 1
        assert "Manual cleanup required" in result.output

    def test_lgtm(self, cli_runner, task_session, write_record, make_record, task_tree, tracker):
        write_record(make_record(WorkflowState.REVIEW, "s1", task_tree))

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["task", "lgtm"])

        assert result.exit_code == 0, result.output
        assert "review/s1 -> subtask-commit/s1" in result.output
        assert tracker.notes[0][0] == "s1"

    def test_lgtm_outside_review(self, cli_runner, task_session, write_record, make_record):
        write_record(make_record())

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["task", "lgtm"])

        assert result.exit_code == 1
        assert "Force-approve is only valid" in result.output

    def test_lgtm_requires_task_workspace(
        self, cli_runner, main_session, write_record, make_record, task_tree, tracker
    ):
        path = write_record(make_record(WorkflowState.REVIEW, "s1", task_tree))
        before = path.read_text()

        with use_session(main_session):
            result = cli_runner.invoke(cli, ["task", "lgtm"])

        assert result.exit_code == 1
        assert "Force-approve is only available inside a task workspace" in result.output
        assert path.read_text() == before
        assert tracker.notes == []


# =============================================================================
# task (main workspace)
# =============================================================================


class TestTaskInMainWorkspace:
    def test_provisions_selected_ticket(self, cli_runner, main_session, tracker, settings):
        tracker.tickets.clear()
        tracker.add(Ticket(id="t-a", status="open", title="Add export command"))

        with use_session(main_session):
            result = cli_runner.invoke(cli, ["task", "--ticket", "t-a", "--slug", "export", "--yes"])

        assert result.exit_code == 0, result.output
        assert "Created task workspace" in result.output
        created = list(settings.workspaces_path.glob("*-export/repo/.tasks/workflow.json"))
        assert len(created) == 1

    def test_interactive_selection(self, cli_runner, main_session, tracker, settings):
        tracker.tickets.clear()
        tracker.add(Ticket(id="t-a", status="open", title="First"))
        tracker.add(Ticket(id="t-b", status="open", title="Second"))

        with use_session(main_session):
            result = cli_runner.invoke(cli, ["task"], input="2\nsecond-task\n")

        assert result.exit_code == 0, result.output
        assert "t-b" in result.output
        assert list(settings.workspaces_path.glob("*-second-task/repo"))
        assert tracker.tickets["t-b"].status == "in_progress"

    def test_unknown_ticket(self, cli_runner, main_session, tracker):
        tracker.tickets.clear()
        tracker.add(Ticket(id="t-a", status="open", title="Add export command"))

        with use_session(main_session):
            result = cli_runner.invoke(cli, ["task", "--ticket", "t-zzz", "--yes"])

        assert result.exit_code == 1
        assert "t-zzz" in result.output

    def test_no_open_tickets(self, cli_runner, main_session, tracker):
        tracker.tickets.clear()

        with use_session(main_session):
            result = cli_runner.invoke(cli, ["task"])

        assert result.exit_code == 0
        assert "No open tasks found" in result.output

    def test_provision_failure(self, cli_runner, main_session, tracker, vcs):
        tracker.tickets.clear()
        tracker.add(Ticket(id="t-a", status="open", title="Add export command"))
        vcs.fail_on.add("add_workspace")

        with use_session(main_session):
            result = cli_runner.invoke(cli, ["task", "--yes"])

        assert result.exit_code == 1
        assert "jj add_workspace failed" in result.output


class TestDeleteAndStatus:
    def test_delete_requires_main_workspace(self, cli_runner, task_session, write_record, make_record):
        write_record(make_record())

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["task", "delete"])

        assert result.exit_code == 1
        assert "only available in the main workspace" in result.output

    def test_delete_active_workspace_cancelled(
        self, cli_runner, main_session, task_root, write_record, make_record, vcs
    ):
        write_record(make_record())
        vcs.workspaces.append(task_root.parent.name)

        with use_session(main_session):
            result = cli_runner.invoke(cli, ["task", "delete"], input="1\nn\n")

        assert result.exit_code == 0
        assert "Deletion cancelled" in result.output
        assert task_root.exists()

    def test_delete_completed_workspace(self, cli_runner, main_session, task_root, write_record, make_record, vcs):
        write_record(make_record(WorkflowState.COMPLETE))
        vcs.workspaces.append(task_root.parent.name)

        with use_session(main_session):
            result = cli_runner.invoke(cli, ["task", "delete"], input="1\ny\n")

        assert result.exit_code == 0, result.output
        assert "Deleted workspace" in result.output
        assert not task_root.exists()
        assert vcs.forgotten == [task_root.parent.name]

    def test_status_in_task_workspace(self, cli_runner, task_session, write_record, make_record, task_tree):
        write_record(make_record(WorkflowState.IMPLEMENT_REVIEW, "f2", task_tree, version=9))

        with use_session(task_session):
            result = cli_runner.invoke(cli, ["status"])

        assert result.exit_code == 0, result.output
        assert "State:          implement-review" in result.output
        assert "Version:        9" in result.output
        assert "*     f2  Reject unknown flag" in result.output

    def test_status_in_main_workspace(self, cli_runner, main_session, task_root, write_record, make_record, vcs):
        write_record(make_record(WorkflowState.REVIEW_PLAN))
        vcs.workspaces.append(task_root.parent.name)

        with use_session(main_session):
            result = cli_runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "20261019-101500-add-export-command [review-plan] - Add export command" in result.output

    def test_status_without_workspaces(self, cli_runner, main_session):
        with use_session(main_session):
            result = cli_runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "No task workspaces" in result.output


class TestOpenSession:
    def test_resolves_repository_root(self, settings, tmp_path):
        with patch("taskloop.main.JujutsuVersionControl.root", new=AsyncMock(return_value=tmp_path / "repo")):
            session = asyncio.run(open_session(settings, tmp_path / "repo" / "src"))

        assert session.root == tmp_path / "repo"
        assert session.tracker.cwd == tmp_path / "repo"
        assert not session.in_task_workspace
