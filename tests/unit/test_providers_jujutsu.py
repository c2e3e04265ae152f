"""Tests for taskloop.providers.jujutsu."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from taskloop.exceptions import SideEffectError
from taskloop.providers.jujutsu import JujutsuVersionControl, task_branch_revset

RUN_COMMAND = "taskloop.providers.base.run_command"


@pytest.fixture
def jj(tmp_path: Path) -> JujutsuVersionControl:
    return JujutsuVersionControl(tmp_path, command="jj", timeout=10.0)


def jj_args(mock_run: AsyncMock) -> tuple[str, ...]:
    return mock_run.await_args.args[1:]


class TestWorkingCopy:
    @pytest.mark.asyncio
    async def test_root(self, jj):
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("/home/me/src/repo\n", "", 0)):
            assert await jj.root() == Path("/home/me/src/repo")

    @pytest.mark.asyncio
    async def test_commit(self, jj, tmp_path):
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("", "", 0)) as mock_run:
            await jj.commit("Add exporter\n\nWrites CSV")

        mock_run.assert_awaited_once_with(
            "jj", "commit", "-m", "Add exporter\n\nWrites CSV", cwd=tmp_path, check=False, timeout=10.0
        )

    @pytest.mark.asyncio
    async def test_commit_failure(self, jj):
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("", "Error: conflict", 1)):
            with pytest.raises(SideEffectError) as exc_info:
                await jj.commit("msg")

        assert exc_info.value.effect == "commit"

    @pytest.mark.asyncio
    async def test_diff(self, jj):
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("M src/a.py\n", "", 0)) as mock_run:
            assert await jj.diff() == "M src/a.py\n"

        assert jj_args(mock_run) == ("diff",)


class TestWorkspaces:
    @pytest.mark.asyncio
    async def test_add_workspace(self, jj, tmp_path):
        target = tmp_path / "ws" / "repo"
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("", "", 0)) as mock_run:
            await jj.add_workspace("20261019-101500-export", target)

        assert jj_args(mock_run) == ("workspace", "add", "--name", "20261019-101500-export", "-r", "@", str(target))

    @pytest.mark.asyncio
    async def test_list_workspaces(self, jj):
        output = "default: qpvuntsm 1a2b3c4d (no description set)\n20261019-101500-export: kkmpptxz 5e6f\n\n"
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=(output, "", 0)):
            assert await jj.list_workspaces() == ["default", "20261019-101500-export"]

    @pytest.mark.asyncio
    async def test_forget_workspace(self, jj):
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("", "", 0)) as mock_run:
            await jj.forget_workspace("20261019-101500-export")

        assert jj_args(mock_run) == ("workspace", "forget", "20261019-101500-export")

    def test_at(self, jj, tmp_path):
        other = jj.at(tmp_path / "ws")

        assert isinstance(other, JujutsuVersionControl)
        assert other.cwd == tmp_path / "ws"
        assert other.command == "jj"


class TestMergeQueries:
    @pytest.mark.asyncio
    async def test_main_head(self, jj):
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("abc123\n", "", 0)) as mock_run:
            assert await jj.main_head() == "abc123"

        assert jj_args(mock_run) == ("log", "-r", "@-", "-T", "commit_id", "--no-graph", "--limit", "1")

    @pytest.mark.asyncio
    async def test_task_head_reads_other_workspace(self, jj, tmp_path):
        ws = tmp_path / "ws" / "repo"
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("kkmpptxz\n", "", 0)) as mock_run:
            assert await jj.task_head(ws) == "kkmpptxz"

        args = jj_args(mock_run)
        assert args[:4] == ("log", "-R", str(ws), "--ignore-working-copy")
        assert "latest(::@ & ~empty(), 1)" in args

    @pytest.mark.asyncio
    async def test_task_head_none_when_empty(self, jj, tmp_path):
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("\n", "", 0)):
            assert await jj.task_head(tmp_path) is None

    @pytest.mark.asyncio
    async def test_has_unmerged_commits(self, jj, tmp_path):
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("kkmpptxz", "", 0)) as mock_run:
            assert await jj.has_unmerged_commits(tmp_path, "abc123")

        assert "::@ & ~ancestors(abc123) & ~empty()" in jj_args(mock_run)

        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("", "", 0)):
            assert not await jj.has_unmerged_commits(tmp_path, "abc123")

    @pytest.mark.asyncio
    async def test_task_branch_has_commits(self, jj):
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("kk", "", 0)) as mock_run:
            assert await jj.task_branch_has_commits("kk")

        assert task_branch_revset("kk") in jj_args(mock_run)

    @pytest.mark.asyncio
    async def test_description(self, jj, tmp_path):
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("Add exporter\n\n", "", 0)):
            assert await jj.description(tmp_path, "kk") == "Add exporter"

    @pytest.mark.asyncio
    async def test_squash_task_branch(self, jj):
        with patch(RUN_COMMAND, new_callable=AsyncMock, return_value=("", "", 0)) as mock_run:
            await jj.squash_task_branch("kk", "Add export command")

        assert jj_args(mock_run) == (
            "squash",
            "-A",
            "@-",
            "-m",
            "Add export command",
            "--from",
            task_branch_revset("kk"),
        )

    def test_task_branch_revset(self):
        assert task_branch_revset("kk") == "(::change_id(kk) ~ ::fork_point(change_id(kk) | @-)) & ~empty()"
