"""
Version-control provider backed by Jujutsu (``jj``).

Task workspaces are ``jj`` workspaces of the main repository, so a task's
commits are visible from the main workspace without any push or fetch. The
merge queries below lean on that: they read a task workspace's history with
``-R <path> --ignore-working-copy`` and squash its branch from main.

Revsets:
    task head       latest(::@ & ~empty(), 1)
    unmerged        ::@ & ~ancestors(<main head>) & ~empty()
    task branch     (::change_id(H) ~ ::fork_point(change_id(H) | @-)) & ~empty()
"""

from pathlib import Path
from typing import Self

from taskloop.providers.base import VersionControl, run_tool


class JujutsuVersionControl(VersionControl):
    """``jj`` implementation of the version-control interface.

    Example:
        >>> vcs = JujutsuVersionControl("/home/me/src/repo")
        >>> await vcs.add_workspace("20261019-101500-export", Path("~/.workspaces/.../repo"))
        >>> await vcs.at(workspace).commit("Add exporter")
    """

    def __init__(self, cwd: Path | str, command: str = "jj", timeout: float = 60.0) -> None:
        super().__init__(cwd)
        self.command = command
        self.timeout = timeout

    def at(self, cwd: Path | str) -> Self:
        return type(self)(cwd, command=self.command, timeout=self.timeout)

    async def _run(self, *args: str, effect: str) -> str:
        return await run_tool(self.command, *args, cwd=self.cwd, timeout=self.timeout, effect=effect)

    async def _log_one(self, revset: str, template: str, repository: Path | None = None) -> str:
        args = ["log"]
        if repository is not None:
            args += ["-R", str(repository), "--ignore-working-copy"]
        args += ["-r", revset, "-T", template, "--no-graph", "--limit", "1"]
        return await self._run(*args, effect="log")

    async def root(self) -> Path:
        return Path((await self._run("root", effect="root")).strip())

    async def commit(self, message: str) -> None:
        await self._run("commit", "-m", message, effect="commit")

    async def diff(self) -> str:
        return await self._run("diff", effect="diff")

    async def add_workspace(self, name: str, path: Path) -> None:
        # "@" rather than "@-" so tickets created in the working copy come along
        await self._run("workspace", "add", "--name", name, "-r", "@", str(path), effect="workspace-add")

    async def list_workspaces(self) -> list[str]:
        output = await self._run("workspace", "list", effect="workspace-list")
        names = [line.split(":", 1)[0].strip() for line in output.splitlines()]
        return [name for name in names if name]

    async def forget_workspace(self, name: str) -> None:
        await self._run("workspace", "forget", name, effect="workspace-forget")

    async def main_head(self) -> str:
        return (await self._log_one("@-", "commit_id")).strip()

    async def has_unmerged_commits(self, workspace_path: Path, main_head: str) -> bool:
        revset = f"::@ & ~ancestors({main_head}) & ~empty()"
        return bool((await self._log_one(revset, "change_id", workspace_path)).strip())

    async def task_head(self, workspace_path: Path) -> str | None:
        head = (await self._log_one("latest(::@ & ~empty(), 1)", "change_id", workspace_path)).strip()
        return head or None

    async def task_branch_has_commits(self, task_head: str) -> bool:
        return bool((await self._log_one(task_branch_revset(task_head), "change_id")).strip())

    async def description(self, workspace_path: Path, change_id: str) -> str:
        return (await self._log_one(f"change_id({change_id})", "description", workspace_path)).rstrip()

    async def squash_task_branch(self, task_head: str, message: str) -> None:
        # -A @- also rebases @ onto the squashed commit
        await self._run(
            "squash", "-A", "@-", "-m", message, "--from", task_branch_revset(task_head), effect="squash"
        )


def task_branch_revset(task_head: str) -> str:
    """Non-empty commits of the task branch that are not yet on main."""
    return f"(::change_id({task_head}) ~ ::fork_point(change_id({task_head}) | @-)) & ~empty()"
