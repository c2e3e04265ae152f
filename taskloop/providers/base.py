"""
Abstract base classes for providers.

This module defines the two collaborator interfaces the workflow engine talks
to: a ticket tracker (``tk``) and a version-control system (``jj``). Each
provider instance is bound to one working directory, which selects the
workspace whose tickets and working copy it operates on.

All methods are async; implementations shell out through
``taskloop.utils.async_subprocess`` and raise ``SideEffectError`` (or its
``CommandTimeoutError`` subclass) on failure.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Self

import structlog

from taskloop.exceptions import CommandTimeoutError, SideEffectError
from taskloop.models.tickets import Ticket, TicketDraft
from taskloop.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

REUSE_STATUS_RANK = {"in_progress": 0, "open": 1, "closed": 2}


async def run_tool(
    command: str,
    *args: str,
    cwd: Path,
    timeout: float,
    effect: str,
) -> str:
    """Run an external tool and return its stdout.

    Raises:
        CommandTimeoutError: If the command exceeds ``timeout``
        SideEffectError: If the executable is missing or exits non-zero
    """
    log.debug("tool_command", command=command, args=list(args), cwd=str(cwd))
    try:
        stdout, stderr, code = await run_command(command, *args, cwd=cwd, check=False, timeout=timeout)
    except TimeoutError as e:
        raise CommandTimeoutError(f"{command} {args[0]} timed out", timeout, effect=effect) from e
    except OSError as e:
        raise SideEffectError(f"Failed to run {command}: {e}", effect=effect) from e

    if code != 0:
        raise SideEffectError(
            f"{command} {args[0]} failed",
            effect=effect,
            stderr=stderr or f"exit code {code}",
            details={"args": list(args), "returncode": code},
        )
    return stdout


def rank_reuse_candidates(tickets: list[Ticket]) -> list[Ticket]:
    """Order existing children for reuse: in-progress, open, closed, then oldest, then id."""

    def key(ticket: Ticket) -> tuple[int, datetime, str]:
        created = ticket.created or datetime.min.replace(tzinfo=UTC)
        return REUSE_STATUS_RANK.get(ticket.status, 3), created, ticket.id

    return sorted(tickets, key=key)


class TicketTracker(ABC):
    """Abstract base class for ticket tracker implementations.

    Tickets form a parent/child hierarchy. The engine only ever creates
    children under tickets it already tracks, and closes tickets it has
    finished.
    """

    def __init__(self, cwd: Path | str) -> None:
        self.cwd = Path(cwd)

    @abstractmethod
    def at(self, cwd: Path | str) -> Self:
        """Return an equivalent tracker bound to another workspace."""
        pass

    @abstractmethod
    async def query(self, expression: str | None = None) -> list[Ticket]:
        """List tickets, optionally filtered by a tracker-specific expression.

        Raises:
            SideEffectError: If the tracker command fails.
        """
        pass

    @abstractmethod
    async def show(self, ticket_id: str) -> str:
        """Return the full markdown of a ticket."""
        pass

    @abstractmethod
    async def start(self, ticket_id: str) -> None:
        """Mark a ticket as in progress."""
        pass

    @abstractmethod
    async def close(self, ticket_id: str) -> None:
        """Mark a ticket as closed."""
        pass

    @abstractmethod
    async def create(self, parent_id: str, draft: TicketDraft) -> str:
        """Create a child ticket and return its id."""
        pass

    @abstractmethod
    async def add_note(self, ticket_id: str, note: str) -> None:
        """Append a note to a ticket."""
        pass

    @abstractmethod
    async def find_children(self, parent_id: str, title: str) -> list[Ticket]:
        """Children of ``parent_id`` titled ``title``, best reuse candidate first."""
        pass

    @abstractmethod
    async def in_progress_roots(self) -> set[str]:
        """Ids of top-level tickets currently in progress."""
        pass


class VersionControl(ABC):
    """Abstract base class for version-control implementations.

    Besides committing inside a task workspace, the interface covers the
    workspace lifecycle and the queries the squash-merge needs.
    """

    def __init__(self, cwd: Path | str) -> None:
        self.cwd = Path(cwd)

    @abstractmethod
    def at(self, cwd: Path | str) -> Self:
        """Return an equivalent VCS client bound to another workspace."""
        pass

    @abstractmethod
    async def root(self) -> Path:
        """Root directory of the repository containing ``cwd``."""
        pass

    @abstractmethod
    async def commit(self, message: str) -> None:
        """Commit the working copy with ``message``."""
        pass

    @abstractmethod
    async def diff(self) -> str:
        """Uncommitted changes in the working copy (empty when clean)."""
        pass

    @abstractmethod
    async def add_workspace(self, name: str, path: Path) -> None:
        """Create a workspace named ``name`` at ``path`` from the current working copy."""
        pass

    @abstractmethod
    async def list_workspaces(self) -> list[str]:
        """Names of every workspace of the repository."""
        pass

    @abstractmethod
    async def forget_workspace(self, name: str) -> None:
        """Stop tracking workspace ``name`` (files on disk are left alone)."""
        pass

    @abstractmethod
    async def main_head(self) -> str:
        """Commit id of the main workspace's last committed revision."""
        pass

    @abstractmethod
    async def has_unmerged_commits(self, workspace_path: Path, main_head: str) -> bool:
        """Whether the workspace has non-empty commits that are not ancestors of ``main_head``."""
        pass

    @abstractmethod
    async def task_head(self, workspace_path: Path) -> str | None:
        """Change id of the latest non-empty commit in a workspace, if any."""
        pass

    @abstractmethod
    async def task_branch_has_commits(self, task_head: str) -> bool:
        """Whether the task branch ending at ``task_head`` has commits not yet on main."""
        pass

    @abstractmethod
    async def description(self, workspace_path: Path, change_id: str) -> str:
        """Commit description of ``change_id`` as seen from a workspace."""
        pass

    @abstractmethod
    async def squash_task_branch(self, task_head: str, message: str) -> None:
        """Squash the task branch into a single commit on top of main."""
        pass
