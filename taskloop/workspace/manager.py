"""
Task workspace lifecycle.

Every root ticket is worked in its own VCS workspace, laid out as::

    <workspaces_root>/<YYYYMMDD-HHMMSS>-<slug>/<repo>     the workspace itself
    <workspaces_root>/<YYYYMMDD-HHMMSS>-<slug>/.root-ticket-id

The main workspace (the repository the user normally works in) selects ready
tickets, provisions task workspaces, squash-merges completed ones, and deletes
them. The turn loop and the review escape hatch only run inside a task
workspace; ``is_task_workspace`` tells the two apart by path shape alone.
"""

import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import structlog

from taskloop.config.settings import TaskloopSettings
from taskloop.engine.store import WorkflowStore
from taskloop.enums import WorkflowState
from taskloop.exceptions import TaskloopError, WorkflowStoreError, WorkspaceError
from taskloop.models.tickets import Ticket
from taskloop.models.workflow import WorkflowRecord
from taskloop.providers.base import TicketTracker, VersionControl

log = structlog.get_logger(__name__)

DEFAULT_WORKSPACE_NAME = "default"
READY_STATUSES = ("open", "in_progress")


def strip_private_prefix(value: str) -> str:
    """Drop the ``/private`` prefix macOS adds when resolving ``/var`` and ``/tmp``."""
    if value.startswith("/private"):
        return value[len("/private") :] or "/"
    return value


def slugify(title: str) -> str:
    """Lowercase ``title`` with runs of non-alphanumerics collapsed to ``-``."""
    value = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return value or "task"


def workspace_name(title: str, now: datetime | None = None, slug: str | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{slug or slugify(title)}"


def relative_parts(path: Path, base: Path) -> list[str] | None:
    """Components of ``path`` below ``base``, or None when it is not below it."""
    normalized = Path(strip_private_prefix(str(path.resolve())))
    normalized_base = Path(strip_private_prefix(str(base.resolve())))
    try:
        return list(normalized.relative_to(normalized_base).parts)
    except ValueError:
        return None


def is_task_workspace(path: Path, workspaces_root: Path) -> bool:
    """Whether ``path`` is ``<workspaces_root>/<name>/<repo>`` with ``<repo>`` its own basename."""
    parts = relative_parts(path, workspaces_root)
    return parts is not None and len(parts) == 2 and parts[1] == path.resolve().name


def select_ready_tickets(tickets: list[Ticket]) -> list[Ticket]:
    """Tickets that are open or in progress and whose dependencies are all closed."""
    status_by_id = {t.id: t.status for t in tickets}
    return [
        t
        for t in tickets
        if t.status in READY_STATUSES and all(status_by_id.get(dep) == "closed" for dep in t.deps)
    ]


def sort_newest_first(tickets: list[Ticket]) -> list[Ticket]:
    """Newest created first, then id; tickets without a timestamp sort last."""
    by_id = sorted(tickets, key=lambda t: t.id)
    return sorted(by_id, key=lambda t: t.created.timestamp() if t.created else 0.0, reverse=True)


@dataclass(frozen=True)
class TaskWorkspace:
    """A task workspace as seen from the main workspace.

    Attributes:
        name: VCS workspace name, also the directory under the workspaces root
        path: The workspace checkout, ``<workspaces_root>/<name>/<repo>``
        record: The workflow record, or None when it is missing or unreadable
    """

    name: str
    path: Path
    record: WorkflowRecord | None = None

    @property
    def state(self) -> WorkflowState | None:
        return self.record.state if self.record else None

    @property
    def is_complete(self) -> bool:
        return self.state == WorkflowState.COMPLETE

    def summary_line(self) -> str:
        state = self.state or "unknown"
        title = self.record.root_title if self.record else "(no workflow record)"
        return f"{self.name} [{state}] - {title}"


class WorkspaceManager:
    """Provision, list, merge, and delete task workspaces from the main workspace.

    Example:
        >>> manager = WorkspaceManager(settings, Path.cwd(), tracker, vcs)
        >>> tickets = await manager.selectable_tickets()
        >>> workspace = await manager.provision(tickets[0])
        >>> workspace.path
        PosixPath('/home/me/.workspaces/20261019-101500-add-export-command/repo')
    """

    def __init__(
        self,
        settings: TaskloopSettings,
        main_root: Path,
        tracker: TicketTracker,
        vcs: VersionControl,
    ) -> None:
        self.settings = settings
        self.main_root = main_root
        self.repo = main_root.name
        self.workspaces_root = settings.workspaces_path
        self.tracker = tracker
        self.vcs = vcs

    def workspace_path(self, name: str) -> Path:
        return self.workspaces_root / name / self.repo

    def marker_path(self, name: str) -> Path:
        return self.workspaces_root / name / self.settings.marker_file

    def store_for(self, path: Path) -> WorkflowStore:
        return WorkflowStore(path, self.settings.workflow_dir, self.settings.workflow_file)

    # -------------------------------------------------------------------------
    # Ticket selection
    # -------------------------------------------------------------------------

    async def ready_tickets(self) -> list[Ticket]:
        return select_ready_tickets(await self.tracker.query())

    async def claimed_root_ids(self) -> set[str]:
        """Root tickets already being worked in some task workspace.

        A ticket is claimed when a workspace's marker file names it, or when it
        is an in-progress root ticket inside that workspace.
        """
        claimed: set[str] = set()
        for name in await self._task_workspace_names():
            marker = self.marker_path(name)
            if marker.exists():
                try:
                    marker_id = marker.read_text(encoding="utf-8").strip()
                except OSError as e:
                    log.warning("marker_read_failed", path=str(marker), error=str(e))
                else:
                    if marker_id:
                        claimed.add(marker_id)

            claimed |= await self.tracker.at(self.workspace_path(name)).in_progress_roots()
        return claimed

    async def selectable_tickets(self) -> list[Ticket]:
        """Open, ready, unclaimed tickets, newest first."""
        open_ready = [t for t in await self.ready_tickets() if t.status == "open"]
        if not open_ready:
            return []
        claimed = await self.claimed_root_ids()
        return sort_newest_first([t for t in open_ready if t.id not in claimed])

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    async def provision(self, ticket: Ticket, slug: str | None = None, now: datetime | None = None) -> TaskWorkspace:
        """Create a task workspace for ``ticket`` and initialize its workflow.

        Raises:
            WorkspaceError: If the workspace already exists
            SideEffectError: If the VCS or tracker command fails
            WorkflowStoreError: If the initial record cannot be written
        """
        name = workspace_name(ticket.title, now, slug.strip() if slug and slug.strip() else None)
        path = self.workspace_path(name)
        if path.exists():
            raise WorkspaceError("Task workspace already exists", workspace=name)

        path.parent.mkdir(parents=True, exist_ok=True)
        await self.vcs.add_workspace(name, path)
        self._link_shared_paths(path)
        try:
            await self.tracker.at(path).start(ticket.id)
            record = await self.init_workflow(path, ticket)
        except TaskloopError as e:
            log.warning(
                "workspace_half_provisioned",
                workspace=name,
                path=str(path),
                ticket=ticket.id,
                error=str(e),
                hint="run `taskloop task delete` to remove it",
            )
            raise
        self._write_marker(name, ticket.id)

        log.info("workspace_provisioned", workspace=name, path=str(path), ticket=ticket.id)
        return TaskWorkspace(name=name, path=path, record=record)

    async def init_workflow(self, path: Path, ticket: Ticket) -> WorkflowRecord:
        """Write the initial ``refine`` record for ``ticket`` in a new workspace."""
        record = WorkflowRecord.initial(ticket.id, ticket.title)
        await self.store_for(path).persist(record, create=True)
        return record

    def _link_shared_paths(self, path: Path) -> None:
        for shared in self.settings.shared_paths:
            source = self.main_root / shared
            if not source.exists():
                continue
            target = path / shared
            try:
                target.symlink_to(source)
            except OSError as e:
                log.warning("shared_path_link_failed", source=str(source), target=str(target), error=str(e))

    def _write_marker(self, name: str, ticket_id: str) -> None:
        marker = self.marker_path(name)
        try:
            marker.write_text(f"{ticket_id}\n", encoding="utf-8")
        except OSError as e:
            log.warning("marker_write_failed", path=str(marker), error=str(e))

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    async def _task_workspace_names(self) -> list[str]:
        names = await self.vcs.list_workspaces()
        return [n for n in names if n != DEFAULT_WORKSPACE_NAME and self.workspace_path(n).exists()]

    async def list_task_workspaces(self) -> list[TaskWorkspace]:
        workspaces = []
        for name in await self._task_workspace_names():
            path = self.workspace_path(name)
            workspaces.append(TaskWorkspace(name=name, path=path, record=await self._load_record(name, path)))
        return workspaces

    async def _load_record(self, name: str, path: Path) -> WorkflowRecord | None:
        store = self.store_for(path)
        if not store.exists:
            return None
        try:
            return await store.load()
        except WorkflowStoreError as e:
            log.warning("workspace_record_unreadable", workspace=name, error=e.message)
            return None

    async def mergeable_workspaces(self) -> list[TaskWorkspace]:
        """Completed workspaces with no in-progress root ticket and unmerged non-empty commits."""
        main_head = await self.vcs.main_head()
        mergeable = []
        for workspace in await self.list_task_workspaces():
            if not workspace.is_complete:
                continue
            if await self.tracker.at(workspace.path).in_progress_roots():
                continue
            if not await self.vcs.has_unmerged_commits(workspace.path, main_head):
                continue
            mergeable.append(workspace)
        return mergeable

    # -------------------------------------------------------------------------
    # Merge and delete
    # -------------------------------------------------------------------------

    async def default_merge_message(self, workspace: TaskWorkspace) -> str:
        """Root ticket title, else the latest task commit description, else ``Merge <name>``."""
        if workspace.record is not None:
            return workspace.record.root_title

        head = await self.vcs.task_head(workspace.path)
        if head:
            description = await self.vcs.description(workspace.path, head)
            if description.strip():
                return description
        return f"Merge {workspace.name}"

    async def merge(self, workspace: TaskWorkspace, message: str | None = None) -> str:
        """Squash-merge a completed task workspace onto main.

        The task workspace is left in place; deleting it is a separate step.

        Returns:
            The commit message used

        Raises:
            WorkspaceError: If the workflow is not complete, main has uncommitted
                changes, or the task branch has nothing to merge
        """
        if not workspace.is_complete:
            raise WorkspaceError(
                f"Refusing to merge a workflow in state {workspace.state or 'unknown'}",
                workspace=workspace.name,
            )

        if (await self.vcs.diff()).strip():
            raise WorkspaceError(
                "Main workspace has uncommitted changes; commit or discard them before merging",
                workspace=workspace.name,
            )

        head = await self.vcs.task_head(workspace.path)
        if head is None:
            raise WorkspaceError("Failed to find the task head commit", workspace=workspace.name)
        if not await self.vcs.task_branch_has_commits(head):
            raise WorkspaceError("No non-empty task commits found to merge", workspace=workspace.name)

        message = message.strip() if message and message.strip() else await self.default_merge_message(workspace)
        await self.vcs.squash_task_branch(head, message)

        log.info("workspace_merged", workspace=workspace.name, head=head)
        return message

    async def delete(self, workspace: TaskWorkspace, force: bool = False) -> None:
        """Forget a task workspace in the VCS and remove its directory.

        Raises:
            WorkspaceError: If the workflow is not complete and ``force`` is not
                set, or the path does not have the task workspace shape
        """
        if not workspace.is_complete and not force:
            raise WorkspaceError(
                f"Workflow is in state {workspace.state or 'unknown'}; deletion requires confirmation",
                workspace=workspace.name,
            )

        parts = relative_parts(workspace.path, self.workspaces_root)
        if parts is None or len(parts) != 2 or parts[1] != self.repo:
            raise WorkspaceError(f"Refusing to delete non-workspace path: {workspace.path}", workspace=workspace.name)

        await self.vcs.forget_workspace(workspace.name)

        task_dir = workspace.path.parent
        if task_dir.exists():
            shutil.rmtree(task_dir)
        log.info("workspace_deleted", workspace=workspace.name, path=str(task_dir))
