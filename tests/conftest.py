"""Pytest configuration and shared fixtures."""

import copy
from datetime import UTC, datetime
from pathlib import Path
from typing import Self

import pytest
import structlog

from taskloop.config.settings import TaskloopSettings
from taskloop.engine.runner import WorkflowRunner
from taskloop.engine.store import WorkflowStore
from taskloop.engine.tree import TaskTree
from taskloop.enums import WorkflowState
from taskloop.exceptions import SideEffectError
from taskloop.models.tickets import Ticket, TicketDraft
from taskloop.models.workflow import WORKFLOW_SCHEMA_VERSION, TaskNode, WorkflowRecord
from taskloop.providers.base import TicketTracker, VersionControl, rank_reuse_candidates

FIXED_NOW = datetime(2026, 10, 19, 10, 15, 0, tzinfo=UTC)

ROOT_TICKET_MARKDOWN = """# Add export command

Export the current project as CSV or JSON.

## Plan

<subtasks>
- title: Parse flags
  description: Accept --format and --output
- title: Write exporter
  tdd: false
</subtasks>
"""


class FakeTicketTracker(TicketTracker):
    """In-memory ticket tracker.

    ``at()`` returns a view sharing the same tickets, so calls made through a
    workspace-bound copy are visible to the test.
    ``fail_on`` fails an operation outright; ``fail_after`` lets it succeed
    that many more times first.
    """

    def __init__(self, cwd: Path | str = ".", tickets: list[Ticket] | None = None) -> None:
        super().__init__(cwd)
        self.tickets: dict[str, Ticket] = {t.id: t for t in tickets or []}
        self.markdown: dict[str, str] = {}
        self.descriptions: dict[str, str] = {}
        self.notes: list[tuple[str, str]] = []
        self.calls: list[tuple[str, ...]] = []
        self.started_in: dict[str, Path] = {}
        self.fail_on: set[str] = set()
        self.fail_after: dict[str, int] = {}
        self._next_id = 1

    def at(self, cwd: Path | str) -> Self:
        view = copy.copy(self)
        view.cwd = Path(cwd)
        return view

    def add(self, ticket: Ticket, markdown: str | None = None) -> Ticket:
        self.tickets[ticket.id] = ticket
        if markdown is not None:
            self.markdown[ticket.id] = markdown
        return ticket

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise SideEffectError(f"tk {operation} failed", effect=operation, stderr="simulated failure")
        remaining = self.fail_after.get(operation)
        if remaining is not None:
            if remaining <= 0:
                raise SideEffectError(f"tk {operation} failed", effect=operation, stderr="simulated failure")
            self.fail_after[operation] = remaining - 1

    async def query(self, expression: str | None = None) -> list[Ticket]:
        self._check("query")
        return list(self.tickets.values())

    async def show(self, ticket_id: str) -> str:
        self._check("show")
        if ticket_id not in self.tickets:
            raise SideEffectError("tk show failed", effect="show-ticket", stderr=f"no ticket {ticket_id}")
        return self.markdown.get(ticket_id, f"# {self.tickets[ticket_id].title}\n")

    async def start(self, ticket_id: str) -> None:
        self._check("start")
        self.calls.append(("start", ticket_id, str(self.cwd)))
        self.started_in[ticket_id] = self.cwd
        self.tickets[ticket_id].status = "in_progress"

    async def close(self, ticket_id: str) -> None:
        self._check("close")
        self.calls.append(("close", ticket_id))
        self.tickets[ticket_id].status = "closed"

    async def create(self, parent_id: str, draft: TicketDraft) -> str:
        self._check("create")
        ticket_id = f"t-{self._next_id:03d}"
        self._next_id += 1
        self.calls.append(("create", parent_id, draft.title))
        self.tickets[ticket_id] = Ticket(
            id=ticket_id,
            status="open",
            title=draft.title,
            parent=parent_id,
            created=FIXED_NOW,
        )
        self.descriptions[ticket_id] = draft.description
        return ticket_id

    async def add_note(self, ticket_id: str, note: str) -> None:
        self._check("add_note")
        self.notes.append((ticket_id, note))

    async def find_children(self, parent_id: str, title: str) -> list[Ticket]:
        self._check("find_children")
        matches = [t for t in self.tickets.values() if t.parent == parent_id and t.title == title]
        return rank_reuse_candidates(matches)

    async def in_progress_roots(self) -> set[str]:
        return {
            t.id
            for t in self.tickets.values()
            if t.is_root and t.status == "in_progress" and self.started_in.get(t.id, self.cwd) == self.cwd
        }


class FakeVersionControl(VersionControl):
    """In-memory version control with scriptable merge queries."""

    def __init__(self, cwd: Path | str = ".") -> None:
        super().__init__(cwd)
        self.root_path = Path(cwd)
        self.commits: list[str] = []
        self.diff_output = ""
        self.dirty_after_commit = False
        self.workspaces: list[str] = ["default"]
        self.forgotten: list[str] = []
        self.head = "main-head-0001"
        self.task_heads: dict[Path, str] = {}
        self.unmerged: set[Path] = set()
        self.branch_has_commits = True
        self.descriptions: dict[str, str] = {}
        self.squashed: list[tuple[str, str]] = []
        self.fail_on: set[str] = set()

    def at(self, cwd: Path | str) -> Self:
        view = copy.copy(self)
        view.cwd = Path(cwd)
        return view

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise SideEffectError(f"jj {operation} failed", effect=operation, stderr="simulated failure")

    async def root(self) -> Path:
        return self.root_path

    async def commit(self, message: str) -> None:
        self._check("commit")
        self.commits.append(message)
        if not self.dirty_after_commit:
            self.diff_output = ""

    async def diff(self) -> str:
        self._check("diff")
        return self.diff_output

    async def add_workspace(self, name: str, path: Path) -> None:
        self._check("add_workspace")
        path.mkdir(parents=True)
        self.workspaces.append(name)

    async def list_workspaces(self) -> list[str]:
        return list(self.workspaces)

    async def forget_workspace(self, name: str) -> None:
        self._check("forget_workspace")
        self.forgotten.append(name)
        self.workspaces.remove(name)

    async def main_head(self) -> str:
        return self.head

    async def has_unmerged_commits(self, workspace_path: Path, main_head: str) -> bool:
        return workspace_path in self.unmerged

    async def task_head(self, workspace_path: Path) -> str | None:
        return self.task_heads.get(workspace_path)

    async def task_branch_has_commits(self, task_head: str) -> bool:
        return self.branch_has_commits

    async def description(self, workspace_path: Path, change_id: str) -> str:
        return self.descriptions.get(change_id, "")

    async def squash_task_branch(self, task_head: str, message: str) -> None:
        self._check("squash")
        self.squashed.append((task_head, message))


def sample_tree() -> TaskNode:
    """Root with two subtasks; the first has two review findings."""
    return TaskNode(
        id="t-root",
        title="Add export command",
        subtasks=[
            TaskNode(
                id="s1",
                title="Parse flags",
                subtasks=[
                    TaskNode(id="f1", title="Handle empty flag"),
                    TaskNode(id="f2", title="Reject unknown flag"),
                ],
            ),
            TaskNode(id="s2", title="Write exporter"),
        ],
    )


def build_record(
    state: WorkflowState = WorkflowState.REFINE,
    active_task_id: str = "t-root",
    task_tree: TaskNode | None = None,
    version: int = 1,
    **updates,
) -> WorkflowRecord:
    """A valid record with ``active_path_ids`` derived from the tree."""
    tree = task_tree or TaskNode(id="t-root", title="Add export command")
    path = TaskTree.from_node(tree).path_to(active_task_id)
    fields = {
        "schema_version": WORKFLOW_SCHEMA_VERSION,
        "state": state,
        "active_task_id": active_task_id,
        "active_path_ids": path,
        "session_leaf_id": "leaf-1",
        "version": version,
        "updated_at": FIXED_NOW,
        "task_tree": tree,
    }
    fields.update(updates)
    return WorkflowRecord(**fields)


@pytest.fixture
def root_ticket() -> Ticket:
    return Ticket(id="t-root", status="in_progress", title="Add export command", created=FIXED_NOW)


@pytest.fixture
def tracker(root_ticket: Ticket) -> FakeTicketTracker:
    """Tracker holding the root ticket and the sample subtasks and findings."""
    fake = FakeTicketTracker()
    fake.add(root_ticket, ROOT_TICKET_MARKDOWN)
    for ticket_id, title, parent in (
        ("s1", "Parse flags", "t-root"),
        ("s2", "Write exporter", "t-root"),
        ("f1", "Handle empty flag", "s1"),
        ("f2", "Reject unknown flag", "s1"),
    ):
        fake.add(Ticket(id=ticket_id, status="open", title=title, parent=parent, created=FIXED_NOW))
    return fake


@pytest.fixture
def vcs(tmp_path: Path) -> FakeVersionControl:
    return FakeVersionControl(tmp_path / "repo")


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Temporary task workspace directory."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def store(workspace: Path) -> WorkflowStore:
    return WorkflowStore(workspace)


@pytest.fixture
def make_record():
    """Factory for valid workflow records."""
    return build_record


@pytest.fixture
def persisted(store: WorkflowStore):
    """Persist a record as the workspace's first record, for any state and tree."""

    async def _persist(record: WorkflowRecord) -> WorkflowRecord:
        await store.persist(record.model_copy(update={"version": 1}), create=True)
        return await store.load()

    return _persist


@pytest.fixture
def runner(store: WorkflowStore, tracker: FakeTicketTracker, vcs: FakeVersionControl) -> WorkflowRunner:
    return WorkflowRunner(store, tracker, vcs)


@pytest.fixture
def settings(tmp_path: Path) -> TaskloopSettings:
    return TaskloopSettings(workspaces_root=str(tmp_path / "workspaces"))


@pytest.fixture
def task_tree() -> TaskNode:
    return sample_tree()


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo any structlog configuration a test (or CLI invocation) installed."""
    yield
    structlog.reset_defaults()
