"""
Persisted workflow record models.

One ``WorkflowRecord`` exists per task workspace, stored as JSON at
``<workspace>/.tasks/workflow.json``. It is the single source of truth for
where the workflow stands: the current state, which task in the tree is being
worked, and the tree itself.

File Structure::

    {
      "schema_version": 1,
      "state": "implement",
      "active_task_id": "tl-2b1c",
      "active_path_ids": ["tl-9f00", "tl-2b1c"],
      "session_leaf_id": "a41c9e",
      "session_file_path": null,
      "last_consumed_assistant_id": "msg-17",
      "version": 5,
      "updated_at": "2026-10-19T10:30:00Z",
      "last_transition": {
        "event": "turn:review-plan",
        "from_state": "review-plan",
        "to_state": "implement",
        "from_active_task_id": "tl-9f00",
        "to_active_task_id": "tl-2b1c",
        "at": "2026-10-19T10:30:00Z"
      },
      "task_tree": {
        "id": "tl-9f00",
        "title": "Add export command",
        "subtasks": [{"id": "tl-2b1c", "title": "Parse flags", "subtasks": []}]
      }
    }

The models validate field types and shapes only. Cross-field invariants
(active path, depth, uniqueness, state/depth compatibility) live in
``taskloop.engine.invariants`` so that load and persist share one checker.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

from taskloop.enums import WorkflowState

WORKFLOW_SCHEMA_VERSION = 1
UNBOUND_SESSION_LEAF_ID = "unbound"

NonEmptyStr = Annotated[str, Field(min_length=1)]


class TaskNode(BaseModel):
    """A ticket in the task tree.

    Depth 0 is the root ticket, depth 1 a subtask, depth 2 a review finding.
    Children keep the order in which they were created, which is also the
    order the workflow walks them.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, description="Ticket identifier, unique within the tree")
    title: str = Field(..., min_length=1, description="Ticket title")
    subtasks: list[TaskNode] = Field(default_factory=list, description="Children in creation order")


class TransitionRecord(BaseModel):
    """Diagnostic record of the most recent persisted transition."""

    model_config = ConfigDict(extra="forbid")

    event: str
    from_state: WorkflowState
    to_state: WorkflowState
    from_active_task_id: str
    to_active_task_id: str
    at: datetime


class WorkflowRecord(BaseModel):
    """The persisted state of one task workspace."""

    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(..., description="Format revision of this document")
    state: WorkflowState = Field(..., description="Current workflow state")
    active_task_id: str = Field(..., min_length=1, description="Task currently being worked")
    active_path_ids: list[str] = Field(..., description="Ids from root to the active task, inclusive")
    session_leaf_id: str = Field(..., min_length=1, description="Where the agent session left off")
    session_file_path: NonEmptyStr | None = None
    last_consumed_assistant_id: NonEmptyStr | None = None
    version: int = Field(..., ge=1, description="Monotonic counter, +1 per persisted record")
    updated_at: datetime
    last_transition: TransitionRecord | None = None
    task_tree: TaskNode

    @property
    def root_task_id(self) -> str:
        return self.task_tree.id

    @property
    def root_title(self) -> str:
        return self.task_tree.title

    @property
    def active_depth(self) -> int:
        return len(self.active_path_ids) - 1

    @property
    def is_session_bound(self) -> bool:
        return self.session_leaf_id != UNBOUND_SESSION_LEAF_ID

    def to_json(self) -> str:
        """Serialize for disk, pretty-printed with a trailing newline."""
        return self.model_dump_json(indent=2) + "\n"

    @classmethod
    def initial(
        cls,
        root_task_id: str,
        root_title: str,
        session_leaf_id: str = UNBOUND_SESSION_LEAF_ID,
        now: datetime | None = None,
    ) -> WorkflowRecord:
        """Build the first record of a freshly provisioned workspace.

        Args:
            root_task_id: Ticket id of the root task
            root_title: Ticket title; blank titles fall back to the id
            session_leaf_id: Session leaf to resume from, unbound by default
            now: Timestamp override (tests)

        Returns:
            A version 1 record in ``refine`` with the root as the active task
        """
        now = now or datetime.now(UTC)
        title = root_title.strip() or root_task_id
        return cls(
            schema_version=WORKFLOW_SCHEMA_VERSION,
            state=WorkflowState.REFINE,
            active_task_id=root_task_id,
            active_path_ids=[root_task_id],
            session_leaf_id=session_leaf_id,
            version=1,
            updated_at=now,
            last_transition=TransitionRecord(
                event="initialize",
                from_state=WorkflowState.REFINE,
                to_state=WorkflowState.REFINE,
                from_active_task_id=root_task_id,
                to_active_task_id=root_task_id,
                at=now,
            ),
            task_tree=TaskNode(id=root_task_id, title=title),
        )
