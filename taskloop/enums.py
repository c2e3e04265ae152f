"""Enumerations for workflow states and side effects."""

from enum import Enum

MAX_TASK_DEPTH = 2
"""Depth of the deepest node allowed in a task tree (root is depth 0)."""


class WorkflowState(str, Enum):
    """States of the task workflow, in lifecycle order.

    Each state is bound to the depth of the task it works on:
    - depth 0 (root ticket): refine, plan, review-plan, manual-test, commit, complete
    - depth 1 (subtask): implement, review, subtask-commit
    - depth 2 (review finding): implement-review
    """

    REFINE = "refine"
    PLAN = "plan"
    REVIEW_PLAN = "review-plan"
    IMPLEMENT = "implement"
    REVIEW = "review"
    IMPLEMENT_REVIEW = "implement-review"
    SUBTASK_COMMIT = "subtask-commit"
    MANUAL_TEST = "manual-test"
    COMMIT = "commit"
    COMPLETE = "complete"

    def __str__(self) -> str:
        return self.value

    @property
    def expected_depth(self) -> int:
        """Depth the active task must have while in this state."""
        if self in (WorkflowState.IMPLEMENT, WorkflowState.REVIEW, WorkflowState.SUBTASK_COMMIT):
            return 1
        if self == WorkflowState.IMPLEMENT_REVIEW:
            return 2
        return 0

    @property
    def allows_force_approve(self) -> bool:
        """Whether the review escape hatch may be used in this state."""
        return self in (WorkflowState.REVIEW_PLAN, WorkflowState.REVIEW)

    @classmethod
    def parse(cls, value: str) -> "WorkflowState | None":
        """Return the state named by ``value`` (case/whitespace tolerant), or None."""
        normalized = value.strip().lower()
        for state in cls:
            if state.value == normalized:
                return state
        return None


class EffectType(str, Enum):
    """Kinds of external operations a transition can require."""

    CREATE_TICKET = "create-ticket"
    ADD_NOTE = "add-note"
    CLOSE_TICKET = "close-ticket"
    COMMIT = "commit"

    def __str__(self) -> str:
        return self.value
