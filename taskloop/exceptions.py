"""Custom exception hierarchy for the taskloop workflow engine.

The hierarchy mirrors the four failure classes of the engine, so callers can
tell at a glance whether a failure leaves the workspace untouched (retry on the
next turn) or needs an operator to repair persisted state.

Exception Hierarchy:
    TaskloopError (base)
    ├── ConfigurationError
    ├── WorkflowStoreError            (fatal: manual cleanup required)
    │   └── StaleWorkflowError
    ├── InvariantViolation            (engine defect: never persisted)
    ├── TaskTreeError
    │   ├── TaskNotFoundError
    │   ├── DepthExceededError
    │   └── DuplicateTaskIdError
    ├── DirectiveError                (recoverable: re-prompt)
    ├── SideEffectError               (recoverable: retry the transition)
    │   └── CommandTimeoutError
    └── WorkspaceError

Example Usage:
    >>> from taskloop.exceptions import DirectiveError
    >>> try:
    ...     await runner.complete_turn(output)
    ... except DirectiveError as e:
    ...     print(f"Re-prompting agent: {e.message}")
"""

from pathlib import Path
from typing import Any


class TaskloopError(Exception):
    """Base exception for all taskloop errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(TaskloopError):
    """Configuration file is missing, unreadable, or invalid."""

    pass


# =============================================================================
# Persisted State Errors
# =============================================================================


class WorkflowStoreError(TaskloopError):
    """The persisted workflow record is missing, corrupt, or invalid.

    This is the fatal class of error. The engine never repairs or defaults a
    damaged record, since guessing at a task/review position could silently
    discard work. The message always tells the operator which file to fix.

    Attributes:
        message: Error description without the cleanup hint
        path: Path of the workflow file involved, when known
    """

    def __init__(self, message: str, path: Path | str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            path: Workflow file that needs manual attention
        """
        self.path = Path(path) if path is not None else None

        full_message = message
        if self.path is not None:
            full_message = f"{message}. Manual cleanup required in {self.path}."
        else:
            full_message = f"{message}. Manual cleanup required."

        super().__init__(full_message)
        self.message = message


class StaleWorkflowError(WorkflowStoreError):
    """A persist was attempted on top of a record it was not derived from.

    Raised when the on-disk ``version`` is not exactly one less than the
    version being written, which means another process advanced the same
    workspace in the meantime.

    Attributes:
        expected_version: Version the writer expected to find on disk
        found_version: Version actually found on disk
    """

    def __init__(
        self,
        message: str,
        path: Path | str | None = None,
        expected_version: int | None = None,
        found_version: int | None = None,
    ) -> None:
        self.expected_version = expected_version
        self.found_version = found_version
        super().__init__(message, path=path)


class InvariantViolation(TaskloopError):
    """A workflow record fails one or more structural invariants.

    When raised for a record the engine computed itself, this is a defect in
    the engine. The record is never persisted.

    Attributes:
        violations: Individual invariant failures, in check order
    """

    def __init__(self, message: str, violations: list[str] | None = None) -> None:
        self.violations = list(violations or [])

        full_message = message
        if self.violations:
            full_message = f"{message}: {'; '.join(self.violations)}"

        super().__init__(full_message)
        self.message = message


# =============================================================================
# Task Tree Errors
# =============================================================================


class TaskTreeError(TaskloopError):
    """Base class for task tree lookup and mutation errors.

    Attributes:
        task_id: Task identifier involved in the failure
    """

    def __init__(self, message: str, task_id: str | None = None) -> None:
        self.task_id = task_id
        super().__init__(message)


class TaskNotFoundError(TaskTreeError):
    """Task identifier does not resolve to a node in the tree."""

    pass


class DepthExceededError(TaskTreeError):
    """A child was requested under a node that is already at maximum depth."""

    pass


class DuplicateTaskIdError(TaskTreeError):
    """A task identifier would appear twice in the tree."""

    pass


# =============================================================================
# Turn Errors
# =============================================================================


class DirectiveError(TaskloopError):
    """A directive required by the current state is missing or malformed.

    State is left unchanged; the caller re-prompts the agent.

    Attributes:
        state: Workflow state the directive was evaluated in
    """

    def __init__(self, message: str, state: str | None = None) -> None:
        self.state = state

        full_message = message
        if state:
            full_message = f"{message} (state: {state})"

        super().__init__(full_message)
        self.message = message


class SideEffectError(TaskloopError):
    """A ticket tracker or version-control operation failed.

    The transition that required the effect is aborted as a whole, so the
    previously persisted record stays authoritative and the same transition
    can be retried from the same prior state.

    Attributes:
        effect: Short description of the effect that failed
        stderr: Collaborator error output, if any
        details: Extra structured context for logging
    """

    def __init__(
        self,
        message: str,
        effect: str | None = None,
        stderr: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.effect = effect
        self.stderr = stderr.strip() if stderr else stderr
        self.details = details or {}

        full_message = message
        if self.stderr:
            full_message = f"{message}: {self.stderr}"

        super().__init__(full_message)
        self.message = message


class CommandTimeoutError(SideEffectError):
    """External command did not finish within the configured timeout.

    Attributes:
        timeout_seconds: The timeout that was exceeded
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        effect: str | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        if timeout_seconds and "timeout" not in message.lower():
            message = f"{message} (timeout: {timeout_seconds}s)"
        super().__init__(message, effect=effect)


class WorkspaceError(TaskloopError):
    """Task workspace provisioning, merge, or deletion failed or was refused.

    Attributes:
        workspace: Name of the workspace involved, when known
    """

    def __init__(self, message: str, workspace: str | None = None) -> None:
        self.workspace = workspace

        full_message = message
        if workspace:
            full_message = f"{message} (workspace: {workspace})"

        super().__init__(full_message)
        self.message = message
