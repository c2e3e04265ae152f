"""Structural invariants of a workflow record.

Checked on every load and before every persist:

1. ``active_task_id`` resolves to a node in ``task_tree``.
2. ``active_path_ids`` is exactly the root-to-active path.
3. Task ids are unique across the tree.
4. Tree depth never exceeds 2.
5. ``state`` is compatible with the depth of the active task.
6. ``version`` moves by exactly +1 between consecutive persisted records
   (checked by ``check_successor`` and by the store's compare-and-swap).
"""

from taskloop.engine.tree import TaskTree
from taskloop.exceptions import InvariantViolation, TaskTreeError
from taskloop.models.workflow import WORKFLOW_SCHEMA_VERSION, WorkflowRecord


def find_violations(record: WorkflowRecord) -> list[str]:
    """Return every invariant the record violates, in check order (empty when valid)."""
    violations: list[str] = []

    if record.schema_version != WORKFLOW_SCHEMA_VERSION:
        violations.append(
            f"workflow schema mismatch (expected {WORKFLOW_SCHEMA_VERSION}, found {record.schema_version})"
        )

    try:
        tree = TaskTree.from_node(record.task_tree)
    except TaskTreeError as e:
        # Nothing below can be evaluated against a malformed tree.
        violations.append(e.message)
        return violations

    if record.active_task_id not in tree:
        violations.append(f"active_task_id not found in tree: {record.active_task_id}")
        return violations

    expected_path = tree.path_to(record.active_task_id)
    if record.active_path_ids != expected_path:
        violations.append(
            f"active_path_ids {record.active_path_ids} does not match root->active path {expected_path}"
        )

    depth = tree.depth_of(record.active_task_id)
    if depth != record.state.expected_depth:
        violations.append(f"state {record.state} is incompatible with active depth {depth}")

    return violations


def check_record(record: WorkflowRecord) -> None:
    """Raise ``InvariantViolation`` if the record breaks any structural invariant."""
    violations = find_violations(record)
    if violations:
        raise InvariantViolation("Workflow record violates invariants", violations)


def check_successor(previous: WorkflowRecord, successor: WorkflowRecord) -> None:
    """Check that ``successor`` may be persisted right after ``previous``."""
    violations = find_violations(successor)
    if successor.version != previous.version + 1:
        violations.append(
            f"version must increment exactly once per persisted record "
            f"(previous {previous.version}, next {successor.version})"
        )
    if successor.root_task_id != previous.root_task_id:
        violations.append(f"root task changed from {previous.root_task_id} to {successor.root_task_id}")
    if violations:
        raise InvariantViolation("Computed workflow record violates invariants", violations)
