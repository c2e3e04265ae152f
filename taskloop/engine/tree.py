"""
In-memory task tree with bounded depth.

The persisted record nests ``TaskNode`` objects, which is convenient on disk
but awkward to mutate. ``TaskTree`` flattens the nesting into an arena keyed
by task id, with parent links and ordered child id lists, so lookups, parent
walks, and sibling walks never chase object references. ``to_node()``
rebuilds the nested form for persistence.

Depth semantics:
    0 - root ticket
    1 - subtask (created when the plan is approved)
    2 - review finding (created when a review requests changes)

Example:
    >>> tree = TaskTree.from_node(record.task_tree)
    >>> tree.create_children("root", [ChildSpec("s1", "Parse flags")])
    ['s1']
    >>> tree.path_to("s1")
    ['root', 's1']
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from taskloop.enums import MAX_TASK_DEPTH
from taskloop.exceptions import DepthExceededError, DuplicateTaskIdError, TaskNotFoundError
from taskloop.models.workflow import TaskNode


@dataclass(frozen=True)
class ChildSpec:
    """Identity and title of a child to create (or reuse) under a parent."""

    id: str
    title: str


@dataclass
class _Entry:
    id: str
    title: str
    parent_id: str | None
    depth: int
    children: list[str] = field(default_factory=list)


class TaskTree:
    """Arena of task nodes indexed by id.

    Attributes:
        root_id: Id of the depth-0 root task.
    """

    def __init__(self, root_id: str, root_title: str) -> None:
        self.root_id = root_id
        self._entries: dict[str, _Entry] = {root_id: _Entry(root_id, root_title, None, 0)}

    @classmethod
    def from_node(cls, root: TaskNode) -> TaskTree:
        """Build a tree from the persisted nested form.

        Raises:
            DuplicateTaskIdError: If an id occurs more than once
            DepthExceededError: If any node sits deeper than depth 2
        """
        tree = cls(root.id, root.title)

        def add(parent_id: str, node: TaskNode) -> None:
            tree.create_children(parent_id, [ChildSpec(node.id, node.title)], reuse=False)
            for child in node.subtasks:
                add(node.id, child)

        for child in root.subtasks:
            add(root.id, child)
        return tree

    def to_node(self, task_id: str | None = None) -> TaskNode:
        """Rebuild the nested ``TaskNode`` form rooted at ``task_id`` (root by default)."""
        entry = self._get(task_id or self.root_id)
        return TaskNode(
            id=entry.id,
            title=entry.title,
            subtasks=[self.to_node(child_id) for child_id in entry.children],
        )

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        """Iterate ids depth-first in declaration order."""
        stack = [self.root_id]
        while stack:
            task_id = stack.pop()
            yield task_id
            stack.extend(reversed(self._entries[task_id].children))

    def _get(self, task_id: str) -> _Entry:
        try:
            return self._entries[task_id]
        except KeyError:
            raise TaskNotFoundError(f"Task not found in tree: {task_id}", task_id=task_id) from None

    def find(self, task_id: str) -> TaskNode:
        """Return the node (with its subtree) for ``task_id``.

        Raises:
            TaskNotFoundError: If the id is not in the tree
        """
        return self.to_node(task_id)

    def depth_of(self, task_id: str) -> int:
        return self._get(task_id).depth

    def parent_of(self, task_id: str) -> str | None:
        return self._get(task_id).parent_id

    def children_of(self, task_id: str) -> list[str]:
        return list(self._get(task_id).children)

    def path_to(self, task_id: str) -> list[str]:
        """Ordered ids from the root to ``task_id``, inclusive."""
        path: list[str] = []
        current: str | None = task_id
        while current is not None:
            entry = self._get(current)
            path.append(entry.id)
            current = entry.parent_id
        path.reverse()
        return path

    def next_sibling(self, task_id: str) -> str | None:
        """Id of the child declared right after ``task_id`` under the same parent."""
        entry = self._get(task_id)
        if entry.parent_id is None:
            return None
        siblings = self._entries[entry.parent_id].children
        index = siblings.index(task_id)
        return siblings[index + 1] if index + 1 < len(siblings) else None

    def child_with_title(self, parent_id: str, title: str) -> str | None:
        """First child of ``parent_id`` whose title equals ``title``."""
        for child_id in self._get(parent_id).children:
            if self._entries[child_id].title == title:
                return child_id
        return None

    def create_children(
        self,
        parent_id: str,
        specs: Iterable[ChildSpec],
        reuse: bool = True,
    ) -> list[str]:
        """Append children to ``parent_id`` in the given order.

        A spec whose id is already a child of ``parent_id`` is reused in place
        (when ``reuse`` is set), so re-applying the same specs never forks the
        tree. The operation is all-or-nothing: on error the tree is unchanged.

        Args:
            parent_id: Id of the parent node
            specs: Children to create, in declaration order
            reuse: Treat an existing child with the same id as already created

        Returns:
            Ids of the requested children, in spec order

        Raises:
            TaskNotFoundError: If the parent does not exist
            DepthExceededError: If the parent is already at maximum depth
            DuplicateTaskIdError: If an id exists elsewhere in the tree or twice in ``specs``
        """
        parent = self._get(parent_id)
        specs = list(specs)
        if parent.depth >= MAX_TASK_DEPTH:
            raise DepthExceededError(
                f"Cannot create children under {parent_id}: depth {parent.depth + 1} exceeds {MAX_TASK_DEPTH}",
                task_id=parent_id,
            )

        seen: set[str] = set()
        new_specs: list[ChildSpec] = []
        for spec in specs:
            if spec.id in seen:
                raise DuplicateTaskIdError(f"Duplicate task id in request: {spec.id}", task_id=spec.id)
            seen.add(spec.id)

            existing = self._entries.get(spec.id)
            if existing is None:
                new_specs.append(spec)
            elif not (reuse and existing.parent_id == parent_id):
                raise DuplicateTaskIdError(f"Duplicate task id in workflow tree: {spec.id}", task_id=spec.id)

        for spec in new_specs:
            self._entries[spec.id] = _Entry(spec.id, spec.title, parent_id, parent.depth + 1)
            parent.children.append(spec.id)

        return [spec.id for spec in specs]
