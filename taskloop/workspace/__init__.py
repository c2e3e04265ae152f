"""Task workspace provisioning, merge, and deletion."""

from taskloop.workspace.manager import TaskWorkspace, WorkspaceManager, is_task_workspace

__all__ = ["TaskWorkspace", "WorkspaceManager", "is_task_workspace"]
