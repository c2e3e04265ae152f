"""
Persistence of the per-workspace workflow record.

This module provides the WorkflowStore class, which reads and writes the single
``WorkflowRecord`` of a task workspace. The store is deliberately strict:

- Loading fails fast on a missing, unparsable, or invariant-violating file.
  Nothing is repaired or defaulted; the operator fixes the file by hand.
- Persisting validates the record first and never writes an invalid one.
- Writes are atomic: the record goes to a temporary file in the same
  directory, which is then renamed over the target, so a concurrent reader
  sees either the old record or the new one, never a partial file.
- Writes are compare-and-swap on ``version``: the record on disk must be the
  immediate predecessor of the one being written.

State File Location:
    ``<workspace>/.tasks/workflow.json`` by default; both the directory and
    file name are configurable through ``TaskloopSettings``.

Example:
    >>> store = WorkflowStore("/home/me/.workspaces/20261019-101500-export/repo")
    >>> record = await store.load()
    >>> successor = record.model_copy(update={"version": record.version + 1})
    >>> await store.persist(successor)
"""

import asyncio
import json
import os
import time
from pathlib import Path

import aiofiles
import structlog
from pydantic import ValidationError

from taskloop.engine.invariants import check_record, find_violations
from taskloop.exceptions import StaleWorkflowError, WorkflowStoreError
from taskloop.models.workflow import WorkflowRecord

log = structlog.get_logger(__name__)

DEFAULT_WORKFLOW_DIR = ".tasks"
DEFAULT_WORKFLOW_FILE = "workflow.json"


class WorkflowStore:
    """Load and atomically persist the workflow record of one workspace.

    The store holds no cached record; every ``load()`` reads the file again.
    Each workspace gets its own store, and workspaces never share records.

    Attributes:
        workspace: Root directory of the task workspace.
        path: Full path of the workflow file.
    """

    def __init__(
        self,
        workspace: str | Path,
        workflow_dir: str = DEFAULT_WORKFLOW_DIR,
        workflow_file: str = DEFAULT_WORKFLOW_FILE,
    ) -> None:
        """Initialize the store for a workspace.

        Args:
            workspace: Root directory of the task workspace.
            workflow_dir: Directory (relative to the workspace) holding the file.
            workflow_file: Name of the workflow file.
        """
        self.workspace = Path(workspace)
        self.path = self.workspace / workflow_dir / workflow_file
        # Serializes read-check-write within this process
        self._lock = asyncio.Lock()

    @property
    def exists(self) -> bool:
        return self.path.exists()

    async def load(self) -> WorkflowRecord:
        """Load and validate the workflow record.

        Returns:
            The validated record.

        Raises:
            WorkflowStoreError: If the file is missing, unreadable, not valid
                JSON, does not match the record schema, or violates any
                structural invariant.
        """
        data = await self._read_json()
        if data is None:
            raise WorkflowStoreError(f"Missing workflow file: {self.path}", path=self.path)

        if not isinstance(data, dict):
            raise WorkflowStoreError("Invalid workflow schema: root must be an object", path=self.path)

        try:
            record = WorkflowRecord.model_validate(data)
        except ValidationError as e:
            raise WorkflowStoreError(f"Invalid workflow schema: {_summarize(e)}", path=self.path) from e

        violations = find_violations(record)
        if violations:
            raise WorkflowStoreError(f"Invalid workflow invariants: {'; '.join(violations)}", path=self.path)

        log.debug("workflow_loaded", path=str(self.path), state=str(record.state), version=record.version)
        return record

    async def persist(self, record: WorkflowRecord, create: bool = False) -> None:
        """Atomically write ``record`` as the workspace's new record.

        Args:
            record: Record to write. Must already satisfy every invariant.
            create: Write the very first record of the workspace. The file
                must not exist yet and ``record.version`` must be 1.

        Raises:
            InvariantViolation: If the record violates an invariant. Nothing
                is written and the previous file stays authoritative.
            StaleWorkflowError: If the on-disk version is not ``record.version - 1``
                (or, with ``create``, if a record already exists).
            WorkflowStoreError: If the existing file is unreadable or the
                write fails.
        """
        check_record(record)

        async with self._lock:
            current = await self._read_json()
            if create:
                if current is not None:
                    raise StaleWorkflowError("Workflow file already exists", path=self.path)
                if record.version != 1:
                    raise StaleWorkflowError(
                        f"Initial workflow record must have version 1, got {record.version}",
                        path=self.path,
                        expected_version=1,
                        found_version=record.version,
                    )
            else:
                if current is None:
                    raise WorkflowStoreError(f"Missing workflow file: {self.path}", path=self.path)
                found = current.get("version") if isinstance(current, dict) else None
                if found != record.version - 1:
                    raise StaleWorkflowError(
                        f"Refusing stale write: expected on-disk version {record.version - 1}, found {found}",
                        path=self.path,
                        expected_version=record.version - 1,
                        found_version=found if isinstance(found, int) else None,
                    )

            await self._write_atomic(record)

        log.info("workflow_persisted", path=str(self.path), state=str(record.state), version=record.version)

    async def _read_json(self) -> object | None:
        """Read and parse the workflow file; None when it does not exist."""
        if not self.path.exists():
            return None

        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            raise WorkflowStoreError(f"Failed to read workflow file {self.path}: {e}", path=self.path) from e

        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowStoreError(f"Invalid JSON in {self.path}: {e}", path=self.path) from e

    async def _write_atomic(self, record: WorkflowRecord) -> None:
        """Write to a sibling temp file, then rename it over the target.

        The temp file lives in the same directory so the rename stays on one
        filesystem, where it is atomic on POSIX.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp-{os.getpid()}-{time.monotonic_ns()}")

        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(record.to_json())
                await f.flush()
            tmp_path.replace(self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise WorkflowStoreError(f"Failed to save workflow atomically: {e}", path=self.path) from e


def _summarize(error: ValidationError) -> str:
    """Compact one-line rendering of pydantic validation errors."""
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "<root>"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)
