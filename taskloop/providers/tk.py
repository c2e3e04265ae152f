"""
Ticket tracker provider backed by the ``tk`` command-line tool.

``tk`` stores tickets as markdown files with YAML frontmatter inside the
repository, so every command runs with the workspace as its working
directory. ``tk query`` prints ticket objects as JSON, either as a single
array/object or as one object per line; both forms are accepted.
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Self

from taskloop.exceptions import SideEffectError
from taskloop.models.tickets import Ticket, TicketDraft
from taskloop.providers.base import TicketTracker, rank_reuse_candidates, run_tool


class TkTicketTracker(TicketTracker):
    """``tk`` implementation of the ticket tracker.

    Example:
        >>> tracker = TkTicketTracker("/home/me/.workspaces/20261019-101500-export/repo")
        >>> child_id = await tracker.create("t-root", TicketDraft("Parse flags"))
        >>> await tracker.close(child_id)
    """

    def __init__(self, cwd: Path | str, command: str = "tk", timeout: float = 60.0) -> None:
        super().__init__(cwd)
        self.command = command
        self.timeout = timeout

    def at(self, cwd: Path | str) -> Self:
        return type(self)(cwd, command=self.command, timeout=self.timeout)

    async def _run(self, *args: str, effect: str) -> str:
        return await run_tool(self.command, *args, cwd=self.cwd, timeout=self.timeout, effect=effect)

    async def query(self, expression: str | None = None) -> list[Ticket]:
        args = ["query", expression] if expression else ["query"]
        stdout = await self._run(*args, effect="query-tickets")
        tickets = [t for t in (normalize_ticket(item) for item in parse_query_output(stdout)) if t]
        return tickets

    async def show(self, ticket_id: str) -> str:
        return await self._run("show", ticket_id, effect="show-ticket")

    async def start(self, ticket_id: str) -> None:
        await self._run("start", ticket_id, effect="start-ticket")

    async def close(self, ticket_id: str) -> None:
        await self._run("close", ticket_id, effect="close-ticket")

    async def create(self, parent_id: str, draft: TicketDraft) -> str:
        description = draft.description.rstrip()
        tdd_line = "TDD: yes" if draft.tdd else "TDD: no"
        description = f"{description}\n\n{tdd_line}" if description else tdd_line

        stdout = await self._run(
            "create", draft.title, "-d", description, "--parent", parent_id, effect="create-ticket"
        )
        ticket_id = stdout.strip()
        if not ticket_id:
            raise SideEffectError(f"{self.command} create returned an empty ticket id for {draft.title!r}")
        return ticket_id

    async def add_note(self, ticket_id: str, note: str) -> None:
        await self._run("add-note", ticket_id, note, effect="add-note")

    async def find_children(self, parent_id: str, title: str) -> list[Ticket]:
        expression = f"select(.parent == {json.dumps(parent_id)} and .title == {json.dumps(title)})"
        return rank_reuse_candidates(await self.query(expression))

    async def in_progress_roots(self) -> set[str]:
        tickets = await self.query('select(.status == "in_progress")')
        return {t.id for t in tickets if t.is_root}


def parse_query_output(output: str) -> list[Any]:
    """Parse ``tk query`` output: a JSON array, a single object, or JSON lines."""
    trimmed = output.strip()
    if not trimmed:
        return []

    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        pass
    else:
        if isinstance(parsed, list):
            return parsed
        if isinstance(parsed, dict):
            return [parsed]

    items = []
    for line in trimmed.splitlines():
        try:
            items.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return items


def normalize_ticket(item: Any) -> Ticket | None:
    """Convert one ``tk query`` object into a ``Ticket``; None if it has no id."""
    if not isinstance(item, dict):
        return None

    ticket_id = item.get("id")
    if not isinstance(ticket_id, str) or not ticket_id.strip():
        return None
    ticket_id = ticket_id.strip()

    status = item.get("status")
    title = item.get("title")
    deps = item.get("deps")
    parent = item.get("parent")

    return Ticket(
        id=ticket_id,
        status=status.strip() if isinstance(status, str) else "",
        title=title.strip() if isinstance(title, str) and title.strip() else ticket_id,
        deps=[d.strip() for d in deps if isinstance(d, str) and d.strip()] if isinstance(deps, list) else [],
        parent=parent.strip() if isinstance(parent, str) and parent.strip() else None,
        created=parse_timestamp(item.get("created")),
    )


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed

