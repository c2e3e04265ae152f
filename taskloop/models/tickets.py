"""
Ticket value types exchanged with the ticket tracker.

These are the normalized, tracker-agnostic shapes the engine works with. The
tracker provider converts its own output (for ``tk``, JSON objects from
``tk query``) into these before anything else sees them.
"""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class TicketDraft:
    """A child ticket requested by the assistant (subtask or review finding).

    Example::

        TicketDraft(title="Validate input", description="Reject empty names", tdd=True)
    """

    title: str
    """Non-empty title; also the reuse key under a given parent."""

    description: str = ""
    """Free-form body for the ticket."""

    tdd: bool = True
    """Whether the agent should drive this ticket test-first."""


@dataclass
class Ticket:
    """A ticket as reported by the tracker."""

    id: str
    """Tracker-assigned identifier."""

    status: str
    """Tracker status, one of ``open``, ``in_progress``, ``closed``."""

    title: str
    """Ticket title (falls back to the id when the tracker has none)."""

    deps: list[str] = field(default_factory=list)
    """Ids of tickets that must be closed before this one is ready."""

    parent: str | None = None
    """Id of the parent ticket, or None for a top-level ticket."""

    created: datetime | None = None
    """Creation timestamp, when the tracker reports a parseable one."""

    @property
    def is_root(self) -> bool:
        return self.parent is None

    def summary_line(self) -> str:
        """One-line listing used in selection menus."""
        return f"{self.id:<8} [{self.status}] - {self.title}"
