"""
Side effects required by workflow transitions.

Effects are plain values emitted by the transition engine. The
``SideEffectExecutor`` runs them, in order, against the ticket tracker and the
version-control system. A transition is all-or-nothing from the record's point
of view: if any required effect fails, ``SideEffectError`` propagates and the
runner does not persist anything.

Effect Semantics:
    CreateTicket: create-or-reuse a child ticket keyed on (parent, title)
    AddNote:      best effort; failures are logged, never raised
    CloseTicket:  required
    Commit:       required; the working copy must be clean afterwards
"""

from dataclasses import dataclass
from typing import ClassVar

import structlog

from taskloop.engine.tree import ChildSpec, TaskTree
from taskloop.enums import EffectType
from taskloop.exceptions import SideEffectError
from taskloop.models.tickets import TicketDraft
from taskloop.providers.base import TicketTracker, VersionControl

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CreateTicket:
    effect_type: ClassVar[EffectType] = EffectType.CREATE_TICKET

    parent_id: str
    title: str
    description: str = ""
    tdd: bool = True

    @property
    def idempotency_key(self) -> str:
        return f"{self.parent_id}::{self.title}"

    @property
    def draft(self) -> TicketDraft:
        return TicketDraft(self.title, self.description, self.tdd)


@dataclass(frozen=True)
class AddNote:
    effect_type: ClassVar[EffectType] = EffectType.ADD_NOTE

    task_id: str
    note: str


@dataclass(frozen=True)
class CloseTicket:
    effect_type: ClassVar[EffectType] = EffectType.CLOSE_TICKET

    task_id: str


@dataclass(frozen=True)
class Commit:
    effect_type: ClassVar[EffectType] = EffectType.COMMIT

    message: str

    @property
    def subject(self) -> str:
        first_line = self.message.split("\n", 1)[0].strip()
        return first_line or "(empty subject)"


Effect = CreateTicket | AddNote | CloseTicket | Commit


@dataclass
class EffectResults:
    """Outcome of a batch of effects.

    Attributes:
        created: Children created or reused, grouped by parent id, in effect order
        committed: Subjects of the commits that were made
    """

    created: dict[str, list[ChildSpec]]
    committed: list[str]

    @classmethod
    def empty(cls) -> "EffectResults":
        return cls(created={}, committed=[])


class SideEffectExecutor:
    """Run transition effects against the tracker and VCS of one workspace.

    Example:
        >>> executor = SideEffectExecutor(tracker, vcs)
        >>> results = await executor.apply_all(decision.effects)
        >>> results.created
        {'root': [ChildSpec(id='t-1a2b', title='Parse flags')]}
    """

    def __init__(self, tracker: TicketTracker, vcs: VersionControl) -> None:
        self.tracker = tracker
        self.vcs = vcs
        self._tree: TaskTree | None = None

    async def apply_all(
        self,
        effects: tuple[Effect, ...] | list[Effect],
        tree: TaskTree | None = None,
    ) -> EffectResults:
        """Apply ``effects`` sequentially, stopping at the first required failure.

        Args:
            effects: Effects in the order the transition emitted them
            tree: Current task tree; children already in it are reused by title

        Raises:
            SideEffectError: If a required effect fails. Effects that already
                ran are not undone; they are idempotent on retry.
        """
        results = EffectResults.empty()
        self._tree = tree
        try:
            for effect in effects:
                await self.apply(effect, results)
        finally:
            self._tree = None
        return results

    async def apply(self, effect: Effect, results: EffectResults | None = None) -> None:
        results = results if results is not None else EffectResults.empty()

        if isinstance(effect, CreateTicket):
            ticket_id = await self.create_or_reuse_child(effect)
            results.created.setdefault(effect.parent_id, []).append(ChildSpec(ticket_id, effect.title))
        elif isinstance(effect, AddNote):
            await self._add_note_best_effort(effect)
        elif isinstance(effect, CloseTicket):
            await self.tracker.close(effect.task_id)
            log.info("ticket_closed", task_id=effect.task_id)
        elif isinstance(effect, Commit):
            await self.commit_clean(effect)
            results.committed.append(effect.subject)
        else:
            raise SideEffectError(f"Unknown effect: {effect!r}")

    async def create_or_reuse_child(self, effect: CreateTicket) -> str:
        """Return the id of the child ticket for ``(parent, title)``, creating it if needed.

        A child already in the task tree with the same title is reused first.
        An existing tracker child with the same title is reused, preferring
        in-progress over open over closed, then the oldest, then the lowest id.
        """
        if self._tree is not None and effect.parent_id in self._tree:
            known = self._tree.child_with_title(effect.parent_id, effect.title)
            if known is not None:
                log.info("ticket_reused", key=effect.idempotency_key, task_id=known, source="tree")
                return known

        existing = await self.tracker.find_children(effect.parent_id, effect.title)
        if existing:
            chosen = existing[0]
            log.info(
                "ticket_reused",
                key=effect.idempotency_key,
                task_id=chosen.id,
                status=chosen.status,
            )
            return chosen.id

        ticket_id = await self.tracker.create(effect.parent_id, effect.draft)
        log.info("ticket_created", key=effect.idempotency_key, task_id=ticket_id)
        return ticket_id

    async def commit_clean(self, effect: Commit) -> None:
        """Commit the working copy and verify nothing is left uncommitted.

        Raises:
            SideEffectError: If the commit fails or the diff is not empty afterwards
        """
        log.info("commit_started", subject=effect.subject)
        await self.vcs.commit(effect.message)

        remaining = await self.vcs.diff()
        if remaining.strip():
            raise SideEffectError(
                "Working copy still has uncommitted changes after commit",
                effect=str(EffectType.COMMIT),
                details={"subject": effect.subject},
            )
        log.info("commit_succeeded", subject=effect.subject)

    async def _add_note_best_effort(self, effect: AddNote) -> None:
        try:
            await self.tracker.add_note(effect.task_id, effect.note)
        except SideEffectError as e:
            log.warning("ticket_note_failed", task_id=effect.task_id, error=e.message)
