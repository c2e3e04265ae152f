"""
The workflow state machine.

``TransitionEngine`` is pure: given a snapshot of the current record and an
event, it decides the next state, which task becomes active, and which
external effects must succeed first. It performs no I/O. The runner executes
the effects and then asks the engine to build the successor record.

Transition Table:
    refine           --transition=plan-------------------------> plan
    plan             --transition=review-plan------------------> review-plan
    review-plan      --transition=review-plan------------------> review-plan (re-review)
    review-plan      --transition=implement | force-approve----> implement (first subtask)
    implement        --end of turn-----------------------------> review
    review           --transition=subtask-commit | force-approve-> subtask-commit
    review           --review-findings-------------------------> implement-review (first finding)
    implement-review --end of turn (close finding)-------------> next finding | review (parent)
    subtask-commit   --commit-message (close, commit)----------> implement (next subtask) | manual-test
    manual-test      --user confirmation-----------------------> commit
    commit           --commit-message (close root, commit)-----> complete

Trigger precedence:
    The escape hatch and structured payloads outrank a bare transition tag.
    In ``review``, non-empty findings always lead to ``implement-review`` even
    if the transition tag asks for ``subtask-commit``: unresolved findings are
    never committed past. In ``review-plan`` the subtask list is a payload of
    the ``implement`` transition, not a trigger of its own, so an explicit
    ``review-plan`` tag still re-runs the review.

Outcomes:
    - applied: a transition to persist (possibly back to the same state)
    - ignored: a valid no-op, e.g. an interactive refine turn without a tag
    - rejected: raised as ``DirectiveError``; state stays as it was
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

import structlog

from taskloop.engine.directives import (
    MANUAL_TEST_PASS_PHRASE,
    ConfirmationDirective,
    ParsedOutput,
    SubtasksDirective,
    extract_plan_subtasks,
    parse_assistant_output,
    parse_requested_state,
)
from taskloop.engine.effects import AddNote, CloseTicket, Commit, CreateTicket, Effect
from taskloop.engine.invariants import check_successor
from taskloop.engine.tree import ChildSpec, TaskTree
from taskloop.enums import WorkflowState
from taskloop.exceptions import DirectiveError, InvariantViolation, TaskTreeError
from taskloop.models.tickets import TicketDraft
from taskloop.models.workflow import TransitionRecord, WorkflowRecord

log = structlog.get_logger(__name__)


# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class TurnCompleted:
    """The agent finished a turn in ``completed_state``."""

    completed_state: WorkflowState
    assistant_output: str
    root_ticket_markdown: str | None = None


@dataclass(frozen=True)
class ForceApprove:
    """Operator escape hatch: approve the current review without a directive."""

    completed_state: WorkflowState
    root_ticket_markdown: str | None = None


@dataclass(frozen=True)
class ManualTestsPassed:
    """The human confirmed that manual testing passed."""

    confirmation: ConfirmationDirective


WorkflowEvent = TurnCompleted | ForceApprove | ManualTestsPassed


def event_label(event: WorkflowEvent) -> str:
    """Audit label stored in ``last_transition.event``."""
    if isinstance(event, TurnCompleted):
        return f"turn:{event.completed_state}"
    if isinstance(event, ForceApprove):
        return f"force-approve:{event.completed_state}"
    return "manual-tests-passed"


# =============================================================================
# Decisions
# =============================================================================


class TargetKind(str, Enum):
    """How to pick the next active task relative to the current one."""

    CURRENT = "current"
    ROOT = "root"
    PARENT = "parent"
    NEXT_SIBLING = "next-sibling"
    FIRST_CREATED_CHILD = "first-created-child"


@dataclass(frozen=True)
class ActiveTarget:
    kind: TargetKind
    parent_id: str | None = None


CURRENT = ActiveTarget(TargetKind.CURRENT)
ROOT = ActiveTarget(TargetKind.ROOT)
PARENT = ActiveTarget(TargetKind.PARENT)
NEXT_SIBLING = ActiveTarget(TargetKind.NEXT_SIBLING)


class DecisionKind(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Decision:
    """What a transition requires: next state, next active task, and effects."""

    kind: DecisionKind
    state: WorkflowState
    target: ActiveTarget = CURRENT
    effects: tuple[Effect, ...] = ()
    reason: str | None = None

    @property
    def applied(self) -> bool:
        return self.kind == DecisionKind.APPLIED


@dataclass(frozen=True)
class WorkflowSnapshot:
    """The slice of a record and its tree that the engine decides on."""

    state: WorkflowState
    root_task_id: str
    active_task_id: str
    active_depth: int
    parent_id: str | None = None
    next_sibling_id: str | None = None

    @classmethod
    def from_record(cls, record: WorkflowRecord, tree: TaskTree | None = None) -> WorkflowSnapshot:
        tree = tree or TaskTree.from_node(record.task_tree)
        return cls(
            state=record.state,
            root_task_id=record.root_task_id,
            active_task_id=record.active_task_id,
            active_depth=tree.depth_of(record.active_task_id),
            parent_id=tree.parent_of(record.active_task_id),
            next_sibling_id=tree.next_sibling(record.active_task_id),
        )


def _move(state: WorkflowState, target: ActiveTarget, effects: Sequence[Effect] = ()) -> Decision:
    return Decision(DecisionKind.APPLIED, state, target, tuple(effects))


def _ignore(snapshot: WorkflowSnapshot, reason: str | None = None) -> Decision:
    return Decision(DecisionKind.IGNORED, snapshot.state, reason=reason)


def _create_effects(parent_id: str, drafts: Sequence[TicketDraft]) -> list[Effect]:
    return [CreateTicket(parent_id, d.title, d.description, d.tdd) for d in drafts]


def needs_root_ticket_markdown(state: WorkflowState, event: WorkflowEvent) -> bool:
    """Whether the runner should attach the root ticket markdown before deciding."""
    return state == WorkflowState.REVIEW_PLAN and not isinstance(event, ManualTestsPassed)


# =============================================================================
# Engine
# =============================================================================


TurnHandler = Callable[[WorkflowSnapshot, ParsedOutput, TurnCompleted], Decision]

# States where a turn without a transition tag is the human still conversing.
CONVERSATIONAL_STATES = (WorkflowState.REFINE, WorkflowState.PLAN, WorkflowState.REVIEW_PLAN)


class TransitionEngine:
    """Deterministic decision table for the task workflow.

    Example:
        >>> engine = TransitionEngine()
        >>> snapshot = WorkflowSnapshot.from_record(record)
        >>> decision = engine.decide(snapshot, TurnCompleted(record.state, output))
        >>> if decision.applied:
        ...     results = await executor.apply_all(decision.effects)
        ...     successor = engine.build_successor(record, decision, results.created, "turn:refine")
    """

    def __init__(self) -> None:
        self._turn_handlers: Mapping[WorkflowState, TurnHandler] = {
            WorkflowState.REFINE: self._on_refine,
            WorkflowState.PLAN: self._on_plan,
            WorkflowState.REVIEW_PLAN: self._on_review_plan,
            WorkflowState.IMPLEMENT: self._on_implement,
            WorkflowState.REVIEW: self._on_review,
            WorkflowState.IMPLEMENT_REVIEW: self._on_implement_review,
            WorkflowState.SUBTASK_COMMIT: self._on_subtask_commit,
            WorkflowState.MANUAL_TEST: self._on_manual_test,
            WorkflowState.COMMIT: self._on_commit,
            WorkflowState.COMPLETE: self._on_complete,
        }

    def decide(self, snapshot: WorkflowSnapshot, event: WorkflowEvent) -> Decision:
        """Decide the transition for ``event`` in the snapshot's state.

        Raises:
            DirectiveError: If the event is stale, not valid in this state, or
                lacks a required directive. Nothing changes.
        """
        if isinstance(event, ManualTestsPassed):
            if snapshot.state != WorkflowState.MANUAL_TEST:
                raise DirectiveError("Manual tests can only pass in manual-test state", state=snapshot.state)
            return _move(WorkflowState.COMMIT, ROOT)

        if event.completed_state != snapshot.state:
            raise DirectiveError(
                f"Stale event for state {event.completed_state}; workflow is in {snapshot.state}",
                state=snapshot.state,
            )

        if isinstance(event, ForceApprove):
            return self._on_force_approve(snapshot, event)

        if snapshot.state in CONVERSATIONAL_STATES and parse_requested_state(event.assistant_output) is None:
            return _ignore(snapshot)

        parsed = parse_assistant_output(event.assistant_output, snapshot.state)
        return self._turn_handlers[snapshot.state](snapshot, parsed, event)

    def can_replay(self, state: WorkflowState, assistant_output: str) -> bool:
        """Whether an unconsumed assistant message would trigger a transition in ``state``.

        Only states whose transitions need a directive are replayable; end-of-turn
        transitions are driven by the loop itself.
        """
        try:
            parsed = parse_assistant_output(assistant_output, state)
        except DirectiveError:
            return False

        requested = parsed.requested_state
        if state == WorkflowState.REFINE:
            return requested == WorkflowState.PLAN
        if state == WorkflowState.PLAN:
            return requested == WorkflowState.REVIEW_PLAN
        if state == WorkflowState.REVIEW_PLAN:
            return requested in (WorkflowState.REVIEW_PLAN, WorkflowState.IMPLEMENT)
        if state == WorkflowState.REVIEW:
            return parsed.review_findings is not None or requested == WorkflowState.SUBTASK_COMMIT
        if state in (WorkflowState.SUBTASK_COMMIT, WorkflowState.COMMIT):
            return parsed.commit_message is not None
        return False

    # -------------------------------------------------------------------------
    # Per-state handlers
    # -------------------------------------------------------------------------

    def _on_refine(self, snapshot: WorkflowSnapshot, parsed: ParsedOutput, event: TurnCompleted) -> Decision:
        if parsed.requested_state is None:
            return _ignore(snapshot)
        if parsed.requested_state == WorkflowState.PLAN:
            return _move(WorkflowState.PLAN, ROOT)
        raise DirectiveError("Expected <transition>plan</transition>", state=snapshot.state)

    def _on_plan(self, snapshot: WorkflowSnapshot, parsed: ParsedOutput, event: TurnCompleted) -> Decision:
        if parsed.requested_state is None:
            return _ignore(snapshot)
        if parsed.requested_state == WorkflowState.REVIEW_PLAN:
            return _move(WorkflowState.REVIEW_PLAN, ROOT)
        raise DirectiveError("Expected <transition>review-plan</transition>", state=snapshot.state)

    def _on_review_plan(self, snapshot: WorkflowSnapshot, parsed: ParsedOutput, event: TurnCompleted) -> Decision:
        requested = parsed.requested_state
        if requested is None:
            return _ignore(snapshot)

        if requested == WorkflowState.REVIEW_PLAN:
            self._plan_subtasks(snapshot, parsed.subtasks, event.root_ticket_markdown, "Cannot re-review")
            return _move(WorkflowState.REVIEW_PLAN, CURRENT)

        if requested == WorkflowState.IMPLEMENT:
            subtasks = self._plan_subtasks(
                snapshot, parsed.subtasks, event.root_ticket_markdown, "Cannot approve plan"
            )
            return _move(
                WorkflowState.IMPLEMENT,
                ActiveTarget(TargetKind.FIRST_CREATED_CHILD, snapshot.root_task_id),
                _create_effects(snapshot.root_task_id, subtasks.drafts),
            )

        raise DirectiveError(
            "Expected <transition>implement</transition> or <transition>review-plan</transition>",
            state=snapshot.state,
        )

    def _on_implement(self, snapshot: WorkflowSnapshot, parsed: ParsedOutput, event: TurnCompleted) -> Decision:
        return _move(WorkflowState.REVIEW, CURRENT)

    def _on_review(self, snapshot: WorkflowSnapshot, parsed: ParsedOutput, event: TurnCompleted) -> Decision:
        requested = parsed.requested_state
        findings = parsed.review_findings

        if findings is not None and requested in (
            None,
            WorkflowState.IMPLEMENT_REVIEW,
            WorkflowState.SUBTASK_COMMIT,
        ):
            if requested == WorkflowState.SUBTASK_COMMIT:
                log.warning(
                    "review_findings_override_commit",
                    task_id=snapshot.active_task_id,
                    findings=len(findings.drafts),
                )
            return _move(
                WorkflowState.IMPLEMENT_REVIEW,
                ActiveTarget(TargetKind.FIRST_CREATED_CHILD, snapshot.active_task_id),
                _create_effects(snapshot.active_task_id, findings.drafts),
            )

        if requested == WorkflowState.SUBTASK_COMMIT:
            return _move(WorkflowState.SUBTASK_COMMIT, CURRENT)

        if requested == WorkflowState.IMPLEMENT_REVIEW:
            raise DirectiveError(
                "Got <transition>implement-review</transition> but no <review-findings> block",
                state=snapshot.state,
            )

        raise DirectiveError(
            "Expected <transition>subtask-commit</transition> or findings + "
            "<transition>implement-review</transition>",
            state=snapshot.state,
        )

    def _on_implement_review(
        self, snapshot: WorkflowSnapshot, parsed: ParsedOutput, event: TurnCompleted
    ) -> Decision:
        if snapshot.parent_id is None:
            raise InvariantViolation("implement-review requires the active finding to have a parent")

        effects = [CloseTicket(snapshot.active_task_id)]
        if snapshot.next_sibling_id:
            return _move(WorkflowState.IMPLEMENT_REVIEW, NEXT_SIBLING, effects)
        return _move(WorkflowState.REVIEW, PARENT, effects)

    def _on_subtask_commit(
        self, snapshot: WorkflowSnapshot, parsed: ParsedOutput, event: TurnCompleted
    ) -> Decision:
        if parsed.commit_message is None:
            raise DirectiveError("Expected <commit-message>...</commit-message>", state=snapshot.state)

        effects = [CloseTicket(snapshot.active_task_id), Commit(parsed.commit_message.message)]
        if snapshot.next_sibling_id:
            return _move(WorkflowState.IMPLEMENT, NEXT_SIBLING, effects)
        return _move(WorkflowState.MANUAL_TEST, ROOT, effects)

    def _on_manual_test(self, snapshot: WorkflowSnapshot, parsed: ParsedOutput, event: TurnCompleted) -> Decision:
        return _ignore(snapshot, f"Waiting for explicit user confirmation: {MANUAL_TEST_PASS_PHRASE}")

    def _on_commit(self, snapshot: WorkflowSnapshot, parsed: ParsedOutput, event: TurnCompleted) -> Decision:
        if parsed.commit_message is None:
            raise DirectiveError("Expected <commit-message>...</commit-message>", state=snapshot.state)

        return _move(
            WorkflowState.COMPLETE,
            ROOT,
            [CloseTicket(snapshot.root_task_id), Commit(parsed.commit_message.message)],
        )

    def _on_complete(self, snapshot: WorkflowSnapshot, parsed: ParsedOutput, event: TurnCompleted) -> Decision:
        return _ignore(snapshot, "Workflow is complete")

    def _on_force_approve(self, snapshot: WorkflowSnapshot, event: ForceApprove) -> Decision:
        if not snapshot.state.allows_force_approve:
            raise DirectiveError("Force-approve is only valid in review-plan or review", state=snapshot.state)
        if snapshot.active_depth != snapshot.state.expected_depth:
            raise DirectiveError(
                f"Force-approve requires an active task at depth {snapshot.state.expected_depth}, "
                f"found depth {snapshot.active_depth}",
                state=snapshot.state,
            )

        if snapshot.state == WorkflowState.REVIEW_PLAN:
            subtasks = self._plan_subtasks(snapshot, None, event.root_ticket_markdown, "Cannot force approval")
            note = AddNote(snapshot.active_task_id, "Forced LGTM via force-approve (skipping plan review findings).")
            return _move(
                WorkflowState.IMPLEMENT,
                ActiveTarget(TargetKind.FIRST_CREATED_CHILD, snapshot.root_task_id),
                [*_create_effects(snapshot.root_task_id, subtasks.drafts), note],
            )

        note = AddNote(snapshot.active_task_id, "Forced LGTM via force-approve (skipping review findings).")
        return _move(WorkflowState.SUBTASK_COMMIT, CURRENT, [note])

    @staticmethod
    def _plan_subtasks(
        snapshot: WorkflowSnapshot,
        from_output: SubtasksDirective | None,
        root_ticket_markdown: str | None,
        context: str,
    ) -> SubtasksDirective:
        """Subtasks from the turn output, else from the root ticket's ``## Plan`` section."""
        if from_output is not None:
            return from_output
        from_ticket = extract_plan_subtasks(root_ticket_markdown)
        if from_ticket is not None:
            return from_ticket
        raise DirectiveError(
            f"{context}: no <subtasks> in the output and no ## Plan <subtasks> block in the root ticket",
            state=snapshot.state,
        )

    # -------------------------------------------------------------------------
    # Successor records
    # -------------------------------------------------------------------------

    def build_successor(
        self,
        record: WorkflowRecord,
        decision: Decision,
        created: Mapping[str, Sequence[ChildSpec]] | None = None,
        event: str = "transition",
        now: datetime | None = None,
    ) -> WorkflowRecord:
        """Apply an applied decision to ``record``, producing the next version.

        Args:
            record: The currently persisted record (left untouched)
            decision: An applied decision from ``decide``
            created: Children produced by the decision's ``CreateTicket`` effects
            event: Audit label for ``last_transition``
            now: Timestamp override (tests)

        Returns:
            A new record with version ``record.version + 1``

        Raises:
            InvariantViolation: If the resulting record is not valid. This is a
                defect and the record must not be persisted.
        """
        if not decision.applied:
            raise InvariantViolation(f"Cannot build a successor from an ignored decision ({decision.reason})")

        tree = TaskTree.from_node(record.task_tree)
        created_ids: dict[str, list[str]] = {}
        try:
            for parent_id, children in (created or {}).items():
                created_ids[parent_id] = tree.create_children(parent_id, children)
        except TaskTreeError as e:
            raise InvariantViolation("Transition produced an invalid task tree", [e.message]) from e

        active_id = self._resolve_target(tree, record.active_task_id, decision.target, created_ids)
        now = now or datetime.now(UTC)

        successor = record.model_copy(
            update={
                "state": decision.state,
                "active_task_id": active_id,
                "active_path_ids": tree.path_to(active_id),
                "version": record.version + 1,
                "updated_at": now,
                "last_transition": TransitionRecord(
                    event=event,
                    from_state=record.state,
                    to_state=decision.state,
                    from_active_task_id=record.active_task_id,
                    to_active_task_id=active_id,
                    at=now,
                ),
                "task_tree": tree.to_node(),
            }
        )
        check_successor(record, successor)
        return successor

    @staticmethod
    def _resolve_target(
        tree: TaskTree,
        current_id: str,
        target: ActiveTarget,
        created_ids: Mapping[str, list[str]],
    ) -> str:
        if target.kind == TargetKind.CURRENT:
            return current_id
        if target.kind == TargetKind.ROOT:
            return tree.root_id
        if target.kind == TargetKind.PARENT:
            parent = tree.parent_of(current_id)
            if parent is None:
                raise InvariantViolation(f"No parent found for active task {current_id}")
            return parent
        if target.kind == TargetKind.NEXT_SIBLING:
            sibling = tree.next_sibling(current_id)
            if sibling is None:
                raise InvariantViolation(f"No next sibling found for active task {current_id}")
            return sibling

        children = created_ids.get(target.parent_id or "")
        if not children:
            raise InvariantViolation(f"No children were created under {target.parent_id}")
        return children[0]
