"""
Turn loop for one task workspace.

``WorkflowRunner`` is the imperative shell around the pure
``TransitionEngine``. For every event it:

1. loads the persisted record (never a cached copy),
2. enriches the event with the root ticket markdown when the decision needs it,
3. asks the engine for a decision,
4. runs the decision's effects through the ``SideEffectExecutor``,
5. builds and validates the successor record, and
6. persists it with compare-and-swap on ``version``.

A failure at any step before 6 leaves the persisted record untouched, so the
same transition can be retried from the same prior state.
"""

from dataclasses import dataclass, replace
from datetime import UTC, datetime

import structlog

from taskloop.engine.directives import parse_confirmation
from taskloop.engine.effects import SideEffectExecutor
from taskloop.engine.store import WorkflowStore
from taskloop.engine.transitions import (
    Decision,
    ForceApprove,
    ManualTestsPassed,
    TransitionEngine,
    TurnCompleted,
    WorkflowEvent,
    WorkflowSnapshot,
    event_label,
    needs_root_ticket_markdown,
)
from taskloop.engine.tree import TaskTree
from taskloop.enums import WorkflowState
from taskloop.exceptions import DirectiveError, SideEffectError
from taskloop.models.workflow import UNBOUND_SESSION_LEAF_ID, TransitionRecord, WorkflowRecord
from taskloop.providers.base import TicketTracker, VersionControl
from taskloop.rendering.prompts import PromptRenderer

log = structlog.get_logger(__name__)

COMPLETION_NOTICE = "Final commit succeeded. Task workspace is ready to merge."
BIND_SESSION_EVENT = "bind-session"


@dataclass(frozen=True)
class TurnOutcome:
    """Result of dispatching one event.

    Attributes:
        applied: Whether a new record was persisted
        previous: Record the event was evaluated against
        record: Record now on disk (``previous`` when nothing was applied)
        reason: Why nothing was applied, for ignored events
    """

    applied: bool
    previous: WorkflowRecord
    record: WorkflowRecord
    reason: str | None = None

    @property
    def completion_notice(self) -> str | None:
        if self.applied and self.record.state == WorkflowState.COMPLETE:
            return COMPLETION_NOTICE
        return None

    def summary(self) -> str:
        if not self.applied:
            return f"No transition ({self.reason or 'ignored'}); state remains {self.record.state}"
        before, after = self.previous, self.record
        return (
            f"workflow transition v{before.version}->v{after.version}: "
            f"{before.state}/{before.active_task_id} -> {after.state}/{after.active_task_id}"
        )


class WorkflowRunner:
    """Drive the workflow of a single task workspace.

    Example:
        >>> runner = WorkflowRunner(store, tracker, vcs)
        >>> await runner.bind_session("leaf-42")
        >>> print(await runner.build_prompt())
        >>> outcome = await runner.complete_turn(assistant_output)
        >>> outcome.summary()
        'workflow transition v3->v4: refine/t-1 -> plan/t-1'
    """

    def __init__(
        self,
        store: WorkflowStore,
        tracker: TicketTracker,
        vcs: VersionControl,
        engine: TransitionEngine | None = None,
        renderer: PromptRenderer | None = None,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.vcs = vcs
        self.engine = engine or TransitionEngine()
        self.executor = SideEffectExecutor(tracker, vcs)
        self.renderer = renderer or PromptRenderer(workspace=store.workspace)

    async def load(self) -> WorkflowRecord:
        return await self.store.load()

    async def bind_session(self, leaf_id: str, session_file_path: str | None = None) -> WorkflowRecord:
        """Bind the record to the agent session on the first loop invocation.

        An unbound record takes ``leaf_id``; a bound record keeps its leaf.
        A changed ``session_file_path`` is recorded as well. Any change is a
        persisted update and bumps ``version``.
        """
        record = await self.store.load()
        updates: dict[str, object] = {}

        if record.session_leaf_id == UNBOUND_SESSION_LEAF_ID:
            updates["session_leaf_id"] = leaf_id
        elif record.session_leaf_id != leaf_id:
            log.info(
                "session_resumed_from_stored_leaf",
                current_leaf=leaf_id,
                stored_leaf=record.session_leaf_id,
            )

        normalized_path = session_file_path.strip() if session_file_path and session_file_path.strip() else None
        if normalized_path is not None and normalized_path != record.session_file_path:
            updates["session_file_path"] = normalized_path

        if not updates:
            return record

        now = datetime.now(UTC)
        updates.update(
            version=record.version + 1,
            updated_at=now,
            last_transition=TransitionRecord(
                event=BIND_SESSION_EVENT,
                from_state=record.state,
                to_state=record.state,
                from_active_task_id=record.active_task_id,
                to_active_task_id=record.active_task_id,
                at=now,
            ),
        )
        bound = record.model_copy(update=updates)
        await self.store.persist(bound)
        log.info("session_bound", session_leaf_id=bound.session_leaf_id, version=bound.version)
        return bound

    async def dispatch(self, event: WorkflowEvent, message_id: str | None = None) -> TurnOutcome:
        """Evaluate ``event`` against the persisted record and apply the result.

        Args:
            event: The workflow event
            message_id: Id of the assistant message the event came from; recorded
                as ``last_consumed_assistant_id`` when the transition is applied

        Raises:
            DirectiveError: The event was rejected; nothing changed
            SideEffectError: An effect failed; nothing was persisted
            InvariantViolation: The computed record is invalid; nothing was persisted
            WorkflowStoreError: Loading or persisting the record failed
        """
        record = await self.store.load()
        tree = TaskTree.from_node(record.task_tree)
        snapshot = WorkflowSnapshot.from_record(record, tree)
        event = await self._with_root_ticket_markdown(record, event)

        try:
            decision = self.engine.decide(snapshot, event)
        except DirectiveError as e:
            log.warning("directive_rejected", state=str(record.state), reason=e.message)
            raise

        if not decision.applied:
            log.info("turn_ignored", state=str(record.state), reason=decision.reason)
            return TurnOutcome(applied=False, previous=record, record=record, reason=decision.reason)

        return await self._apply(record, tree, decision, event_label(event), message_id)

    async def _apply(
        self,
        record: WorkflowRecord,
        tree: TaskTree,
        decision: Decision,
        label: str,
        message_id: str | None,
    ) -> TurnOutcome:
        try:
            results = await self.executor.apply_all(decision.effects, tree=tree)
        except SideEffectError as e:
            log.error("effect_failed", state=str(record.state), effect=e.effect, error=str(e))
            raise

        successor = self.engine.build_successor(record, decision, results.created, label)
        if message_id:
            successor = successor.model_copy(update={"last_consumed_assistant_id": message_id})

        await self.store.persist(successor)
        log.info(
            "transition_applied",
            transition=label,
            from_state=str(record.state),
            to_state=str(successor.state),
            from_active_task_id=record.active_task_id,
            to_active_task_id=successor.active_task_id,
            version=successor.version,
        )
        return TurnOutcome(applied=True, previous=record, record=successor)

    async def _with_root_ticket_markdown(self, record: WorkflowRecord, event: WorkflowEvent) -> WorkflowEvent:
        if isinstance(event, ManualTestsPassed) or not needs_root_ticket_markdown(record.state, event):
            return event
        if event.root_ticket_markdown and event.root_ticket_markdown.strip():
            return event
        markdown = await self.tracker.show(record.root_task_id)
        return replace(event, root_ticket_markdown=markdown)

    async def complete_turn(
        self,
        assistant_output: str,
        completed_state: WorkflowState | None = None,
        message_id: str | None = None,
    ) -> TurnOutcome:
        """Feed the output of one agent turn to the workflow.

        Args:
            assistant_output: Full text of the assistant's reply
            completed_state: State the turn was prompted for; defaults to the
                current state. A mismatch is rejected as stale.
            message_id: Assistant message id; a message already consumed is ignored
        """
        record = await self.store.load()
        if message_id and record.last_consumed_assistant_id == message_id:
            reason = f"assistant message {message_id} was already consumed"
            log.info("turn_ignored", state=str(record.state), reason=reason)
            return TurnOutcome(applied=False, previous=record, record=record, reason=reason)

        event = TurnCompleted(completed_state or record.state, assistant_output)
        return await self.dispatch(event, message_id=message_id)

    async def force_approve(self) -> TurnOutcome:
        """Approve the current review without a directive (``review-plan`` or ``review`` only)."""
        record = await self.store.load()
        outcome = await self.dispatch(ForceApprove(record.state))
        log.info("force_approved", from_state=str(record.state), to_state=str(outcome.record.state))
        return outcome

    async def confirm_manual_tests(self, user_message: str | None) -> TurnOutcome | None:
        """Apply a manual-test confirmation found in ``user_message``.

        Returns:
            The outcome, or None when the workflow is not in ``manual-test`` or
            the message carries no confirmation
        """
        record = await self.store.load()
        if record.state != WorkflowState.MANUAL_TEST:
            return None
        confirmation = parse_confirmation(user_message)
        if confirmation is None:
            return None
        return await self.dispatch(ManualTestsPassed(confirmation))

    async def replay_pending(self, message_id: str | None, assistant_output: str | None) -> TurnOutcome | None:
        """Dispatch the newest assistant message if it was never consumed.

        Only messages carrying a directive that would move the current state
        are replayed; anything else returns None without touching the record.
        """
        if not message_id or assistant_output is None:
            return None

        record = await self.store.load()
        if record.last_consumed_assistant_id == message_id:
            return None
        if not self.engine.can_replay(record.state, assistant_output):
            return None

        log.info("pending_turn_replayed", message_id=message_id, state=str(record.state))
        return await self.complete_turn(assistant_output, record.state, message_id)

    async def build_prompt(self) -> str:
        """Render the prompt for the current state, including the active ticket chain."""
        record = await self.store.load()
        tickets = [await self.tracker.show(task_id) for task_id in record.active_path_ids]
        return self.renderer.render_turn_prompt(record, tickets)
