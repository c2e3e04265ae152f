"""Deterministic workflow engine.

This package holds the pieces that decide and persist workflow progress for
one task workspace.

Key Components:
    - WorkflowStore: Strict, atomic, version-checked persistence of the record
    - TaskTree: Bounded-depth task hierarchy with id-indexed lookups
    - TransitionEngine: Pure decision table over (state, event)
    - SideEffectExecutor: Ticket and VCS effects required by a transition
    - WorkflowRunner (``taskloop.engine.runner``): load, decide, apply, persist

Example:
    >>> from taskloop.engine import TransitionEngine, WorkflowSnapshot, TurnCompleted
    >>> decision = TransitionEngine().decide(snapshot, TurnCompleted(state, output))
"""

from taskloop.engine.effects import SideEffectExecutor
from taskloop.engine.store import WorkflowStore
from taskloop.engine.transitions import (
    Decision,
    ForceApprove,
    ManualTestsPassed,
    TransitionEngine,
    TurnCompleted,
    WorkflowSnapshot,
)
from taskloop.engine.tree import ChildSpec, TaskTree

__all__ = [
    "ChildSpec",
    "Decision",
    "ForceApprove",
    "ManualTestsPassed",
    "SideEffectExecutor",
    "TaskTree",
    "TransitionEngine",
    "TurnCompleted",
    "WorkflowSnapshot",
    "WorkflowStore",
]
