"""Data models for persisted workflow state and tracker tickets."""

from taskloop.models.tickets import Ticket, TicketDraft
from taskloop.models.workflow import (
    UNBOUND_SESSION_LEAF_ID,
    WORKFLOW_SCHEMA_VERSION,
    TaskNode,
    TransitionRecord,
    WorkflowRecord,
)

__all__ = [
    "TaskNode",
    "Ticket",
    "TicketDraft",
    "TransitionRecord",
    "UNBOUND_SESSION_LEAF_ID",
    "WORKFLOW_SCHEMA_VERSION",
    "WorkflowRecord",
]
