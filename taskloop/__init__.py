"""taskloop: a deterministic ticket-driven workflow for coding agents.

Each root ticket is worked in its own VCS workspace through a fixed sequence
of states (refine, plan, review, implement, commit, ...). The agent steers the
workflow with tagged directives in its replies; taskloop validates them,
applies ticket and VCS side effects, and persists the workflow record.
"""

__version__ = "0.1.0"
