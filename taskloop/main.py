"""CLI entry point for taskloop."""

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

import click
import structlog

from taskloop.config.settings import LOG_LEVELS, TaskloopSettings, load_settings
from taskloop.engine.runner import WorkflowRunner
from taskloop.engine.store import WorkflowStore
from taskloop.enums import WorkflowState
from taskloop.exceptions import ConfigurationError, TaskloopError, WorkspaceError
from taskloop.models.workflow import TaskNode, WorkflowRecord
from taskloop.providers.base import TicketTracker, VersionControl
from taskloop.providers.jujutsu import JujutsuVersionControl
from taskloop.providers.tk import TkTicketTracker
from taskloop.rendering.prompts import PromptRenderer
from taskloop.utils.logging_config import configure_logging, get_logger
from taskloop.workspace.manager import TaskWorkspace, WorkspaceManager, is_task_workspace, slugify

log = structlog.get_logger(__name__)


@dataclass
class Session:
    """Collaborators for one CLI invocation, bound to the repository at ``root``."""

    settings: TaskloopSettings
    root: Path
    tracker: TicketTracker
    vcs: VersionControl

    @property
    def in_task_workspace(self) -> bool:
        return is_task_workspace(self.root, self.settings.workspaces_path)

    def runner(self) -> WorkflowRunner:
        store = WorkflowStore(self.root, self.settings.workflow_dir, self.settings.workflow_file)
        renderer = PromptRenderer(workspace=self.root, override_dir=self.settings.prompts_path)
        return WorkflowRunner(store, self.tracker, self.vcs, renderer=renderer)

    def workspaces(self) -> WorkspaceManager:
        return WorkspaceManager(self.settings, self.root, self.tracker, self.vcs)


def make_tracker(settings: TaskloopSettings, cwd: Path) -> TicketTracker:
    return TkTicketTracker(cwd, command=settings.ticket_command, timeout=settings.command_timeout)


def make_vcs(settings: TaskloopSettings, cwd: Path) -> VersionControl:
    return JujutsuVersionControl(cwd, command=settings.vcs_command, timeout=settings.command_timeout)


async def open_session(settings: TaskloopSettings, cwd: Path) -> Session:
    """Resolve the repository root from ``cwd`` and bind providers to it."""
    root = await make_vcs(settings, cwd).root()
    return Session(settings, root, make_tracker(settings, root), make_vcs(settings, root))


@click.group()
@click.option(
    "--config",
    default=None,
    type=click.Path(dir_okay=False),
    help="Path to a YAML configuration file (defaults plus TASKLOOP_* environment otherwise)",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Logging level (overrides configuration)",
)
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str | None) -> None:
    """taskloop: deterministic ticket workflow for coding agents."""
    try:
        settings = load_settings(config)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    configure_logging(log_level or settings.log_level, settings.log_json)
    get_logger(__name__).debug("settings_loaded", config=config, workspaces_root=str(settings.workspaces_path))
    ctx.obj = {"settings": settings, "cwd": Path.cwd()}


@cli.command()
@click.argument("action", required=False, type=click.Choice(["delete", "lgtm"]))
@click.option("--user-message", default=None, help="Latest user message (checked for the manual-test confirmation)")
@click.option("--session-leaf", default=None, help="Agent session leaf id to bind the workflow to")
@click.option("--session-file", default=None, help="Agent session file path to record")
@click.option(
    "--last-output",
    default=None,
    type=click.File("r"),
    help="Newest assistant message, replayed if it was never consumed",
)
@click.option("--last-message-id", default=None, help="Id of the message given with --last-output")
@click.option("--ticket", "ticket_id", default=None, help="Ticket to start (main workspace)")
@click.option("--slug", default=None, help="Workspace slug (main workspace)")
@click.option("--yes", is_flag=True, help="Accept defaults and confirmations without prompting")
@click.pass_context
def task(
    ctx: click.Context,
    action: str | None,
    user_message: str | None,
    session_leaf: str | None,
    session_file: str | None,
    last_output: TextIO | None,
    last_message_id: str | None,
    ticket_id: str | None,
    slug: str | None,
    yes: bool,
) -> None:
    """Run the task workflow for the current workspace.

    \b
    In the main workspace: offer completed workspaces for merge, then pick a
    ready ticket and provision a task workspace for it.
    In a task workspace: bind the session, apply a manual-test confirmation,
    replay a pending turn, and print the prompt for the current state.

    \b
    taskloop task delete   pick and delete a task workspace (main workspace)
    taskloop task lgtm     approve the current review (task workspace)
    """
    try:
        settings = ctx.obj["settings"]
        session = asyncio.run(open_session(settings, ctx.obj["cwd"]))

        if action == "delete":
            asyncio.run(_delete_workspace(session, yes))
        elif action == "lgtm":
            asyncio.run(_force_approve(session))
        elif session.in_task_workspace:
            pending = last_output.read() if last_output is not None else None
            asyncio.run(_run_task_workspace(session, user_message, session_leaf, session_file, pending, last_message_id))
        else:
            asyncio.run(_run_main_workspace(session, ticket_id, slug, yes))
    except TaskloopError as e:
        click.echo(f"Error: {e}", err=True)
        log.debug("task_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error("task_unexpected", exc_info=True)
        sys.exit(1)


@cli.command()
@click.option(
    "--output",
    "output_file",
    default="-",
    type=click.File("r"),
    help="File with the assistant's reply ('-' for stdin)",
)
@click.option("--message-id", default=None, help="Assistant message id, recorded once consumed")
@click.option(
    "--state",
    "completed_state",
    default=None,
    type=click.Choice([s.value for s in WorkflowState]),
    help="State the turn was prompted for (rejects stale turns)",
)
@click.pass_context
def turn(
    ctx: click.Context,
    output_file: TextIO,
    message_id: str | None,
    completed_state: str | None,
) -> None:
    """Feed one assistant turn to the workflow and persist the result."""
    try:
        settings = ctx.obj["settings"]
        output = output_file.read()
        session = asyncio.run(open_session(settings, ctx.obj["cwd"]))
        asyncio.run(_complete_turn(session, output, completed_state, message_id))
    except TaskloopError as e:
        click.echo(f"Error: {e}", err=True)
        log.debug("turn_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error("turn_unexpected", exc_info=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the workflow record (task workspace) or all task workspaces (main workspace)."""
    try:
        settings = ctx.obj["settings"]
        session = asyncio.run(open_session(settings, ctx.obj["cwd"]))
        asyncio.run(_show_status(session))
    except TaskloopError as e:
        click.echo(f"Error: {e}", err=True)
        log.debug("status_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error("status_unexpected", exc_info=True)
        sys.exit(1)


def _require_task_workspace(session: Session, what: str) -> None:
    if not session.in_task_workspace:
        raise WorkspaceError(f"{what} is only available inside a task workspace")


def _require_main_workspace(session: Session, what: str) -> None:
    if session.in_task_workspace:
        raise WorkspaceError(f"{what} is only available in the main workspace")


async def _run_task_workspace(
    session: Session,
    user_message: str | None,
    session_leaf: str | None,
    session_file: str | None,
    pending_output: str | None,
    pending_message_id: str | None,
) -> None:
    """One loop invocation inside a task workspace."""
    runner = session.runner()

    if session_leaf:
        record = await runner.bind_session(session_leaf, session_file)
    else:
        record = await runner.load()

    if record.state == WorkflowState.COMPLETE:
        click.echo("Workflow already complete. Workspace is ready to merge.", err=True)
        return

    confirmed = await runner.confirm_manual_tests(user_message)
    if confirmed is not None:
        click.echo(confirmed.summary(), err=True)

    replayed = await runner.replay_pending(pending_message_id, pending_output)
    if replayed is not None:
        click.echo(replayed.summary(), err=True)
        if replayed.completion_notice:
            click.echo(replayed.completion_notice, err=True)
            return

    record = await runner.load()
    if record.state == WorkflowState.MANUAL_TEST:
        click.echo(
            "Waiting for explicit user confirmation: MANUAL TESTS PASSED (or MANUAL TEST PASSED). "
            "Then run `taskloop task --user-message ...` again.",
            err=True,
        )

    click.echo(await runner.build_prompt(), nl=False)


async def _complete_turn(
    session: Session,
    output: str,
    completed_state: str | None,
    message_id: str | None,
) -> None:
    _require_task_workspace(session, "Completing a turn")
    runner = session.runner()
    state = WorkflowState(completed_state) if completed_state else None

    outcome = await runner.complete_turn(output, state, message_id)
    click.echo(outcome.summary())
    if outcome.completion_notice:
        click.echo(outcome.completion_notice)


async def _force_approve(session: Session) -> None:
    _require_task_workspace(session, "Force-approve")
    outcome = await session.runner().force_approve()
    click.echo(outcome.summary())


async def _run_main_workspace(session: Session, ticket_id: str | None, slug: str | None, yes: bool) -> None:
    """Offer completed workspaces for merge, then start a new ticket."""
    manager = session.workspaces()

    for workspace in await manager.mergeable_workspaces():
        if not (yes or click.confirm(f"Merge completed workspace {workspace.summary_line()}?", default=True)):
            continue

        default_message = await manager.default_merge_message(workspace)
        message = default_message if yes else click.prompt("Squash merge commit message", default=default_message)
        await manager.merge(workspace, message)
        click.echo(f"Merged {workspace.name}")

        if yes or click.confirm(f"Delete workspace {workspace.name}?", default=True):
            await manager.delete(workspace)
            click.echo(f"Deleted workspace: {workspace.name}")

    tickets = await manager.selectable_tickets()
    if not tickets:
        click.echo("No open tasks found. Create tickets with `tk create`")
        return

    if ticket_id:
        matching = [t for t in tickets if t.id == ticket_id]
        if not matching:
            raise WorkspaceError(f"Ticket {ticket_id} is not open, ready, and unclaimed")
        ticket = matching[0]
    else:
        for index, candidate in enumerate(tickets, start=1):
            click.echo(f"{index:>3}. {candidate.summary_line()}")
        choice = 1 if yes else click.prompt("Select a task to start", type=click.IntRange(1, len(tickets)))
        ticket = tickets[choice - 1]

    if not slug and not yes:
        slug = click.prompt("Task slug", default=slugify(ticket.title))

    workspace = await manager.provision(ticket, slug=slug)
    click.echo(f"Created task workspace {workspace.name}")
    click.echo(f"  cd {workspace.path} && taskloop task")


async def _delete_workspace(session: Session, yes: bool) -> None:
    _require_main_workspace(session, "Deleting a task workspace")
    manager = session.workspaces()

    workspaces = await manager.list_task_workspaces()
    if not workspaces:
        click.echo("No task workspaces found")
        return

    for index, candidate in enumerate(workspaces, start=1):
        click.echo(f"{index:>3}. {candidate.summary_line()}")
    choice = click.prompt("Select a workspace to delete", type=click.IntRange(1, len(workspaces)))
    workspace: TaskWorkspace = workspaces[choice - 1]

    force = False
    if not workspace.is_complete:
        force = yes or click.confirm(
            f"Workflow in {workspace.name} is {workspace.state or 'unknown'}, not complete. Delete anyway?",
            default=False,
        )
        if not force:
            click.echo("Deletion cancelled")
            return
    elif not (yes or click.confirm(f"Delete workspace {workspace.name}?", default=False)):
        click.echo("Deletion cancelled")
        return

    await manager.delete(workspace, force=force)
    click.echo(f"Deleted workspace: {workspace.name}")


def _render_record(record: WorkflowRecord) -> list[str]:
    lines = [
        f"State:          {record.state}",
        f"Version:        {record.version}",
        f"Active task:    {record.active_task_id}",
        f"Active path:    {' -> '.join(record.active_path_ids)}",
        f"Session leaf:   {record.session_leaf_id}",
        f"Updated:        {record.updated_at.isoformat()}",
    ]
    if record.last_transition is not None:
        t = record.last_transition
        lines.append(f"Last event:     {t.event} ({t.from_state} -> {t.to_state})")

    lines.append("Tasks:")

    def walk(node: TaskNode, depth: int) -> None:
        marker = "*" if node.id == record.active_task_id else " "
        lines.append(f"  {marker} {'  ' * depth}{node.id}  {node.title}")
        for child in node.subtasks:
            walk(child, depth + 1)

    walk(record.task_tree, 0)
    return lines


async def _show_status(session: Session) -> None:
    if session.in_task_workspace:
        record = await session.runner().load()
        for line in _render_record(record):
            click.echo(line)
        return

    workspaces = await session.workspaces().list_task_workspaces()
    if not workspaces:
        click.echo("No task workspaces")
        return
    for workspace in workspaces:
        click.echo(workspace.summary_line())


if __name__ == "__main__":
    cli()
