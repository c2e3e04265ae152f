"""Jinja2 rendering of per-state agent prompts.

Each workflow state has a prompt template, ``<state>.md.j2``. Templates are
looked up, first match wins, in:

1. ``<workspace>/.taskloop/prompts/`` (project overrides)
2. the configured ``prompts_dir`` (user overrides)
3. the templates shipped in ``taskloop/templates/prompts/``

A turn prompt is the rendered ``header.md.j2`` (ticket metadata, handling
rules, and the markdown of every ticket on the active path) followed by the
state prompt.

Example:
    >>> renderer = PromptRenderer(workspace=Path.cwd())
    >>> text = renderer.render_turn_prompt(record, ["# Root ticket ...", "# Subtask ..."])
"""

from pathlib import Path
from typing import Any, cast

from jinja2 import FileSystemLoader, StrictUndefined, TemplateError, TemplateNotFound
from jinja2.sandbox import SandboxedEnvironment

from taskloop.engine.directives import MANUAL_TEST_PASS_PHRASE
from taskloop.enums import WorkflowState
from taskloop.exceptions import ConfigurationError
from taskloop.models.workflow import WorkflowRecord

BUILTIN_PROMPTS_DIR = Path(__file__).parent.parent / "templates" / "prompts"
PROJECT_PROMPTS_DIR = Path(".taskloop") / "prompts"
HEADER_TEMPLATE = "header.md.j2"
TICKET_SEPARATOR = "\n\n---\n\n"


class PromptRenderer:
    """Render agent prompts in a sandboxed Jinja2 environment.

    Attributes:
        search_path: Template directories in lookup order.
        env: The SandboxedEnvironment instance.
    """

    def __init__(self, workspace: Path | None = None, override_dir: Path | None = None) -> None:
        search_path = []
        if workspace is not None and (workspace / PROJECT_PROMPTS_DIR).is_dir():
            search_path.append(workspace / PROJECT_PROMPTS_DIR)
        if override_dir is not None and override_dir.is_dir():
            search_path.append(override_dir)
        search_path.append(BUILTIN_PROMPTS_DIR)
        self.search_path = search_path

        self.env = SandboxedEnvironment(
            loader=FileSystemLoader([str(p) for p in search_path]),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def _render(self, template_name: str, context: dict[str, Any]) -> str:
        try:
            template = self.env.get_template(template_name)
            return cast(str, template.render(**context))
        except TemplateNotFound as e:
            searched = ", ".join(str(p) for p in self.search_path)
            raise ConfigurationError(f"Prompt template {template_name} not found (searched: {searched})") from e
        except TemplateError as e:
            raise ConfigurationError(f"Failed to render prompt template {template_name}: {e}") from e

    def render_state_prompt(self, record: WorkflowRecord) -> str:
        """Render the prompt body for the record's current state.

        Raises:
            ConfigurationError: If the template is missing, broken, or renders empty
        """
        name = f"{record.state}.md.j2"
        body = self._render(name, self._context(record)).strip()
        if not body:
            raise ConfigurationError(f"Prompt template {name} is empty")
        return body

    def render_turn_prompt(self, record: WorkflowRecord, ticket_markdowns: list[str]) -> str:
        """Render the full turn prompt: metadata header, ticket chain, state prompt."""
        context = self._context(record)
        context["tickets"] = TICKET_SEPARATOR.join(md.strip() for md in ticket_markdowns)
        header = self._render(HEADER_TEMPLATE, context).strip()
        return f"{header}{TICKET_SEPARATOR}{self.render_state_prompt(record)}\n"

    @staticmethod
    def _context(record: WorkflowRecord) -> dict[str, Any]:
        return {
            "version": record.version,
            "state": str(record.state),
            "root_task_id": record.root_task_id,
            "root_title": record.root_title,
            "active_task_id": record.active_task_id,
            "active_path": " -> ".join(record.active_path_ids),
            "manual_test_phrase": MANUAL_TEST_PASS_PHRASE,
            "states": [str(s) for s in WorkflowState],
        }
