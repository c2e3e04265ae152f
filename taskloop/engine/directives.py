"""
Directive parsing for assistant output.

The agent steers the workflow by embedding tagged spans in its reply. This
module turns free-form text into a closed set of directive values; the
transition engine never looks at raw text itself.

Recognized tags:
    ``<transition>STATE</transition>``
        Requested next state. When several are present, the last one that
        names a valid state wins.
    ``<subtasks>YAML</subtasks>``
        Subtask list, consumed only when leaving ``review-plan``.
    ``<review-findings>YAML</review-findings>``
        Review findings, consumed only when leaving ``review``.
    ``<commit-message>TEXT</commit-message>``
        Commit message, consumed in ``subtask-commit`` and ``commit``.

List payloads are YAML sequences of mappings (JSON is valid YAML)::

    <subtasks>
    - title: Parse flags
      description: Accept --format and --output
    - title: Write exporter
      tdd: false
    </subtasks>

A block whose opening and closing tags sit alone on their own lines is
preferred; otherwise the first inline ``<tag>...</tag>`` span is used.

The manual-test gate is driven by the human, not the agent: a user message
containing ``MANUAL TESTS PASSED`` (or ``MANUAL TEST PASSED``) yields a
``ConfirmationDirective``.
"""

import re
from dataclasses import dataclass

import yaml

from taskloop.enums import WorkflowState
from taskloop.exceptions import DirectiveError
from taskloop.models.tickets import TicketDraft

MANUAL_TEST_PASS_PHRASE = "MANUAL TESTS PASSED"
MANUAL_TEST_PASS_PATTERN = re.compile(r"\bMANUAL\s+TESTS?\s+PASSED\b", re.IGNORECASE)

TRANSITION_PATTERN = re.compile(r"<transition>\s*([A-Za-z-]+)\s*</transition>", re.IGNORECASE)
PLAN_HEADING_PATTERN = re.compile(r"^## Plan[ \t]*$", re.MULTILINE)

# Payload tags and the states that consume them
PAYLOAD_TAG_STATES: dict[str, tuple[WorkflowState, ...]] = {
    "subtasks": (WorkflowState.REVIEW_PLAN,),
    "review-findings": (WorkflowState.REVIEW,),
    "commit-message": (WorkflowState.SUBTASK_COMMIT, WorkflowState.COMMIT),
}


@dataclass(frozen=True)
class TransitionDirective:
    target: WorkflowState


@dataclass(frozen=True)
class SubtasksDirective:
    drafts: tuple[TicketDraft, ...]


@dataclass(frozen=True)
class ReviewFindingsDirective:
    drafts: tuple[TicketDraft, ...]


@dataclass(frozen=True)
class CommitMessageDirective:
    message: str


@dataclass(frozen=True)
class ConfirmationDirective:
    phrase: str


Directive = (
    TransitionDirective
    | SubtasksDirective
    | ReviewFindingsDirective
    | CommitMessageDirective
    | ConfirmationDirective
)


@dataclass(frozen=True)
class ParsedOutput:
    """Directives found in one assistant turn, at most one of each kind."""

    transition: TransitionDirective | None = None
    subtasks: SubtasksDirective | None = None
    review_findings: ReviewFindingsDirective | None = None
    commit_message: CommitMessageDirective | None = None

    @property
    def requested_state(self) -> WorkflowState | None:
        return self.transition.target if self.transition else None

    @property
    def directives(self) -> list[Directive]:
        found = [self.transition, self.subtasks, self.review_findings, self.commit_message]
        return [d for d in found if d is not None]


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def extract_tagged_block(text: str, tag: str) -> str | None:
    """Return the stripped body of the first ``<tag>`` block, or None if absent/unterminated."""
    normalized = normalize_newlines(text)
    open_tag, close_tag = f"<{tag}>", f"</{tag}>"

    start = re.search(rf"^[ \t]*{re.escape(open_tag)}[ \t]*$", normalized, re.MULTILINE)
    if start:
        body = normalized[start.end() + 1 :]
        end = re.search(rf"^[ \t]*{re.escape(close_tag)}[ \t]*$", body, re.MULTILINE)
        if not end:
            return None
        return body[: end.start()].strip()

    start_idx = normalized.find(open_tag)
    if start_idx == -1:
        return None
    end_idx = normalized.find(close_tag, start_idx + len(open_tag))
    if end_idx == -1:
        return None
    return normalized[start_idx + len(open_tag) : end_idx].strip()


def parse_requested_state(text: str) -> WorkflowState | None:
    """Last ``<transition>`` tag naming a valid state, or None."""
    for match in reversed(TRANSITION_PATTERN.findall(text)):
        state = WorkflowState.parse(match)
        if state is not None:
            return state
    return None


def parse_ticket_drafts(yaml_text: str, label: str) -> tuple[TicketDraft, ...]:
    """Parse a YAML sequence of ticket mappings.

    Args:
        yaml_text: Body of a ``<subtasks>`` or ``<review-findings>`` block
        label: Item label used in error messages ("Subtask", "Finding")

    Returns:
        Drafts in declaration order; empty for an empty document

    Raises:
        DirectiveError: If the YAML is invalid, not a list, or an item lacks a
            title or repeats an earlier one
    """
    try:
        parsed = yaml.safe_load(yaml_text)
    except yaml.YAMLError as e:
        raise DirectiveError(f"Failed to parse {label} YAML block: {e}") from e

    if not parsed:
        return ()
    if not isinstance(parsed, list):
        raise DirectiveError(f"{label} YAML block must be a list (a YAML sequence)")

    drafts = []
    seen_titles: set[str] = set()
    for index, item in enumerate(parsed, start=1):
        if not isinstance(item, dict):
            raise DirectiveError(f"{label} {index} is not an object")

        title = item.get("title")
        if not isinstance(title, str) or not title.strip():
            raise DirectiveError(f"{label} {index} is missing a non-empty string 'title'")
        if title.strip() in seen_titles:
            raise DirectiveError(f"{label} {index} repeats the title {title.strip()!r}")
        seen_titles.add(title.strip())

        description = item.get("description")
        tdd = item.get("tdd")
        drafts.append(
            TicketDraft(
                title=title.strip(),
                description=description if isinstance(description, str) else "",
                tdd=tdd if isinstance(tdd, bool) else True,
            )
        )
    return tuple(drafts)


def parse_commit_message(text: str) -> CommitMessageDirective | None:
    raw = extract_tagged_block(text, "commit-message")
    if not raw:
        return None
    return CommitMessageDirective(message=raw)


def extract_plan_subtasks(ticket_markdown: str | None) -> SubtasksDirective | None:
    """Read the ``<subtasks>`` block under the first ``## Plan`` heading of a ticket.

    Returns:
        The subtasks, or None when there is no plan section, no block, or an empty list

    Raises:
        DirectiveError: If the block exists but is malformed
    """
    if not ticket_markdown:
        return None

    normalized = normalize_newlines(ticket_markdown)
    heading = PLAN_HEADING_PATTERN.search(normalized)
    if not heading:
        return None

    block = extract_tagged_block(normalized[heading.end() :], "subtasks")
    if block is None:
        return None

    drafts = parse_ticket_drafts(block, "Subtask")
    return SubtasksDirective(drafts) if drafts else None


def parse_confirmation(user_message: str | None) -> ConfirmationDirective | None:
    """Detect the manual-test confirmation phrase in a user message."""
    if not user_message:
        return None
    match = MANUAL_TEST_PASS_PATTERN.search(user_message)
    if not match:
        return None
    return ConfirmationDirective(phrase=match.group(0))


def parse_assistant_output(text: str, state: WorkflowState | None = None) -> ParsedOutput:
    """Parse every directive relevant to ``state`` from one assistant turn.

    Payload tags the state does not consume are ignored entirely, including
    malformed ones. With ``state=None`` every tag is parsed.

    Raises:
        DirectiveError: If a relevant payload tag is present but malformed
    """

    def relevant(tag: str) -> bool:
        return state is None or state in PAYLOAD_TAG_STATES[tag]

    requested = parse_requested_state(text)
    transition = TransitionDirective(requested) if requested else None

    subtasks = None
    if relevant("subtasks"):
        block = extract_tagged_block(text, "subtasks")
        drafts = parse_ticket_drafts(block, "Subtask") if block is not None else ()
        subtasks = SubtasksDirective(drafts) if drafts else None

    findings = None
    if relevant("review-findings"):
        block = extract_tagged_block(text, "review-findings")
        drafts = parse_ticket_drafts(block, "Finding") if block is not None else ()
        findings = ReviewFindingsDirective(drafts) if drafts else None

    commit_message = parse_commit_message(text) if relevant("commit-message") else None

    return ParsedOutput(
        transition=transition,
        subtasks=subtasks,
        review_findings=findings,
        commit_message=commit_message,
    )
