"""Agent instruction builder for one unit."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pr_batch.batch.models import Unit


class ImplementationPattern(str, Enum):
    """Implementation pattern hinted by a path."""

    REQUEST = "request"
    TRANSACTION = "transaction"
    QUERY = "query"
    MANAGEMENT = "management"


_PATTERN_KEYWORDS: tuple[tuple[ImplementationPattern, tuple[str, ...]], ...] = (
    (ImplementationPattern.REQUEST, ("request",)),
    (ImplementationPattern.TRANSACTION, ("transaction", "transfer", "payment")),
    (ImplementationPattern.QUERY, ("report", "history", "statement")),
)

_PATTERN_GUIDANCE = {
    ImplementationPattern.REQUEST: "state transitions, approval logic and notification triggers",
    ImplementationPattern.TRANSACTION: "balance logic, reversal rules and fees",
    ImplementationPattern.QUERY: "filter parameters, aggregations and export formats",
    ImplementationPattern.MANAGEMENT: "standard create/read/update/delete requirements",
}


def detect_pattern(path: str) -> ImplementationPattern:
    lowered = path.lower()
    for pattern, keywords in _PATTERN_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return pattern
    return ImplementationPattern.MANAGEMENT


def find_existing_markdown(repo_path: Path | None, destination_path: str) -> list[Path]:
    """Markdown instruction files already present under the unit destination."""

    root = (repo_path or Path.cwd()) / destination_path
    if not root.is_dir():
        return []
    return sorted(path for path in root.rglob("*.md") if path.is_file())


@dataclass(slots=True)
class InstructionContext:
    """Everything the instruction text depends on."""

    unit: Unit
    base_branch: str
    spreadsheet_name: str
    worksheet_name: str
    side_effects_path: Path
    spec_staging_path: Path
    spec_input_path: Path | None = None
    from_cache: bool = False
    existing_markdown: list[Path] = field(default_factory=list)


def build_instructions(context: InstructionContext) -> str:
    """Render the agent prompt for one unit."""

    unit = context.unit
    pattern = detect_pattern(unit.destination_path)
    sections = [
        f"Please perform the following tasks for unit ID: {unit.unit_id}",
        _source_section(context),
        (
            f"Detected implementation pattern for {unit.destination_path}: "
            f"{pattern.value.upper()}. Cover {_PATTERN_GUIDANCE[pattern]}."
        ),
        _markdown_section(context),
        "\n".join(
            (
                "Version control:",
                f"- Check out the base branch: {context.base_branch}",
                f"- Create the branch '{unit.branch}' from it.",
                "- Implement, test, commit, push the branch and open a pull request "
                f"targeting {context.base_branch}.",
                "- Print the pull request URL on its own line when done.",
            ),
        ),
        _rollback_section(context),
    ]
    return "\n\n".join(section for section in sections if section) + "\n"


def _source_section(context: InstructionContext) -> str:
    unit_id = context.unit.unit_id
    if context.spec_input_path is not None:
        origin = "cached specification data" if context.from_cache else "specification data"
        return (
            f"1. Read the {origin} from file: {context.spec_input_path}\n"
            f"   It contains all details from the '{context.worksheet_name}' worksheet "
            f"for unit '{unit_id}'."
        )
    return (
        f"1. Read the spreadsheet named '{context.spreadsheet_name}' and find unit ID "
        f"'{unit_id}' in the '{context.worksheet_name}' worksheet. Extract ALL details "
        "(method, path, parameters, services, repositories, authentication, request and "
        "response schemas).\n"
        f"2. Save the extracted data as structured text to: {context.spec_staging_path}"
    )


def _markdown_section(context: InstructionContext) -> str:
    destination = context.unit.destination_path
    if context.existing_markdown:
        listing = "\n".join(f"   - {path}" for path in context.existing_markdown)
        return (
            f"Existing markdown instructions were found in {destination}:\n{listing}\n"
            "Implement the code from these files; do not create a new instruction file."
        )
    return (
        f"Create a markdown instruction file for the use case in {destination} "
        "before implementing it."
    )


def _rollback_section(context: InstructionContext) -> str:
    return "\n".join(
        (
            "Rollback tracking (mandatory):",
            "After each reversible action succeeds, append one JSON line to "
            f"{context.side_effects_path}:",
            '- branch created: {"kind": "delete_branch", "branch": "<name>"}',
            '- commit made: {"kind": "reset_to_commit", "commit": "<sha before the commit>"}',
            '- branch pushed: {"kind": "delete_remote_branch", "branch": "<name>"}',
            '- pull request opened: {"kind": "close_review_request", "reference": "<number>"}',
            '- file or directory created: {"kind": "remove_path", "path": "<path>"}',
            'An optional "description" field is shown in rollback reports.',
        ),
    )
