"""Agent definition parser and validator.

An agent file is Markdown with a YAML front-matter block::

    ---
    name: Issue Triage
    on:
      issues:
        types: [opened]
    permissions:
      issues: write
    outputs:
      add-label: true
    ---
    Read the issue and label it.

Parsing runs in ordered phases:

1. structural — split the front-matter from the body and load the YAML.
   Any failure here is fatal and yields no definition.
2. schema — validate every field's type, enum membership and range.
   All violations are reported; any error means no definition.
3. semantic — :func:`validate_agent`, a separate pass over a parsed
   definition checking cross-field rules. Returns every violation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import ValidationError

from repo_agents.models import (
    CONTENT_WRITING_OUTPUTS,
    HANDLED_OUTPUTS,
    AgentDefinition,
    AgentFrontmatter,
    Diagnostic,
    DiagnosticKind,
    OutputKind,
    PermissionLevel,
    Severity,
)

logger = logging.getLogger(__name__)

DELIMITER = "---"


class FrontmatterError(ValueError):
    """The front-matter block is missing or unreadable."""


@dataclass
class ParseResult:
    """Outcome of parsing one agent file."""

    definition: AgentDefinition | None
    diagnostics: list[Diagnostic] = field(default_factory=list)
    path: str = ""

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.is_error]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if not d.is_error]

    @property
    def ok(self) -> bool:
        return self.definition is not None and not self.errors

    def __iter__(self):
        # Allows `definition, diagnostics = parse_agent(text)`
        yield self.definition
        yield self.diagnostics


def split_frontmatter(content: str) -> tuple[dict, str]:
    """Split YAML front-matter from the Markdown body.

    Unlike a lenient reader, this never falls back to "no front-matter":
    a missing opening or closing delimiter, YAML syntax errors and a
    non-mapping document all raise :class:`FrontmatterError`.
    """
    lines = content.lstrip("\ufeff").split("\n")

    start = 0
    while start < len(lines) and not lines[start].strip():
        start += 1
    if start >= len(lines) or lines[start].rstrip() != DELIMITER:
        raise FrontmatterError("File must start with a '---' front-matter block")

    end = None
    for i in range(start + 1, len(lines)):
        if lines[i].rstrip() == DELIMITER:
            end = i
            break
    if end is None:
        raise FrontmatterError("Front-matter block is not closed with '---'")

    frontmatter_text = "\n".join(lines[start + 1 : end])
    body = "\n".join(lines[end + 1 :]).strip()

    try:
        data = yaml.safe_load(frontmatter_text)
    except yaml.YAMLError as exc:
        raise FrontmatterError(f"Failed to parse front-matter: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise FrontmatterError(
            f"Front-matter must be a mapping, got {type(data).__name__}"
        )
    # YAML 1.1 reads a bare `on:` key as boolean true
    if True in data and "on" not in data:
        data["on"] = data.pop(True)
    return data, body


def _schema_diagnostics(exc: ValidationError) -> list[Diagnostic]:
    diagnostics = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "frontmatter"
        diagnostics.append(
            Diagnostic(field=loc, message=err["msg"], kind=DiagnosticKind.SCHEMA)
        )
    return diagnostics


def parse_agent(content: str, path: str = "") -> ParseResult:
    """Parse the text of one agent file (structural and schema phases)."""
    try:
        data, body = split_frontmatter(content)
    except FrontmatterError as exc:
        return ParseResult(
            definition=None,
            diagnostics=[
                Diagnostic(field="frontmatter", message=str(exc), kind=DiagnosticKind.STRUCTURAL)
            ],
            path=path,
        )

    if not data:
        return ParseResult(
            definition=None,
            diagnostics=[
                Diagnostic(
                    field="frontmatter",
                    message="Frontmatter is required",
                    kind=DiagnosticKind.STRUCTURAL,
                )
            ],
            path=path,
        )

    try:
        frontmatter = AgentFrontmatter.model_validate(data)
    except ValidationError as exc:
        return ParseResult(definition=None, diagnostics=_schema_diagnostics(exc), path=path)

    diagnostics: list[Diagnostic] = []
    if not body:
        diagnostics.append(
            Diagnostic(
                field="instructions",
                message="Agent instructions (markdown body) are empty",
                severity=Severity.WARNING,
                kind=DiagnosticKind.SCHEMA,
            )
        )

    definition = AgentDefinition.from_frontmatter(frontmatter, body, path=path)
    return ParseResult(definition=definition, diagnostics=diagnostics, path=path)


def parse_file(path: str | Path) -> ParseResult:
    """Read and parse an agent file. Unreadable files are structural errors."""
    path_str = str(path)
    try:
        content = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        return ParseResult(
            definition=None,
            diagnostics=[
                Diagnostic(
                    field="file",
                    message=f"Failed to read file: {exc}",
                    kind=DiagnosticKind.STRUCTURAL,
                )
            ],
            path=path_str,
        )
    return parse_agent(content, path=path_str)


def validate_agent(agent: AgentDefinition) -> list[Diagnostic]:
    """Check cross-field business rules. Reports every violation."""
    errors: list[Diagnostic] = []
    declared = {cap.kind for cap in agent.outputs}

    if OutputKind.UPDATE_FILE in declared and not agent.allowed_paths:
        errors.append(
            Diagnostic(
                field="outputs",
                message="update-file requires allowed-paths to be specified",
                kind=DiagnosticKind.SEMANTIC,
            )
        )

    for kind in CONTENT_WRITING_OUTPUTS:
        if kind in declared and agent.permissions.contents != PermissionLevel.WRITE:
            errors.append(
                Diagnostic(
                    field="permissions",
                    message=f"{kind.value} requires contents: write permission",
                    kind=DiagnosticKind.SEMANTIC,
                )
            )

    for cap in agent.outputs:
        if cap.kind not in HANDLED_OUTPUTS:
            errors.append(
                Diagnostic(
                    field=f"outputs.{cap.kind.value}",
                    message=f"{cap.kind.value} has no built-in handler and would never be applied",
                    kind=DiagnosticKind.SEMANTIC,
                )
            )

    if not agent.triggers.families():
        errors.append(
            Diagnostic(
                field="on",
                message="At least one trigger must be specified",
                kind=DiagnosticKind.SEMANTIC,
            )
        )

    return errors


def load_agent(path: str | Path) -> ParseResult:
    """Parse a file and run the semantic pass when parsing succeeded."""
    result = parse_file(path)
    if result.definition is not None:
        result.diagnostics.extend(validate_agent(result.definition))
        if result.errors:
            logger.debug("Agent %s has %d semantic error(s)", path, len(result.errors))
    return result
