"""Parser for the batch input file.

Format::

    # comment
    CONFIG:SPREADSHEET_NAME=Backend endpoints
    CONFIG:WORKSHEET_NAME=Cards
    CONFIG:REPO_PATH=/work/backend
    CONFIG:BASE_BRANCH=develop
    BE07-0201-12|vault/cards/replacement
    BE07-0201-13|vault/cards/limits

Unit lines keep their input order. A malformed unit line does not stop parsing: it becomes a
`MalformedUnit` entry that the driver counts as one failed unit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from pr_batch.batch.models import MalformedUnit, UnitDescriptor

logger = logging.getLogger(__name__)

CONFIG_PREFIX = "CONFIG:"
KNOWN_CONFIG_KEYS = frozenset({"SPREADSHEET_NAME", "WORKSHEET_NAME", "REPO_PATH", "BASE_BRANCH"})

BatchEntry = UnitDescriptor | MalformedUnit


class UnitParseError(ValueError):
    """A unit line does not match `<unit_id>|<destination_path>`."""


@dataclass(slots=True)
class BatchInput:
    """Parsed input file: file-level configuration plus ordered unit entries."""

    config: dict[str, str] = field(default_factory=dict)
    entries: list[BatchEntry] = field(default_factory=list)

    @property
    def spreadsheet_name(self) -> str | None:
        return self.config.get("SPREADSHEET_NAME")

    @property
    def worksheet_name(self) -> str | None:
        return self.config.get("WORKSHEET_NAME")

    @property
    def repo_path(self) -> Path | None:
        value = self.config.get("REPO_PATH")
        return Path(value).expanduser() if value else None

    @property
    def base_branch(self) -> str | None:
        return self.config.get("BASE_BRANCH")

    @property
    def source_id(self) -> str:
        """Cache namespace for this input: `<spreadsheet>/<worksheet>`."""

        return f"{self.spreadsheet_name or ''}/{self.worksheet_name or ''}"

    @property
    def units(self) -> list[UnitDescriptor]:
        return [entry for entry in self.entries if isinstance(entry, UnitDescriptor)]

    @property
    def malformed(self) -> list[MalformedUnit]:
        return [entry for entry in self.entries if isinstance(entry, MalformedUnit)]


def parse_unit_line(line: str, *, line_no: int = 0) -> UnitDescriptor:
    """Parse one `<unit_id>|<destination_path>` line."""

    if "|" not in line:
        raise UnitParseError(
            f"Invalid format for line {line_no}: {line.strip()!r}. "
            "Expected format: unit_id|destination_path",
        )
    unit_id, destination = line.split("|", 1)
    unit_id = unit_id.strip()
    destination = destination.strip()
    if not unit_id or not destination:
        raise UnitParseError(f"Invalid unit or destination in line {line_no}: {line.strip()!r}")
    return UnitDescriptor(unit_id=unit_id, destination_path=destination, line_no=line_no)


def parse_batch_text(text: str) -> BatchInput:
    """Parse the input file contents."""

    batch = BatchInput()
    for line_no, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith(CONFIG_PREFIX):
            _apply_config_line(batch, line, line_no)
            continue
        try:
            batch.entries.append(parse_unit_line(line, line_no=line_no))
        except UnitParseError as error:
            logger.error("%s", error)
            batch.entries.append(MalformedUnit(raw=line, reason=str(error), line_no=line_no))
    return batch


def load_batch_file(path: Path) -> BatchInput:
    """Read and parse an input file."""

    return parse_batch_text(path.read_text("utf-8"))


def _apply_config_line(batch: BatchInput, line: str, line_no: int) -> None:
    body = line[len(CONFIG_PREFIX) :]
    if "=" not in body:
        logger.warning("Ignoring CONFIG line %d without '=': %r", line_no, line)
        return
    key, value = body.split("=", 1)
    key = key.strip().upper()
    value = value.strip()
    if key not in KNOWN_CONFIG_KEYS:
        logger.warning("Ignoring unknown CONFIG key %r on line %d", key, line_no)
        return
    batch.config[key] = value
    logger.info("Found %s: %s", key, value)
