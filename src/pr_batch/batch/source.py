"""Specification sources: where a unit's specification payload comes from on a cache miss."""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class SpecificationFetchError(RuntimeError):
    """The specification source could not produce a payload for a unit."""


class SpecificationSource(Protocol):
    """Fetch the authoritative specification payload for one unit."""

    def fetch(self, unit_id: str) -> str | None:
        """Return the payload, or None when fetching is delegated to the agent."""


class AgentDelegatedSource:
    """The agent reads the spreadsheet itself and stages what it extracted."""

    def fetch(self, unit_id: str) -> str | None:
        logger.debug("Specification fetch for %s delegated to the agent", unit_id)
        return None


class CommandSpecificationSource:
    """Run a local command (for example a sheet export script) and use its stdout."""

    def __init__(
        self,
        command_template: str,
        *,
        cwd: Path | None = None,
        timeout_seconds: float = 300.0,
    ) -> None:
        if "{unit_id}" not in command_template:
            raise ValueError("Source command must include the {unit_id} placeholder.")
        self.command_template = command_template
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    def fetch(self, unit_id: str) -> str | None:
        argv = shlex.split(self.command_template.format(unit_id=shlex.quote(unit_id)))
        logger.info("Fetching specification for %s: %s", unit_id, shlex.join(argv))
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=self.cwd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except (OSError, subprocess.SubprocessError) as error:
            raise SpecificationFetchError(
                f"Specification fetch failed for {unit_id}: {error}",
            ) from error
        payload = completed.stdout.strip()
        if not payload:
            raise SpecificationFetchError(f"Specification source returned nothing for {unit_id}.")
        return payload
