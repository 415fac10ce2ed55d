"""Backend interface for unit execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one unit attempt."""

    unit_id: str
    prompt_file: Path
    workdir: Path
    command_template: str
    timeout_seconds: int
    stdout_path: Path
    stderr_path: Path
    cwd: Path | None = None
    heartbeat_seconds: float | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    timed_out: bool
    duration_seconds: float
    stdout_path: Path
    stderr_path: Path


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run a unit attempt and return execution metadata."""
