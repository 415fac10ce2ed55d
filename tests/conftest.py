"""Shared test fixtures."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from pr_batch.batch.backend import AgentRunRequest, AgentRunResult
from pr_batch.batch.models import TIMEOUT_EXIT_CODE

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m pr_batch.batch.backend.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def echo_agent_command() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path: Path) -> None:
    for name in (
        "PR_BATCH_CACHE_DIR",
        "PR_BATCH_USE_CACHE",
        "PR_BATCH_FORCE_REFRESH_CACHE",
        "PR_BATCH_CACHE_TTL_HOURS",
        "PR_BATCH_AGENT_COMMAND",
        "PR_BATCH_AGENT_TIMEOUT_SECONDS",
        "PR_BATCH_HEARTBEAT_SECONDS",
        "PR_BATCH_AUTO_ROLLBACK",
        "PR_BATCH_ROLLBACK_ALL_ON_FAILURE",
        "PR_BATCH_ROLLBACK_ALL_AT_END",
        "PR_BATCH_CONFIRM_EACH_UNIT",
        "PR_BATCH_INTER_UNIT_DELAY_SECONDS",
        "PR_BATCH_BASE_BRANCH",
        "PR_BATCH_BRANCH_TEMPLATE",
        "PR_BATCH_SOURCE_COMMAND",
        "PR_BATCH_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PR_BATCH_WORKDIR_ROOT", str(tmp_path / "workdirs"))


class FrozenClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@dataclass
class ScriptedRun:
    """What the fake agent does for one unit."""

    exit_code: int = 0
    timed_out: bool = False
    side_effects: list[dict[str, object]] = field(default_factory=list)
    staged_spec: str | None = None
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 1.0


class FakeBackend:
    """In-process backend that writes the files a real agent would write."""

    def __init__(
        self,
        script: dict[str, ScriptedRun] | None = None,
        default: ScriptedRun | None = None,
    ) -> None:
        self.script = script or {}
        self.default = default or ScriptedRun()
        self.requests: list[AgentRunRequest] = []

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        self.requests.append(request)
        scripted = self.script.get(request.unit_id, self.default)
        manifest = Path(request.env["PR_BATCH_SIDE_EFFECTS_PATH"])
        with manifest.open("a", encoding="utf-8") as handle:
            for payload in scripted.side_effects:
                handle.write(json.dumps(payload) + "\n")
        if scripted.staged_spec is not None:
            staging = Path(request.env["PR_BATCH_SPEC_STAGING_PATH"])
            staging.write_text(scripted.staged_spec, "utf-8")
        request.stdout_path.write_text(scripted.stdout, "utf-8")
        request.stderr_path.write_text(scripted.stderr, "utf-8")
        return AgentRunResult(
            exit_code=TIMEOUT_EXIT_CODE if scripted.timed_out else scripted.exit_code,
            timed_out=scripted.timed_out,
            duration_seconds=scripted.duration_seconds,
            stdout_path=request.stdout_path,
            stderr_path=request.stderr_path,
        )


class RecordingRunner:
    """Compensation runner that records what it ran and fails on request."""

    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.fail_on = fail_on or set()
        self.ran: list[str] = []

    def __call__(self, compensation) -> None:
        command = compensation.command()
        self.ran.append(command)
        if command in self.fail_on:
            raise RuntimeError(f"cannot run {command}")


@pytest.fixture()
def recording_runner() -> RecordingRunner:
    return RecordingRunner()
