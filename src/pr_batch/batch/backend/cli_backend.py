"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from pathlib import Path

from pr_batch.batch.backend.base import AgentRunRequest, AgentRunResult
from pr_batch.batch.heartbeat import Heartbeat
from pr_batch.batch.models import TIMEOUT_EXIT_CODE

_SUPPORTED_PLACEHOLDERS = ("prompt", "prompt_file", "unit_id", "workdir")


class BackendRunError(RuntimeError):
    """Backend execution error raised before the agent could run."""

    def __init__(self, message: str, *, not_found: bool) -> None:
        super().__init__(message)
        self.not_found = not_found


class CliAgentBackend:
    """Execute the configured agent command template for one unit."""

    def __init__(self, *, poll_interval_seconds: float = 0.1) -> None:
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
        prompt = request.prompt_file.read_text("utf-8")

        run_args = build_run_args(
            command_template=request.command_template,
            prompt=prompt,
            prompt_file=request.prompt_file,
            unit_id=request.unit_id,
            workdir=request.workdir,
        )

        env = os.environ.copy()
        env.update(request.env)
        env["PR_BATCH_UNIT_ID"] = request.unit_id
        env["PR_BATCH_WORKDIR"] = str(request.workdir)

        try:
            with (
                request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                return _run_subprocess_with_timeout(
                    run_args=run_args,
                    env=env,
                    cwd=request.cwd,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    stdout_path=request.stdout_path,
                    stderr_path=request.stderr_path,
                    heartbeat_label=f"Unit {request.unit_id}",
                    heartbeat_seconds=request.heartbeat_seconds,
                    poll_interval_seconds=self.poll_interval_seconds,
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Agent command not found: {run_args[0]}",
                not_found=True,
            ) from error
        except OSError as error:
            raise BackendRunError(f"Agent failed to start: {error}", not_found=False) from error


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    unit_id: str,
    workdir: Path,
) -> list[str]:
    """Render the agent command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Agent command template is empty.", not_found=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "Agent command template must include {prompt} or {prompt_file}.",
            not_found=False,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            unit_id=shlex.quote(unit_id),
            workdir=shlex.quote(str(workdir)),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}. "
            f"Supported: {', '.join(_SUPPORTED_PLACEHOLDERS)}",
            not_found=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Agent command template rendered empty command.", not_found=False)
    return argv


def _run_subprocess_with_timeout(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path | None,
    timeout_seconds: int,
    stdout_handle,
    stderr_handle,
    stdout_path: Path,
    stderr_path: Path,
    heartbeat_label: str,
    heartbeat_seconds: float | None,
    poll_interval_seconds: float,
) -> AgentRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    heartbeat = Heartbeat(
        label=heartbeat_label,
        interval_seconds=heartbeat_seconds or 0,
        is_alive=lambda: process.poll() is None,
    )

    with heartbeat:
        while True:
            returncode = process.poll()
            now = time.monotonic()
            if returncode is not None:
                return AgentRunResult(
                    exit_code=returncode,
                    timed_out=False,
                    duration_seconds=now - start_monotonic,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                )

            if now - start_monotonic >= timeout_seconds:
                _terminate_process(process)
                return AgentRunResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    duration_seconds=time.monotonic() - start_monotonic,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                )

            time.sleep(poll_interval_seconds)


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
