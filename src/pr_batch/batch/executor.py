"""Unit executor: one bounded agent invocation per unit."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from pr_batch.batch.backend import AgentBackend, AgentRunRequest, BackendRunError
from pr_batch.batch.compensations import read_side_effects
from pr_batch.batch.failure_classifier import classify_agent_failure
from pr_batch.batch.models import (
    COMMAND_NOT_FOUND_EXIT_CODE,
    ExecutionResult,
    FailureClass,
    Unit,
)
from pr_batch.batch.workdir import MaterializedUnit, UnitWorkdirManager

logger = logging.getLogger(__name__)

RESULT_URL_PATTERN = re.compile(
    r"https?://[^\s\"'<>)\]]+/(?:pull|pulls|merge_requests)/\d+",
)
_OUTPUT_TAIL_CHARS = 20_000


class UnitExecutor:
    """Run the agent for one unit under a hard timeout and collect a structured result.

    No retries happen here: whether to continue, roll back or abort is the driver's call.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: AgentBackend,
        workdirs: UnitWorkdirManager,
        command_template: str,
        cwd: Path | None = None,
        heartbeat_seconds: float | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.backend = backend
        self.workdirs = workdirs
        self.command_template = command_template
        self.cwd = cwd
        self.heartbeat_seconds = heartbeat_seconds
        self.env = dict(env or {})

    def paths_for(self, unit_id: str) -> MaterializedUnit:
        return self.workdirs.locate(unit_id)

    def execute(
        self,
        unit: Unit,
        instructions: str,
        timeout_seconds: int,
        *,
        specification: str | None = None,
    ) -> ExecutionResult:
        materialized = self.workdirs.materialize(
            unit_id=unit.unit_id,
            instructions=instructions,
            specification=specification,
            metadata={
                "destination_path": unit.destination_path,
                "branch": unit.branch,
                "base_lineage": unit.base_lineage,
                "timeout_seconds": timeout_seconds,
            },
        )
        request = AgentRunRequest(
            unit_id=unit.unit_id,
            prompt_file=materialized.prompt_path,
            workdir=materialized.workdir,
            command_template=self.command_template,
            timeout_seconds=timeout_seconds,
            stdout_path=materialized.stdout_path,
            stderr_path=materialized.stderr_path,
            cwd=self.cwd,
            heartbeat_seconds=self.heartbeat_seconds,
            env={
                **self.env,
                "PR_BATCH_SIDE_EFFECTS_PATH": str(materialized.side_effects_path),
                "PR_BATCH_SPEC_STAGING_PATH": str(materialized.spec_staging_path),
            },
        )

        logger.info(
            "Starting agent for unit %s (timeout %ss, base %s)",
            unit.unit_id,
            timeout_seconds,
            unit.base_lineage,
        )
        try:
            run = self.backend.run(request)
        except BackendRunError as error:
            logger.error("Agent could not start for unit %s: %s", unit.unit_id, error)
            return ExecutionResult(
                exit_code=COMMAND_NOT_FOUND_EXIT_CODE if error.not_found else 1,
                duration_seconds=0.0,
                timed_out=False,
                stdout_path=materialized.stdout_path,
                stderr_path=materialized.stderr_path,
                failure_class=(
                    FailureClass.AGENT_NOT_FOUND
                    if error.not_found
                    else FailureClass.AGENT_START_FAILED
                ),
                error_summary=str(error),
                side_effects=read_side_effects(materialized.side_effects_path),
            )

        stdout = _read_tail(run.stdout_path)
        stderr = _read_tail(run.stderr_path)
        result = ExecutionResult(
            exit_code=run.exit_code,
            duration_seconds=run.duration_seconds,
            timed_out=run.timed_out,
            stdout_path=run.stdout_path,
            stderr_path=run.stderr_path,
            result_url=find_result_url(stdout),
            side_effects=read_side_effects(materialized.side_effects_path),
        )
        if result.succeeded:
            logger.info(
                "Agent finished unit %s in %s",
                unit.unit_id,
                format_elapsed(run.duration_seconds),
            )
            return result

        classification = classify_agent_failure(
            exit_code=run.exit_code,
            timed_out=run.timed_out,
            stdout=stdout,
            stderr=stderr,
        )
        result.failure_class = classification.failure_class
        result.error_summary = classification.summary(exit_code=run.exit_code)
        if run.timed_out:
            logger.error(
                "Agent timed out after %s seconds for unit %s",
                timeout_seconds,
                unit.unit_id,
            )
        else:
            logger.error(
                "Agent failed for unit %s with exit code %s (%s)",
                unit.unit_id,
                run.exit_code,
                classification.failure_class.value,
            )
        return result


def find_result_url(text: str) -> str | None:
    """Last review-request URL printed by the agent, for display only."""

    matches = RESULT_URL_PATTERN.findall(text)
    return matches[-1] if matches else None


def format_elapsed(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


def _read_tail(path: Path) -> str:
    if not path.exists():
        return ""
    text = path.read_text("utf-8", errors="replace")
    return text[-_OUTPUT_TAIL_CHARS:]
