"""Domain models for batch units, outcomes and rollback reporting."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pr_batch.batch.compensations import SideEffect

TIMEOUT_EXIT_CODE = 124
COMMAND_NOT_FOUND_EXIT_CODE = 127
# Process exit statuses wrap modulo 256.
MAX_PROCESS_EXIT_CODE = 255


class UnitStatus(str, Enum):
    """Unit lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ROLLED_BACK = "rolled_back"


class FailureClass(str, Enum):
    """Normalized diagnostic classes reported for failed units."""

    PARSE_ERROR = "parse_error"
    SOURCE_FETCH_FAILED = "source_fetch_failed"
    TIMEOUT = "agent_timeout"
    AGENT_NOT_FOUND = "agent_not_found"
    AGENT_START_FAILED = "agent_start_failed"
    AGENT_TRANSIENT = "agent_transient"
    AGENT_NON_RETRYABLE = "agent_non_retryable"
    BILLING_OR_QUOTA = "agent_billing_or_quota"
    ACCESS_OR_AUTH = "agent_access_or_auth"
    MODEL_NOT_AVAILABLE = "agent_model_not_available"


class RollbackScope(str, Enum):
    """Where a recorded compensation lives until it is undone or discarded."""

    UNIT_LOCAL = "unit_local"
    GLOBAL = "global"


@dataclass(slots=True, frozen=True)
class UnitDescriptor:
    """One parsed `<unit_id>|<destination_path>` input line."""

    unit_id: str
    destination_path: str
    line_no: int = 0


@dataclass(slots=True, frozen=True)
class MalformedUnit:
    """Input line that could not be parsed into a unit descriptor."""

    raw: str
    reason: str
    line_no: int = 0


@dataclass(slots=True)
class Unit:
    """One item of batch work and its mutable lifecycle state."""

    unit_id: str
    destination_path: str
    branch: str
    status: UnitStatus = UnitStatus.PENDING
    base_lineage: str | None = None

    @classmethod
    def from_descriptor(cls, descriptor: UnitDescriptor, *, branch_template: str) -> Unit:
        return cls(
            unit_id=descriptor.unit_id,
            destination_path=descriptor.destination_path,
            branch=branch_template.format(unit_id=descriptor.unit_id),
        )


@dataclass(slots=True)
class RollbackReport:
    """Result of one attempted compensation."""

    unit_id: str | None
    description: str
    command: str
    ok: bool
    error: str | None = None


@dataclass(slots=True)
class UnitOutcome:
    """Per-unit line of the batch summary."""

    unit_id: str
    destination_path: str
    status: UnitStatus
    base_lineage: str | None = None
    branch: str | None = None
    exit_code: int | None = None
    duration_seconds: float | None = None
    failure_class: FailureClass | None = None
    error_summary: str | None = None
    result_url: str | None = None
    used_cache: bool = False
    skipped: bool = False
    rolled_back: bool = False


@dataclass(slots=True)
class BatchResult:
    """Aggregate batch outcome returned by the driver."""

    processed_count: int
    failed_count: int
    total_units: int
    outcomes: list[UnitOutcome] = field(default_factory=list)
    unexecuted_rollback_commands: list[str] = field(default_factory=list)
    rollback_reports: list[RollbackReport] = field(default_factory=list)
    terminated_early: bool = False
    global_rollback_executed: bool = False
    lineage_by_parent: dict[str, str] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        """Failure count, clamped so that a failed batch never exits with 0."""

        return min(self.failed_count, MAX_PROCESS_EXIT_CODE)

    @property
    def failed_rollbacks(self) -> list[RollbackReport]:
        return [report for report in self.rollback_reports if not report.ok]


@dataclass(slots=True)
class ExecutionResult:
    """Structured outcome of one bounded agent invocation."""

    exit_code: int
    duration_seconds: float
    timed_out: bool
    stdout_path: Path | None = None
    stderr_path: Path | None = None
    result_url: str | None = None
    failure_class: FailureClass | None = None
    error_summary: str | None = None
    side_effects: list[SideEffect] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out
