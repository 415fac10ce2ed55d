"""Runtime configuration for batch runs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND = "claude -p {prompt}"
DEFAULT_BRANCH_TEMPLATE = "feature/implement-{unit_id}"
DEFAULT_CACHE_DIR = "/tmp/claude_pr_cache"  # noqa: S108


class ConfigurationError(ValueError):
    """Required setting is missing or invalid; fatal before any unit runs."""


@dataclass(slots=True)
class CacheSettings:
    """Specification cache settings."""

    cache_dir: Path = Path(DEFAULT_CACHE_DIR)
    enabled: bool = True
    force_refresh: bool = False
    ttl_hours: int = 24


@dataclass(slots=True)
class AgentSettings:
    """Execution agent settings."""

    command_template: str = DEFAULT_AGENT_COMMAND
    timeout_seconds: int = 7_200
    heartbeat_seconds: float = 60.0
    workdir_root: Path = Path(".pr_batch/workdirs")
    source_command: str | None = None


@dataclass(slots=True)
class RollbackSettings:
    """Failure policy settings."""

    auto_rollback: bool = True
    rollback_all_on_failure: bool = False
    rollback_all_at_end: bool = False


@dataclass(slots=True)
class BatchSettings:
    """Per-run sequencing settings."""

    base_branch: str = "main"
    branch_template: str = DEFAULT_BRANCH_TEMPLATE
    confirm_each_unit: bool = False
    inter_unit_delay_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    cache: CacheSettings = field(default_factory=CacheSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    rollback: RollbackSettings = field(default_factory=RollbackSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults matching the interactive script."""

        source_command = os.getenv("PR_BATCH_SOURCE_COMMAND", "").strip()
        return cls(
            cache=CacheSettings(
                cache_dir=Path(os.getenv("PR_BATCH_CACHE_DIR", DEFAULT_CACHE_DIR)),
                enabled=_env_bool("PR_BATCH_USE_CACHE", default=True),
                force_refresh=_env_bool("PR_BATCH_FORCE_REFRESH_CACHE", default=False),
                ttl_hours=_env_int("PR_BATCH_CACHE_TTL_HOURS", default=24),
            ),
            agent=AgentSettings(
                command_template=os.getenv("PR_BATCH_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                timeout_seconds=_env_int("PR_BATCH_AGENT_TIMEOUT_SECONDS", default=7_200),
                heartbeat_seconds=_env_float("PR_BATCH_HEARTBEAT_SECONDS", default=60.0),
                workdir_root=Path(os.getenv("PR_BATCH_WORKDIR_ROOT", ".pr_batch/workdirs")),
                source_command=source_command or None,
            ),
            rollback=RollbackSettings(
                auto_rollback=_env_bool("PR_BATCH_AUTO_ROLLBACK", default=True),
                rollback_all_on_failure=_env_bool(
                    "PR_BATCH_ROLLBACK_ALL_ON_FAILURE",
                    default=False,
                ),
                rollback_all_at_end=_env_bool("PR_BATCH_ROLLBACK_ALL_AT_END", default=False),
            ),
            batch=BatchSettings(
                base_branch=os.getenv("PR_BATCH_BASE_BRANCH", "main"),
                branch_template=os.getenv("PR_BATCH_BRANCH_TEMPLATE", DEFAULT_BRANCH_TEMPLATE),
                confirm_each_unit=_env_bool("PR_BATCH_CONFIRM_EACH_UNIT", default=False),
                inter_unit_delay_seconds=_env_float(
                    "PR_BATCH_INTER_UNIT_DELAY_SECONDS",
                    default=2.0,
                ),
            ),
            log_level=os.getenv("PR_BATCH_LOG_LEVEL", "INFO").upper(),
        )

    def validate_for_batch(
        self,
        *,
        spreadsheet_name: str | None,
        worksheet_name: str | None,
        repo_path: Path | None,
    ) -> None:
        """Raise configuration error if the run cannot start."""

        if not spreadsheet_name:
            raise ConfigurationError("SPREADSHEET_NAME must be configured in endpoints file.")
        if not worksheet_name:
            raise ConfigurationError("WORKSHEET_NAME must be configured in endpoints file.")
        if repo_path is not None and not repo_path.is_dir():
            raise ConfigurationError(f"Repository directory does not exist: {repo_path}")
        if self.agent.timeout_seconds <= 0:
            raise ConfigurationError("PR_BATCH_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.cache.ttl_hours <= 0:
            raise ConfigurationError("PR_BATCH_CACHE_TTL_HOURS must be > 0.")
        if self.batch.inter_unit_delay_seconds < 0:
            raise ConfigurationError("PR_BATCH_INTER_UNIT_DELAY_SECONDS must be >= 0.")
        if not self.batch.base_branch.strip():
            raise ConfigurationError("Base branch must not be empty.")
        if "{unit_id}" not in self.batch.branch_template:
            raise ConfigurationError(
                "PR_BATCH_BRANCH_TEMPLATE must include the {unit_id} placeholder.",
            )
        template = self.agent.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ConfigurationError(
                "PR_BATCH_AGENT_COMMAND must include {prompt} or {prompt_file}.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ConfigurationError(f"Invalid number value for {name}: {value!r}") from error
