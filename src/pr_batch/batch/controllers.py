"""Controllers for batch CLI commands."""

from __future__ import annotations

import logging
import shlex
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from pr_batch.batch.backend import CliAgentBackend
from pr_batch.batch.cache import SpecCache, utc_now
from pr_batch.batch.compensations import CompensationRunner
from pr_batch.batch.driver import BatchContext, BatchDriver, BatchPolicy, Confirmer, decline
from pr_batch.batch.endpoints import load_batch_file
from pr_batch.batch.executor import UnitExecutor
from pr_batch.batch.ledger import RollbackLedger
from pr_batch.batch.report import render_batch_lines
from pr_batch.batch.source import (
    AgentDelegatedSource,
    CommandSpecificationSource,
    SpecificationSource,
)
from pr_batch.batch.workdir import UnitWorkdirManager
from pr_batch.config import ConfigurationError, Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunBatchCommand:
    """CLI input for a batch run. `None` keeps the environment value."""

    endpoints_file: Path
    base_branch: str | None = None
    cache_dir: Path | None = None
    use_cache: bool | None = None
    force_refresh_cache: bool | None = None
    timeout_seconds: int | None = None
    agent_command: str | None = None
    auto_rollback: bool | None = None
    rollback_all_on_failure: bool | None = None
    rollback_all_at_end: bool | None = None
    confirm_each: bool | None = None
    delay_seconds: float | None = None
    workdir_root: Path | None = None


@dataclass(slots=True)
class CacheShowCommand:
    """CLI input for cache entry inspection."""

    endpoints_file: Path
    unit_id: str
    cache_dir: Path | None = None


@dataclass(slots=True)
class CachePruneCommand:
    """CLI input for expired cache cleanup."""

    cache_dir: Path | None = None


@dataclass(slots=True)
class BatchRunOutput:
    """Summary lines plus the process exit code (the failure count)."""

    lines: list[str]
    exit_code: int


class BatchCliController:
    """Coordinates batch runs and cache maintenance CLI operations."""

    def __init__(
        self,
        *,
        confirm: Confirmer = decline,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.confirm = confirm
        self.sleep = sleep

    def run_batch(self, command: RunBatchCommand) -> BatchRunOutput:
        settings = _apply_overrides(Settings.from_env(), command)
        batch_input = load_batch_file(command.endpoints_file)
        settings.validate_for_batch(
            spreadsheet_name=batch_input.spreadsheet_name,
            worksheet_name=batch_input.worksheet_name,
            repo_path=batch_input.repo_path,
        )
        base_branch = command.base_branch or batch_input.base_branch or settings.batch.base_branch
        _preflight_agent(settings.agent.command_template)

        repo_path = batch_input.repo_path
        logger.info("Spreadsheet: %s", batch_input.spreadsheet_name)
        logger.info("Worksheet: %s", batch_input.worksheet_name)
        if repo_path is not None:
            logger.info("Repository path: %s", repo_path)

        executor = UnitExecutor(
            backend=CliAgentBackend(),
            workdirs=UnitWorkdirManager(settings.agent.workdir_root.resolve()),
            command_template=settings.agent.command_template,
            cwd=repo_path,
            heartbeat_seconds=settings.agent.heartbeat_seconds,
        )
        driver = BatchDriver(
            executor=executor,
            ledger=RollbackLedger(runner=CompensationRunner(cwd=repo_path)),
            source=_specification_source(settings, repo_path),
            context=BatchContext(
                source_id=batch_input.source_id,
                spreadsheet_name=batch_input.spreadsheet_name or "",
                worksheet_name=batch_input.worksheet_name or "",
                repo_path=repo_path,
            ),
            policy=BatchPolicy(
                base_branch=base_branch,
                branch_template=settings.batch.branch_template,
                timeout_seconds=settings.agent.timeout_seconds,
                use_cache=settings.cache.enabled,
                auto_rollback=settings.rollback.auto_rollback,
                rollback_all_on_failure=settings.rollback.rollback_all_on_failure,
                rollback_all_at_end=settings.rollback.rollback_all_at_end,
                confirm_each_unit=settings.batch.confirm_each_unit,
                inter_unit_delay_seconds=settings.batch.inter_unit_delay_seconds,
            ),
            cache=_cache(settings),
            confirm=self.confirm,
            sleep=self.sleep,
        )
        result = driver.run(batch_input.entries)

        lines = render_batch_lines(result)
        lines.extend(
            [
                "",
                "Configuration used:",
                f"  Base branch: {base_branch}",
                f"  Auto rollback: {settings.rollback.auto_rollback}",
                f"  Use cache: {settings.cache.enabled}",
                f"  Cache directory: {settings.cache.cache_dir}",
            ],
        )
        return BatchRunOutput(lines=lines, exit_code=result.exit_code)

    def cache_show(self, command: CacheShowCommand) -> list[str]:
        settings = Settings.from_env()
        if command.cache_dir is not None:
            settings.cache.cache_dir = command.cache_dir
        batch_input = load_batch_file(command.endpoints_file)
        cache = _cache(settings)
        entry = cache.inspect(batch_input.source_id, command.unit_id)
        path = cache.path_for(batch_input.source_id, command.unit_id)
        if entry is None:
            return [f"No cache entry for {command.unit_id}", f"Path: {path}"]

        now = utc_now()
        return [
            f"Unit: {entry.unit_id}",
            f"Source: {entry.source_id}",
            f"Path: {path}",
            f"Created: {entry.created_at.isoformat()}",
            f"Age: {_format_age(entry.age(now))}",
            f"Valid: {'yes' if entry.is_valid(now, cache.ttl) else 'no (expired)'}",
            f"Payload chars: {len(entry.payload)}",
        ]

    def cache_prune(self, command: CachePruneCommand) -> list[str]:
        settings = Settings.from_env()
        if command.cache_dir is not None:
            settings.cache.cache_dir = command.cache_dir
        removed = _cache(settings).prune()
        return [f"Removed {removed} expired cache entr{'y' if removed == 1 else 'ies'}"]


def _apply_overrides(settings: Settings, command: RunBatchCommand) -> Settings:
    if command.cache_dir is not None:
        settings.cache.cache_dir = command.cache_dir
    if command.use_cache is not None:
        settings.cache.enabled = command.use_cache
    if command.force_refresh_cache is not None:
        settings.cache.force_refresh = command.force_refresh_cache
    if command.timeout_seconds is not None:
        settings.agent.timeout_seconds = command.timeout_seconds
    if command.agent_command is not None:
        settings.agent.command_template = command.agent_command
    if command.workdir_root is not None:
        settings.agent.workdir_root = command.workdir_root
    if command.auto_rollback is not None:
        settings.rollback.auto_rollback = command.auto_rollback
    if command.rollback_all_on_failure is not None:
        settings.rollback.rollback_all_on_failure = command.rollback_all_on_failure
    if command.rollback_all_at_end is not None:
        settings.rollback.rollback_all_at_end = command.rollback_all_at_end
    if command.confirm_each is not None:
        settings.batch.confirm_each_unit = command.confirm_each
    if command.delay_seconds is not None:
        settings.batch.inter_unit_delay_seconds = command.delay_seconds
    return settings


def _preflight_agent(command_template: str) -> None:
    try:
        argv = shlex.split(command_template)
    except ValueError as error:
        raise ConfigurationError(f"Invalid agent command template: {error}") from error
    if not argv:
        raise ConfigurationError("Agent command template is empty.")
    executable = argv[0]
    if shutil.which(executable) is None and not Path(executable).is_file():
        raise ConfigurationError(f"Agent command not found in PATH: {executable}")


def _specification_source(settings: Settings, repo_path: Path | None) -> SpecificationSource:
    if settings.agent.source_command:
        try:
            return CommandSpecificationSource(settings.agent.source_command, cwd=repo_path)
        except ValueError as error:
            raise ConfigurationError(f"PR_BATCH_SOURCE_COMMAND: {error}") from error
    return AgentDelegatedSource()


def _cache(settings: Settings) -> SpecCache:
    return SpecCache(
        settings.cache.cache_dir,
        ttl=timedelta(hours=settings.cache.ttl_hours),
        force_refresh=settings.cache.force_refresh,
    )


def _format_age(age: timedelta) -> str:
    total_minutes = int(age.total_seconds()) // 60
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m"
