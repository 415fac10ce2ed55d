"""CLI entrypoint for pr-batch."""

from pathlib import Path

import rich_click as click

from pr_batch import __version__
from pr_batch.batch.controllers import (
    BatchCliController,
    CachePruneCommand,
    CacheShowCommand,
    RunBatchCommand,
)
from pr_batch.config import ConfigurationError, Settings
from pr_batch.logging_setup import configure_logging

click.rich_click.USE_MARKDOWN = True


def _ask_confirmation(question: str) -> bool:
    return click.confirm(question, default=False)


BATCH_CONTROLLER = BatchCliController(confirm=_ask_confirmation)


@click.group()
@click.version_option(version=__version__, prog_name="pr-batch")
def pr_batch() -> None:
    """Batch implementation runner: one agent-built pull request per unit."""


@pr_batch.command("run")
@click.argument(
    "endpoints_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--base-branch", default=None, help="Default base branch for unrelated units.")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Specification cache directory.",
)
@click.option("--no-cache", is_flag=True, help="Do not read or write the specification cache.")
@click.option(
    "--force-refresh-cache",
    is_flag=True,
    help="Ignore cached specifications and fetch again.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Per-unit agent timeout (default 7200).",
)
@click.option(
    "--agent-command",
    default=None,
    help=(
        "Agent run template. Supports {prompt}, {prompt_file}, {unit_id} and {workdir}. "
        "If omitted, PR_BATCH_AGENT_COMMAND is used."
    ),
)
@click.option(
    "--no-auto-rollback",
    is_flag=True,
    help="Keep a failed unit's side effects and print the commands that would undo them.",
)
@click.option(
    "--rollback-all-on-failure",
    is_flag=True,
    help="On any failure, undo every successful unit and stop the batch.",
)
@click.option(
    "--rollback-all-at-end",
    is_flag=True,
    help="Offer to undo every successful unit when the batch ends.",
)
@click.option("--confirm-each", is_flag=True, help="Ask before each unit.")
@click.option(
    "--delay-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Pause between units (default 2).",
)
@click.option(
    "--workdir-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Root directory for per-unit prompts and agent logs.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level (default from PR_BATCH_LOG_LEVEL or INFO).",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write logs to this rotating file.",
)
def run_batch(  # noqa: PLR0913
    endpoints_file: Path,
    base_branch: str | None,
    cache_dir: Path | None,
    no_cache: bool,
    force_refresh_cache: bool,
    timeout_seconds: int | None,
    agent_command: str | None,
    no_auto_rollback: bool,
    rollback_all_on_failure: bool,
    rollback_all_at_end: bool,
    confirm_each: bool,
    delay_seconds: float | None,
    workdir_root: Path | None,
    log_level: str | None,
    log_file: Path | None,
) -> None:
    """Process every unit of ENDPOINTS_FILE. Exit code is the number of failed units."""

    try:
        configure_logging(log_level or Settings.from_env().log_level, log_file=log_file)
        output = BATCH_CONTROLLER.run_batch(
            RunBatchCommand(
                endpoints_file=endpoints_file,
                base_branch=base_branch,
                cache_dir=cache_dir,
                use_cache=False if no_cache else None,
                force_refresh_cache=force_refresh_cache or None,
                timeout_seconds=timeout_seconds,
                agent_command=agent_command,
                auto_rollback=False if no_auto_rollback else None,
                rollback_all_on_failure=rollback_all_on_failure or None,
                rollback_all_at_end=rollback_all_at_end or None,
                confirm_each=confirm_each or None,
                delay_seconds=delay_seconds,
                workdir_root=workdir_root,
            ),
        )
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error

    _emit_lines(output.lines)
    if output.exit_code:
        click.get_current_context().exit(output.exit_code)


@pr_batch.group()
def cache() -> None:
    """Specification cache commands."""


@cache.command("show")
@click.argument(
    "endpoints_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.argument("unit_id")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Specification cache directory.",
)
def cache_show(endpoints_file: Path, unit_id: str, cache_dir: Path | None) -> None:
    """Show age and validity of one unit's cached specification."""

    try:
        lines = BATCH_CONTROLLER.cache_show(
            CacheShowCommand(endpoints_file=endpoints_file, unit_id=unit_id, cache_dir=cache_dir),
        )
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@cache.command("prune")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Specification cache directory.",
)
def cache_prune(cache_dir: Path | None) -> None:
    """Delete expired or unreadable cache entries."""

    try:
        lines = BATCH_CONTROLLER.cache_prune(CachePruneCommand(cache_dir=cache_dir))
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pr_batch()
