"""Human-readable batch summary lines."""

from __future__ import annotations

from pr_batch.batch.models import BatchResult, UnitOutcome, UnitStatus


def render_batch_lines(result: BatchResult) -> list[str]:
    lines = [
        "Processing completed!",
        f"Total units: {result.total_units}",
        f"Successfully processed: {result.processed_count}",
        f"Failed: {result.failed_count}",
    ]
    if result.terminated_early:
        lines.append("Batch stopped early after a failure; all successful units were rolled back.")
    elif result.global_rollback_executed:
        lines.append("All successful units were rolled back at the end of the batch.")

    lines.append("")
    lines.append("Units:")
    lines.extend(f"  {_outcome_line(outcome)}" for outcome in result.outcomes)

    succeeded = [
        outcome
        for outcome in result.outcomes
        if outcome.status == UnitStatus.SUCCEEDED and not outcome.rolled_back
    ]
    if succeeded:
        lines.append("")
        lines.append("Processed units and their pull requests:")
        for outcome in succeeded:
            lines.append(f"  {outcome.unit_id}: {outcome.result_url or outcome.branch}")

    if result.lineage_by_parent:
        lines.append("")
        lines.append("Latest branch per parent directory:")
        for parent, branch in sorted(result.lineage_by_parent.items()):
            lines.append(f"  {parent}: {branch}")

    if result.failed_rollbacks:
        lines.append("")
        lines.append("Rollback steps that failed (manual cleanup required):")
        for report in result.failed_rollbacks:
            lines.append(f"  {report.command}  # {report.description}: {report.error}")

    if result.unexecuted_rollback_commands:
        lines.append("")
        lines.append("Auto-rollback was disabled. Run these commands to undo failed units:")
        lines.extend(f"  {command}" for command in result.unexecuted_rollback_commands)
    return lines


def _outcome_line(outcome: UnitOutcome) -> str:
    if outcome.skipped:
        return f"{outcome.unit_id}: skipped"
    parts = [f"{outcome.unit_id}: {outcome.status.value}"]
    if outcome.failure_class is not None:
        parts.append(f"[{outcome.failure_class.value}]")
    if outcome.base_lineage:
        parts.append(f"base={outcome.base_lineage}")
    if outcome.duration_seconds is not None:
        minutes, seconds = divmod(int(outcome.duration_seconds), 60)
        parts.append(f"time={minutes}m {seconds}s")
    if outcome.used_cache:
        parts.append("cache=hit")
    if outcome.rolled_back:
        parts.append("rolled back")
    if outcome.error_summary and outcome.status != UnitStatus.SUCCEEDED:
        parts.append(f"- {outcome.error_summary}")
    return " ".join(parts)
