"""Batch driver: sequences units through lineage, cache, execution and rollback policy.

Per unit, in input order::

    resolve lineage -> check cache -> confirmation gate -> clear ledger -> execute
        succeeded: promote ledger, extend lineage, cache fresh data
        failed:    undo unit (auto-rollback) and, under rollback-all-on-failure with at least
                   one standing success, undo the global ledger and stop the batch
    inter-unit delay

Loop state lives in an immutable `BatchState` that each step returns to the next one. The
rollback ledger is the only mutable collaborator and is touched only by this thread.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

from pr_batch.batch.cache import SpecCache
from pr_batch.batch.endpoints import BatchEntry
from pr_batch.batch.executor import UnitExecutor, format_elapsed
from pr_batch.batch.ledger import RollbackLedger
from pr_batch.batch.lineage import LineageIndex
from pr_batch.batch.models import (
    BatchResult,
    ExecutionResult,
    FailureClass,
    MalformedUnit,
    RollbackReport,
    RollbackScope,
    Unit,
    UnitOutcome,
    UnitStatus,
)
from pr_batch.batch.prompts import InstructionContext, build_instructions, find_existing_markdown
from pr_batch.batch.source import SpecificationFetchError, SpecificationSource

logger = logging.getLogger(__name__)

Confirmer = Callable[[str], bool]


def decline(_question: str) -> bool:
    return False


@dataclass(slots=True, frozen=True)
class BatchPolicy:
    """Failure policy and sequencing knobs for one run."""

    base_branch: str = "main"
    branch_template: str = "feature/implement-{unit_id}"
    timeout_seconds: int = 7_200
    use_cache: bool = True
    auto_rollback: bool = True
    rollback_all_on_failure: bool = False
    rollback_all_at_end: bool = False
    confirm_each_unit: bool = False
    inter_unit_delay_seconds: float = 2.0


@dataclass(slots=True, frozen=True)
class BatchContext:
    """File-level configuration shared by every unit."""

    source_id: str
    spreadsheet_name: str
    worksheet_name: str
    repo_path: Path | None = None


@dataclass(slots=True, frozen=True)
class BatchState:
    """Accumulator threaded through the loop."""

    lineage: LineageIndex = LineageIndex()
    processed_count: int = 0
    failed_count: int = 0
    outcomes: tuple[UnitOutcome, ...] = ()
    unexecuted_rollback_commands: tuple[str, ...] = ()
    rollback_reports: tuple[RollbackReport, ...] = ()
    terminated_early: bool = False
    global_rollback_executed: bool = False


class BatchDriver:
    """Process batch entries one at a time and report a `BatchResult`."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        executor: UnitExecutor,
        ledger: RollbackLedger,
        source: SpecificationSource,
        context: BatchContext,
        policy: BatchPolicy,
        cache: SpecCache | None = None,
        confirm: Confirmer = decline,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executor = executor
        self.ledger = ledger
        self.source = source
        self.context = context
        self.policy = policy
        self.cache = cache if policy.use_cache else None
        self.confirm = confirm
        self.sleep = sleep

    def run(self, entries: Sequence[BatchEntry]) -> BatchResult:
        total = len(entries)
        logger.info("Total units to process: %d", total)
        state = BatchState()
        for index, entry in enumerate(entries, start=1):
            if state.terminated_early:
                state = _append(state, _not_processed(entry))
                continue
            if isinstance(entry, MalformedUnit):
                state = self._record_parse_error(state, entry)
                continue

            logger.info("Processing unit %d/%d: %s", index, total, entry.unit_id)
            unit = Unit.from_descriptor(entry, branch_template=self.policy.branch_template)
            state, executed = self._process_unit(state, unit)
            if executed and not state.terminated_early and index < total:
                self._delay()

        state = self._offer_rollback_at_end(state)
        result = BatchResult(
            processed_count=state.processed_count,
            failed_count=state.failed_count,
            total_units=total,
            outcomes=list(state.outcomes),
            unexecuted_rollback_commands=list(state.unexecuted_rollback_commands),
            rollback_reports=list(state.rollback_reports),
            terminated_early=state.terminated_early,
            global_rollback_executed=state.global_rollback_executed,
            lineage_by_parent=state.lineage.latest_by_parent(),
        )
        logger.info(
            "Processing completed: %d succeeded, %d failed of %d",
            result.processed_count,
            result.failed_count,
            total,
        )
        return result

    def _process_unit(self, state: BatchState, unit: Unit) -> tuple[BatchState, bool]:
        unit.base_lineage = state.lineage.resolve(unit.destination_path, self.policy.base_branch)
        if unit.base_lineage == self.policy.base_branch:
            logger.info("No related unit found. Will branch from: %s", unit.base_lineage)
        else:
            logger.info("Found related unit. Will branch from: %s", unit.base_lineage)

        cached = self._cached_payload(unit.unit_id)

        if self.policy.confirm_each_unit and not self.confirm(f"Process unit {unit.unit_id}?"):
            logger.info("Skipping unit: %s", unit.unit_id)
            return _append(state, _outcome(unit, skipped=True)), False

        self.ledger.clear_unit(unit.unit_id)
        unit.status = UnitStatus.RUNNING
        logger.info("Unit %s: pending -> running", unit.unit_id)
        fresh: str | None = None
        if cached is None:
            try:
                fresh = self.source.fetch(unit.unit_id)
            except SpecificationFetchError as error:
                logger.error("%s", error)
                unit.status = UnitStatus.FAILED
                failed = ExecutionResult(
                    exit_code=1,
                    duration_seconds=0.0,
                    timed_out=False,
                    failure_class=FailureClass.SOURCE_FETCH_FAILED,
                    error_summary=str(error),
                )
                return self._on_failure(state, unit, failed, used_cache=False), True

        payload = cached if cached is not None else fresh
        paths = self.executor.paths_for(unit.unit_id)
        instructions = build_instructions(
            InstructionContext(
                unit=unit,
                base_branch=unit.base_lineage,
                spreadsheet_name=self.context.spreadsheet_name,
                worksheet_name=self.context.worksheet_name,
                side_effects_path=paths.side_effects_path,
                spec_staging_path=paths.spec_staging_path,
                spec_input_path=paths.spec_input_path if payload is not None else None,
                from_cache=cached is not None,
                existing_markdown=find_existing_markdown(
                    self.context.repo_path,
                    unit.destination_path,
                ),
            ),
        )

        result = self.executor.execute(
            unit,
            instructions,
            self.policy.timeout_seconds,
            specification=payload,
        )
        for effect in result.side_effects:
            self.ledger.record(
                effect.compensation,
                effect.description,
                RollbackScope.GLOBAL if effect.batch_wide else RollbackScope.UNIT_LOCAL,
            )
        logger.info("Total execution time: %s", format_elapsed(result.duration_seconds))

        if result.succeeded:
            return self._on_success(state, unit, result, cached=cached, fresh=fresh), True
        unit.status = UnitStatus.TIMED_OUT if result.timed_out else UnitStatus.FAILED
        return self._on_failure(state, unit, result, used_cache=cached is not None), True

    def _on_success(
        self,
        state: BatchState,
        unit: Unit,
        result: ExecutionResult,
        *,
        cached: str | None,
        fresh: str | None,
    ) -> BatchState:
        unit.status = UnitStatus.SUCCEEDED
        logger.info("Unit %s: running -> succeeded", unit.unit_id)
        promoted = self.ledger.promote_unit_to_global(unit.unit_id)
        logger.info(
            "Saved %d rollback action(s) of %s to the global ledger",
            promoted,
            unit.unit_id,
        )
        if cached is None:
            self._store_fresh_payload(unit.unit_id, fresh)
        return replace(
            _append(state, _outcome(unit, result=result, used_cache=cached is not None)),
            lineage=state.lineage.with_success(unit),
            processed_count=state.processed_count + 1,
        )

    def _on_failure(
        self,
        state: BatchState,
        unit: Unit,
        result: ExecutionResult,
        *,
        used_cache: bool,
    ) -> BatchState:
        logger.error(
            "Unit %s: running -> %s (%s)",
            unit.unit_id,
            unit.status.value,
            result.failure_class.value if result.failure_class else "failed",
        )
        reports: list[RollbackReport] = []
        unexecuted: list[str] = []
        if self.policy.auto_rollback:
            reports = self.ledger.undo_unit(unit.unit_id)
        else:
            unexecuted = self.ledger.pending_commands(unit.unit_id)
            self.ledger.discard_unit(unit.unit_id)
            logger.warning(
                "Auto-rollback disabled; %d compensating command(s) left for %s",
                len(unexecuted),
                unit.unit_id,
            )
        outcome = _outcome(
            unit,
            result=result,
            used_cache=used_cache,
            rolled_back=self.policy.auto_rollback,
        )
        if self.policy.auto_rollback:
            unit.status = UnitStatus.ROLLED_BACK
        state = replace(
            _append(state, outcome),
            failed_count=state.failed_count + 1,
            rollback_reports=(*state.rollback_reports, *reports),
            unexecuted_rollback_commands=(*state.unexecuted_rollback_commands, *unexecuted),
        )

        if self.policy.rollback_all_on_failure and state.lineage.units:
            logger.error("Rolling back all successful units and stopping the batch")
            state = replace(self._undo_global(state), terminated_early=True)
        else:
            logger.warning("Continuing with next unit...")
        return state

    def _offer_rollback_at_end(self, state: BatchState) -> BatchState:
        if not self.policy.rollback_all_at_end or not state.lineage.units:
            return state
        count = len(state.lineage.units)
        if not self.confirm(f"Roll back all {count} successful unit(s)?"):
            logger.info("Keeping %d successful unit(s)", count)
            return state
        return self._undo_global(state)

    def _undo_global(self, state: BatchState) -> BatchState:
        reports = self.ledger.undo_global()
        undone = {unit.unit_id for unit in state.lineage.units}
        for unit in state.lineage.units:
            unit.status = UnitStatus.ROLLED_BACK
        outcomes = tuple(
            replace(outcome, rolled_back=True) if outcome.unit_id in undone else outcome
            for outcome in state.outcomes
        )
        return replace(
            state,
            lineage=LineageIndex(),
            outcomes=outcomes,
            rollback_reports=(*state.rollback_reports, *reports),
            global_rollback_executed=True,
        )

    def _record_parse_error(self, state: BatchState, entry: MalformedUnit) -> BatchState:
        logger.error("Unit line %d recorded as failed: %s", entry.line_no, entry.reason)
        outcome = UnitOutcome(
            unit_id=entry.raw,
            destination_path="",
            status=UnitStatus.FAILED,
            failure_class=FailureClass.PARSE_ERROR,
            error_summary=entry.reason,
        )
        return replace(_append(state, outcome), failed_count=state.failed_count + 1)

    def _cached_payload(self, unit_id: str) -> str | None:
        if self.cache is None:
            return None
        payload = self.cache.get(self.context.source_id, unit_id)
        if payload is None:
            logger.info("No valid cache found for unit %s, will read from source", unit_id)
        return payload

    def _store_fresh_payload(self, unit_id: str, fresh: str | None) -> None:
        if self.cache is None:
            return
        if fresh is None:
            staging = self.executor.paths_for(unit_id).spec_staging_path
            if staging.exists():
                fresh = staging.read_text("utf-8")
        if not fresh or not fresh.strip():
            logger.warning("No specification data staged for %s; cache not updated", unit_id)
            return
        self.cache.put(self.context.source_id, unit_id, fresh)

    def _delay(self) -> None:
        if self.policy.inter_unit_delay_seconds <= 0:
            return
        logger.info("Waiting before processing next unit...")
        self.sleep(self.policy.inter_unit_delay_seconds)


def _append(state: BatchState, outcome: UnitOutcome) -> BatchState:
    return replace(state, outcomes=(*state.outcomes, outcome))


def _outcome(
    unit: Unit,
    *,
    result: ExecutionResult | None = None,
    used_cache: bool = False,
    skipped: bool = False,
    rolled_back: bool = False,
) -> UnitOutcome:
    return UnitOutcome(
        unit_id=unit.unit_id,
        destination_path=unit.destination_path,
        status=unit.status,
        base_lineage=unit.base_lineage,
        branch=unit.branch,
        exit_code=result.exit_code if result else None,
        duration_seconds=result.duration_seconds if result else None,
        failure_class=result.failure_class if result else None,
        error_summary=result.error_summary if result else None,
        result_url=result.result_url if result else None,
        used_cache=used_cache,
        skipped=skipped,
        rolled_back=rolled_back,
    )


def _not_processed(entry: BatchEntry) -> UnitOutcome:
    if isinstance(entry, MalformedUnit):
        return UnitOutcome(
            unit_id=entry.raw,
            destination_path="",
            status=UnitStatus.PENDING,
            error_summary="not processed: batch terminated early",
        )
    return UnitOutcome(
        unit_id=entry.unit_id,
        destination_path=entry.destination_path,
        status=UnitStatus.PENDING,
        error_summary="not processed: batch terminated early",
    )
