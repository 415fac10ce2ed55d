from __future__ import annotations

import logging
from pathlib import Path

import allure
from conftest import FakeBackend, RecordingRunner, ScriptedRun

from pr_batch.batch.cache import SpecCache
from pr_batch.batch.driver import BatchContext, BatchDriver, BatchPolicy
from pr_batch.batch.endpoints import parse_batch_text
from pr_batch.batch.executor import UnitExecutor
from pr_batch.batch.ledger import RollbackLedger
from pr_batch.batch.models import FailureClass, MalformedUnit, UnitDescriptor, UnitStatus
from pr_batch.batch.source import AgentDelegatedSource, SpecificationFetchError
from pr_batch.batch.workdir import UnitWorkdirManager

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Batch Driver"),
]

SOURCE_ID = "Sheet/Tab"


def _branch_effect(unit_id: str) -> dict[str, object]:
    return {"kind": "delete_branch", "branch": f"feature/implement-{unit_id}"}


def _units(*pairs: str) -> list[UnitDescriptor]:
    return parse_batch_text("\n".join(pairs)).units


class _Harness:
    def __init__(  # noqa: PLR0913
        self,
        tmp_path: Path,
        backend: FakeBackend,
        *,
        policy: BatchPolicy | None = None,
        cache: SpecCache | None = None,
        source=None,
        answers: dict[str, bool] | None = None,
        runner: RecordingRunner | None = None,
    ) -> None:
        self.backend = backend
        self.runner = runner or RecordingRunner()
        self.sleeps: list[float] = []
        self.questions: list[str] = []
        self.answers = answers or {}
        self.driver = BatchDriver(
            executor=UnitExecutor(
                backend=backend,
                workdirs=UnitWorkdirManager(tmp_path / "workdirs"),
                command_template="agent {prompt}",
            ),
            ledger=RollbackLedger(runner=self.runner),
            source=source or AgentDelegatedSource(),
            context=BatchContext(
                source_id=SOURCE_ID,
                spreadsheet_name="Sheet",
                worksheet_name="Tab",
                repo_path=tmp_path / "repo",
            ),
            policy=policy or BatchPolicy(inter_unit_delay_seconds=0),
            cache=cache,
            confirm=self._confirm,
            sleep=self.sleeps.append,
        )

    def _confirm(self, question: str) -> bool:
        self.questions.append(question)
        for fragment, answer in self.answers.items():
            if fragment in question:
                return answer
        return False

    def prompt(self, index: int) -> str:
        return self.backend.requests[index].prompt_file.read_text("utf-8")


def test_related_unit_branches_from_prior_success(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, FakeBackend())

    result = harness.driver.run(_units("A|vault/x/y", "B|vault/x/z", "C|other/q"))

    assert [outcome.base_lineage for outcome in result.outcomes] == [
        "main",
        "feature/implement-A",
        "main",
    ]
    assert "Check out the base branch: feature/implement-A" in harness.prompt(1)
    assert result.processed_count == 3
    assert result.failed_count == 0
    assert result.exit_code == 0
    assert result.lineage_by_parent == {
        "vault/x": "feature/implement-B",
        "other": "feature/implement-C",
    }


def test_failed_unit_is_never_used_as_base(tmp_path: Path) -> None:
    backend = FakeBackend(script={"A": ScriptedRun(exit_code=1)})
    harness = _Harness(tmp_path, backend)

    result = harness.driver.run(_units("A|vault/x/y", "B|vault/x/z"))

    assert result.outcomes[1].base_lineage == "main"


def test_always_failing_agent_rolls_back_each_unit_once(tmp_path: Path) -> None:
    backend = FakeBackend(script={
        unit_id: ScriptedRun(exit_code=1, side_effects=[_branch_effect(unit_id)])
        for unit_id in ("A", "B", "C")
    })
    harness = _Harness(tmp_path, backend)

    result = harness.driver.run(_units("A|vault/x/a", "B|vault/x/b", "C|vault/y/c"))

    assert result.failed_count == result.total_units == 3
    assert result.processed_count == 0
    assert harness.runner.ran == [
        "git branch -D feature/implement-A",
        "git branch -D feature/implement-B",
        "git branch -D feature/implement-C",
    ]
    assert all(outcome.rolled_back for outcome in result.outcomes)
    assert all(outcome.status == UnitStatus.FAILED for outcome in result.outcomes)
    assert result.exit_code == 3


def test_timeout_is_failed_with_distinct_code_and_rolled_back(tmp_path: Path) -> None:
    backend = FakeBackend(default=ScriptedRun(timed_out=True, side_effects=[_branch_effect("A")]))
    harness = _Harness(
        tmp_path,
        backend,
        policy=BatchPolicy(timeout_seconds=1, inter_unit_delay_seconds=0),
    )

    result = harness.driver.run(_units("A|vault/x/y"))

    outcome = result.outcomes[0]
    assert outcome.status == UnitStatus.TIMED_OUT
    assert outcome.failure_class == FailureClass.TIMEOUT
    assert outcome.exit_code == 124
    assert outcome.rolled_back
    assert result.failed_count == 1
    assert harness.runner.ran == ["git branch -D feature/implement-A"]
    assert backend.requests[0].timeout_seconds == 1


def test_rollback_all_on_failure_undoes_everything_and_stops(tmp_path: Path) -> None:
    backend = FakeBackend(script={
        "A": ScriptedRun(side_effects=[
            {"kind": "delete_branch", "branch": "a1"},
            {"kind": "delete_branch", "branch": "a2"},
        ]),
        "B": ScriptedRun(exit_code=1, side_effects=[{"kind": "delete_branch", "branch": "b1"}]),
    })
    harness = _Harness(
        tmp_path,
        backend,
        policy=BatchPolicy(rollback_all_on_failure=True, inter_unit_delay_seconds=5),
    )

    result = harness.driver.run(_units("A|vault/x/a", "B|vault/y/b", "C|vault/z/c"))

    assert harness.runner.ran == [
        "git branch -D b1",
        "git branch -D a2",
        "git branch -D a1",
    ]
    assert result.terminated_early
    assert result.global_rollback_executed
    assert len(backend.requests) == 2
    assert result.outcomes[0].rolled_back
    assert result.outcomes[2].status == UnitStatus.PENDING
    assert "not processed" in (result.outcomes[2].error_summary or "")
    assert harness.sleeps == [5]


def test_rollback_all_on_failure_without_prior_success_continues(tmp_path: Path) -> None:
    backend = FakeBackend(script={"A": ScriptedRun(exit_code=1)})
    harness = _Harness(
        tmp_path,
        backend,
        policy=BatchPolicy(rollback_all_on_failure=True, inter_unit_delay_seconds=0),
    )

    result = harness.driver.run(_units("A|vault/x/a", "B|vault/x/b"))

    assert not result.terminated_early
    assert result.processed_count == 1
    assert result.failed_count == 1


def test_rollback_at_end_runs_global_undo_when_confirmed(tmp_path: Path) -> None:
    backend = FakeBackend(script={
        "A": ScriptedRun(side_effects=[_branch_effect("A")]),
        "B": ScriptedRun(side_effects=[_branch_effect("B")]),
    })
    harness = _Harness(
        tmp_path,
        backend,
        policy=BatchPolicy(rollback_all_at_end=True, inter_unit_delay_seconds=0),
        answers={"Roll back all": True},
    )

    result = harness.driver.run(_units("A|vault/x/a", "B|vault/y/b"))

    assert harness.questions == ["Roll back all 2 successful unit(s)?"]
    assert harness.runner.ran == [
        "git branch -D feature/implement-B",
        "git branch -D feature/implement-A",
    ]
    assert result.global_rollback_executed
    assert all(outcome.rolled_back for outcome in result.outcomes)
    assert result.lineage_by_parent == {}
    assert result.failed_count == 0


def test_rollback_at_end_declined_keeps_work(tmp_path: Path) -> None:
    backend = FakeBackend(default=ScriptedRun(side_effects=[_branch_effect("A")]))
    harness = _Harness(
        tmp_path,
        backend,
        policy=BatchPolicy(rollback_all_at_end=True, inter_unit_delay_seconds=0),
    )

    result = harness.driver.run(_units("A|vault/x/a"))

    assert len(harness.questions) == 1
    assert harness.runner.ran == []
    assert not result.global_rollback_executed


def test_rollback_at_end_not_offered_without_successes(tmp_path: Path) -> None:
    backend = FakeBackend(default=ScriptedRun(exit_code=1))
    harness = _Harness(
        tmp_path,
        backend,
        policy=BatchPolicy(rollback_all_at_end=True, inter_unit_delay_seconds=0),
    )

    harness.driver.run(_units("A|vault/x/a"))

    assert harness.questions == []


def test_disabled_auto_rollback_lists_unexecuted_commands(tmp_path: Path) -> None:
    backend = FakeBackend(default=ScriptedRun(exit_code=1, side_effects=[
        _branch_effect("A"),
        {"kind": "delete_remote_branch", "branch": "feature/implement-A"},
    ]))
    harness = _Harness(
        tmp_path,
        backend,
        policy=BatchPolicy(auto_rollback=False, inter_unit_delay_seconds=0),
    )

    result = harness.driver.run(_units("A|vault/x/a"))

    assert harness.runner.ran == []
    assert result.unexecuted_rollback_commands == [
        "git push origin --delete feature/implement-A",
        "git branch -D feature/implement-A",
    ]
    assert not result.outcomes[0].rolled_back


def test_failing_compensation_is_reported_not_raised(tmp_path: Path) -> None:
    backend = FakeBackend(default=ScriptedRun(exit_code=1, side_effects=[
        {"kind": "delete_branch", "branch": "one"},
        {"kind": "delete_branch", "branch": "two"},
    ]))
    runner = RecordingRunner(fail_on={"git branch -D two"})
    harness = _Harness(tmp_path, backend, runner=runner)

    result = harness.driver.run(_units("A|vault/x/a"))

    assert runner.ran == ["git branch -D two", "git branch -D one"]
    assert [report.command for report in result.failed_rollbacks] == ["git branch -D two"]


def test_malformed_line_counts_as_one_failure_and_batch_continues(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, FakeBackend())
    entries = parse_batch_text("A|vault/x/a\nbroken line\nB|vault/x/b").entries

    result = harness.driver.run(entries)

    assert isinstance(entries[1], MalformedUnit)
    assert result.total_units == 3
    assert result.failed_count == 1
    assert result.processed_count == 2
    assert result.outcomes[1].failure_class == FailureClass.PARSE_ERROR
    assert len(harness.backend.requests) == 2


def test_confirmation_gate_skips_without_failure(tmp_path: Path) -> None:
    harness = _Harness(
        tmp_path,
        FakeBackend(),
        policy=BatchPolicy(confirm_each_unit=True, inter_unit_delay_seconds=0),
        answers={"Process unit A?": True, "Process unit B?": False},
    )

    result = harness.driver.run(_units("A|vault/x/a", "B|vault/x/b"))

    assert [request.unit_id for request in harness.backend.requests] == ["A"]
    assert result.outcomes[1].skipped
    assert result.outcomes[1].status == UnitStatus.PENDING
    assert result.failed_count == 0
    assert result.processed_count == 1


def test_delay_between_executed_units_only(tmp_path: Path) -> None:
    backend = FakeBackend(script={"B": ScriptedRun(exit_code=1)})
    harness = _Harness(
        tmp_path,
        backend,
        policy=BatchPolicy(inter_unit_delay_seconds=2),
    )

    harness.driver.run(_units("A|vault/x/a", "B|vault/x/b", "C|vault/x/c"))

    assert harness.sleeps == [2, 2]


def test_fresh_specification_is_cached_on_success_and_reused(tmp_path: Path, clock) -> None:
    cache = SpecCache(tmp_path / "cache", clock=clock)
    backend = FakeBackend(default=ScriptedRun(staged_spec="POST /cards/replacement"))
    first = _Harness(tmp_path, backend, cache=cache)

    first.driver.run(_units("A|vault/x/a"))

    assert cache.get(SOURCE_ID, "A") == "POST /cards/replacement"
    assert "Save the extracted data" in first.prompt(0)

    second_backend = FakeBackend()
    second = _Harness(tmp_path, second_backend, cache=cache)
    result = second.driver.run(_units("A|vault/x/a"))

    assert result.outcomes[0].used_cache
    assert "cached specification data" in second.prompt(0)
    spec_input = second_backend.requests[0].workdir / "input" / "specification.txt"
    assert spec_input.read_text("utf-8") == "POST /cards/replacement"


def test_failed_unit_does_not_write_cache(tmp_path: Path, clock) -> None:
    cache = SpecCache(tmp_path / "cache", clock=clock)
    backend = FakeBackend(default=ScriptedRun(exit_code=1, staged_spec="partial"))
    harness = _Harness(tmp_path, backend, cache=cache)

    harness.driver.run(_units("A|vault/x/a"))

    assert cache.inspect(SOURCE_ID, "A") is None


def test_cache_disabled_by_policy_is_ignored(tmp_path: Path, clock) -> None:
    cache = SpecCache(tmp_path / "cache", clock=clock)
    cache.put(SOURCE_ID, "A", "cached")
    harness = _Harness(
        tmp_path,
        FakeBackend(),
        cache=cache,
        policy=BatchPolicy(use_cache=False, inter_unit_delay_seconds=0),
    )

    result = harness.driver.run(_units("A|vault/x/a"))

    assert not result.outcomes[0].used_cache


def test_command_source_payload_is_passed_and_cached(tmp_path: Path, clock) -> None:
    class _Source:
        def fetch(self, unit_id: str) -> str:
            return f"spec for {unit_id}"

    cache = SpecCache(tmp_path / "cache", clock=clock)
    backend = FakeBackend()
    harness = _Harness(tmp_path, backend, cache=cache, source=_Source())

    harness.driver.run(_units("A|vault/x/a"))

    assert cache.get(SOURCE_ID, "A") == "spec for A"
    assert "Read the specification data from file" in harness.prompt(0)


def test_source_fetch_error_fails_unit(tmp_path: Path, caplog) -> None:
    class _Broken:
        def fetch(self, unit_id: str) -> str:
            raise SpecificationFetchError(f"no row for {unit_id}")

    backend = FakeBackend()
    harness = _Harness(tmp_path, backend, source=_Broken())

    with caplog.at_level(logging.INFO, logger="pr_batch.batch.driver"):
        result = harness.driver.run(_units("A|vault/x/a"))

    assert backend.requests == []
    assert result.failed_count == 1
    assert result.outcomes[0].status == UnitStatus.FAILED
    assert result.outcomes[0].failure_class == FailureClass.SOURCE_FETCH_FAILED
    assert "Unit A: pending -> running" in caplog.messages
    assert "Unit A: running -> failed (source_fetch_failed)" in caplog.messages


def test_batch_wide_side_effect_of_failed_unit_is_undone_with_it(tmp_path: Path) -> None:
    backend = FakeBackend(script={
        "A": ScriptedRun(exit_code=1, side_effects=[
            {"kind": "delete_branch", "branch": "release/batch", "scope": "global"},
            _branch_effect("A"),
        ]),
        "B": ScriptedRun(side_effects=[
            {"kind": "delete_branch", "branch": "release/b", "scope": "global"},
            _branch_effect("B"),
        ]),
    })
    harness = _Harness(
        tmp_path,
        backend,
        policy=BatchPolicy(rollback_all_at_end=True, inter_unit_delay_seconds=0),
        answers={"Roll back all": True},
    )

    result = harness.driver.run(_units("A|vault/x/a", "B|vault/y/b"))

    assert harness.runner.ran == [
        "git branch -D feature/implement-A",
        "git branch -D release/batch",
        "git branch -D feature/implement-B",
        "git branch -D release/b",
    ]
    assert result.global_rollback_executed
    assert harness.driver.ledger.global_actions() == []


def test_disabled_auto_rollback_reports_batch_wide_commands(tmp_path: Path) -> None:
    backend = FakeBackend(default=ScriptedRun(exit_code=1, side_effects=[
        {"kind": "delete_branch", "branch": "release/batch", "scope": "global"},
        _branch_effect("A"),
    ]))
    harness = _Harness(
        tmp_path,
        backend,
        policy=BatchPolicy(auto_rollback=False, inter_unit_delay_seconds=0),
    )

    result = harness.driver.run(_units("A|vault/x/a"))

    assert harness.runner.ran == []
    assert result.unexecuted_rollback_commands == [
        "git branch -D feature/implement-A",
        "git branch -D release/batch",
    ]
    assert harness.driver.ledger.global_actions() == []


def test_existing_markdown_switches_instructions(tmp_path: Path) -> None:
    destination = tmp_path / "repo" / "vault" / "x" / "a"
    destination.mkdir(parents=True)
    (destination / "CardUseCase.md").write_text("# Card", "utf-8")
    harness = _Harness(tmp_path, FakeBackend())

    harness.driver.run(_units("A|vault/x/a"))

    assert "Existing markdown instructions were found" in harness.prompt(0)
    assert "CardUseCase.md" in harness.prompt(0)
