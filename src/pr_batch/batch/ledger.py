"""Rollback ledger: per-unit and global stacks of compensating actions.

Lifecycle of one unit's entries::

    clear_unit(u) -> record(...) * n -> promote_unit_to_global(u)   (unit succeeded)
                                     -> undo_unit(u)                (unit failed, auto-rollback)

Entries recorded with global scope while a unit is active are held with that unit too, so the
global ledger receives a unit's entries only once that unit succeeded.

Undo is best-effort and strictly LIFO. Every compensation is attempted independently; a
failing compensation is logged and reported but never stops the remaining ones, so a partial
rollback is a valid terminal state. Each undo returns one `RollbackReport` per attempt.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from pr_batch.batch.compensations import Compensation, CompensationRunner
from pr_batch.batch.models import RollbackReport, RollbackScope

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RollbackAction:
    """One recorded compensation."""

    compensation: Compensation
    description: str
    scope: RollbackScope
    unit_id: str | None = None

    @property
    def command(self) -> str:
        return self.compensation.command()


class RollbackLedger:
    """Ordered compensation stacks for the active unit and for the whole batch."""

    def __init__(self, *, runner: CompensationRunner | Callable[[Compensation], None]) -> None:
        self._run = runner.run if isinstance(runner, CompensationRunner) else runner
        self._local: dict[str, list[RollbackAction]] = {}
        self._global: list[RollbackAction] = []
        self._active_unit: str | None = None

    @property
    def active_unit(self) -> str | None:
        return self._active_unit

    def clear_unit(self, unit_id: str) -> None:
        """Start an empty local ledger for `unit_id` and make it the recording target."""

        self._local[unit_id] = []
        self._active_unit = unit_id

    def record(
        self,
        compensation: Compensation,
        description: str,
        scope: RollbackScope = RollbackScope.UNIT_LOCAL,
    ) -> RollbackAction:
        """Record a compensation right after its forward action succeeded.

        Entries of the active unit, global ones included, stay with that unit until it is
        promoted or undone. A global entry recorded outside any unit goes to the global ledger.
        """

        if scope == RollbackScope.GLOBAL and self._active_unit is None:
            action = RollbackAction(
                compensation=compensation,
                description=description,
                scope=scope,
            )
            self._global.append(action)
            logger.info("Added batch-level global rollback: %s", description)
            return action

        if self._active_unit is None:
            raise RuntimeError("No active unit; call clear_unit() before recording.")
        action = RollbackAction(
            compensation=compensation,
            description=description,
            scope=scope,
            unit_id=self._active_unit,
        )
        self._local[self._active_unit].append(action)
        logger.info("Added %s rollback for %s: %s", scope.value, self._active_unit, description)
        return action

    def local_actions(self, unit_id: str) -> list[RollbackAction]:
        """Entries a unit holds until it succeeds or is undone, in recording order."""

        return list(self._local.get(unit_id, ()))

    def global_actions(self) -> list[RollbackAction]:
        return list(self._global)

    def pending_commands(self, unit_id: str) -> list[str]:
        """Literal compensating commands for a unit, in the order they would run."""

        return [action.command for action in reversed(self._local.get(unit_id, ()))]

    def promote_unit_to_global(self, unit_id: str) -> int:
        """Append the unit's local ledger, in order, to the global ledger and clear it."""

        actions = self._local.pop(unit_id, [])
        self._global.extend(actions)
        if self._active_unit == unit_id:
            self._active_unit = None
        return len(actions)

    def discard_unit(self, unit_id: str) -> list[RollbackAction]:
        """Drop the unit's local ledger without running it."""

        actions = self._local.pop(unit_id, [])
        if self._active_unit == unit_id:
            self._active_unit = None
        return actions

    def undo_unit(self, unit_id: str) -> list[RollbackReport]:
        """Replay the unit's local ledger in reverse, best-effort."""

        actions = self._local.pop(unit_id, [])
        if self._active_unit == unit_id:
            self._active_unit = None
        logger.warning("Executing rollback for unit %s (%d action(s))", unit_id, len(actions))
        return self._undo(actions)

    def undo_global(self) -> list[RollbackReport]:
        """Replay the global ledger in reverse, best-effort."""

        actions, self._global = self._global, []
        units = sorted({action.unit_id for action in actions if action.unit_id is not None})
        logger.warning(
            "Executing global rollback (%d action(s)) for units: %s",
            len(actions),
            ", ".join(units) or "none",
        )
        return self._undo(actions)

    def _undo(self, actions: list[RollbackAction]) -> list[RollbackReport]:
        reports: list[RollbackReport] = []
        for action in reversed(actions):
            logger.info("Rolling back: %s", action.description)
            try:
                self._run(action.compensation)
            except Exception as error:  # noqa: BLE001
                logger.warning("Rollback failed: %s (%s)", action.description, error)
                reports.append(
                    RollbackReport(
                        unit_id=action.unit_id,
                        description=action.description,
                        command=action.command,
                        ok=False,
                        error=str(error) or type(error).__name__,
                    ),
                )
                continue
            logger.info("Rollback successful: %s", action.description)
            reports.append(
                RollbackReport(
                    unit_id=action.unit_id,
                    description=action.description,
                    command=action.command,
                    ok=True,
                ),
            )
        return reports
