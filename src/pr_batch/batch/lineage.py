"""Lineage resolution between units that share a destination-path hierarchy.

A unit branches from the branch of an earlier *succeeded* unit that lives under the same
parent directory (a sibling or a descendant of a sibling), so related work is stacked instead
of being started again from the default base. Units that failed or were rolled back are never
used as a base.

Example::

    A|vault/x/y   succeeded on feature/implement-A
    B|vault/x/z   parent is vault/x, A's path starts with "vault/x/" -> base feature/implement-A
    C|other/q     no succeeded unit under "other/"                  -> default base
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from posixpath import dirname

from pr_batch.batch.models import Unit, UnitStatus


def normalize_destination(path: str) -> str:
    return path.strip().rstrip("/")


def parent_of(destination_path: str) -> str:
    """Parent directory of a destination path; empty when the path has a single segment."""

    return dirname(normalize_destination(destination_path))


def resolve_base(
    prior_units: Iterable[Unit],
    destination_path: str,
    default_base: str,
) -> str:
    """Return the branch the unit at `destination_path` should start from.

    Scans `prior_units` in iteration order and returns the branch of the first succeeded unit
    whose destination lies strictly below the parent of `destination_path`, excluding a unit
    with the very same destination. Falls back to `default_base`.
    """

    current = normalize_destination(destination_path)
    parent = parent_of(current)
    if not parent:
        return default_base

    prefix = f"{parent}/"
    for unit in prior_units:
        if unit.status != UnitStatus.SUCCEEDED:
            continue
        candidate = normalize_destination(unit.destination_path)
        if candidate.startswith(prefix) and candidate != current:
            return unit.branch
    return default_base


@dataclass(slots=True, frozen=True)
class LineageIndex:
    """Immutable record of succeeded units, in completion order."""

    units: tuple[Unit, ...] = ()

    def resolve(self, destination_path: str, default_base: str) -> str:
        return resolve_base(self.units, destination_path, default_base)

    def with_success(self, unit: Unit) -> LineageIndex:
        if unit.status != UnitStatus.SUCCEEDED:
            raise ValueError(f"Only succeeded units enter the lineage index: {unit.unit_id}")
        return LineageIndex(units=(*self.units, unit))

    def latest_by_parent(self) -> dict[str, str]:
        """Map each parent prefix to the branch of the most recent succeeded unit under it."""

        mapping: dict[str, str] = {}
        for unit in self.units:
            parent = parent_of(unit.destination_path)
            if parent:
                mapping[parent] = unit.branch
        return mapping
