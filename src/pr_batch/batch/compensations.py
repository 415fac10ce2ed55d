"""Structured compensating actions and the runner that executes them.

Compensations are tagged variants with explicit parameters. Each variant knows how to render
itself as a literal shell command (for reports and for the "un-executed commands" summary)
and, for command-backed variants, how to build the argv list that `CompensationRunner`
executes. Nothing is ever evaluated from a free-form string.

The execution agent reports the reversible actions it performed by appending JSON lines to
the unit's side-effect manifest, for example::

    {"kind": "delete_branch", "branch": "feature/implement-BE07-0201-12"}
    {"kind": "delete_remote_branch", "branch": "feature/implement-BE07-0201-12"}
    {"kind": "close_review_request", "reference": "42"}

An entry with ``"scope": "global"`` is a batch-wide effect. It still stays with the unit that
reported it until that unit succeeds.
"""

from __future__ import annotations

import json
import logging
import shlex
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import ClassVar

logger = logging.getLogger(__name__)


class CompensationKind(str, Enum):
    """Supported compensation variants."""

    DELETE_BRANCH = "delete_branch"
    RESET_TO_COMMIT = "reset_to_commit"
    DELETE_REMOTE_BRANCH = "delete_remote_branch"
    CLOSE_REVIEW_REQUEST = "close_review_request"
    REMOVE_PATH = "remove_path"
    CALLABLE = "callable"


@dataclass(slots=True, frozen=True)
class DeleteBranch:
    """Undo a local branch creation."""

    kind: ClassVar[CompensationKind] = CompensationKind.DELETE_BRANCH

    branch: str

    def argv(self) -> list[str]:
        return ["git", "branch", "-D", self.branch]

    def command(self) -> str:
        return shlex.join(self.argv())


@dataclass(slots=True, frozen=True)
class ResetToCommit:
    """Undo commits by resetting the working branch to an earlier commit."""

    kind: ClassVar[CompensationKind] = CompensationKind.RESET_TO_COMMIT

    commit: str

    def argv(self) -> list[str]:
        return ["git", "reset", "--hard", self.commit]

    def command(self) -> str:
        return shlex.join(self.argv())


@dataclass(slots=True, frozen=True)
class DeleteRemoteBranch:
    """Undo a branch push."""

    kind: ClassVar[CompensationKind] = CompensationKind.DELETE_REMOTE_BRANCH

    branch: str
    remote: str = "origin"

    def argv(self) -> list[str]:
        return ["git", "push", self.remote, "--delete", self.branch]

    def command(self) -> str:
        return shlex.join(self.argv())


@dataclass(slots=True, frozen=True)
class CloseReviewRequest:
    """Undo a review request (pull request) creation."""

    kind: ClassVar[CompensationKind] = CompensationKind.CLOSE_REVIEW_REQUEST

    reference: str

    def argv(self) -> list[str]:
        return ["gh", "pr", "close", self.reference]

    def command(self) -> str:
        return shlex.join(self.argv())


@dataclass(slots=True, frozen=True)
class RemovePath:
    """Undo a file or directory creation. Executed in-process."""

    kind: ClassVar[CompensationKind] = CompensationKind.REMOVE_PATH

    path: str

    def command(self) -> str:
        return shlex.join(["rm", "-rf", self.path])


@dataclass(slots=True, frozen=True)
class CallableCompensation:
    """In-process compensation closure."""

    kind: ClassVar[CompensationKind] = CompensationKind.CALLABLE

    func: Callable[[], None]
    label: str

    def command(self) -> str:
        return f"<callable {self.label}>"


Compensation = (
    DeleteBranch
    | ResetToCommit
    | DeleteRemoteBranch
    | CloseReviewRequest
    | RemovePath
    | CallableCompensation
)


@dataclass(slots=True, frozen=True)
class SideEffect:
    """A reversible forward action reported by the agent, with its compensation."""

    compensation: Compensation
    description: str
    batch_wide: bool = False


class CompensationRunner:
    """Execute compensations against the target repository."""

    def __init__(self, *, cwd: Path | None = None, timeout_seconds: float = 120.0) -> None:
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    def run(self, compensation: Compensation) -> None:
        """Run one compensation; raise on failure."""

        if isinstance(compensation, CallableCompensation):
            compensation.func()
            return
        if isinstance(compensation, RemovePath):
            _remove_path(self._resolve(compensation.path))
            return

        subprocess.run(  # noqa: S603
            compensation.argv(),
            cwd=self.cwd,
            check=True,
            capture_output=True,
            text=True,
            timeout=self.timeout_seconds,
        )

    def _resolve(self, value: str) -> Path:
        path = Path(value)
        if path.is_absolute() or self.cwd is None:
            return path
        return self.cwd / path


def compensation_from_dict(payload: dict[str, object]) -> Compensation:
    """Build a compensation from one side-effect manifest entry."""

    kind_raw = payload.get("kind")
    try:
        kind = CompensationKind(str(kind_raw))
    except ValueError as error:
        raise ValueError(f"Unsupported compensation kind: {kind_raw!r}") from error

    if kind == CompensationKind.DELETE_BRANCH:
        return DeleteBranch(branch=_required_str(payload, "branch"))
    if kind == CompensationKind.RESET_TO_COMMIT:
        return ResetToCommit(commit=_required_str(payload, "commit"))
    if kind == CompensationKind.DELETE_REMOTE_BRANCH:
        remote = payload.get("remote") or "origin"
        return DeleteRemoteBranch(branch=_required_str(payload, "branch"), remote=str(remote))
    if kind == CompensationKind.CLOSE_REVIEW_REQUEST:
        return CloseReviewRequest(reference=_required_str(payload, "reference"))
    if kind == CompensationKind.REMOVE_PATH:
        return RemovePath(path=_required_str(payload, "path"))
    raise ValueError("Callable compensations cannot be loaded from a manifest.")


def read_side_effects(path: Path) -> list[SideEffect]:
    """Load agent-reported side effects in the order they were appended.

    Malformed lines are skipped with a warning so that the remaining entries can still be
    rolled back.
    """

    if not path.exists():
        return []

    effects: list[SideEffect] = []
    for line_no, line in enumerate(path.read_text("utf-8").splitlines(), start=1):
        stripped = line.strip()
        if not stripped:
            continue
        try:
            payload = json.loads(stripped)
            if not isinstance(payload, dict):
                raise TypeError("entry is not a JSON object")
            compensation = compensation_from_dict(payload)
        except (ValueError, TypeError) as error:
            logger.warning("Ignoring side effect %s:%d: %s", path.name, line_no, error)
            continue
        description = payload.get("description")
        effects.append(
            SideEffect(
                compensation=compensation,
                description=(
                    str(description).strip()
                    if isinstance(description, str) and description.strip()
                    else _default_description(compensation)
                ),
                batch_wide=payload.get("scope") == "global",
            ),
        )
    return effects


def _default_description(compensation: Compensation) -> str:
    if isinstance(compensation, DeleteBranch):
        return f"Delete branch {compensation.branch}"
    if isinstance(compensation, ResetToCommit):
        return f"Reset to commit {compensation.commit}"
    if isinstance(compensation, DeleteRemoteBranch):
        return f"Delete remote branch {compensation.remote}/{compensation.branch}"
    if isinstance(compensation, CloseReviewRequest):
        return f"Close review request {compensation.reference}"
    if isinstance(compensation, RemovePath):
        return f"Remove {compensation.path}"
    return compensation.label


def _required_str(payload: dict[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Side effect of kind {payload.get('kind')!r} requires string {key!r}")
    return value.strip()


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
        return
    path.unlink()
