"""Workdir materialization helpers for file-based unit execution."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class MaterializedUnit:
    """Materialized per-unit file layout."""

    workdir: Path
    prompt_path: Path
    stdout_path: Path
    stderr_path: Path
    side_effects_path: Path
    spec_staging_path: Path
    spec_input_path: Path
    manifest_path: Path


class UnitWorkdirManager:
    """Creates deterministic per-unit directory layout."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def materialize(
        self,
        *,
        unit_id: str,
        instructions: str,
        specification: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> MaterializedUnit:
        materialized = self.locate(unit_id)
        for directory in (
            materialized.prompt_path.parent,
            materialized.stdout_path.parent,
            materialized.manifest_path.parent,
        ):
            directory.mkdir(parents=True, exist_ok=True)
        # Leftovers from an earlier run of the same unit would be replayed as this run's effects.
        for stale in (materialized.side_effects_path, materialized.spec_staging_path):
            stale.unlink(missing_ok=True)

        materialized.prompt_path.write_text(instructions, "utf-8")
        if specification is not None:
            materialized.spec_input_path.write_text(specification, "utf-8")
        else:
            materialized.spec_input_path.unlink(missing_ok=True)
        manifest = {
            "unit_id": unit_id,
            "created_at": datetime.now(tz=UTC).isoformat(),
            "paths": {
                "prompt": str(materialized.prompt_path),
                "stdout": str(materialized.stdout_path),
                "stderr": str(materialized.stderr_path),
                "side_effects": str(materialized.side_effects_path),
                "spec_staging": str(materialized.spec_staging_path),
            },
            **(metadata or {}),
        }
        materialized.manifest_path.write_text(
            json.dumps(manifest, ensure_ascii=False, indent=2, default=str),
            "utf-8",
        )
        return materialized

    def locate(self, unit_id: str) -> MaterializedUnit:
        """Paths for a unit without creating anything."""

        base_dir = self.root_dir / safe_dir_name(unit_id)
        return MaterializedUnit(
            workdir=base_dir,
            prompt_path=base_dir / "input" / "prompt.md",
            stdout_path=base_dir / "output" / "agent_stdout.log",
            stderr_path=base_dir / "output" / "agent_stderr.log",
            side_effects_path=base_dir / "output" / "side_effects.jsonl",
            spec_staging_path=base_dir / "output" / "specification.txt",
            spec_input_path=base_dir / "input" / "specification.txt",
            manifest_path=base_dir / "meta" / "unit_manifest.json",
        )


def safe_dir_name(unit_id: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", unit_id).strip("._")
    return cleaned or "unit"
