"""Local demo agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Simulate an implementation run with configurable outcome."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", default=None)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument(
        "--side-effect",
        action="append",
        default=[],
        help="JSON object appended to the side-effect manifest. Can be repeated.",
    )
    parser.add_argument(
        "--stage-spec",
        default=None,
        help="Text written to the specification staging file.",
    )
    parser.add_argument("--print-url", default=None)
    parser.add_argument("prompt", nargs="?")
    args = parser.parse_args(argv)

    text = Path(args.prompt_file).read_text("utf-8") if args.prompt_file else (args.prompt or "")
    print(f"echo_agent unit={os.getenv('PR_BATCH_UNIT_ID', '?')} prompt_chars={len(text)}")

    side_effects_path = os.getenv("PR_BATCH_SIDE_EFFECTS_PATH")
    if side_effects_path and args.side_effect:
        path = Path(side_effects_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            for raw in args.side_effect:
                handle.write(json.dumps(json.loads(raw)) + "\n")

    staging_path = os.getenv("PR_BATCH_SPEC_STAGING_PATH")
    if staging_path and args.stage_spec is not None:
        Path(staging_path).parent.mkdir(parents=True, exist_ok=True)
        Path(staging_path).write_text(args.stage_spec, "utf-8")

    if args.sleep > 0:
        time.sleep(args.sleep)
    if args.print_url:
        print(f"Created pull request: {args.print_url}")
    sys.stdout.flush()
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
