"""Deterministic local agent for loop integration tests.

Behaviour per iteration comes from a JSON script::

    {
      "default": {"stdout": "working"},
      "1": {"exit_code": 1, "stderr": "boom"},
      "2": {"promise": true},
      "3": {"stdout": "partial", "sleep": 30}
    }

Keys of an action: ``stdout``, ``stderr``, ``exit_code`` (default 0),
``sleep`` seconds (after printing), and ``promise`` (print the completion
marker read from the iteration context).
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import Any

from ralph_loop.loop.completion import format_promise
from ralph_loop.loop.contracts import read_context


def main(argv: list[str] | None = None) -> int:
    """Replay the scripted action for the current iteration."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--context-file", required=True)
    parser.add_argument("--prompt-file", required=False)
    parser.add_argument("--script", default=os.getenv("RALPH_LOOP_ECHO_SCRIPT"))
    args, _ = parser.parse_known_args(argv)

    context = read_context(Path(args.context_file))
    if args.prompt_file and not Path(args.prompt_file).is_file():
        print(f"prompt file missing: {args.prompt_file}", file=sys.stderr)
        return 2

    action = _resolve_action(script_path=args.script, iteration=context.iteration)
    print(f"echo agent iteration={context.iteration} progress_entries={len(context.recent_progress)}")
    stdout_text = str(action.get("stdout", ""))
    if stdout_text:
        print(stdout_text)
    if action.get("promise"):
        print(format_promise(context.promise_marker))
    stderr_text = str(action.get("stderr", ""))
    if stderr_text:
        print(stderr_text, file=sys.stderr)
    sys.stdout.flush()
    sys.stderr.flush()

    sleep_seconds = float(action.get("sleep", 0))
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)
    return int(action.get("exit_code", 0))


def _resolve_action(*, script_path: str | None, iteration: int) -> dict[str, Any]:
    if not script_path:
        return {}
    payload = json.loads(Path(script_path).read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {script_path}")
    action = payload.get(str(iteration), payload.get("default", {}))
    if not isinstance(action, dict):
        raise TypeError(f"Script action for iteration {iteration} must be an object")
    return action


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
