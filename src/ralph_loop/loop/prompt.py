"""Prompt construction for one stateless worker invocation."""

from __future__ import annotations

from ralph_loop.loop.completion import PROMISE_CLOSE, PROMISE_OPEN
from ralph_loop.loop.contracts import IterationContext


def build_iteration_prompt(*, spec_text: str, context: IterationContext) -> str:
    """Wrap the task spec with re-anchoring steps and the completion contract."""

    failure_note = ""
    if context.last_failure_reason:
        failure_note = (
            f"\nThe previous iteration failed: {context.last_failure_reason}\n"
            f"Its full output is in {context.evidence_dir}.\n"
        )

    return (
        f"{spec_text.rstrip()}\n"
        f"\n"
        f"---\n"
        f"You are iteration {context.iteration} of at most {context.max_iterations}. "
        f"You have no memory of earlier iterations.\n"
        f"{failure_note}"
        f"\n"
        f"Before doing any work, re-anchor:\n"
        f"1. Read the iteration context at {context.workdir}/context.json.\n"
        f"2. Read the progress log at {context.progress_log_path} to see what earlier "
        f"iterations did.\n"
        f"3. Inspect the evidence archive at {context.evidence_dir} when you need the full "
        f"output of an earlier iteration.\n"
        f"4. Inspect the working tree and version-control history for the current state "
        f"of the work.\n"
        f"\n"
        f"Then make one focused step of progress toward the task above and leave the "
        f"workspace in a consistent state.\n"
        f"\n"
        f"Do not edit files under {context.task_root}; the controller owns them.\n"
        f"\n"
        f"Only when the whole task is finished and verified, print the completion "
        f"marker on its own line: the tag {PROMISE_OPEN}, then {context.promise_marker}, "
        f"then the tag {PROMISE_CLOSE}, with nothing in between.\n"
        f"Never print that marker otherwise.\n"
    )
