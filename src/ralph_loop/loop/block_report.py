"""Block report synthesis for loops that exhausted their failure budget."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ralph_loop.loop.failure_classifier import (
    FailurePattern,
    analyze_failures,
    classify_failure,
    remediation_for,
)
from ralph_loop.loop.models import EvidenceRecord, ExitDisposition, LoopState
from ralph_loop.sanitization import sanitize_tail

MAX_EXCERPT_RECORDS = 3
EXCERPT_CHARS = 1_200

_PATTERN_DESCRIPTIONS: dict[FailurePattern, str] = {
    FailurePattern.REPEATED_SAME_ERROR: (
        "The same error repeated across consecutive iterations. The worker is stuck on one "
        "problem it cannot resolve on its own."
    ),
    FailurePattern.DIVERGENT_ERRORS: (
        "Consecutive iterations failed with different errors. The worker is making changes "
        "but not converging; the task may be underspecified or too large for one iteration."
    ),
}


@dataclass(slots=True)
class BlockReport:
    """Advisory summary written next to the loop state when it blocks."""

    iteration: int
    consecutive_failures: int
    max_attempts: int
    created_at: datetime
    records: list[EvidenceRecord]

    def render(self) -> str:
        analysis = analyze_failures(self.records)
        dominant = analysis.dominant_category
        lines = [
            "# Loop blocked",
            "",
            f"- Blocked at iteration: {self.iteration}",
            f"- Consecutive failures: {self.consecutive_failures} (budget {self.max_attempts})",
            f"- Created at: {self.created_at.isoformat()}",
            f"- Failure pattern: {analysis.pattern.value}",
            f"- Dominant category: {dominant.value}",
            "",
            "## Diagnosis",
            "",
            _PATTERN_DESCRIPTIONS[analysis.pattern],
            "",
            "## Remediation",
            "",
            remediation_for(dominant),
            "",
            "When the cause is fixed, run `ralph-loop reset` to clear this report and the "
            "attempt counter. The loop resumes from its current iteration.",
            "",
            "## Recent evidence",
        ]
        for record in self.records:
            classification = classify_failure(record)
            source = record.stderr_output if record.stderr_output.strip() else record.raw_output
            excerpt = sanitize_tail(source, max_chars=EXCERPT_CHARS) or "(no output captured)"
            lines.extend(
                [
                    "",
                    f"### Iteration {record.iteration}",
                    "",
                    f"- Disposition: {record.exit_disposition.value}",
                    f"- Exit code: {record.exit_code if record.exit_code is not None else 'n/a'}",
                    f"- Reason: {record.failure_reason or 'n/a'}",
                    f"- Category: {classification.category.value}",
                    "",
                    "```text",
                    excerpt.replace("```", "'''"),
                    "```",
                ],
            )
        return "\n".join(lines) + "\n"


def build_block_report(
    *,
    state: LoopState,
    records: list[EvidenceRecord],
    created_at: datetime,
) -> BlockReport:
    """Build a report from *state* and the newest failed evidence records."""

    failed = [record for record in records if record.exit_disposition != ExitDisposition.SUCCESS]
    excerpt_count = max(1, min(MAX_EXCERPT_RECORDS, state.attempts))
    return BlockReport(
        iteration=state.iteration,
        consecutive_failures=state.attempts,
        max_attempts=state.options.max_attempts,
        created_at=created_at,
        records=failed[-excerpt_count:],
    )
