"""Deterministic failure classification for block reports."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from ralph_loop.loop.models import EvidenceRecord, ExitDisposition

FAILURE_CLASSIFIER_VERSION = 1


class FailureCategory(str, Enum):
    """Normalized cause of one failed iteration."""

    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"
    COMMAND_NOT_FOUND = "command_not_found"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class FailurePattern(str, Enum):
    """Shape of a run of consecutive failures."""

    REPEATED_SAME_ERROR = "repeated_same_error"
    DIVERGENT_ERRORS = "divergent_errors"


_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
    "try again later",
)
_COMMAND_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "command not found",
    "worker command not found",
)

_VOLATILE_TOKENS = re.compile(
    r"0x[0-9a-f]+|[0-9a-f]{8,}|\d+(?:\.\d+)?|/[\w./-]+",
    flags=re.IGNORECASE,
)

_REMEDIATION: dict[FailureCategory, str] = {
    FailureCategory.TIMEOUT: (
        "Iterations are running out of time. Split the task spec into smaller steps "
        "or raise the per-iteration timeout."
    ),
    FailureCategory.INTERRUPTED: (
        "Iterations were interrupted by an operator signal. Resume with `ralph-loop reset` "
        "then `ralph-loop run` when ready."
    ),
    FailureCategory.COMMAND_NOT_FOUND: (
        "The worker command could not be started. Check RALPH_LOOP_COMMAND_TEMPLATE and PATH."
    ),
    FailureCategory.BILLING_OR_QUOTA: (
        "The agent backend reports a quota or billing problem. Resolve the account limit "
        "before resuming."
    ),
    FailureCategory.ACCESS_OR_AUTH: (
        "The agent backend rejected credentials. Re-authenticate the agent CLI before resuming."
    ),
    FailureCategory.RATE_LIMITED: (
        "The agent backend is rate limiting requests. Wait for the limit window to pass "
        "before resuming."
    ),
    FailureCategory.TRANSIENT: (
        "Failures look transient (network or service availability). Resuming is usually safe."
    ),
    FailureCategory.UNKNOWN: (
        "Inspect the evidence excerpts below, fix the underlying problem in the workspace "
        "or the task spec, then resume."
    ),
}


@dataclass(slots=True)
class FailureClassification:
    """Category plus the rule and pattern that produced it."""

    category: FailureCategory
    matched_rule: str
    matched_pattern: str | None


@dataclass(slots=True)
class FailurePatternAnalysis:
    """Pattern classification over the most recent failed iterations."""

    pattern: FailurePattern
    signatures: list[str]
    categories: list[FailureCategory]

    @property
    def dominant_category(self) -> FailureCategory:
        if not self.categories:
            return FailureCategory.UNKNOWN
        return max(set(self.categories), key=lambda category: (self.categories.count(category), category.value))


def classify_failure(record: EvidenceRecord) -> FailureClassification:
    """Classify one failed evidence record into a failure category."""

    reason = (record.failure_reason or "").lower()
    if record.exit_disposition == ExitDisposition.TIMEOUT:
        if reason.startswith("interrupted"):
            return FailureClassification(FailureCategory.INTERRUPTED, "interrupted", None)
        return FailureClassification(FailureCategory.TIMEOUT, "timeout", None)

    haystack = _normalize_text(record)
    for category, rule, patterns in (
        (FailureCategory.COMMAND_NOT_FOUND, "command_not_found", _COMMAND_NOT_FOUND_PATTERNS),
        (FailureCategory.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureCategory.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureCategory.RATE_LIMITED, "rate_limited", _RATE_LIMIT_PATTERNS),
        (FailureCategory.TRANSIENT, "transient", _TRANSIENT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(category, rule, pattern)

    if record.exit_code in (137, 143):
        return FailureClassification(FailureCategory.TRANSIENT, "transient_exit_code", None)

    return FailureClassification(FailureCategory.UNKNOWN, "fallback_unknown", None)


def failure_signature(record: EvidenceRecord) -> str:
    """Reduce a failure to a comparable signature.

    The last non-empty line of stderr (or stdout when stderr is empty) is
    lowercased with numbers, hashes and paths masked, prefixed by disposition
    and exit code.
    """

    source = record.stderr_output if record.stderr_output.strip() else record.raw_output
    last_line = ""
    for line in reversed(source.splitlines()):
        if line.strip():
            last_line = line.strip()
            break
    if not last_line:
        last_line = record.failure_reason or ""
    masked = _VOLATILE_TOKENS.sub("#", last_line.lower())
    masked = " ".join(masked.split())
    return f"{record.exit_disposition.value}:{record.exit_code}:{masked}"


def analyze_failures(records: list[EvidenceRecord]) -> FailurePatternAnalysis:
    """Decide between "repeated same error" and "divergent errors"."""

    signatures = [failure_signature(record) for record in records]
    categories = [classify_failure(record).category for record in records]
    pattern = (
        FailurePattern.REPEATED_SAME_ERROR
        if len(set(signatures)) <= 1
        else FailurePattern.DIVERGENT_ERRORS
    )
    return FailurePatternAnalysis(pattern=pattern, signatures=signatures, categories=categories)


def remediation_for(category: FailureCategory) -> str:
    return _REMEDIATION[category]


def _normalize_text(record: EvidenceRecord) -> str:
    return f"{record.failure_reason or ''}\n{record.stderr_output}\n{record.raw_output}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
