"""Redaction and clamping for agent output shown in reports and summaries."""

from __future__ import annotations

import re
from collections.abc import Callable

PREVIEW_CHARS = 2_000
_ELLIPSIS = "…"
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")

_Redaction = str | Callable[[re.Match[str]], str]

_SECRET_RULES: tuple[tuple[re.Pattern[str], _Redaction], ...] = (
    (re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"), r"\1 [redacted-token]"),
    (re.compile(r"(?i)\bsk-(?:ant-)?[a-z0-9\-_]{8,}\b"), "[redacted-token]"),
    (re.compile(r"(?i)\bgh[pousr]_[a-z0-9]{20,}\b"), "[redacted-token]"),
    (
        re.compile(
            r"(?i)\b(?:ralph_loop|openai|anthropic|claude|gemini|github|gh)[a-z0-9_]*"
            r"(?:key|token)\b\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=)[^&\s]+"),
        lambda match: f"{match.group(1)}[redacted]",
    ),
)


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)


def redact_secrets(text: str) -> str:
    """Mask API keys and tokens an agent may have echoed to its terminal."""

    for pattern, redaction in _SECRET_RULES:
        text = pattern.sub(redaction, text)
    return text


def sanitize_preview(text: str, *, max_chars: int = PREVIEW_CHARS) -> str:
    """Redacted head of *text*, at most *max_chars* long."""

    return redact_secrets(strip_ansi(text).strip())[:max_chars]


def sanitize_tail(text: str, *, max_chars: int = PREVIEW_CHARS) -> str:
    """Redacted end of *text*; agents print the failure last."""

    cleaned = redact_secrets(strip_ansi(text).strip())
    if len(cleaned) <= max_chars:
        return cleaned
    return _ELLIPSIS + cleaned[-(max_chars - 1) :]


def one_line(text: str, *, max_chars: int = 160) -> str:
    """Collapse whitespace for progress summaries and log lines."""

    collapsed = " ".join(sanitize_preview(text, max_chars=max_chars * 4).split())
    if len(collapsed) <= max_chars:
        return collapsed
    return collapsed[: max_chars - 1] + _ELLIPSIS
