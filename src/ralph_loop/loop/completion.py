"""Completion marker detection."""

from __future__ import annotations

import re

PROMISE_OPEN = "<promise>"
PROMISE_CLOSE = "</promise>"

# A body never spans a second opening tag.
_PROMISE_PATTERN = re.compile(r"<promise>((?:(?!<promise>).)*?)</promise>", flags=re.DOTALL)


def format_promise(promise_text: str) -> str:
    """Render the exact marker a worker must print to finish the loop."""

    return f"{PROMISE_OPEN}{promise_text}{PROMISE_CLOSE}"


def find_promises(output: str) -> list[str]:
    """Return every delimited promise body in *output*, whitespace-trimmed."""

    return [match.group(1).strip() for match in _PROMISE_PATTERN.finditer(output or "")]


def has_completion_marker(output: str, promise_text: str) -> bool:
    """True when *output* contains ``<promise>{promise_text}</promise>``.

    Surrounding whitespace inside the delimiter is ignored; the promise text
    itself must match exactly, so ``<promise>NOT COMPLETE</promise>`` does not
    satisfy ``COMPLETE``.
    """

    expected = promise_text.strip()
    return any(found == expected for found in find_promises(output))
