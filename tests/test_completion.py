from __future__ import annotations

import allure
import pytest

from ralph_loop.loop.completion import find_promises, format_promise, has_completion_marker

pytestmark = [
    allure.epic("Loop Runtime"),
    allure.feature("Completion Marker"),
]


@pytest.mark.parametrize(
    "output",
    [
        "<promise>COMPLETE</promise>",
        "all tests pass\n<promise>COMPLETE</promise>\n",
        "<promise>\n  COMPLETE\n</promise>",
        "<promise>NOT YET</promise> then later <promise>COMPLETE</promise>",
        "I will print <promise> when finished.\n<promise>COMPLETE</promise>\n",
    ],
)
def test_marker_detected_inside_delimiter(output: str) -> None:
    assert has_completion_marker(output, "COMPLETE")


@pytest.mark.parametrize(
    "output",
    [
        "",
        "COMPLETE",
        "the task is COMPLETE",
        "<promise>NOT COMPLETE</promise>",
        "<promise>complete</promise>",
        "<promise>COMPLETE",
        "the tag <promise>, then COMPLETE, then the tag </promise>",
    ],
)
def test_marker_not_detected_without_exact_delimited_text(output: str) -> None:
    assert not has_completion_marker(output, "COMPLETE")


def test_format_promise_round_trips_through_detection() -> None:
    marker = format_promise("ALL GREEN")

    assert marker == "<promise>ALL GREEN</promise>"
    assert find_promises(f"done\n{marker}") == ["ALL GREEN"]
    assert has_completion_marker(marker, "ALL GREEN")
