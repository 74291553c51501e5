"""Progress extraction from provisioning script output.

The provisioning script reports progress in two textual forms:
- "[PROGRESS:42]" anywhere in a line
- "[42%] Creating disk" at the start of a line

Every line is logged whether or not it carries a marker.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

PROGRESS_MARKER = re.compile(r"\[PROGRESS:(\d{1,3})\]")
PERCENT_PREFIX = re.compile(r"^\[(\d{1,3})%\]\s*(.*)")


@dataclass(frozen=True)
class ProgressEvent:
    percent: int
    message: str


def parse_progress(line: str) -> ProgressEvent | None:
    """Extract a progress event from a line, if it carries a valid marker."""
    match = PERCENT_PREFIX.match(line)
    if match:
        percent = int(match.group(1))
        if 0 <= percent <= 100:
            return ProgressEvent(percent, match.group(2))
        return None

    match = PROGRESS_MARKER.search(line)
    if match:
        percent = int(match.group(1))
        if 0 <= percent <= 100:
            return ProgressEvent(percent, line)
    return None


class ProgressParser:
    """Line callback that splits output into log lines and progress events.

    Args:
        on_log: Receives (line, is_error) for every line
        on_progress: Receives each ProgressEvent parsed from stdout
    """

    def __init__(
        self,
        on_log: Callable[[str, bool], None],
        on_progress: Callable[[ProgressEvent], None],
    ):
        self.on_log = on_log
        self.on_progress = on_progress

    def __call__(self, line: str, is_error: bool = False) -> None:
        if not is_error:
            event = parse_progress(line)
            if event is not None:
                self.on_progress(event)
        self.on_log(line, is_error)
