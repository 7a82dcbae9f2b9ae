"""
Progress Tracker - Convergence tool output -> percentage events

Indicators are derived once per transaction from the run list:

    1%      start marker line (tool process started)
    ...     one per non-lib entry, evenly spaced over the first 80 points,
            matched against the tool's "(unit::recipe line N)" log format
    100%    completion marker line ("Run complete")

The last 20 points are left for the closing validation step. With no non-lib
entries only the start and completion indicators exist.

Lines are fed synchronously while the subprocess runs. Indicators are
consumed strictly forward; a line matching a later indicator skips the ones
before it.
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import List, Optional, Pattern, Protocol

from .models import ChangeRequest, ProgressEvent
from .runlist import RunList, RunListEntry

logger = logging.getLogger(__name__)

START_PERCENT = 1
COMPLETE_PERCENT = 100
RECIPE_SPAN_PERCENT = 80


class StatusChannel(Protocol):
    """Receives progress for a request (status queue, API, log)."""

    def update(self, request: ChangeRequest, event: ProgressEvent, markers: List[ProgressEvent]) -> None:
        ...


class LoggingStatusChannel:
    """Status channel that only logs."""

    def update(self, request, event, markers):
        logger.info(f"{request.operation.value} {request.unit}: {event.percent}% ({event.unit})")


class RecordingStatusChannel:
    """Keeps every event it receives. Thread-safe."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[ProgressEvent] = []
        self.latest_markers: List[ProgressEvent] = []

    def update(self, request, event, markers):
        with self._lock:
            self.events.append(event)
            self.latest_markers = list(markers)

    def percents(self) -> List[int]:
        with self._lock:
            return [e.percent for e in self.events]


@dataclass(frozen=True)
class ProgressIndicator:
    """(pattern, percentage) pair, consumed in order."""
    unit: str
    percent: int
    pattern: Pattern

    def matches(self, line: str) -> bool:
        return self.pattern.search(line) is not None


def recipe_pattern(entry: RunListEntry) -> Pattern:
    """Pattern for the tool's per-recipe log line: (unit::recipe line N)."""
    return re.compile(r"\(" + re.escape(f"{entry.unit}::{entry.category}") + r" line \d+\)")


def build_indicators(
    run_list: RunList,
    unit: str,
    start_marker: str,
    complete_marker: str
) -> List[ProgressIndicator]:
    """
    Build the ordered indicator list for a run list.

    Args:
        run_list: Run list the tool will execute
        unit: Unit the request is about (used for start/complete events)
        start_marker: Literal text of the tool-started line
        complete_marker: Literal text of the run-complete line

    Returns:
        Indicators with non-decreasing percentages
    """
    indicators = [ProgressIndicator(unit, START_PERCENT, re.compile(re.escape(start_marker)))]

    recipes = run_list.non_lib_entries()
    total = len(recipes)
    for i, entry in enumerate(recipes):
        percent = max(START_PERCENT, (RECIPE_SPAN_PERCENT * (i + 1)) // total)
        indicators.append(ProgressIndicator(entry.unit, percent, recipe_pattern(entry)))

    indicators.append(ProgressIndicator(unit, COMPLETE_PERCENT, re.compile(re.escape(complete_marker))))
    return indicators


class ProgressTracker:
    """Feeds output lines through the indicators and reports matches."""

    def __init__(
        self,
        indicators: List[ProgressIndicator],
        request: ChangeRequest,
        channel: Optional[StatusChannel] = None
    ):
        self.indicators = indicators
        self.request = request
        self.channel = channel
        self.markers: List[ProgressEvent] = []
        self._next = 0

    @classmethod
    def for_run_list(
        cls,
        run_list: RunList,
        request: ChangeRequest,
        channel: Optional[StatusChannel] = None,
        start_marker: str = "Starting Chef Client",
        complete_marker: str = "Run complete"
    ) -> "ProgressTracker":
        indicators = build_indicators(run_list, request.unit, start_marker, complete_marker)
        return cls(indicators, request, channel)

    @property
    def percent(self) -> int:
        return self.markers[-1].percent if self.markers else 0

    @property
    def finished(self) -> bool:
        return self._next >= len(self.indicators)

    def feed(self, line: str) -> Optional[ProgressEvent]:
        """Match one output line; returns the emitted event, if any."""
        for i in range(self._next, len(self.indicators)):
            indicator = self.indicators[i]
            if indicator.matches(line):
                self._next = i + 1
                event = ProgressEvent(
                    unit=indicator.unit,
                    percent=indicator.percent,
                    pattern=indicator.pattern.pattern,
                    line=line,
                )
                self.markers.append(event)
                self._publish(event)
                return event
        return None

    __call__ = feed

    def _publish(self, event: ProgressEvent):
        if self.channel is None:
            return
        try:
            self.channel.update(self.request, event, list(self.markers))
        except Exception as e:
            logger.error(f"Error updating progress for {self.request.unit}: {e}", exc_info=True)
