from __future__ import annotations

from collections import deque
from collections.abc import Callable
from datetime import datetime

from flowwatch.detectors.rules import RuleEngine, RuleMatch
from flowwatch.models import Task, utcnow
from flowwatch.state.queue import QueueManager

SOURCE = "log-monitor"


class OutputMonitor:
    """Feeds raw tool and test output through the rule engine."""

    def __init__(
        self,
        queue: QueueManager,
        engine: RuleEngine | None = None,
        *,
        max_buffer_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.queue = queue
        self.engine = engine or RuleEngine()
        self.max_buffer_size = max_buffer_size
        self.clock = clock
        self._buffer: deque[str] = deque(maxlen=max_buffer_size)
        self.last_activity_time = clock()
        self._stuck_reported = False

    def process_line(self, line: str) -> Task | None:
        trimmed = line.strip()
        if not trimmed:
            return None
        self.last_activity_time = self.clock()
        self._stuck_reported = False
        self._buffer.append(trimmed)
        match = self.engine.analyze(trimmed)
        if match is None:
            return None
        return self._queue_match(match)

    def recent_output(self, count: int) -> str:
        if count <= 0:
            return ""
        return "\n".join(list(self._buffer)[-count:])

    def is_stuck(self, timeout_seconds: float) -> bool:
        elapsed = (self.clock() - self.last_activity_time).total_seconds()
        return elapsed >= timeout_seconds

    def check_and_report_stuck(self, timeout_seconds: float) -> Task | None:
        """Queue one stall task per silent period."""
        if self._stuck_reported or not self.is_stuck(timeout_seconds):
            return None
        self._stuck_reported = True
        return self.queue.add_task(
            priority="high",
            source=SOURCE,
            anomaly_type="agent_stuck",
            prompt=(
                f"Agent appears stuck - no output for {int(timeout_seconds)}+ seconds. "
                "Investigate if process is hung or waiting for input."
            ),
            suggested_agent="debugger",
            context={"log_excerpt": self.recent_output(10)},
        )

    def analyze_aggregated(self) -> Task | None:
        """Run the rules over the whole buffer to catch multi-line patterns."""
        aggregated = self.recent_output(self.max_buffer_size)
        if not aggregated:
            return None
        match = self.engine.analyze(aggregated)
        if match is None:
            return None
        return self._queue_match(match)

    def reset(self) -> None:
        self._buffer.clear()
        self.last_activity_time = self.clock()
        self._stuck_reported = False

    def _queue_match(self, match: RuleMatch) -> Task:
        return self.queue.add_task(
            priority=match.priority,
            source=SOURCE,
            anomaly_type=match.anomaly_type,
            prompt=match.prompt,
            suggested_agent=match.suggested_agent,
            context=dict(match.context),
        )
