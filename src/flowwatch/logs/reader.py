from __future__ import annotations

import json
import threading
from collections.abc import Callable
from pathlib import Path

from flowwatch.models import LogEntry
from flowwatch.observability import get_logger
from flowwatch.scheduler import ScheduledJob, Scheduler, ThreadScheduler

logger = get_logger(__name__)

EntryCallback = Callable[[LogEntry], None]


def parse_line(line: str) -> LogEntry | None:
    """Parse one log line; mirror lines, blanks and malformed JSON give None."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    try:
        raw = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(raw, dict):
        return None
    try:
        return LogEntry.from_dict(raw)
    except ValueError:
        return None


def parse_content(content: str) -> list[LogEntry]:
    entries: list[LogEntry] = []
    for line in content.splitlines():
        entry = parse_line(line)
        if entry is not None:
            entries.append(entry)
    return entries


class LogReader:
    """Incremental tail over the append-only workflow log."""

    def __init__(
        self,
        log_path: Path,
        *,
        scheduler: Scheduler | None = None,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        self.log_path = log_path
        self.scheduler = scheduler or ThreadScheduler()
        self.poll_interval_seconds = poll_interval_seconds
        self._callback: EntryCallback | None = None
        self._job: ScheduledJob | None = None
        self._position = 0
        self._pending = b""
        self._resume_position: int | None = None
        self._lock = threading.Lock()

    @property
    def is_tailing(self) -> bool:
        return self._job is not None

    def read_all(self) -> list[LogEntry]:
        try:
            content = self.log_path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.debug("Cannot read %s: %s", self.log_path, exc)
            return []
        return parse_content(content)

    def replay(self) -> list[LogEntry]:
        """Read the whole log and make the next ``start_tailing`` resume where this read ended."""
        try:
            data = self.log_path.read_bytes()
        except FileNotFoundError:
            data = b""
        except OSError as exc:
            logger.debug("Cannot read %s: %s", self.log_path, exc)
            return []
        complete, newline, remainder = data.rpartition(b"\n")
        entries = parse_content((complete + newline).decode("utf-8", errors="replace"))
        consumed = len(complete) + len(newline)
        # An unterminated last line counts only once it parses as a whole entry.
        tail = parse_line(remainder.decode("utf-8", errors="replace"))
        if tail is not None:
            entries.append(tail)
            consumed = len(data)
        with self._lock:
            self._resume_position = consumed
        return entries

    def query_last(
        self,
        *,
        command: str | None = None,
        event: str | None = None,
        phase: str | None = None,
    ) -> LogEntry | None:
        for entry in reversed(self.read_all()):
            if command and entry.command != command:
                continue
            if event and entry.event != event:
                continue
            if phase and entry.phase != phase:
                continue
            return entry
        return None

    def start_tailing(self, on_entry: EntryCallback) -> None:
        with self._lock:
            if self._job is not None:
                self._callback = on_entry
                return
            self._callback = on_entry
            if self._resume_position is not None:
                self._position = self._resume_position
                self._resume_position = None
            else:
                self._position = self._current_size()
            self._pending = b""
        self._job = self.scheduler.every(
            self.poll_interval_seconds, self.poll, name="log-tail"
        )

    def stop_tailing(self) -> None:
        job = self._job
        self._job = None
        if job is not None:
            job.cancel()
        with self._lock:
            self._callback = None

    def poll(self) -> int:
        """Read newly appended complete lines and deliver them. Returns the count delivered."""
        with self._lock:
            callback = self._callback
            if callback is None:
                return 0
            chunk = self._read_new_bytes()
            if not chunk:
                return 0
            data = self._pending + chunk
            complete, _, remainder = data.rpartition(b"\n")
            self._pending = remainder
            if not complete:
                return 0
            entries = parse_content(complete.decode("utf-8", errors="replace"))
        delivered = 0
        for entry in entries:
            try:
                callback(entry)
            except Exception:
                logger.warning("Log entry handler failed for %s", entry.event, exc_info=True)
            delivered += 1
        return delivered

    def _current_size(self) -> int:
        try:
            return self.log_path.stat().st_size
        except OSError:
            return 0

    def _read_new_bytes(self) -> bytes:
        try:
            size = self.log_path.stat().st_size
        except FileNotFoundError:
            logger.debug("Log file %s not present yet", self.log_path)
            return b""
        except OSError as exc:
            logger.debug("Cannot stat %s: %s", self.log_path, exc)
            return b""
        if size < self._position:
            logger.debug("Log file %s truncated; rewinding", self.log_path)
            self._position = 0
            self._pending = b""
        if size == self._position:
            return b""
        try:
            with self.log_path.open("rb") as handle:
                handle.seek(self._position)
                chunk = handle.read(size - self._position)
        except OSError as exc:
            logger.debug("Cannot read %s: %s", self.log_path, exc)
            return b""
        self._position += len(chunk)
        return chunk
