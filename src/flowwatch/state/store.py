from __future__ import annotations

import json
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

from filelock import FileLock, Timeout

from flowwatch.observability import get_logger

logger = get_logger(__name__)


class FlowwatchStateError(RuntimeError):
    """Raised when durable-state operations fail."""


class DocumentStore(Protocol):
    """Storage port for one durable JSON document."""

    def load(self) -> Any | None: ...

    def save(self, payload: Any) -> None: ...

    def lock(self) -> Any: ...


class JsonDocumentStore:
    """A JSON document rewritten whole and atomically on every save."""

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 5.0) -> None:
        self.path = path
        self.lock_timeout_seconds = lock_timeout_seconds
        self._file_lock = FileLock(str(path) + ".lock", timeout=lock_timeout_seconds)

    def load(self) -> Any | None:
        """Return the parsed document, or None when it is absent or corrupt."""
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise FlowwatchStateError(f"Cannot read {self.path}: {exc}") from exc
        if not content.strip():
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt document %s", self.path)
            return None

    def save(self, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(serialized)
                os.replace(temp_name, self.path)
            except BaseException:
                try:
                    os.unlink(temp_name)
                except OSError:
                    pass
                raise
        except OSError as exc:
            raise FlowwatchStateError(f"Cannot write {self.path}: {exc}") from exc

    @contextmanager
    def lock(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._file_lock:
                yield
        except Timeout as exc:
            raise FlowwatchStateError(
                f"Timed out waiting for lock on {self.path} after {self.lock_timeout_seconds:.1f}s."
            ) from exc


class MemoryDocumentStore:
    """In-memory document store for tests and embedding without a disk."""

    def __init__(self, payload: Any | None = None) -> None:
        self._payload = json.loads(json.dumps(payload)) if payload is not None else None
        self._lock = threading.RLock()
        self.save_count = 0

    def load(self) -> Any | None:
        if self._payload is None:
            return None
        return json.loads(json.dumps(self._payload))

    def save(self, payload: Any) -> None:
        self._payload = json.loads(json.dumps(payload))
        self.save_count += 1

    @contextmanager
    def lock(self) -> Iterator[None]:
        with self._lock:
            yield
