from __future__ import annotations

import secrets
import string
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from flowwatch.models import (
    PRIORITY_ORDER,
    Priority,
    Task,
    format_timestamp,
    utcnow,
)
from flowwatch.observability import get_logger
from flowwatch.state.store import DocumentStore, FlowwatchStateError, JsonDocumentStore

logger = get_logger(__name__)

QUEUE_VERSION = "1.0"
DEFAULT_MAX_SIZE = 50
ArchiveReason = Literal["dropped", "failed"]

_ID_ALPHABET = string.digits + string.ascii_lowercase
_UPDATABLE_FIELDS = {"status", "attempts", "error", "completed_at", "report_path", "priority"}
_STATUSES = ("pending", "executing", "completed", "failed")


class TaskNotFoundError(FlowwatchStateError, KeyError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task not found: {self.task_id}"


def _sort_key(task: Task) -> tuple[int, str]:
    return PRIORITY_ORDER.get(task.priority, len(PRIORITY_ORDER)), task.created_at


def _eviction_key(task: Task) -> tuple[int, str]:
    return -PRIORITY_ORDER.get(task.priority, len(PRIORITY_ORDER)), task.created_at


class QueueManager:
    """Durable, bounded, priority-ordered backlog of corrective tasks."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        expired_store: DocumentStore,
        failed_store: DocumentStore,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.store = store
        self.expired_store = expired_store
        self.failed_store = failed_store
        self.max_size = max_size
        self.clock = clock
        self._mutex = threading.RLock()
        self._tasks: list[Task] = []
        self._reload()

    @classmethod
    def in_directory(
        cls,
        home: Path,
        *,
        queue_file: str = "queue.json",
        expired_file: str = "queue-expired.json",
        failed_file: str = "queue-failed.json",
        max_size: int = DEFAULT_MAX_SIZE,
        lock_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> QueueManager:
        return cls(
            JsonDocumentStore(home / queue_file, lock_timeout_seconds=lock_timeout_seconds),
            expired_store=JsonDocumentStore(
                home / expired_file, lock_timeout_seconds=lock_timeout_seconds
            ),
            failed_store=JsonDocumentStore(
                home / failed_file, lock_timeout_seconds=lock_timeout_seconds
            ),
            max_size=max_size,
            clock=clock,
        )

    # Reads

    def get_tasks(self) -> list[Task]:
        with self._mutex:
            self._reload()
            return list(self._tasks)

    def get_task(self, task_id: str) -> Task:
        with self._mutex:
            self._reload()
            return self._find(task_id)

    def get_next_task(self) -> Task | None:
        with self._mutex:
            self._reload()
            pending = [task for task in self._tasks if task.status == "pending"]
        if not pending:
            return None
        return min(pending, key=_sort_key)

    def get_pending_count(self) -> int:
        with self._mutex:
            self._reload()
            return sum(1 for task in self._tasks if task.status == "pending")

    def get_count_by_priority(self) -> dict[Priority, int]:
        counts: dict[Priority, int] = {"critical": 0, "high": 0, "medium": 0, "low": 0}
        with self._mutex:
            self._reload()
            for task in self._tasks:
                if task.status == "pending":
                    counts[task.priority] += 1
        return counts

    def get_archived(self, reason: ArchiveReason) -> list[dict[str, Any]]:
        store = self.expired_store if reason == "dropped" else self.failed_store
        document = store.load()
        if not isinstance(document, dict) or not isinstance(document.get("tasks"), list):
            return []
        return [item for item in document["tasks"] if isinstance(item, dict)]

    # Mutations

    def add_task(
        self,
        *,
        priority: Priority,
        source: str,
        anomaly_type: str,
        prompt: str,
        suggested_agent: str,
        context: dict[str, Any] | None = None,
        report_path: str | None = None,
    ) -> Task:
        if priority not in PRIORITY_ORDER:
            raise ValueError(f"Unsupported priority: {priority}")
        with self._mutex, self.store.lock():
            self._reload()
            task = Task(
                id=self._new_id(),
                created_at=format_timestamp(self.clock()),
                priority=priority,
                source=source,
                anomaly_type=anomaly_type,
                prompt=prompt,
                suggested_agent=suggested_agent,
                context=dict(context or {}),
                report_path=report_path,
            )
            self._tasks.append(task)
            self._tasks.sort(key=_sort_key)
            self._enforce_capacity()
            self._persist()
        logger.debug("Queued %s task", task.priority, extra={"task_id": task.id})
        return task

    def update_task(self, task_id: str, **changes: Any) -> Task:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
        if "status" in changes and changes["status"] not in _STATUSES:
            raise ValueError(f"Unsupported status: {changes['status']}")
        with self._mutex, self.store.lock():
            self._reload()
            task = self._find(task_id)
            if changes.get("status") == "completed" and task.status != "completed":
                changes.setdefault("completed_at", format_timestamp(self.clock()))
            for key, value in changes.items():
                setattr(task, key, value)
            self._tasks.sort(key=_sort_key)
            self._persist()
        return task

    def remove_task(self, task_id: str) -> bool:
        with self._mutex, self.store.lock():
            self._reload()
            remaining = [task for task in self._tasks if task.id != task_id]
            removed = len(remaining) != len(self._tasks)
            self._tasks = remaining
            self._persist()
        return removed

    def move_to_failed(self, task_id: str, error: str) -> Task:
        with self._mutex, self.store.lock():
            self._reload()
            task = self._find(task_id)
            task.status = "failed"
            task.error = error
            self._archive(self.failed_store, [task], "failed")
            self._tasks = [item for item in self._tasks if item.id != task_id]
            self._persist()
        logger.info("Archived failed task", extra={"task_id": task_id})
        return task

    def clear(self) -> int:
        with self._mutex, self.store.lock():
            self._reload()
            count = len(self._tasks)
            self._tasks = []
            self._persist()
        return count

    # Internals

    def _find(self, task_id: str) -> Task:
        for task in self._tasks:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(task_id)

    def _new_id(self) -> str:
        stamp = self.clock().strftime("%Y%m%d-%H%M%S")
        existing = {task.id for task in self._tasks}
        while True:
            suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(4))
            candidate = f"task-{stamp}-{suffix}"
            if candidate not in existing:
                return candidate

    def _enforce_capacity(self) -> None:
        overflow = len(self._tasks) - self.max_size
        if overflow <= 0:
            return
        dropped = sorted(self._tasks, key=_eviction_key)[:overflow]
        dropped_ids = {task.id for task in dropped}
        self._archive(self.expired_store, dropped, "dropped")
        self._tasks = [task for task in self._tasks if task.id not in dropped_ids]
        for task in dropped:
            logger.info(
                "Queue full (%d); evicted %s task", self.max_size, task.priority,
                extra={"task_id": task.id},
            )

    def _archive(self, store: DocumentStore, tasks: list[Task], reason: ArchiveReason) -> None:
        archived_at = format_timestamp(self.clock())
        with store.lock():
            document = store.load()
            existing = []
            if isinstance(document, dict) and isinstance(document.get("tasks"), list):
                existing = [item for item in document["tasks"] if isinstance(item, dict)]
            for task in tasks:
                payload = task.to_dict()
                payload["archived_at"] = archived_at
                payload["archive_reason"] = reason
                existing.append(payload)
            store.save({"version": QUEUE_VERSION, "updated_at": archived_at, "tasks": existing})

    def _reload(self) -> None:
        document = self.store.load()
        if document is None:
            self._tasks = []
            return
        if not isinstance(document, dict) or not isinstance(document.get("tasks"), list):
            logger.warning("Queue document has an unexpected shape; starting empty")
            self._tasks = []
            return
        tasks: list[Task] = []
        for item in document["tasks"]:
            if not isinstance(item, dict) or "id" not in item:
                continue
            task = Task.from_dict(item)
            if task.status not in _STATUSES:
                task.status = "pending"
            tasks.append(task)
        tasks.sort(key=_sort_key)
        self._tasks = tasks

    def _persist(self) -> None:
        self.store.save(
            {
                "version": QUEUE_VERSION,
                "updated_at": format_timestamp(self.clock()),
                "tasks": [task.to_dict() for task in self._tasks],
            }
        )
