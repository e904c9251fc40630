from flowwatch.state.queue import QueueManager, TaskNotFoundError
from flowwatch.state.store import (
    DocumentStore,
    FlowwatchStateError,
    JsonDocumentStore,
    MemoryDocumentStore,
)
from flowwatch.state.workflow import WorkflowStateRepository

__all__ = [
    "DocumentStore",
    "FlowwatchStateError",
    "JsonDocumentStore",
    "MemoryDocumentStore",
    "QueueManager",
    "TaskNotFoundError",
    "WorkflowStateRepository",
]
