from __future__ import annotations

from pathlib import Path

from flowwatch.models import WorkflowState
from flowwatch.observability import get_logger
from flowwatch.state.store import DocumentStore, JsonDocumentStore

logger = get_logger(__name__)


class WorkflowStateRepository:
    """Durable copy of the derived workflow state."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    @classmethod
    def at(cls, path: Path, *, lock_timeout_seconds: float = 5.0) -> WorkflowStateRepository:
        return cls(JsonDocumentStore(path, lock_timeout_seconds=lock_timeout_seconds))

    def load(self) -> WorkflowState | None:
        """Return the stored state, or None when it must be rebuilt from the log."""
        document = self.store.load()
        if document is None:
            return None
        if not isinstance(document, dict):
            logger.warning("Workflow state is not an object; replaying log")
            return None
        try:
            return WorkflowState.from_dict(document)
        except (TypeError, ValueError) as exc:
            logger.warning("Invalid workflow state (%s); replaying log", exc)
            return None

    def save(self, state: WorkflowState) -> None:
        with self.store.lock():
            self.store.save(state.to_dict())
