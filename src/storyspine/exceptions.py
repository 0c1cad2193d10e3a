"""StorySpine error taxonomy."""

from __future__ import annotations


class StorySpineError(Exception):
    """Base for all StorySpine errors."""


class StorageError(StorySpineError):
    """Persistent storage failed or was handed inconsistent data."""


class TransientError(StorySpineError):
    """Network-level failure talking to an embedding or LLM provider."""


class MalformedDeltaError(StorySpineError):
    """LLM output could not be parsed or failed schema validation."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class SummaryFailedError(StorySpineError):
    """Summary generation exhausted its retries."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class TaskBusyError(StorySpineError):
    """A task of the same class is already running."""

    def __init__(self, task: str) -> None:
        super().__init__(f"task already running: {task}")
        self.task = task


class OperationCancelled(StorySpineError):
    """Cooperative cancellation was requested."""


class VectorIOError(StorySpineError):
    """Vector export/import archive is invalid or cannot be produced."""


class FingerprintMismatchWarning(UserWarning):
    """Stored vectors were produced by a different embedding engine."""
