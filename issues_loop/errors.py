"""
Error taxonomy for the implementation loop.

This module provides:
- ErrorSeverity enum describing how a failure must be handled
- LoopError base class carrying that severity
- One exception class per failure kind the core distinguishes

Local structural problems are fatal, noise on the external surface is
recoverable, and loss of durability must reach the caller.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Any, Optional


class ErrorSeverity(Enum):
    """
    Classification of loop failures.

    Used by callers to decide whether to stop, skip, or retry next cycle.
    """

    FATAL = auto()          # Local state is broken; surface to the operator
    RECOVERABLE = auto()    # Treat as "no data this cycle" and move on
    DURABILITY = auto()     # Outcome not confirmed; never advance state


class LoopError(Exception):
    """
    Base exception for implementation loop errors.

    Includes severity classification for handling decisions.
    """

    severity: ErrorSeverity = ErrorSeverity.FATAL

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def is_fatal(self) -> bool:
        """Check if this error must stop the loop."""
        return self.severity == ErrorSeverity.FATAL

    @property
    def is_recoverable(self) -> bool:
        """Check if this error can be skipped until the next cycle."""
        return self.severity == ErrorSeverity.RECOVERABLE


class CorruptState(LoopError):
    """Raised when the task graph document fails JSON or schema validation."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
    ) -> None:
        if field:
            message = f"Invalid task graph at '{field}': {message}"
        super().__init__(message)
        self.field = field
        self.value = value


class DuplicateUid(LoopError):
    """Raised when two tasks in the store share a uid."""

    def __init__(self, uid: str, task_ids: list[str]) -> None:
        super().__init__(
            f"Duplicate task uid {uid} shared by {', '.join(task_ids)}"
        )
        self.uid = uid
        self.task_ids = task_ids


class ExternalReadFailure(LoopError):
    """Raised when the external log cannot be read."""

    severity = ErrorSeverity.RECOVERABLE

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class ExternalWriteFailure(LoopError):
    """Raised when a document cannot be posted to the external log."""

    severity = ErrorSeverity.RECOVERABLE

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class VerificationFailure(LoopError):
    """Raised when a task outcome could not be confirmed on the external log."""

    severity = ErrorSeverity.DURABILITY

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Outcome for {task_id} not durably confirmed: {reason}")
        self.task_id = task_id
        self.reason = reason


class MalformedPayload(LoopError):
    """Raised when an extracted JSON payload does not match its schema."""

    severity = ErrorSeverity.RECOVERABLE

    def __init__(self, field: str, message: str, value: Any = None) -> None:
        super().__init__(f"Malformed payload field '{field}': {message}")
        self.field = field
        self.value = value


class TaskNotFound(LoopError):
    """Raised when a mutation names a task id the store does not hold."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found in task graph")
        self.task_id = task_id
