"""
Structured JSONL logging for the implementation loop.

One file per issue per day under <loop_dir>/logs. Components log through
LoopLogger.log with a component tag; entries written inside task_context
carry the task's id and uid so a step can be followed end to end.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from issues_loop.config import LoopConfig, get_config


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LoopLogger:
    """
    JSONL event logger for one issue's loop.

    Each entry is a JSON object with timestamp, level, event_type,
    issue_number and data, plus task_id/task_uid inside a task context.
    """

    def __init__(self, issue_number: int, config: Optional[LoopConfig] = None) -> None:
        self.issue_number = issue_number
        self._config = config
        self._task: Optional[tuple[str, Optional[str]]] = None

    @property
    def config(self) -> LoopConfig:
        """Get configuration (lazy load)."""
        if self._config is None:
            self._config = get_config()
        return self._config

    @property
    def log_path(self) -> Path:
        """Today's log file."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.config.logs_path / f"issue-{self.issue_number}-{today}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Append one entry.

        Args:
            event_type: Type of event (e.g., "task_selected", "compaction_posted").
            data: Additional data, normally tagged with {"component": ...}.
            level: Log level (debug, info, warn, error).
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "issue_number": self.issue_number,
            "data": data or {},
        }
        if self._task is not None:
            entry["task_id"], task_uid = self._task
            if task_uid:
                entry["task_uid"] = task_uid

        path = self.log_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(json.dumps(entry, default=str, ensure_ascii=False) + "\n")

    @contextmanager
    def task_context(self, task_id: str, task_uid: Optional[str] = None) -> Iterator[LoopLogger]:
        """
        Tag every entry written inside the block with the task.

        Example:
            with logger.task_context("US-003", "tsk_1a2b3c4d5e6f"):
                verifier.verify("US-003", "tsk_1a2b3c4d5e6f")
        """
        previous = self._task
        self._task = (task_id, task_uid)
        self.log("task_start", {"component": "loop"})
        try:
            yield self
        finally:
            self.log("task_end", {"component": "loop"})
            self._task = previous


# Module-level logger cache
_logger_cache: dict[int, LoopLogger] = {}


def get_logger(issue_number: int, config: Optional[LoopConfig] = None) -> LoopLogger:
    """Get or create the logger for an issue."""
    if issue_number not in _logger_cache:
        _logger_cache[issue_number] = LoopLogger(issue_number, config)
    return _logger_cache[issue_number]


def clear_logger_cache() -> None:
    """Clear the logger cache. Useful for testing."""
    global _logger_cache
    _logger_cache = {}
