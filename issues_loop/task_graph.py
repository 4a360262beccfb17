"""
Task graph persistence for the implementation loop.

This module handles:
- Loading the task graph document (prd.json) with schema validation
- Migrating legacy documents in memory and writing back only on change
- Atomic read-modify-write for every mutation
- Next-task selection over priorities and dependencies
"""

from __future__ import annotations

import copy
import json
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from issues_loop.errors import CorruptState, DuplicateUid, TaskNotFound
from issues_loop.identity import task_uid
from issues_loop.models import (
    DEFAULT_FORMULA,
    DEFAULT_SUMMARY_EVERY,
    CompactionState,
    DiscoverySource,
    Task,
    TaskGraph,
    format_utc,
    model_to_json,
    utc_now,
)
from issues_loop.schemas import validate_graph_document
from issues_loop.utils.fs import FileSystemError, file_exists, read_file, safe_write

if TYPE_CHECKING:
    from issues_loop.config import LoopConfig
    from issues_loop.logger import LoopLogger


def migrate_document(
    doc: dict[str, Any],
    summary_every: int = DEFAULT_SUMMARY_EVERY,
) -> tuple[dict[str, Any], bool]:
    """
    Bring a validated document up to the current shape.

    Tasks missing a uid get one computed from their position among siblings
    that share the same discoveredFrom. Running this on its own output is a
    no-op.

    Args:
        doc: Schema-validated document. Not modified.
        summary_every: Threshold used when the compaction block is absent.

    Returns:
        Tuple of (migrated document, whether anything changed).
    """
    migrated = copy.deepcopy(doc)
    changed = False

    if "formula" not in migrated:
        migrated["formula"] = DEFAULT_FORMULA
        changed = True

    compaction = migrated.setdefault("compaction", {})
    if "taskLogCountSinceLastSummary" not in compaction:
        compaction["taskLogCountSinceLastSummary"] = 0
        changed = True
    if "summaryEveryNTaskLogs" not in compaction:
        compaction["summaryEveryNTaskLogs"] = summary_every
        changed = True

    scope = migrated["issueNumber"]
    sibling_counts: dict[Optional[str], int] = defaultdict(int)

    for story in migrated["userStories"]:
        if "discoveredFrom" not in story:
            story["discoveredFrom"] = None
            changed = True
        if not story.get("discoverySource"):
            story["discoverySource"] = DiscoverySource.PLANNED.value
            changed = True

        parent = story["discoveredFrom"]
        sibling_counts[parent] += 1
        if "uid" not in story:
            story["uid"] = task_uid(scope, story["title"], parent, sibling_counts[parent])
            changed = True

    return migrated, changed


def check_unique_uids(graph: TaskGraph) -> None:
    """
    Raises:
        DuplicateUid: If two tasks share a uid.
    """
    owners: dict[str, list[str]] = defaultdict(list)
    for task in graph.tasks:
        owners[task.uid].append(task.id)
    for uid, task_ids in owners.items():
        if len(task_ids) > 1:
            raise DuplicateUid(uid, task_ids)


class TaskGraphStore:
    """
    Persistent storage for the task graph document.

    Every public mutation re-reads the document, applies the change and
    writes the whole document back atomically. Nothing here touches the
    external log.
    """

    COMPONENT = "task_graph"

    def __init__(
        self,
        config: LoopConfig,
        logger: Optional[LoopLogger] = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            config: LoopConfig with the state path configured.
            logger: Optional logger for recording operations.
        """
        self._config = config
        self._logger = logger
        self._path = config.state_path
        self._summary_every = config.compaction.summary_every_n_task_logs

    @property
    def path(self):
        return self._path

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            payload = {"component": self.COMPONENT}
            payload.update(data or {})
            self._logger.log(event_type, payload, level=level)

    def _read_document(self) -> dict[str, Any]:
        if not file_exists(self._path):
            raise CorruptState(f"task graph document not found at {self._path}")
        try:
            content = read_file(self._path)
        except FileSystemError as e:
            raise CorruptState(str(e))
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            self._log("graph_corrupted", {"path": str(self._path), "error": str(e)}, level="error")
            raise CorruptState(f"task graph document is not valid JSON: {e}")
        return data

    def load(self) -> TaskGraph:
        """
        Load, validate and migrate the task graph.

        Returns:
            The current TaskGraph.

        Raises:
            CorruptState: If the document is missing, not JSON, or fails the schema.
            DuplicateUid: If two tasks share a uid.
        """
        data = self._read_document()
        try:
            validate_graph_document(data)
        except CorruptState as e:
            self._log("graph_invalid", {"path": str(self._path), "field": e.field}, level="error")
            raise

        migrated, changed = migrate_document(data, self._summary_every)
        graph = TaskGraph.from_dict(migrated)
        check_unique_uids(graph)

        if changed:
            self._write(graph)
            self._log("graph_migrated", {"tasks": len(graph.tasks)})
        return graph

    def _write(self, graph: TaskGraph) -> None:
        check_unique_uids(graph)
        try:
            safe_write(self._path, model_to_json(graph.to_dict(), indent=2) + "\n")
        except FileSystemError as e:
            self._log("graph_save_error", {"error": str(e)}, level="error")
            raise
        self._log("graph_saved", {"tasks": len(graph.tasks)}, level="debug")

    def save(self, graph: TaskGraph) -> None:
        """
        Write a whole graph atomically.

        Raises:
            DuplicateUid: If two tasks share a uid; nothing is written.
        """
        self._write(graph)

    def _require(self, graph: TaskGraph, task_id: str) -> Task:
        task = graph.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    # Queries

    def get(self, task_id: str) -> Optional[Task]:
        return self.load().get(task_id)

    def find_by_uid(self, uid: str) -> Optional[Task]:
        return self.load().find_by_uid(uid)

    def next_task_id_number(self) -> int:
        """Number to use for the next sequential id (1 for an empty graph)."""
        return self.load().next_task_number()

    def has_remaining(self) -> bool:
        """True while any task is not passing, blocked or not."""
        return bool(self.load().pending_tasks)

    def select_next(self) -> Optional[Task]:
        """
        Pick the next runnable task.

        Runnable means not passing with every dependsOn entry passing. A
        dependency on an id that does not exist is never satisfied. Among
        runnable tasks the lowest priority wins, then the lowest numeric id.

        Returns:
            The selected Task, or None when nothing is runnable.
        """
        graph = self.load()
        passing = {t.id for t in graph.passing_tasks}
        runnable = [
            t for t in graph.pending_tasks
            if all(dep in passing for dep in t.depends_on)
        ]
        if not runnable:
            return None
        chosen = min(runnable, key=lambda t: (t.priority, t.id_number))
        self._log("task_selected", {"task_id": chosen.id, "uid": chosen.uid})
        return chosen

    # Mutations

    def append(self, tasks: list[Task]) -> TaskGraph:
        """
        Append tasks in one atomic write.

        Raises:
            CorruptState: If a task id already exists.
            DuplicateUid: If a uid collides; the prior document is kept.
        """
        graph = self.load()
        existing = {t.id for t in graph.tasks}
        for task in tasks:
            if task.id in existing:
                raise CorruptState("duplicate task id", "userStories.id", task.id)
            existing.add(task.id)

        graph.tasks.extend(tasks)
        self._write(graph)
        self._log("tasks_appended", {"task_ids": [t.id for t in tasks]})
        return graph

    def record_attempt(
        self,
        task_id: str,
        passes: bool,
        at: Optional[datetime] = None,
    ) -> Task:
        """
        Record one execution attempt.

        Increments attempts, stamps lastAttempt and sets passes.
        """
        graph = self.load()
        task = self._require(graph, task_id)
        task.attempts += 1
        task.last_attempt = format_utc(at or utc_now())
        task.passes = passes
        self._write(graph)
        self._log("attempt_recorded", {
            "task_id": task_id,
            "attempts": task.attempts,
            "passes": passes,
        })
        return task

    def mark_passing(self, task_id: str, passes: bool = True) -> Task:
        """Set passes once the outcome has been confirmed externally."""
        graph = self.load()
        task = self._require(graph, task_id)
        task.passes = passes
        self._write(graph)
        self._log("task_marked", {"task_id": task_id, "passes": passes})
        return task

    def save_compaction(self, state: CompactionState) -> None:
        """Persist the compaction counters."""
        graph = self.load()
        graph.compaction = state
        self._write(graph)
        self._log("compaction_saved", state.to_dict(), level="debug")
