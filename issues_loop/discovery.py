"""
Discovery enqueuer.

Turns work surfaced mid-execution into new tasks in the graph. Candidates
are deduplicated by content fingerprint against tasks already discovered
from the same parent, and against each other within one batch.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, Optional, Union

from issues_loop.documents import render_enqueue_notice
from issues_loop.errors import ExternalWriteFailure, MalformedPayload
from issues_loop.identity import task_fingerprint, task_uid
from issues_loop.models import (
    DiscoveredCandidate,
    DiscoverySource,
    Task,
    format_task_id,
)

if TYPE_CHECKING:
    from issues_loop.log_adapter import LogAdapter
    from issues_loop.logger import LoopLogger
    from issues_loop.task_graph import TaskGraphStore

CandidateLike = Union[DiscoveredCandidate, dict[str, Any]]


class DiscoveryEnqueuer:
    """
    Appends discovered tasks to the graph and announces them on the log.

    The store write is the durable effect; the enqueue notice is best effort.
    """

    def __init__(
        self,
        store: TaskGraphStore,
        adapter: LogAdapter,
        logger: Optional[LoopLogger] = None,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "discovery"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _coerce(self, candidates: Iterable[CandidateLike]) -> list[DiscoveredCandidate]:
        result = []
        for raw in candidates:
            if isinstance(raw, DiscoveredCandidate):
                result.append(raw)
                continue
            try:
                result.append(DiscoveredCandidate.from_dict(raw))
            except MalformedPayload as e:
                self._log("candidate_malformed", {"error": e.message}, level="debug")
        return result

    def enqueue(
        self,
        parent: Task,
        candidates: Iterable[CandidateLike],
        source: DiscoverySource = DiscoverySource.TASK_LOG,
    ) -> int:
        """
        Enqueue discovered candidates under a parent task.

        Args:
            parent: Task the candidates were discovered from.
            candidates: DiscoveredCandidate objects or raw candidate dicts.
            source: TASK_LOG for execution output, WISP for promoted wisps.

        Returns:
            Number of tasks appended; 0 when everything was a duplicate.
        """
        batch = self._coerce(candidates)
        if not batch:
            return 0

        graph = self._store.load()
        siblings = graph.children_of(parent.uid)
        seen = {
            task_fingerprint(t.title, t.description, t.acceptance_criteria, parent.uid)
            for t in siblings
        }
        first_number = graph.next_task_number()

        new_tasks: list[Task] = []
        for candidate in batch:
            fingerprint = task_fingerprint(
                candidate.title,
                candidate.description,
                candidate.acceptance_criteria,
                parent.uid,
            )
            if fingerprint in seen:
                self._log("candidate_duplicate", {
                    "title": candidate.title,
                    "parent_id": parent.id,
                }, level="debug")
                continue
            seen.add(fingerprint)

            ordinal = len(siblings) + len(new_tasks) + 1
            new_tasks.append(Task(
                id=format_task_id(first_number + len(new_tasks)),
                uid=task_uid(graph.issue_number, candidate.title, parent.uid, ordinal),
                title=candidate.title,
                description=candidate.description,
                acceptance_criteria=list(candidate.acceptance_criteria),
                verify_commands=list(candidate.verify_commands),
                depends_on=list(candidate.depends_on) or [parent.id],
                priority=parent.priority + 1,
                discovered_from=parent.uid,
                discovery_source=source,
                extra={"phase": None, "files": []},
            ))

        if not new_tasks:
            return 0

        self._store.append(new_tasks)
        self._log("tasks_enqueued", {
            "parent_id": parent.id,
            "task_ids": [t.id for t in new_tasks],
            "source": source.value,
        })

        notice = render_enqueue_notice(parent.id, parent.uid, new_tasks, source.value)
        try:
            self._adapter.post_event(notice)
        except ExternalWriteFailure as e:
            self._log("enqueue_notice_failed", {
                "parent_id": parent.id,
                "error": e.message,
            }, level="warn")

        return len(new_tasks)
