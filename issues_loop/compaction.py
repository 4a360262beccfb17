"""
Compaction of the external log.

After every N task logs a compacted summary is posted so a reader (or a
resumed loop) can recover state without replaying the whole thread. Each
summary links the one it supersedes, forming a chain.

The counter lives on the task graph document. It is reset only once a
summary was confirmed posted; a failed post leaves it at or above the
threshold so the next task log retries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from issues_loop.documents import is_discovery_note, is_summary, is_task_log, render_summary
from issues_loop.errors import ExternalReadFailure, ExternalWriteFailure
from issues_loop.events import extract_events
from issues_loop.models import CompactionState, LogDocument, TaskGraph, format_utc, utc_now

if TYPE_CHECKING:
    from issues_loop.config import LoopConfig
    from issues_loop.log_adapter import LogAdapter
    from issues_loop.logger import LoopLogger
    from issues_loop.task_graph import TaskGraphStore


@dataclass
class CompactionResult:
    """Outcome of counting one task log."""
    state: CompactionState
    summary_due: bool = False
    summary_posted: bool = False
    summary_id: Optional[str] = None
    used_fallback: bool = False
    error: Optional[str] = None


@dataclass
class SummaryInputs:
    """Everything the summary is built from, gathered from log and store."""
    supersedes: str = "none"
    covered_tasks: list[str] = field(default_factory=list)
    discoveries: list[str] = field(default_factory=list)
    used_fallback: bool = False


def split_after_last_summary(
    documents: list[LogDocument],
) -> tuple[Optional[LogDocument], list[LogDocument]]:
    """Return the newest summary document and everything posted after it."""
    for index in range(len(documents) - 1, -1, -1):
        if is_summary(documents[index].body):
            return documents[index], documents[index + 1:]
    return None, list(documents)


def open_risks(graph: TaskGraph) -> list[str]:
    return [
        f"- {task.id}: {task.title} (attempt {task.attempts})"
        for task in graph.pending_tasks
    ]


def progress_line(graph: TaskGraph) -> str:
    total = len(graph.tasks)
    passed = len(graph.passing_tasks)
    percent = passed * 100 // (total or 1)
    return f"{passed}/{total} tasks passing ({percent}%)"


class CompactionEngine:
    """
    Counts task logs and posts compacted summaries at the threshold.
    """

    def __init__(
        self,
        store: TaskGraphStore,
        adapter: LogAdapter,
        config: LoopConfig,
        logger: Optional[LoopLogger] = None,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._config = config
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "compaction"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def gather(self, graph: TaskGraph) -> SummaryInputs:
        """
        Collect summary inputs from the log, falling back to the store.

        A failed read is treated as an empty log: no supersedes link, no
        discovery notes, and covered tasks taken from local attempts.
        """
        inputs = SummaryInputs()
        try:
            documents = self._adapter.read_recent(self._config.compaction.read_window)
        except ExternalReadFailure as e:
            self._log("summary_read_failed", {"error": e.message}, level="warn")
            documents = []

        previous, recent = split_after_last_summary(documents)
        if previous is not None:
            inputs.supersedes = previous.url or previous.id

        for document in recent:
            if is_discovery_note(document.body):
                inputs.discoveries.append(document.body.strip())
            elif is_task_log(document.body):
                for event in extract_events(document.body):
                    inputs.covered_tasks.append(
                        f"- **{event.task_id}** (uid: `{event.task_uid}`): "
                        f"attempt {event.attempt}, status: {event.status.value}"
                    )

        if not inputs.covered_tasks:
            inputs.used_fallback = True
            for task in graph.tasks:
                if task.attempts > 0:
                    status = "pass" if task.passes else "fail"
                    inputs.covered_tasks.append(
                        f"- **{task.id}** (uid: `{task.uid}`): "
                        f"attempt {task.attempts}, status: {status}"
                    )
        return inputs

    def build_summary(
        self,
        graph: TaskGraph,
        state: CompactionState,
        now: Optional[datetime] = None,
    ) -> tuple[str, SummaryInputs]:
        """Render the summary body for the current graph and counter."""
        inputs = self.gather(graph)
        body = render_summary(
            issue_number=graph.issue_number,
            timestamp=format_utc(now or utc_now()),
            covers=state.task_log_count,
            supersedes=inputs.supersedes,
            covered_tasks=inputs.covered_tasks,
            discoveries=inputs.discoveries,
            open_risks=open_risks(graph),
            progress=progress_line(graph),
        )
        return body, inputs

    def record_task_log(self, now: Optional[datetime] = None) -> CompactionResult:
        """
        Count one successfully posted task log.

        Returns:
            CompactionResult with the persisted state.
        """
        graph = self._store.load()
        state = graph.compaction.incremented()

        if not state.is_due:
            self._store.save_compaction(state)
            self._log("compaction_counted", state.to_dict(), level="debug")
            return CompactionResult(state=state)

        body, inputs = self.build_summary(graph, state, now)
        try:
            summary_id = self._adapter.post_event(body)
        except ExternalWriteFailure as e:
            self._store.save_compaction(state)
            self._log("summary_post_failed", {
                "error": e.message,
                "count": state.task_log_count,
            }, level="warn")
            return CompactionResult(
                state=state,
                summary_due=True,
                used_fallback=inputs.used_fallback,
                error=e.message,
            )

        state = state.reset()
        self._store.save_compaction(state)
        self._log("summary_posted", {
            "summary_id": summary_id,
            "supersedes": inputs.supersedes,
            "fallback": inputs.used_fallback,
        })
        return CompactionResult(
            state=state,
            summary_due=True,
            summary_posted=True,
            summary_id=summary_id,
            used_fallback=inputs.used_fallback,
        )
