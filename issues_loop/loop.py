"""
Implementation loop driver.

One step of the loop:
1. Load (and migrate) the task graph, select the next runnable task
2. Collect active wisps and hand both to the executor
3. Record the attempt and enqueue anything the executor discovered
4. Post the task log, then verify it against the external log
5. Mark the task from the verified status and count it for compaction
6. Post new wisps and run requested promotions

The executor is opaque: any callable (task, wisps) -> TaskOutcome.
"""

from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from issues_loop.compaction import CompactionEngine, CompactionResult
from issues_loop.discovery import DiscoveryEnqueuer
from issues_loop.documents import render_task_log
from issues_loop.errors import ExternalWriteFailure, VerificationFailure
from issues_loop.log_adapter import ExternalLog, LogAdapter
from issues_loop.models import (
    OutcomeEvent,
    OutcomeStatus,
    Task,
    TaskOutcome,
    Wisp,
    format_utc,
    utc_now,
)
from issues_loop.planning import DependencyGraph
from issues_loop.reconcile import ReconciliationVerifier
from issues_loop.task_graph import TaskGraphStore
from issues_loop.wisps import PromotionResult, WispManager

if TYPE_CHECKING:
    from issues_loop.config import LoopConfig
    from issues_loop.logger import LoopLogger

Executor = Callable[[Task, list[Wisp]], TaskOutcome]


class StepStatus(Enum):
    EXECUTED = "executed"          # Task ran and its log was verified
    UNCONFIRMED = "unconfirmed"    # Task ran but its log could not be posted
    COMPLETE = "complete"          # Every task passes
    BLOCKED = "blocked"            # Tasks remain, none runnable


@dataclass
class StepResult:
    """What one call to run_once() did."""
    status: StepStatus
    task_id: Optional[str] = None
    event: Optional[OutcomeEvent] = None
    enqueued: int = 0
    compaction: Optional[CompactionResult] = None
    wisps_posted: list[Wisp] = field(default_factory=list)
    promotions: list[PromotionResult] = field(default_factory=list)
    cycle: list[str] = field(default_factory=list)
    missing_dependencies: dict[str, list[str]] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.COMPLETE, StepStatus.BLOCKED)


class ImplementationLoop:
    """
    Drives tasks through execute, log, verify, compact and wisp handling.
    """

    def __init__(
        self,
        config: LoopConfig,
        transport: ExternalLog,
        executor: Executor,
        logger: Optional[LoopLogger] = None,
    ) -> None:
        """
        Wire the loop's components.

        Args:
            config: LoopConfig with state path and windows.
            transport: External log, e.g. GitHubCommentLog.
            executor: Callable that performs a task and reports the outcome.
            logger: Optional logger shared by every component.
        """
        self.config = config
        self._executor = executor
        self._logger = logger
        self.store = TaskGraphStore(config, logger)
        self.adapter = LogAdapter(transport, logger)
        self.enqueuer = DiscoveryEnqueuer(self.store, self.adapter, logger)
        self.compaction = CompactionEngine(self.store, self.adapter, config, logger)
        self.wisps = WispManager(self.adapter, self.store, self.enqueuer, config, logger)
        self.verifier = ReconciliationVerifier(self.adapter, config, logger)

    @classmethod
    def from_config(
        cls,
        config: LoopConfig,
        executor: Executor,
        logger: Optional[LoopLogger] = None,
    ) -> ImplementationLoop:
        """Build a loop that logs to the configured GitHub issue."""
        from issues_loop.github import GitHubCommentLog
        from issues_loop.logger import get_logger

        if logger is None:
            logger = get_logger(config.github.issue_number, config)
        return cls(config, GitHubCommentLog(config, logger), executor, logger)

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "loop"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _blocked(self) -> StepResult:
        graph = self.store.load()
        deps = DependencyGraph(graph.tasks)
        _, cycle = deps.has_cycle()
        missing = deps.missing_dependencies()
        self._log("loop_blocked", {
            "pending": [t.id for t in graph.pending_tasks],
            "cycle": cycle,
            "missing": missing,
        }, level="warn")
        return StepResult(
            status=StepStatus.BLOCKED,
            cycle=cycle,
            missing_dependencies=missing,
        )

    def run_once(self, now: Optional[datetime] = None) -> StepResult:
        """
        Run one loop step.

        Raises:
            CorruptState: The task graph document is broken.
            DuplicateUid: Two tasks share a uid.
            VerificationFailure: The task log could not be confirmed.
        """
        self.store.load()
        task = self.store.select_next()
        if task is None:
            if not self.store.has_remaining():
                self._log("loop_complete")
                return StepResult(status=StepStatus.COMPLETE)
            return self._blocked()

        wisps = self.wisps.collect_active(now)
        scope = self._logger.task_context(task.id, task.uid) if self._logger else nullcontext()
        with scope:
            return self._execute(task, wisps, now)

    def _execute(
        self,
        task: Task,
        wisps: list[Wisp],
        now: Optional[datetime],
    ) -> StepResult:
        outcome = self._executor(task, wisps)
        recorded = self.store.record_attempt(task.id, passes=False, at=now)

        result = StepResult(status=StepStatus.EXECUTED, task_id=task.id)
        if outcome.discovered:
            result.enqueued = self.enqueuer.enqueue(recorded, outcome.discovered)

        fields = dict(outcome.fields)
        if outcome.commit:
            fields.setdefault("commit", outcome.commit)
        event = OutcomeEvent(
            task_id=recorded.id,
            task_uid=recorded.uid,
            status=outcome.status,
            attempt=recorded.attempts,
            fields=fields,
        )
        result.event = event

        body = render_task_log(recorded, event, outcome, format_utc(now or utc_now()))
        try:
            self.adapter.post_event(body)
        except ExternalWriteFailure as e:
            self._log("task_log_post_failed", {"task_id": task.id, "error": e.message}, level="error")
            result.status = StepStatus.UNCONFIRMED
            result.error = e.message
            return result

        try:
            verified = self.verifier.verify(recorded.id, recorded.uid)
        except VerificationFailure:
            # The log was posted, so it still counts toward compaction.
            self.compaction.record_task_log(now)
            raise

        result.event = verified
        self.store.mark_passing(task.id, verified.status is OutcomeStatus.PASS)
        result.compaction = self.compaction.record_task_log(now)

        for note in outcome.wisps:
            try:
                result.wisps_posted.append(self.wisps.post_wisp(note, recorded.uid, now=now))
            except ExternalWriteFailure as e:
                self._log("wisp_post_failed", {"error": e.message}, level="warn")

        by_id = {wisp.id: wisp for wisp in wisps}
        for target_id, mode in outcome.promotions:
            wisp = by_id.get(target_id)
            if wisp is None:
                self._log("promotion_target_inactive", {"wisp_id": target_id}, level="warn")
                continue
            result.promotions.append(self.wisps.promote(wisp, mode, now))

        self._log("step_executed", {
            "task_id": task.id,
            "status": verified.status.value,
            "enqueued": result.enqueued,
        })
        return result

    def run(self, max_steps: int = 50, now: Optional[datetime] = None) -> list[StepResult]:
        """
        Run steps until the graph is complete or blocked.

        Args:
            max_steps: Upper bound on steps in this call.
            now: Fixed clock for every step; real time when None.

        Returns:
            One StepResult per step taken.
        """
        results = []
        for _ in range(max_steps):
            result = self.run_once(now)
            results.append(result)
            if result.is_terminal:
                break
        return results
