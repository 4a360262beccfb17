"""
Reconciliation of task outcomes against the external log.

The executor claims an outcome; only the log decides whether it was
recorded. The verifier reads a small recent window, takes the newest task
log for the task, and repairs a drifted taskUid in place. Anything short of
a confirmed, correct record raises VerificationFailure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from issues_loop.documents import is_task_log
from issues_loop.errors import ExternalReadFailure, MalformedPayload, VerificationFailure
from issues_loop.events import EVENT_HEADING, extract_event_payloads, replace_section_payload
from issues_loop.models import LogDocument, OutcomeEvent

if TYPE_CHECKING:
    from issues_loop.config import LoopConfig
    from issues_loop.log_adapter import LogAdapter
    from issues_loop.logger import LoopLogger


class ReconciliationVerifier:
    """Confirms that a task log really landed on the external log."""

    def __init__(
        self,
        adapter: LogAdapter,
        config: LoopConfig,
        logger: Optional[LoopLogger] = None,
    ) -> None:
        self._adapter = adapter
        self._window = config.verification.window
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "reconcile"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _latest_match(
        self,
        documents: list[LogDocument],
        task_id: str,
    ) -> Optional[tuple[LogDocument, int, dict[str, Any], OutcomeEvent]]:
        # Oldest to newest; a later match replaces an earlier one.
        match = None
        for document in documents:
            if not is_task_log(document.body):
                continue
            for index, payload in enumerate(extract_event_payloads(document.body)):
                try:
                    event = OutcomeEvent.from_payload(payload)
                except MalformedPayload:
                    continue
                if event.task_id == task_id:
                    match = (document, index, payload, event)
        return match

    def verify(self, task_id: str, task_uid: str) -> OutcomeEvent:
        """
        Confirm the newest outcome event for a task.

        Args:
            task_id: Id the task log was posted under.
            task_uid: The uid the event must carry.

        Returns:
            The verified event, with taskUid corrected if it was patched.

        Raises:
            VerificationFailure: No matching event in the window, the log
                could not be read, or a uid correction could not be patched.
        """
        try:
            documents = self._adapter.read_recent(self._window)
        except ExternalReadFailure as e:
            self._log("verify_read_failed", {"task_id": task_id, "error": e.message}, level="error")
            raise VerificationFailure(task_id, f"log read failed: {e.message}")

        match = self._latest_match(documents, task_id)
        if match is None:
            self._log("verify_missing", {"task_id": task_id, "window": self._window}, level="error")
            raise VerificationFailure(
                task_id, f"no task log found in the last {self._window} documents"
            )

        document, index, payload, event = match
        if not task_uid or event.task_uid == task_uid:
            self._log("verify_confirmed", {"task_id": task_id, "document_id": document.id})
            return event

        corrected = dict(payload)
        corrected["taskUid"] = task_uid
        body = replace_section_payload(document.body, EVENT_HEADING, corrected, index=index)
        if body is None or not self._adapter.patch(document.id, body):
            self._log("verify_patch_failed", {
                "task_id": task_id,
                "document_id": document.id,
                "found_uid": event.task_uid,
            }, level="error")
            raise VerificationFailure(task_id, "uid correction could not be patched")

        self._log("verify_uid_patched", {
            "task_id": task_id,
            "document_id": document.id,
            "from_uid": event.task_uid,
            "to_uid": task_uid,
        }, level="warn")
        return event.with_uid(task_uid)
