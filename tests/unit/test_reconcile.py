"""
Tests for outcome reconciliation (issues_loop/reconcile.py).
"""

import pytest

from issues_loop.errors import ErrorSeverity, VerificationFailure
from issues_loop.events import extract_events
from issues_loop.models import OutcomeStatus
from issues_loop.reconcile import ReconciliationVerifier


def task_log(task_id, uid, status="pass", attempt=1, extra=""):
    return (
        f"## 📝 Task Log: {task_id}\n\n**Status:** {status}\n\n### Event JSON\n```json\n"
        f'{{"taskId": "{task_id}", "taskUid": "{uid}", "status": "{status}", "attempt": {attempt}{extra}}}'
        "\n```"
    )


@pytest.fixture
def verifier(adapter, config):
    return ReconciliationVerifier(adapter, config)


class TestVerify:
    """Tests for ReconciliationVerifier.verify."""

    def test_confirms_matching_event(self, verifier, fake_log):
        fake_log.add(task_log("US-003", "tsk_aaa111"))
        event = verifier.verify("US-003", "tsk_aaa111")

        assert event.status is OutcomeStatus.PASS
        assert fake_log.patches == []

    def test_titled_heading_confirms(self, verifier, fake_log):
        """The heading may carry the task title after the id."""
        fake_log.add(task_log("US-003", "tsk_aaa111").replace(
            "## 📝 Task Log: US-003", "## 📝 Task Log: US-003 - Add API", 1
        ))
        event = verifier.verify("US-003", "tsk_aaa111")

        assert event.task_id == "US-003"
        assert fake_log.patches == []

    def test_event_outside_task_log_ignored(self, verifier, fake_log):
        fake_log.add(task_log("US-003", "tsk_aaa111").replace(
            "## 📝 Task Log: US-003", "## 🔍 Discovery Note", 1
        ))
        with pytest.raises(VerificationFailure):
            verifier.verify("US-003", "tsk_aaa111")

    def test_newest_match_wins(self, verifier, fake_log):
        """Retries post several logs; the most recent one is authoritative."""
        fake_log.add(task_log("US-003", "tsk_aaa111", status="fail", attempt=1))
        fake_log.add(task_log("US-004", "tsk_other"))
        fake_log.add(task_log("US-003", "tsk_aaa111", status="pass", attempt=2))

        event = verifier.verify("US-003", "tsk_aaa111")

        assert event.attempt == 2
        assert event.status is OutcomeStatus.PASS

    def test_uid_drift_patched_in_place(self, verifier, fake_log):
        """A wrong taskUid is corrected on the log and in the returned event."""
        document = fake_log.add(task_log("US-003", "tsk_bbb222", extra=', "commit": "abc"'))

        event = verifier.verify("US-003", "tsk_aaa111")

        assert event.task_uid == "tsk_aaa111"
        assert event.fields == {"commit": "abc"}
        patched_id, patched_body = fake_log.patches[0]
        assert patched_id == document.id
        assert patched_body.startswith("## 📝 Task Log: US-003\n\n**Status:** pass")
        patched_event = extract_events(patched_body)[0]
        assert patched_event.task_uid == "tsk_aaa111"
        assert patched_event.fields == {"commit": "abc"}

    def test_patch_failure_is_verification_failure(self, verifier, fake_log):
        fake_log.add(task_log("US-003", "tsk_bbb222"))
        fake_log.fail_patch = True

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify("US-003", "tsk_aaa111")
        assert exc_info.value.severity is ErrorSeverity.DURABILITY

    def test_no_match_in_window(self, verifier, fake_log):
        """Only the last five documents are considered."""
        fake_log.add(task_log("US-003", "tsk_aaa111"))
        for _ in range(5):
            fake_log.add("## 🔍 Discovery Note\n\nfiller")

        with pytest.raises(VerificationFailure):
            verifier.verify("US-003", "tsk_aaa111")

    def test_read_failure(self, verifier, fake_log):
        fake_log.add(task_log("US-003", "tsk_aaa111"))
        fake_log.fail_read = True

        with pytest.raises(VerificationFailure):
            verifier.verify("US-003", "tsk_aaa111")

    def test_other_task_logs_ignored(self, verifier, fake_log):
        fake_log.add(task_log("US-030", "tsk_aaa111"))
        with pytest.raises(VerificationFailure):
            verifier.verify("US-003", "tsk_aaa111")

    def test_malformed_event_not_a_match(self, verifier, fake_log):
        fake_log.add(
            "## 📝 Task Log: US-003\n\n### Event JSON\n```json\n"
            '{"taskId": "US-003", "status": "maybe"}\n```'
        )
        with pytest.raises(VerificationFailure):
            verifier.verify("US-003", "tsk_aaa111")
