"""
Tests for fenced payload extraction (issues_loop/events.py).
"""

import json

from issues_loop.events import (
    extract_event_payloads,
    extract_events,
    extract_fenced_json,
    replace_section_payload,
)
from issues_loop.models import OutcomeStatus

EVENT = '{"taskId": "US-003", "taskUid": "tsk_aaa111", "status": "pass", "attempt": 1}'


def task_log(*sections: str) -> str:
    return "\n".join(["## 📝 Task Log: US-003", "", *sections])


class TestExtractEvents:
    """Tests for the Event JSON state machine."""

    def test_single_event(self):
        text = task_log("### Event JSON", "```json", EVENT, "```")
        events = extract_events(text)

        assert len(events) == 1
        assert events[0].task_id == "US-003"
        assert events[0].task_uid == "tsk_aaa111"
        assert events[0].status is OutcomeStatus.PASS
        assert events[0].attempt == 1

    def test_blank_lines_between_heading_and_fence(self):
        text = task_log("### Event JSON", "", "", "```json", EVENT, "```")
        assert len(extract_events(text)) == 1

    def test_multiline_payload(self):
        pretty = json.dumps(json.loads(EVENT), indent=2)
        text = task_log("### Event JSON", "```json", pretty, "```")
        assert extract_events(text)[0].attempt == 1

    def test_invalid_json_skipped_silently(self):
        """A broken block contributes nothing; later blocks still count."""
        text = task_log(
            "### Event JSON", "```json", "{broken", "```",
            "### Event JSON", "```json", EVENT, "```",
        )
        assert [e.task_id for e in extract_events(text)] == ["US-003"]

    def test_heading_before_fence_aborts(self):
        """Another heading between the section heading and the fence aborts."""
        text = task_log("### Event JSON", "#### Notes", "```json", EVENT, "```")
        assert extract_events(text) == []

    def test_rule_before_fence_aborts(self):
        text = task_log("### Event JSON", "---", "```json", EVENT, "```")
        assert extract_events(text) == []

    def test_non_json_fence_aborts(self):
        text = task_log("### Event JSON", "```python", EVENT, "```", "```json", EVENT, "```")
        assert extract_events(text) == []

    def test_heading_inside_block_aborts(self):
        """An unterminated block cut by a heading yields nothing."""
        text = task_log("### Event JSON", "```json", '{"taskId":', "## Next", "```")
        assert extract_events(text) == []

    def test_unclosed_block_yields_nothing(self):
        text = task_log("### Event JSON", "```json", EVENT)
        assert extract_events(text) == []

    def test_json_without_heading_ignored(self):
        text = task_log("```json", EVENT, "```")
        assert extract_events(text) == []

    def test_multiple_events_in_order(self):
        second = EVENT.replace('"attempt": 1', '"attempt": 2')
        text = task_log(
            "### Event JSON", "```json", EVENT, "```",
            "Some prose",
            "### Event JSON", "```json", second, "```",
        )
        assert [e.attempt for e in extract_events(text)] == [1, 2]

    def test_schema_invalid_payload_dropped(self):
        """Valid JSON that is not an outcome event is not an event."""
        text = task_log(
            "### Event JSON", "```json", '{"type": "task_enqueue", "tasks": []}', "```",
            "### Event JSON", "```json", '{"taskId": "US-003", "status": "done"}', "```",
        )
        assert extract_events(text) == []
        assert len(extract_event_payloads(text)) == 2

    def test_extra_fields_kept(self):
        payload = '{"taskId": "US-003", "taskUid": "tsk_a", "status": "fail", "attempt": 2, "commit": "abc"}'
        text = task_log("### Event JSON", "```json", payload, "```")
        event = extract_events(text)[0]
        assert event.fields == {"commit": "abc"}
        assert event.to_payload()["commit"] == "abc"

    def test_unicode_line_separators_stay_in_string(self):
        """U+2028, U+2029 and U+0085 written raw by json.dumps are not line breaks."""
        note = "use cache\u2028then\u2029retry\u0085now"
        payload = dict(json.loads(EVENT), note=note)
        text = task_log("### Event JSON", "```json", json.dumps(payload, ensure_ascii=False), "```")

        events = extract_events(text)

        assert len(events) == 1
        assert events[0].fields["note"] == note

    def test_crlf_line_endings(self):
        text = task_log("### Event JSON", "```json", EVENT, "```").replace("\n", "\r\n")
        assert extract_events(text)[0].task_uid == "tsk_aaa111"


class TestExtractFencedJson:
    """Tests for extraction under arbitrary headings."""

    def test_wisp_heading(self):
        text = "## 🪶 Wisp\n\n```json\n{\"type\": \"wisp\", \"id\": \"wsp_1\"}\n```"
        assert extract_fenced_json(text, "## 🪶 Wisp") == [{"type": "wisp", "id": "wsp_1"}]

    def test_other_heading_not_matched(self):
        text = "## 🪶 Wisp\n\n```json\n{}\n```"
        assert extract_fenced_json(text, "### Event JSON") == []


class TestReplaceSectionPayload:
    """Tests for in-place payload rewriting."""

    def test_rewrites_block_and_keeps_surroundings(self):
        text = task_log("**Status:** pass", "", "### Event JSON", "```json", EVENT, "```", "", "trailer")
        new_value = dict(json.loads(EVENT), taskUid="tsk_bbb222")

        result = replace_section_payload(text, "### Event JSON", new_value)

        assert result.startswith("## 📝 Task Log: US-003\n\n**Status:** pass")
        assert result.endswith("```\n\ntrailer")
        assert extract_events(result)[0].task_uid == "tsk_bbb222"

    def test_index_selects_block(self):
        second = EVENT.replace('"attempt": 1', '"attempt": 2')
        text = task_log(
            "### Event JSON", "```json", EVENT, "```",
            "### Event JSON", "```json", second, "```",
        )
        result = replace_section_payload(
            text, "### Event JSON", dict(json.loads(second), taskUid="tsk_new"), index=1
        )
        events = extract_events(result)
        assert [e.task_uid for e in events] == ["tsk_aaa111", "tsk_new"]

    def test_no_block_returns_none(self):
        assert replace_section_payload("## 📝 Task Log: US-1", "### Event JSON", {}) is None

    def test_trailing_newline_preserved(self):
        text = task_log("### Event JSON", "```json", EVENT, "```") + "\n"
        assert replace_section_payload(text, "### Event JSON", {"a": 1}).endswith("```\n")

    def test_rewrite_keeps_unicode_line_separators(self):
        text = task_log("### Event JSON", "```json", EVENT, "```", "", "Note: a\u2028b")
        new_value = dict(json.loads(EVENT), note="x\u2029y")

        result = replace_section_payload(text, "### Event JSON", new_value)

        assert result.endswith("Note: a\u2028b")
        assert extract_events(result)[0].fields == {"note": "x\u2029y"}
