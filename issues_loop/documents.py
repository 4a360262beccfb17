"""
Markdown rendering for documents posted to the external log.

Every document starts with a level-two heading that identifies its kind,
so readers can classify a comment by its first line alone.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Optional

from issues_loop.events import EVENT_HEADING
from issues_loop.models import OutcomeEvent, Task, TaskOutcome, Wisp

TASK_LOG_HEADING = "## 📝 Task Log: "
SUMMARY_HEADING = "## 🧾 Compacted Summary"
DISCOVERY_NOTE_HEADING = "## 🔍 Discovery Note"
WISP_HEADING = "## 🪶 Wisp"
ENQUEUE_HEADING = "## 🧭 Discovered Tasks: "

_PROMOTED_FROM_RE = re.compile(r"^\*\*Promoted from wisp:\*\* `([^`]+)`", re.MULTILINE)


def _starts_with(body: str, heading: str) -> bool:
    return body.lstrip().startswith(heading)


def is_task_log(body: str) -> bool:
    """True for task log documents, whatever follows the task id."""
    return _starts_with(body, TASK_LOG_HEADING)


def is_summary(body: str) -> bool:
    return _starts_with(body, SUMMARY_HEADING)


def is_discovery_note(body: str) -> bool:
    return _starts_with(body, DISCOVERY_NOTE_HEADING)


def is_wisp(body: str) -> bool:
    return _starts_with(body, WISP_HEADING)


def promoted_from(body: str) -> Optional[str]:
    """Wisp id a discovery note was promoted from, if the body is one."""
    if not is_discovery_note(body):
        return None
    match = _PROMOTED_FROM_RE.search(body)
    return match.group(1) if match else None


def json_block(value: Any, compact: bool = False) -> str:
    """Render a value as a fenced json block."""
    if compact:
        text = json.dumps(value, ensure_ascii=False)
    else:
        text = json.dumps(value, indent=2, ensure_ascii=False)
    return f"```json\n{text}\n```"


def render_task_log(
    task: Task,
    event: OutcomeEvent,
    outcome: TaskOutcome,
    timestamp: str,
) -> str:
    """Render the task log posted after every attempt."""
    lines = [
        f"{TASK_LOG_HEADING}{task.id}",
        "",
        f"**Title:** {task.title}",
        f"**UID:** `{task.uid}`",
        f"**Status:** {event.status.value}",
        f"**Attempt:** {event.attempt}",
        f"**Timestamp:** {timestamp}",
    ]
    if outcome.commit:
        lines.append(f"**Commit:** {outcome.commit}")

    if outcome.summary:
        lines.extend(["", "### Summary", outcome.summary])
    if outcome.learnings:
        lines.extend(["", "### Learnings", outcome.learnings])

    lines.extend(["", EVENT_HEADING, json_block(event.to_payload())])
    return "\n".join(lines)


def render_enqueue_notice(
    parent_id: str,
    parent_uid: Optional[str],
    tasks: Iterable[Task],
    source: str,
) -> str:
    """Render the notice posted after discovered tasks were appended."""
    tasks = list(tasks)
    lines = [f"{ENQUEUE_HEADING}{parent_id}", ""]
    for task in tasks:
        lines.append(f"- **{task.id}** (uid: `{task.uid}`): {task.title}")

    payload = {
        "type": "task_enqueue",
        "parentId": parent_id,
        "parentUid": parent_uid,
        "discoverySource": source,
        "tasks": [{"id": t.id, "uid": t.uid, "title": t.title} for t in tasks],
    }
    lines.extend(["", EVENT_HEADING, json_block(payload)])
    return "\n".join(lines)


def render_discovery_note(wisp: Wisp, timestamp: str) -> str:
    """Render a durable discovery note promoted from a wisp."""
    return "\n".join([
        DISCOVERY_NOTE_HEADING,
        "",
        f"**Promoted from wisp:** `{wisp.id}`",
        f"**Original task:** `{wisp.task_uid}`",
        f"**Timestamp:** {timestamp}",
        "",
        "### Pattern Discovered",
        wisp.note,
        "",
        "### Source",
        "Promoted from ephemeral wisp to durable discovery note.",
    ])


def render_wisp(wisp: Wisp) -> str:
    """Render a wisp document; the payload is the whole record."""
    return "\n".join([
        WISP_HEADING,
        "",
        json_block(wisp.to_payload(), compact=True),
    ])


def render_summary(
    issue_number: int,
    timestamp: str,
    covers: int,
    supersedes: str,
    covered_tasks: list[str],
    discoveries: list[str],
    open_risks: list[str],
    progress: str,
) -> str:
    """Render a compacted summary."""
    return "\n".join([
        SUMMARY_HEADING,
        "",
        f"**Issue:** #{issue_number}",
        f"**Timestamp:** {timestamp}",
        f"**Covers:** {covers} task logs since last summary",
        f"**Supersedes:** {supersedes}",
        "",
        "### Covered Tasks (UIDs and Attempts)",
        "\n".join(covered_tasks) if covered_tasks else "No task data available",
        "",
        "### Canonical Decisions and Patterns",
        "\n---\n".join(discoveries) if discoveries else "No discovery notes found",
        "",
        "### Open Risks",
        "\n".join(open_risks) if open_risks else "None, all tasks passing",
        "",
        "### Current Progress",
        progress,
    ])
