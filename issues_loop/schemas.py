"""Schema validation for the persisted task graph document.

The document is the single local source of truth, so loading validates it
and rejects malformed data with the offending field path. Legacy documents
(missing uid, discoveredFrom, discoverySource, formula or compaction) pass
validation; migration fills those in afterwards.
"""
from __future__ import annotations

from typing import Any

from issues_loop.errors import CorruptState
from issues_loop.models import DiscoverySource

_SOURCES = {source.value for source in DiscoverySource}


def _require_str_list(value: Any, field: str) -> None:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise CorruptState("must be a list of strings", field, value)


def _require_int(value: Any, field: str, minimum: int) -> None:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise CorruptState("must be an integer", field, value)
    if value < minimum:
        raise CorruptState(f"must be >= {minimum}", field, value)


def validate_story(story: Any, index: int) -> None:
    """Validate one entry of userStories.

    Raises:
        CorruptState: If the entry does not match the task schema.
    """
    prefix = f"userStories[{index}]"
    if not isinstance(story, dict):
        raise CorruptState("must be an object", prefix, story)

    task_id = story.get("id")
    if not isinstance(task_id, str) or not task_id:
        raise CorruptState("id is required", f"{prefix}.id", task_id)

    title = story.get("title")
    if not isinstance(title, str):
        raise CorruptState("title is required", f"{prefix}.title", title)

    if "uid" in story and (not isinstance(story["uid"], str) or not story["uid"]):
        raise CorruptState("must be a non-empty string", f"{prefix}.uid", story["uid"])

    if story.get("description") is not None and not isinstance(story["description"], str):
        raise CorruptState("must be a string", f"{prefix}.description", story["description"])

    for key in ("acceptanceCriteria", "verifyCommands", "dependsOn"):
        if story.get(key) is not None:
            _require_str_list(story[key], f"{prefix}.{key}")

    if "priority" in story:
        _require_int(story["priority"], f"{prefix}.priority", 0)
    if "attempts" in story:
        _require_int(story["attempts"], f"{prefix}.attempts", 0)

    if "passes" in story and not isinstance(story["passes"], bool):
        raise CorruptState("must be a boolean", f"{prefix}.passes", story["passes"])

    last_attempt = story.get("lastAttempt")
    if last_attempt is not None and not isinstance(last_attempt, str):
        raise CorruptState("must be a string or null", f"{prefix}.lastAttempt", last_attempt)

    parent = story.get("discoveredFrom")
    if parent is not None and not isinstance(parent, str):
        raise CorruptState("must be a string or null", f"{prefix}.discoveredFrom", parent)

    source = story.get("discoverySource")
    if source is not None and source not in _SOURCES:
        raise CorruptState(
            f"must be one of {sorted(_SOURCES)}", f"{prefix}.discoverySource", source
        )


def validate_compaction(block: Any) -> None:
    """Validate the compaction block.

    Raises:
        CorruptState: If counters are missing or not integers.
    """
    if not isinstance(block, dict):
        raise CorruptState("must be an object", "compaction", block)
    if "taskLogCountSinceLastSummary" in block:
        _require_int(
            block["taskLogCountSinceLastSummary"],
            "compaction.taskLogCountSinceLastSummary",
            0,
        )
    if "summaryEveryNTaskLogs" in block:
        _require_int(block["summaryEveryNTaskLogs"], "compaction.summaryEveryNTaskLogs", 1)


def validate_graph_document(doc: Any) -> None:
    """Validate a task graph document, legacy or current.

    Args:
        doc: Parsed JSON document.

    Raises:
        CorruptState: If validation fails.
    """
    if not isinstance(doc, dict):
        raise CorruptState("document root must be an object", "$", doc)

    _require_int(doc.get("issueNumber"), "issueNumber", 1)

    if "formula" in doc and not isinstance(doc["formula"], str):
        raise CorruptState("must be a string", "formula", doc["formula"])

    if "compaction" in doc:
        validate_compaction(doc["compaction"])

    stories = doc.get("userStories")
    if not isinstance(stories, list):
        raise CorruptState("must be a list", "userStories", stories)

    seen_ids: set[str] = set()
    for index, story in enumerate(stories):
        validate_story(story, index)
        if story["id"] in seen_ids:
            raise CorruptState("duplicate task id", f"userStories[{index}].id", story["id"])
        seen_ids.add(story["id"])
