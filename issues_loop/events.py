"""
Structured payload extraction from log documents.

Documents are free-form markdown. A machine-readable payload is a fenced
```json block that follows a known heading, e.g.:

    ### Event JSON
    ```json
    {"taskId": "US-003", "taskUid": "tsk_aaa111", "status": "pass", "attempt": 1}
    ```

The scanner is a three-state machine (OUTSIDE, IN_SECTION, IN_BLOCK). Any
other heading (# to ####) or a horizontal rule before the block closes
aborts the capture, as does a fence tagged with anything other than json.
Blocks that are not valid JSON are dropped without error.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Optional

from issues_loop.errors import MalformedPayload
from issues_loop.models import OutcomeEvent

EVENT_HEADING = "### Event JSON"

_HEADING_RE = re.compile(r"^#{1,4} ")
_RULE_RE = re.compile(r"^---")
_FENCE = "```"


class ScanState(Enum):
    OUTSIDE = "outside"
    IN_SECTION = "in_section"
    IN_BLOCK = "in_block"


@dataclass(frozen=True)
class FencedBlock:
    """A closed json block under the target heading."""
    start: int      # Index of the first content line
    end: int        # Index of the closing fence line
    content: str


def _is_boundary(line: str) -> bool:
    return bool(_HEADING_RE.match(line) or _RULE_RE.match(line))


def split_lines(text: str) -> list[str]:
    """Split on newlines only; U+2028 and friends stay inside their line."""
    return text.replace("\r\n", "\n").split("\n")


def scan_blocks(text: str, heading: str) -> Iterator[FencedBlock]:
    """
    Yield every closed json block that belongs to the given heading.

    Args:
        text: Document body.
        heading: Exact heading line, e.g. "### Event JSON".
    """
    state = ScanState.OUTSIDE
    start = 0
    buffer: list[str] = []

    for index, raw in enumerate(split_lines(text)):
        line = raw.strip()

        if state is ScanState.OUTSIDE:
            if line == heading:
                state = ScanState.IN_SECTION

        elif state is ScanState.IN_SECTION:
            if line.startswith(_FENCE):
                if line[len(_FENCE):].strip().lower() == "json":
                    state = ScanState.IN_BLOCK
                    start = index + 1
                    buffer = []
                else:
                    state = ScanState.OUTSIDE
            elif line == heading:
                pass
            elif _is_boundary(line):
                state = ScanState.OUTSIDE

        else:  # IN_BLOCK
            if line == _FENCE:
                yield FencedBlock(start=start, end=index, content="\n".join(buffer))
                state = ScanState.OUTSIDE
            elif _is_boundary(line):
                state = ScanState.IN_SECTION if line == heading else ScanState.OUTSIDE
            else:
                buffer.append(raw)


def _parse(block: FencedBlock) -> tuple[bool, Any]:
    try:
        return True, json.loads(block.content)
    except json.JSONDecodeError:
        return False, None


def extract_fenced_json(text: str, heading: str) -> list[Any]:
    """Parsed payloads under heading, in document order; invalid JSON is skipped."""
    payloads = []
    for block in scan_blocks(text, heading):
        ok, value = _parse(block)
        if ok:
            payloads.append(value)
    return payloads


def extract_event_payloads(text: str) -> list[Any]:
    """Every JSON value under an Event JSON heading, whatever its event type."""
    return extract_fenced_json(text, EVENT_HEADING)


def extract_events(text: str) -> list[OutcomeEvent]:
    """
    Outcome events embedded in a document.

    Payloads that parse but do not match the outcome schema (including
    enqueue notices) contribute nothing.
    """
    events = []
    for payload in extract_event_payloads(text):
        try:
            events.append(OutcomeEvent.from_payload(payload))
        except MalformedPayload:
            continue
    return events


def replace_section_payload(
    text: str,
    heading: str,
    value: Any,
    index: int = 0,
) -> Optional[str]:
    """
    Rewrite one parseable block under heading with a new value.

    Everything outside the block is preserved byte for byte apart from line
    endings, which are normalized to newlines.

    Args:
        text: Document body.
        heading: Exact heading line.
        value: Replacement payload.
        index: Which parseable block to replace, counted as in
            extract_fenced_json (0 is the first).

    Returns:
        The new document body, or None if no such block was found.
    """
    lines = split_lines(text)
    seen = -1
    for block in scan_blocks(text, heading):
        ok, _ = _parse(block)
        if not ok:
            continue
        seen += 1
        if seen != index:
            continue
        rendered = json.dumps(value, indent=2, ensure_ascii=False).split("\n")
        new_lines = lines[:block.start] + rendered + lines[block.end:]
        return "\n".join(new_lines)
    return None
