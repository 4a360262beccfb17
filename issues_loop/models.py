"""
Core data models for the implementation loop.

This module defines the data structures shared by every component:
- Enums for discovery source, outcome status and promotion mode
- Dataclasses for tasks, the task graph document and its compaction block
- Records read from the external log (outcome events, wisps, documents)
- JSON serialization support for all models
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from issues_loop.errors import MalformedPayload

DEFAULT_SUMMARY_EVERY = 5
DEFAULT_FORMULA = "feature"
TASK_ID_PREFIX = "US-"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_utc(moment: datetime) -> str:
    """Render an instant as strict ISO 8601 with a Z suffix, second precision."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_utc(value: Any) -> Optional[datetime]:
    """
    Parse an absolute ISO 8601 instant.

    Returns None for anything that is not a string carrying an explicit
    offset or Z suffix; naive timestamps are not absolute instants.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(timezone.utc)


def format_task_id(number: int) -> str:
    """Human-facing id for the n-th task, e.g. 7 -> "US-007"."""
    return f"{TASK_ID_PREFIX}{number:03d}"


class DiscoverySource(Enum):
    """How a task entered the graph."""
    PLANNED = "planned"
    TASK_LOG = "task_log"
    WISP = "wisp"


class OutcomeStatus(Enum):
    """Result of one execution attempt."""
    PASS = "pass"
    FAIL = "fail"


class PromotionMode(Enum):
    """Durable artifact a wisp is promoted into."""
    DISCOVERY = "discovery"
    TASK = "task"


@dataclass(frozen=True)
class CompactionState:
    """
    Compaction counters stored on the task graph document.

    Immutable; the engine computes the next state and the store persists it.
    """
    task_log_count: int = 0
    summary_every: int = DEFAULT_SUMMARY_EVERY

    @property
    def is_due(self) -> bool:
        """True once enough task logs accumulated for a summary."""
        return self.task_log_count >= self.summary_every

    def incremented(self) -> CompactionState:
        return replace(self, task_log_count=self.task_log_count + 1)

    def reset(self) -> CompactionState:
        return replace(self, task_log_count=0)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "taskLogCountSinceLastSummary": self.task_log_count,
            "summaryEveryNTaskLogs": self.summary_every,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompactionState:
        """Create from dictionary."""
        return cls(
            task_log_count=data.get("taskLogCountSinceLastSummary", 0),
            summary_every=data.get("summaryEveryNTaskLogs", DEFAULT_SUMMARY_EVERY),
        )


_TASK_KEYS = (
    "id", "uid", "title", "description", "acceptanceCriteria",
    "verifyCommands", "dependsOn", "priority", "passes", "attempts",
    "lastAttempt", "discoveredFrom", "discoverySource",
)


@dataclass
class Task:
    """
    A unit of work in the task graph.

    Persisted as one entry of userStories in the task graph document.
    Keys this model does not know about are carried in extra and written
    back unchanged.
    """
    id: str                                    # Sequence label, e.g. "US-003"
    uid: str                                   # Content-derived identity
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    verify_commands: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)  # Task ids
    priority: int = 0                          # Lower runs earlier
    passes: bool = False
    attempts: int = 0
    last_attempt: Optional[str] = None         # ISO timestamp
    discovered_from: Optional[str] = None      # uid of originating task
    discovery_source: DiscoverySource = DiscoverySource.PLANNED
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def id_number(self) -> int:
        """Numeric suffix of the id, or 0 when the id has none."""
        digits = self.id.rsplit("-", 1)[-1]
        return int(digits) if digits.isdigit() else 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {
            "id": self.id,
            "uid": self.uid,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "verifyCommands": list(self.verify_commands),
            "dependsOn": list(self.depends_on),
            "priority": self.priority,
            "passes": self.passes,
            "attempts": self.attempts,
            "lastAttempt": self.last_attempt,
            "discoveredFrom": self.discovered_from,
            "discoverySource": self.discovery_source.value,
        }
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Create from a schema-validated dictionary."""
        source = data.get("discoverySource") or DiscoverySource.PLANNED.value
        return cls(
            id=data["id"],
            uid=data["uid"],
            title=data["title"],
            description=data.get("description") or "",
            acceptance_criteria=list(data.get("acceptanceCriteria") or []),
            verify_commands=list(data.get("verifyCommands") or []),
            depends_on=list(data.get("dependsOn") or []),
            priority=data.get("priority", 0),
            passes=data.get("passes", False),
            attempts=data.get("attempts", 0),
            last_attempt=data.get("lastAttempt"),
            discovered_from=data.get("discoveredFrom"),
            discovery_source=DiscoverySource(source),
            extra={k: v for k, v in data.items() if k not in _TASK_KEYS},
        )


_GRAPH_KEYS = ("issueNumber", "formula", "compaction", "userStories")


@dataclass
class TaskGraph:
    """
    The task graph document.

    Persisted to prd.json at the repo root; the source of truth for which
    tasks exist, which pass, and how far compaction has counted.
    """
    issue_number: int
    formula: str = DEFAULT_FORMULA
    compaction: CompactionState = field(default_factory=CompactionState)
    tasks: list[Task] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def get(self, task_id: str) -> Optional[Task]:
        """Find a task by its id."""
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def find_by_uid(self, uid: str) -> Optional[Task]:
        """Find a task by its uid."""
        for task in self.tasks:
            if task.uid == uid:
                return task
        return None

    def children_of(self, parent_uid: str) -> list[Task]:
        """Tasks discovered from the given parent, in document order."""
        return [t for t in self.tasks if t.discovered_from == parent_uid]

    def next_task_number(self) -> int:
        """1 + the largest numeric id suffix, so ids stay dense and increasing."""
        return max((t.id_number for t in self.tasks), default=0) + 1

    @property
    def pending_tasks(self) -> list[Task]:
        return [t for t in self.tasks if not t.passes]

    @property
    def passing_tasks(self) -> list[Task]:
        return [t for t in self.tasks if t.passes]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = dict(self.extra)
        data["issueNumber"] = self.issue_number
        data["formula"] = self.formula
        data["compaction"] = self.compaction.to_dict()
        data["userStories"] = [task.to_dict() for task in self.tasks]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskGraph:
        """Create from a schema-validated, migrated dictionary."""
        return cls(
            issue_number=data["issueNumber"],
            formula=data.get("formula", DEFAULT_FORMULA),
            compaction=CompactionState.from_dict(data.get("compaction") or {}),
            tasks=[Task.from_dict(story) for story in data.get("userStories", [])],
            extra={k: v for k, v in data.items() if k not in _GRAPH_KEYS},
        )


@dataclass(frozen=True)
class LogDocument:
    """One document (issue comment) on the external log."""
    id: str
    url: str
    body: str


@dataclass(frozen=True)
class OutcomeEvent:
    """
    Structured outcome of one execution attempt.

    Embedded in a task log under the Event JSON heading. Fields beyond the
    required four are kept in fields and re-emitted on serialization.
    """
    task_id: str
    task_uid: str
    status: OutcomeStatus
    attempt: int
    fields: dict[str, Any] = field(default_factory=dict)

    def with_uid(self, uid: str) -> OutcomeEvent:
        return replace(self, task_uid=uid)

    def to_payload(self) -> dict[str, Any]:
        """Convert to the JSON payload posted to the log."""
        payload = dict(self.fields)
        payload.update({
            "taskId": self.task_id,
            "taskUid": self.task_uid,
            "status": self.status.value,
            "attempt": self.attempt,
        })
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> OutcomeEvent:
        """
        Validate an extracted payload.

        Raises:
            MalformedPayload: If a required field is missing or mistyped.
        """
        if not isinstance(payload, dict):
            raise MalformedPayload("$", "event payload must be an object", payload)

        task_id = payload.get("taskId")
        if not isinstance(task_id, str) or not task_id:
            raise MalformedPayload("taskId", "must be a non-empty string", task_id)

        task_uid = payload.get("taskUid")
        if not isinstance(task_uid, str):
            raise MalformedPayload("taskUid", "must be a string", task_uid)

        try:
            status = OutcomeStatus(payload.get("status"))
        except ValueError:
            raise MalformedPayload("status", "must be 'pass' or 'fail'", payload.get("status"))

        attempt = payload.get("attempt")
        if isinstance(attempt, bool) or not isinstance(attempt, int) or attempt < 1:
            raise MalformedPayload("attempt", "must be an integer >= 1", attempt)

        extra = {
            k: v for k, v in payload.items()
            if k not in ("taskId", "taskUid", "status", "attempt")
        }
        return cls(
            task_id=task_id,
            task_uid=task_uid,
            status=status,
            attempt=attempt,
            fields=extra,
        )


@dataclass(frozen=True)
class Wisp:
    """
    An ephemeral hint with an expiry.

    Immutable except for promotion, which only ever moves false -> true.
    """
    id: str
    note: str
    task_uid: str
    expires_at: str
    promoted: bool = False
    fields: dict[str, Any] = field(default_factory=dict)
    document_id: Optional[str] = field(default=None, compare=False)  # Hosting document

    @property
    def expires_instant(self) -> Optional[datetime]:
        """Parsed expiry, or None when missing or unparseable."""
        return parse_utc(self.expires_at)

    def is_active(self, now: datetime) -> bool:
        """
        True only for unpromoted wisps with a parseable expiry strictly after now.

        A missing or garbled expiry counts as expired.
        """
        if self.promoted:
            return False
        expires = self.expires_instant
        return expires is not None and expires > now

    def promote(self) -> Wisp:
        return replace(self, promoted=True)

    def to_payload(self) -> dict[str, Any]:
        """Convert to the JSON payload posted to the log."""
        payload = dict(self.fields)
        payload.update({
            "type": "wisp",
            "id": self.id,
            "taskUid": self.task_uid,
            "note": self.note,
            "expiresAt": self.expires_at,
            "promoted": self.promoted,
        })
        return payload

    @classmethod
    def from_payload(cls, payload: Any, document_id: Optional[str] = None) -> Wisp:
        """
        Validate an extracted wisp payload.

        expiresAt is kept verbatim; judging it is the caller's job.

        Raises:
            MalformedPayload: If the payload is not a wisp.
        """
        if not isinstance(payload, dict):
            raise MalformedPayload("$", "wisp payload must be an object", payload)
        if payload.get("type") != "wisp":
            raise MalformedPayload("type", "must be 'wisp'", payload.get("type"))

        wisp_id = payload.get("id")
        if not isinstance(wisp_id, str) or not wisp_id:
            raise MalformedPayload("id", "must be a non-empty string", wisp_id)

        note = payload.get("note")
        if not isinstance(note, str):
            raise MalformedPayload("note", "must be a string", note)

        expires_at = payload.get("expiresAt")
        extra = {
            k: v for k, v in payload.items()
            if k not in ("type", "id", "taskUid", "note", "expiresAt", "promoted")
        }
        return cls(
            id=wisp_id,
            note=note,
            task_uid=str(payload.get("taskUid") or ""),
            expires_at=expires_at if isinstance(expires_at, str) else "",
            promoted=payload.get("promoted") is True,
            fields=extra,
            document_id=document_id,
        )


@dataclass
class DiscoveredCandidate:
    """A task surfaced mid-execution, not yet in the graph."""
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    verify_commands: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "verifyCommands": list(self.verify_commands),
            "dependsOn": list(self.depends_on),
        }

    @classmethod
    def from_dict(cls, data: Any) -> DiscoveredCandidate:
        """
        Create from the candidate schema.

        Raises:
            MalformedPayload: If data is not an object or has no title.
        """
        if not isinstance(data, dict):
            raise MalformedPayload("$", "candidate must be an object", data)
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise MalformedPayload("title", "must be a non-empty string", title)
        for key in ("acceptanceCriteria", "verifyCommands", "dependsOn"):
            value = data.get(key)
            if value is not None and not (
                isinstance(value, list) and all(isinstance(v, str) for v in value)
            ):
                raise MalformedPayload(key, "must be a list of strings", value)
        return cls(
            title=title,
            description=data.get("description") or "",
            acceptance_criteria=list(data.get("acceptanceCriteria") or []),
            verify_commands=list(data.get("verifyCommands") or []),
            depends_on=list(data.get("dependsOn") or []),
        )


@dataclass
class TaskOutcome:
    """
    What the opaque execution step hands back for one task.

    Only status is required; everything else feeds discovery, wisps and the
    task log.
    """
    status: OutcomeStatus
    commit: Optional[str] = None
    discovered: list[DiscoveredCandidate] = field(default_factory=list)
    wisps: list[str] = field(default_factory=list)            # Notes to post as new wisps
    promotions: list[tuple[str, PromotionMode]] = field(default_factory=list)  # (wisp id, mode)
    summary: str = ""
    learnings: str = ""
    fields: dict[str, Any] = field(default_factory=dict)      # Extra event payload fields


class LoopEncoder(json.JSONEncoder):
    """JSON encoder that handles loop model types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def model_to_json(obj: Any, **kwargs: Any) -> str:
    """Serialize a model object to JSON string."""
    return json.dumps(obj, cls=LoopEncoder, **kwargs)
