"""
Wisp lifecycle: ephemeral hints with an expiry.

A wisp is a short note posted for later iterations to see. It is visible
only while unexpired and unpromoted. Promotion turns it into something
durable (a discovery note or a new task) and then flips the embedded
promoted flag on its document.

Filtering fails closed: anything unparseable counts as expired.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from issues_loop.documents import (
    WISP_HEADING,
    is_wisp,
    promoted_from,
    render_discovery_note,
    render_wisp,
)
from issues_loop.errors import ExternalReadFailure, ExternalWriteFailure, MalformedPayload
from issues_loop.events import extract_fenced_json, replace_section_payload
from issues_loop.identity import wisp_id
from issues_loop.models import (
    DiscoveredCandidate,
    DiscoverySource,
    LogDocument,
    PromotionMode,
    Wisp,
    format_utc,
    utc_now,
)

if TYPE_CHECKING:
    from issues_loop.config import LoopConfig
    from issues_loop.discovery import DiscoveryEnqueuer
    from issues_loop.log_adapter import LogAdapter
    from issues_loop.logger import LoopLogger
    from issues_loop.task_graph import TaskGraphStore

PROMOTED_TITLE_PREFIX = "Promoted wisp: "
PROMOTED_CRITERIA = ["Wisp requirement addressed"]


def _aware(now: Optional[datetime]) -> datetime:
    if now is None:
        return utc_now()
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def parse_wisps(document: LogDocument) -> list[Wisp]:
    """Wisp payloads in one document; non-wisp payloads are dropped."""
    wisps = []
    for payload in extract_fenced_json(document.body, WISP_HEADING):
        try:
            wisps.append(Wisp.from_payload(payload, document_id=document.id))
        except MalformedPayload:
            continue
    return wisps


@dataclass
class PromotionResult:
    """What promote() did."""
    wisp_id: str
    mode: PromotionMode
    promoted: bool = False          # Durable effect happened
    patched: bool = False           # Wisp document now carries promoted: true
    enqueued: int = 0
    skipped: Optional[str] = None   # Reason nothing was done


class WispManager:
    """
    Posts, filters and promotes wisps.
    """

    def __init__(
        self,
        adapter: LogAdapter,
        store: TaskGraphStore,
        enqueuer: DiscoveryEnqueuer,
        config: LoopConfig,
        logger: Optional[LoopLogger] = None,
    ) -> None:
        self._adapter = adapter
        self._store = store
        self._enqueuer = enqueuer
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
            log_data = {"component": "wisps"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _read(self) -> Optional[list[LogDocument]]:
        try:
            return self._adapter.read_recent(self._config.wisps.read_window)
        except ExternalReadFailure as e:
            self._log("wisp_read_failed", {"error": e.message}, level="warn")
            return None

    def collect_active(self, now: Optional[datetime] = None) -> list[Wisp]:
        """
        Wisps that are unpromoted and strictly unexpired at now.

        Returns:
            Active wisps, oldest first. Empty when the log cannot be read.
        """
        now = _aware(now)
        documents = self._read() or []

        active = []
        for document in documents:
            if not is_wisp(document.body):
                continue
            for wisp in parse_wisps(document):
                if wisp.is_active(now):
                    active.append(wisp)

        self._log("wisps_collected", {"active": len(active)}, level="debug")
        return active

    def post_wisp(
        self,
        note: str,
        task_uid: str,
        ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> Wisp:
        """
        Post a new wisp.

        Raises:
            ExternalWriteFailure: If the post fails.
        """
        now = _aware(now)
        if ttl is None:
            ttl = timedelta(minutes=self._config.wisps.ttl_minutes)
        expires_at = format_utc(now + ttl)

        wisp = Wisp(
            id=wisp_id(task_uid, note, expires_at),
            note=note,
            task_uid=task_uid,
            expires_at=expires_at,
        )
        document_id = self._adapter.post_event(render_wisp(wisp))
        self._log("wisp_posted", {"wisp_id": wisp.id, "expires_at": expires_at})
        return Wisp(
            id=wisp.id,
            note=wisp.note,
            task_uid=wisp.task_uid,
            expires_at=wisp.expires_at,
            document_id=document_id,
        )

    def _locate(
        self,
        documents: list[LogDocument],
        target_id: str,
    ) -> tuple[Optional[LogDocument], Optional[Wisp], int]:
        """Newest document embedding the wisp, its copy there, and the block index."""
        found: tuple[Optional[LogDocument], Optional[Wisp], int] = (None, None, 0)
        for document in documents:
            if not is_wisp(document.body):
                continue
            payloads = extract_fenced_json(document.body, WISP_HEADING)
            for index, payload in enumerate(payloads):
                try:
                    candidate = Wisp.from_payload(payload, document_id=document.id)
                except MalformedPayload:
                    continue
                if candidate.id == target_id:
                    found = (document, candidate, index)
        return found

    def promote(
        self,
        wisp: Wisp,
        mode: PromotionMode,
        now: Optional[datetime] = None,
    ) -> PromotionResult:
        """
        Promote a wisp into a durable artifact, then flag it promoted.

        A wisp already promoted (locally or on its newest document) is left
        alone. If the flag patch fails the durable artifact still stands,
        and a later attempt finds its discovery note instead of posting
        another.
        """
        result = PromotionResult(wisp_id=wisp.id, mode=mode)
        if wisp.promoted:
            result.skipped = "already_promoted"
            return result

        documents = self._read() or []
        document, latest, block_index = self._locate(documents, wisp.id)
        if latest is not None and latest.promoted:
            result.skipped = "already_promoted"
            return result

        if mode is PromotionMode.DISCOVERY:
            if any(promoted_from(d.body) == wisp.id for d in documents):
                # A note from an earlier attempt stands; only the flag is missing.
                self._log("wisp_note_exists", {"wisp_id": wisp.id})
            else:
                try:
                    self._adapter.post_event(render_discovery_note(wisp, format_utc(_aware(now))))
                except ExternalWriteFailure as e:
                    self._log("wisp_promotion_failed", {
                        "wisp_id": wisp.id,
                        "error": e.message,
                    }, level="warn")
                    result.skipped = "post_failed"
                    return result
        else:
            parent = self._store.find_by_uid(wisp.task_uid)
            if parent is None:
                self._log("wisp_parent_unknown", {
                    "wisp_id": wisp.id,
                    "task_uid": wisp.task_uid,
                }, level="warn")
                result.skipped = "unknown_parent"
                return result
            max_chars = self._config.wisps.title_max_chars
            candidate = DiscoveredCandidate(
                title=PROMOTED_TITLE_PREFIX + wisp.note[:max_chars],
                description=wisp.note,
                acceptance_criteria=list(PROMOTED_CRITERIA),
            )
            result.enqueued = self._enqueuer.enqueue(
                parent, [candidate], source=DiscoverySource.WISP
            )
        result.promoted = True

        if document is None:
            self._log("wisp_document_missing", {"wisp_id": wisp.id}, level="warn")
            return result

        promoted = (latest or wisp).promote()
        body = replace_section_payload(
            document.body, WISP_HEADING, promoted.to_payload(), index=block_index
        ) or render_wisp(promoted)
        result.patched = self._adapter.patch(document.id, body)
        self._log("wisp_promoted", {
            "wisp_id": wisp.id,
            "mode": mode.value,
            "patched": result.patched,
        })
        return result
