"""
Log adapter over the external log.

The external log is append-mostly: new documents are posted, recent ones
read back, and existing ones patched only for identity corrections and the
wisp promoted flag. The transport is anything that satisfies ExternalLog.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol

from issues_loop.models import LogDocument

if TYPE_CHECKING:
    from issues_loop.logger import LoopLogger


class ExternalLog(Protocol):
    """Protocol for the shared comment thread."""
    def post(self, body: str) -> str: ...
    def read_recent(self, n: int) -> list[LogDocument]: ...
    def patch(self, document_id: str, body: str) -> bool: ...


class LogAdapter:
    """
    The only component that talks to the external log.

    Transport errors (ExternalReadFailure, ExternalWriteFailure) propagate;
    callers decide whether "no data this cycle" is acceptable.
    """

    def __init__(
        self,
        transport: ExternalLog,
        logger: Optional[LoopLogger] = None,
    ) -> None:
        self._transport = transport
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "log_adapter"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def post_event(self, body: str) -> str:
        """
        Append a new document. History is never edited here.

        Returns:
            The new document's id.

        Raises:
            ExternalWriteFailure: If the transport rejects the post.
        """
        document_id = self._transport.post(body)
        first_line = body.split("\n", 1)[0]
        self._log("document_posted", {"document_id": document_id, "heading": first_line})
        return document_id

    def read_recent(self, n: int) -> list[LogDocument]:
        """
        Raises:
            ExternalReadFailure: If the transport cannot be read.
        """
        return self._transport.read_recent(n)

    def patch(self, document_id: str, body: str) -> bool:
        """Overwrite a document body; False when the transport refused."""
        patched = self._transport.patch(document_id, body)
        self._log(
            "document_patched" if patched else "document_patch_failed",
            {"document_id": document_id},
            level="info" if patched else "warn",
        )
        return patched
