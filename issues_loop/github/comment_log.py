"""
GitHub issue comments as the external log.

The comment thread of one issue is the shared, append-mostly surface the
loop writes to. All calls go through the gh CLI:
- post: gh issue comment <n> --body <body>
- read: gh issue view <n> --json comments
- patch: gh api repos/<repo>/issues/comments/<id> -X PATCH -f body=<body>
"""

from __future__ import annotations

import json
import re
import subprocess
from typing import TYPE_CHECKING, Optional

from issues_loop.errors import ExternalReadFailure, ExternalWriteFailure
from issues_loop.models import LogDocument

if TYPE_CHECKING:
    from issues_loop.config import LoopConfig
    from issues_loop.logger import LoopLogger

_COMMENT_ID_RE = re.compile(r"#issuecomment-(\d+)")


def comment_id_from_url(url: str) -> Optional[str]:
    """Numeric comment id from an issue comment URL, or None."""
    match = _COMMENT_ID_RE.search(url or "")
    return match.group(1) if match else None


class GitHubCommentLog:
    """
    External log backed by one GitHub issue's comment thread.

    Implements post / read_recent / patch. Command failures are returned as
    (success, stdout, stderr) internally and converted to
    ExternalReadFailure / ExternalWriteFailure here.
    """

    def __init__(
        self,
        config: LoopConfig,
        logger: Optional[LoopLogger] = None,
        issue_number: Optional[int] = None,
    ) -> None:
        """
        Initialize the comment log.

        Args:
            config: LoopConfig with the github section filled in.
            logger: Optional logger for recording operations.
            issue_number: Overrides github.issue_number from config.
        """
        self.config = config
        self._logger = logger
        self.repo = config.github.repo
        self.issue_number = issue_number or config.github.issue_number

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "comment_log"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _run_gh_command(self, args: list[str]) -> tuple[bool, str, str]:
        """
        Run a gh CLI command.

        Args:
            args: Arguments to pass to gh CLI.

        Returns:
            Tuple of (success, stdout, stderr).
        """
        try:
            result = subprocess.run(
                [self.config.github.binary] + args,
                cwd=str(self.config.repo_root),
                capture_output=True,
                text=True,
                timeout=self.config.github.timeout_seconds,
            )
            return result.returncode == 0, result.stdout, result.stderr
        except subprocess.TimeoutExpired:
            return False, "", "Command timed out"
        except OSError as e:
            return False, "", str(e)

    def post(self, body: str) -> str:
        """
        Append a comment to the issue.

        Returns:
            The new comment's numeric id (the comment URL if gh printed no
            recognizable one).

        Raises:
            ExternalWriteFailure: If gh fails.
        """
        success, stdout, stderr = self._run_gh_command([
            "issue", "comment", str(self.issue_number),
            "--repo", self.repo,
            "--body", body,
        ])
        if not success:
            self._log("comment_post_failed", {"error": stderr[:200]}, level="warn")
            raise ExternalWriteFailure(
                f"Failed to comment on issue #{self.issue_number}", stderr
            )

        url = stdout.strip()
        comment_id = comment_id_from_url(url)
        if comment_id is None:
            self._log("comment_id_unparsed", {"output": url[:200]}, level="warn")
            return url
        self._log("comment_posted", {"comment_id": comment_id}, level="debug")
        return comment_id

    def read_recent(self, n: int) -> list[LogDocument]:
        """
        Read the most recent comments.

        Args:
            n: Maximum number of comments to return.

        Returns:
            Up to n LogDocuments, oldest to newest.

        Raises:
            ExternalReadFailure: If gh fails or prints something unparseable.
        """
        success, stdout, stderr = self._run_gh_command([
            "issue", "view", str(self.issue_number),
            "--repo", self.repo,
            "--json", "comments",
        ])
        if not success:
            self._log("comment_read_failed", {"error": stderr[:200]}, level="warn")
            raise ExternalReadFailure(
                f"Failed to read comments of issue #{self.issue_number}", stderr
            )

        try:
            data = json.loads(stdout or "{}")
        except json.JSONDecodeError as e:
            raise ExternalReadFailure(f"Unparseable gh output: {e}")

        comments = data.get("comments") if isinstance(data, dict) else None
        if not isinstance(comments, list):
            raise ExternalReadFailure("gh output has no comments list")

        documents = []
        for comment in comments[-n:] if n > 0 else []:
            if not isinstance(comment, dict):
                continue
            url = comment.get("url") or ""
            documents.append(LogDocument(
                id=comment_id_from_url(url) or str(comment.get("id", "")),
                url=url,
                body=comment.get("body") or "",
            ))
        return documents

    def patch(self, document_id: str, body: str) -> bool:
        """
        Overwrite an existing comment's body.

        Returns:
            True if gh accepted the edit. Ids that are not numeric comment
            ids are never patchable.
        """
        if not str(document_id).isdigit():
            self._log("comment_patch_skipped", {"comment_id": document_id}, level="warn")
            return False

        success, _, stderr = self._run_gh_command([
            "api", f"repos/{self.repo}/issues/comments/{document_id}",
            "-X", "PATCH",
            "-f", f"body={body}",
        ])
        if not success:
            self._log("comment_patch_failed", {
                "comment_id": document_id,
                "error": stderr[:200],
            }, level="warn")
        return success
