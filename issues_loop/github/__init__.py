"""
GitHub integration for the implementation loop.

This module provides:
- GitHubCommentLog: an issue's comment thread as the external log
"""

from issues_loop.github.comment_log import GitHubCommentLog, comment_id_from_url

__all__ = ["GitHubCommentLog", "comment_id_from_url"]
