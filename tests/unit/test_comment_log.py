"""
Tests for the GitHub comment transport (issues_loop/github/comment_log.py).
"""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from issues_loop.errors import ExternalReadFailure, ExternalWriteFailure
from issues_loop.github import GitHubCommentLog, comment_id_from_url

COMMENT_URL = "https://github.com/acme/widgets/issues/42#issuecomment-987654"


def completed(returncode=0, stdout="", stderr=""):
    result = MagicMock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


@pytest.fixture
def comment_log(config):
    return GitHubCommentLog(config)


class TestCommentIdFromUrl:
    """Tests for comment_id_from_url."""

    def test_parses_numeric_id(self):
        assert comment_id_from_url(COMMENT_URL) == "987654"

    def test_none_without_anchor(self):
        assert comment_id_from_url("https://github.com/acme/widgets/issues/42") is None
        assert comment_id_from_url("") is None


class TestPost:
    """Tests for GitHubCommentLog.post."""

    def test_posts_comment_and_returns_id(self, comment_log, config):
        with patch("subprocess.run", return_value=completed(stdout=COMMENT_URL + "\n")) as run:
            document_id = comment_log.post("## 📝 Task Log: US-001")

        assert document_id == "987654"
        args = run.call_args[0][0]
        assert args == [
            "gh", "issue", "comment", "42",
            "--repo", "acme/widgets",
            "--body", "## 📝 Task Log: US-001",
        ]
        assert run.call_args.kwargs["timeout"] == 30
        assert run.call_args.kwargs["cwd"] == config.repo_root

    def test_failure_raises_write_failure(self, comment_log):
        with patch("subprocess.run", return_value=completed(1, stderr="HTTP 502")):
            with pytest.raises(ExternalWriteFailure) as exc_info:
                comment_log.post("body")
        assert exc_info.value.stderr == "HTTP 502"
        assert exc_info.value.is_recoverable

    def test_timeout_raises_write_failure(self, comment_log):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired("gh", 30)):
            with pytest.raises(ExternalWriteFailure):
                comment_log.post("body")

    def test_missing_binary_raises_write_failure(self, comment_log):
        with patch("subprocess.run", side_effect=FileNotFoundError("gh")):
            with pytest.raises(ExternalWriteFailure):
                comment_log.post("body")

    def test_unparseable_output_returns_raw(self, comment_log):
        with patch("subprocess.run", return_value=completed(stdout="posted\n")):
            assert comment_log.post("body") == "posted"


class TestReadRecent:
    """Tests for GitHubCommentLog.read_recent."""

    def _output(self, count):
        return json.dumps({"comments": [
            {
                "id": f"IC_{i}",
                "url": f"https://github.com/acme/widgets/issues/42#issuecomment-{100 + i}",
                "body": f"comment {i}",
            }
            for i in range(count)
        ]})

    def test_returns_last_n_oldest_first(self, comment_log):
        with patch("subprocess.run", return_value=completed(stdout=self._output(7))) as run:
            documents = comment_log.read_recent(3)

        assert [d.id for d in documents] == ["104", "105", "106"]
        assert documents[0].body == "comment 4"
        assert run.call_args[0][0] == [
            "gh", "issue", "view", "42", "--repo", "acme/widgets", "--json", "comments",
        ]

    def test_failure_raises_read_failure(self, comment_log):
        with patch("subprocess.run", return_value=completed(1, stderr="not found")):
            with pytest.raises(ExternalReadFailure):
                comment_log.read_recent(5)

    def test_garbled_output_raises_read_failure(self, comment_log):
        with patch("subprocess.run", return_value=completed(stdout="<html>")):
            with pytest.raises(ExternalReadFailure):
                comment_log.read_recent(5)

    def test_missing_comments_key_raises_read_failure(self, comment_log):
        with patch("subprocess.run", return_value=completed(stdout="{}")):
            with pytest.raises(ExternalReadFailure):
                comment_log.read_recent(5)

    def test_null_body_becomes_empty(self, comment_log):
        output = json.dumps({"comments": [{"url": COMMENT_URL, "body": None}]})
        with patch("subprocess.run", return_value=completed(stdout=output)):
            assert comment_log.read_recent(5)[0].body == ""


class TestPatch:
    """Tests for GitHubCommentLog.patch."""

    def test_patches_via_api(self, comment_log):
        with patch("subprocess.run", return_value=completed()) as run:
            assert comment_log.patch("987654", "new body") is True

        assert run.call_args[0][0] == [
            "gh", "api", "repos/acme/widgets/issues/comments/987654",
            "-X", "PATCH", "-f", "body=new body",
        ]

    def test_failure_returns_false(self, comment_log):
        with patch("subprocess.run", return_value=completed(1, stderr="forbidden")):
            assert comment_log.patch("987654", "new body") is False

    def test_non_numeric_id_not_patched(self, comment_log):
        with patch("subprocess.run") as run:
            assert comment_log.patch(COMMENT_URL, "body") is False
        run.assert_not_called()


class TestIssueNumberOverride:
    """Tests for the constructor override."""

    def test_override(self, config):
        log = GitHubCommentLog(config, issue_number=7)
        with patch("subprocess.run", return_value=completed(stdout=COMMENT_URL)) as run:
            log.post("x")
        assert run.call_args[0][0][3] == "7"
