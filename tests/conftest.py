# tests/conftest.py

import json
from typing import Optional

import pytest

from issues_loop.config import GitHubConfig, LoopConfig, clear_config_cache
from issues_loop.errors import ExternalReadFailure, ExternalWriteFailure
from issues_loop.log_adapter import LogAdapter
from issues_loop.logger import clear_logger_cache
from issues_loop.models import LogDocument
from issues_loop.task_graph import TaskGraphStore

REPO = "acme/widgets"
ISSUE = 42


class FakeCommentLog:
    """In-memory external log with switchable failures."""

    def __init__(self) -> None:
        self.documents: list[LogDocument] = []
        self.patches: list[tuple[str, str]] = []
        self.fail_read = False
        self.fail_patch = False
        self.fail_post_prefixes: list[str] = []
        self.fail_all_posts = False
        self._next_id = 1000

    def _url(self, document_id: str) -> str:
        return f"https://github.com/{REPO}/issues/{ISSUE}#issuecomment-{document_id}"

    def add(self, body: str) -> LogDocument:
        """Seed a document without going through post()."""
        self._next_id += 1
        document_id = str(self._next_id)
        document = LogDocument(id=document_id, url=self._url(document_id), body=body)
        self.documents.append(document)
        return document

    def post(self, body: str) -> str:
        if self.fail_all_posts or any(body.startswith(p) for p in self.fail_post_prefixes):
            raise ExternalWriteFailure("post refused")
        return self.add(body).id

    def read_recent(self, n: int) -> list[LogDocument]:
        if self.fail_read:
            raise ExternalReadFailure("read refused")
        return list(self.documents[-n:]) if n > 0 else []

    def patch(self, document_id: str, body: str) -> bool:
        self.patches.append((document_id, body))
        if self.fail_patch:
            return False
        for index, document in enumerate(self.documents):
            if document.id == document_id:
                self.documents[index] = LogDocument(id=document.id, url=document.url, body=body)
                return True
        return False

    @property
    def bodies(self) -> list[str]:
        return [d.body for d in self.documents]


@pytest.fixture(autouse=True)
def _clear_caches():
    yield
    clear_config_cache()
    clear_logger_cache()


@pytest.fixture
def config(tmp_path):
    """Loop config rooted in a temp repo."""
    return LoopConfig(
        repo_root=str(tmp_path),
        github=GitHubConfig(repo=REPO, issue_number=ISSUE),
    )


@pytest.fixture
def fake_log():
    return FakeCommentLog()


@pytest.fixture
def adapter(fake_log):
    return LogAdapter(fake_log)


@pytest.fixture
def make_story():
    """Factory for current-shape userStories entries."""
    def _make(
        task_id: str,
        uid: str,
        title: Optional[str] = None,
        priority: int = 1,
        depends_on: Optional[list] = None,
        passes: bool = False,
        attempts: int = 0,
        discovered_from: Optional[str] = None,
        **extra,
    ) -> dict:
        story = {
            "id": task_id,
            "uid": uid,
            "title": title or f"Task {task_id}",
            "description": "",
            "acceptanceCriteria": [],
            "verifyCommands": [],
            "dependsOn": depends_on or [],
            "priority": priority,
            "passes": passes,
            "attempts": attempts,
            "lastAttempt": None,
            "discoveredFrom": discovered_from,
            "discoverySource": "planned" if discovered_from is None else "task_log",
        }
        story.update(extra)
        return story
    return _make


@pytest.fixture
def write_graph(config):
    """Write a task graph document to the configured state path."""
    def _write(stories: list, **root) -> dict:
        doc = {
            "issueNumber": ISSUE,
            "formula": "feature",
            "compaction": {"taskLogCountSinceLastSummary": 0, "summaryEveryNTaskLogs": 5},
            "userStories": stories,
        }
        doc.update(root)
        config.state_path.write_text(json.dumps(doc, indent=2))
        return doc
    return _write


@pytest.fixture
def read_graph(config):
    def _read() -> dict:
        return json.loads(config.state_path.read_text())
    return _read


@pytest.fixture
def store(config):
    return TaskGraphStore(config)


@pytest.fixture
def log_entries(config):
    """Every JSONL entry written under the config's logs directory."""
    def _read(event_type: Optional[str] = None) -> list:
        entries = []
        for path in sorted(config.logs_path.glob("*.jsonl")):
            for line in path.read_text().splitlines():
                entry = json.loads(line)
                if event_type is None or entry["event_type"] == event_type:
                    entries.append(entry)
        return entries
    return _read
