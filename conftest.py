"""
Shared fixtures and fakes for the commit tracker test suites.
"""

import asyncio
from collections import Counter
from pathlib import Path
from typing import List, Optional

import pytest
from git import Actor, Repo

from shared.cache import TTLCache
from shared.errors import GitOperationError, RepositoryError
from shared.events import EventBus
from shared.models import RepositoryState, TrackerConfig
from shared.state import EngineState, MemoryStateStore
from services.commit_tracker.watcher import Disposable

FIXED_DATE = "2024-01-15T10:30:00.000Z"
DEFAULT_AUTHOR = "Jane Doe <jane@example.com>"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGitClient:
    """In-memory ``GitCollaborator`` that records every call."""

    def __init__(self, repo_name: Optional[str] = "acme/widgets", unpushed: bool = False, delay: float = 0.0):
        self.messages = {}
        self.authors = {}
        self.default_message = "feat: add widget"
        self.default_author = DEFAULT_AUTHOR
        self.repo_name = repo_name
        self.unpushed = unpushed
        self.delay = delay
        self.fail_on = set()
        self.calls = Counter()

    async def _call(self, name: str):
        self.calls[name] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if name in self.fail_on:
            raise GitOperationError(f"{name} failed", operation=name)

    async def get_commit_message(self, repo_path: str, commit_hash: str) -> str:
        await self._call("get_commit_message")
        return self.messages.get(commit_hash, self.default_message)

    async def get_commit_author_details(self, repo_path: str, commit_hash: str) -> str:
        await self._call("get_commit_author_details")
        return self.authors.get(commit_hash, self.default_author)

    async def get_repo_name_from_remote(self, repo_path: str) -> str:
        await self._call("get_repo_name_from_remote")
        if self.repo_name is None:
            raise GitOperationError("No remote configured", operation="config")
        return self.repo_name

    async def has_unpushed_commits(self, repo_path: str) -> bool:
        await self._call("has_unpushed_commits")
        return self.unpushed

    async def pull(self, repo_path: str) -> None:
        await self._call("pull")


class FakeWorkingTree:
    """Working tree whose state and change notifications are driven by the test."""

    def __init__(self, path: str, head: Optional[str] = None, branch: Optional[str] = "main", has_changes: bool = False):
        self.path = path
        self.state = RepositoryState(head_commit=head, branch=branch, has_changes=has_changes)
        self.listeners: List = []
        self.reads = 0
        self.fail = False

    async def read_state(self) -> RepositoryState:
        self.reads += 1
        if self.fail:
            raise RepositoryError(f"Cannot read {self.path}", operation="reading state")
        return self.state

    def on_did_change(self, callback) -> Disposable:
        self.listeners.append(callback)
        return Disposable(lambda: self.listeners.remove(callback))

    def commit(self, head: str, branch: Optional[str] = None) -> None:
        self.state = RepositoryState(
            head_commit=head,
            branch=branch or self.state.branch,
            has_changes=self.state.has_changes
        )

    def fire(self) -> None:
        for callback in list(self.listeners):
            callback()


def read_log(config: TrackerConfig) -> str:
    path = Path(config.tracking_file_path)
    return path.read_text(encoding="utf-8") if path.exists() else ""


@pytest.fixture
def tracking_dir(tmp_path):
    """Directory of the tracking repository."""
    path = tmp_path / "tracking"
    return str(path)


@pytest.fixture
def tracker_config(tracking_dir):
    return TrackerConfig(log_file_path=tracking_dir)


@pytest.fixture
def git_client():
    return FakeGitClient()


@pytest.fixture
def state_store():
    return MemoryStateStore()


@pytest.fixture
def engine_state(state_store):
    return EngineState(state_store)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLCache(clock=clock)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    """Every event published on ``bus``, in order."""
    received = []
    bus.subscribe_all(received.append)
    return received


@pytest.fixture
def git_repo(tmp_path):
    """A real repository with one commit on its initial branch."""
    path = tmp_path / "widgets"
    path.mkdir()
    repo = Repo.init(path)
    (path / "README.md").write_text("hello\n", encoding="utf-8")
    repo.index.add(["README.md"])
    actor = Actor("Jane Doe", "jane@example.com")
    commit = repo.index.commit("feat: add readme\n\nExplains the project.", author=actor, committer=actor)
    yield str(path), repo, commit
    repo.close()
