"""
Unit tests for the repository registry.
"""

from shared.models import RepositoryStatus
from services.commit_tracker.registry import RepositoryRegistry


def status(path: str, commit=None, has_changes=False) -> RepositoryStatus:
    return RepositoryStatus(
        repo_path=path,
        current_commit=commit,
        branch_name="main",
        has_changes=has_changes,
        repo_name=path.rsplit("/", 1)[-1]
    )


class TestRepositoryRegistry:
    """Test cases for RepositoryRegistry."""

    def test_update_returns_previous(self):
        registry = RepositoryRegistry()

        assert registry.update(status("/repo/a", "aaa1111")) is None
        previous = registry.update(status("/repo/a", "bbb2222"))

        assert previous.current_commit == "aaa1111"
        assert registry.get("/repo/a").current_commit == "bbb2222"
        assert len(registry) == 1

    def test_remove(self):
        registry = RepositoryRegistry()
        registry.update(status("/repo/a"))

        assert registry.remove("/repo/a") is not None
        assert "/repo/a" not in registry
        assert registry.remove("/repo/a") is None

    def test_summary(self):
        registry = RepositoryRegistry()
        registry.update(status("/repo/a", "aaa1111", has_changes=True))
        registry.update(status("/repo/b", "bbb2222"))
        registry.update(status("/repo/c"))

        summary = registry.summary(active_path="/repo/b")

        assert summary.total_repositories == 3
        assert summary.tracked_repositories == 2
        assert summary.repositories_with_changes == 1
        assert summary.active_repository == "b"

    def test_summary_without_active(self):
        summary = RepositoryRegistry().summary(total_repositories=2)

        assert summary.total_repositories == 2
        assert summary.active_repository is None
