"""In-memory map of tracked repository statuses."""

from typing import Dict, List, Optional

from shared.models import RepositoryStatus, RepositorySummary


class RepositoryRegistry:
    """Holds the last known status of every tracked repository."""

    def __init__(self):
        self._statuses: Dict[str, RepositoryStatus] = {}

    def __len__(self) -> int:
        return len(self._statuses)

    def __contains__(self, repo_path: str) -> bool:
        return repo_path in self._statuses

    def get(self, repo_path: str) -> Optional[RepositoryStatus]:
        return self._statuses.get(repo_path)

    def update(self, status: RepositoryStatus) -> Optional[RepositoryStatus]:
        """Store a status and return the one it replaced."""
        previous = self._statuses.get(status.repo_path)
        self._statuses[status.repo_path] = status
        return previous

    def remove(self, repo_path: str) -> Optional[RepositoryStatus]:
        return self._statuses.pop(repo_path, None)

    def paths(self) -> List[str]:
        return list(self._statuses)

    def statuses(self) -> List[RepositoryStatus]:
        return list(self._statuses.values())

    def clear(self) -> None:
        self._statuses.clear()

    def summary(self, total_repositories: Optional[int] = None, active_path: Optional[str] = None) -> RepositorySummary:
        statuses = self.statuses()
        active = self._statuses.get(active_path) if active_path else None
        return RepositorySummary(
            total_repositories=len(statuses) if total_repositories is None else total_repositories,
            tracked_repositories=sum(1 for s in statuses if s.current_commit),
            repositories_with_changes=sum(1 for s in statuses if s.has_changes),
            active_repository=active.repo_name if active else None,
        )
