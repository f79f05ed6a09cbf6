"""
Git collaborator used by the commit tracker.

The engine only depends on the ``GitCollaborator`` protocol. The default
implementation runs git through GitPython in a worker thread so the event loop
stays responsive, and treats a command that does not answer in time like any
other failure.
"""

import asyncio
import logging
import os
import re
from typing import Optional, Protocol, runtime_checkable

from git import Repo, GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from shared.errors import GitOperationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
NETWORK_TIMEOUT = 60.0

_REMOTE_PATTERNS = [
    # git@github.com:owner/repo.git, ssh://git@host/owner/repo.git, https://host/owner/repo.git
    re.compile(r"^[\w.-]+@[\w.-]+:(?P<path>.+?)(?:\.git)?/?$"),
    re.compile(r"^(?:ssh|https?|git)://[^/]+/(?P<path>.+?)(?:\.git)?/?$"),
]


def parse_repo_name(remote_url: str) -> Optional[str]:
    """Extract ``owner/repo`` from a remote URL."""
    url = remote_url.strip()
    for pattern in _REMOTE_PATTERNS:
        match = pattern.match(url)
        if match:
            parts = [part for part in match.group("path").split("/") if part]
            if len(parts) >= 2:
                return "/".join(parts[-2:])
            if parts:
                return parts[0]
    return None


@runtime_checkable
class GitCollaborator(Protocol):
    """Git operations the engine needs from the outside world."""

    async def get_commit_message(self, repo_path: str, commit_hash: str) -> str: ...

    async def get_commit_author_details(self, repo_path: str, commit_hash: str) -> str: ...

    async def get_repo_name_from_remote(self, repo_path: str) -> str: ...

    async def has_unpushed_commits(self, repo_path: str) -> bool: ...

    async def pull(self, repo_path: str) -> None: ...


class GitPythonClient:
    """``GitCollaborator`` backed by GitPython."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        network_timeout: float = NETWORK_TIMEOUT,
        remote_name: str = "origin"
    ):
        self.timeout = timeout
        self.network_timeout = network_timeout
        self.remote_name = remote_name

    def _git(self, repo_path: str, command: str, *args, timeout: float) -> str:
        try:
            repo = Repo(repo_path)
            try:
                return getattr(repo.git, command)(*args, kill_after_timeout=timeout)
            finally:
                repo.close()
        except (InvalidGitRepositoryError, NoSuchPathError):
            raise GitOperationError(f"Invalid Git repository: {repo_path}", operation=command)
        except GitCommandError as e:
            raise GitOperationError(f"Git command error: {e}", operation=command) from e

    async def _run(self, repo_path: str, command: str, *args, timeout: Optional[float] = None) -> str:
        timeout = timeout or self.timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._git, repo_path, command, *args, timeout=timeout),
                timeout=timeout + 1
            )
        except asyncio.TimeoutError:
            raise GitOperationError(
                f"git {command} timed out after {timeout}s in {repo_path}", operation=command
            )

    async def get_commit_message(self, repo_path: str, commit_hash: str) -> str:
        output = await self._run(repo_path, "log", "-1", "--pretty=format:%B", commit_hash)
        return output.strip()

    async def get_commit_author_details(self, repo_path: str, commit_hash: str) -> str:
        output = await self._run(repo_path, "log", "-1", "--pretty=format:%an <%ae>", commit_hash)
        return output.strip()

    async def get_repo_name_from_remote(self, repo_path: str) -> str:
        output = await self._run(repo_path, "config", "--get", f"remote.{self.remote_name}.url")
        repo_name = parse_repo_name(output)
        if not repo_name:
            raise GitOperationError(
                f"Cannot parse repository name from remote URL: {output!r}",
                operation="config"
            )
        return repo_name

    async def get_current_branch(self, repo_path: str) -> Optional[str]:
        try:
            output = await self._run(repo_path, "symbolic_ref", "--short", "HEAD")
        except GitOperationError:
            return None
        return output.strip() or None

    async def has_unpushed_commits(self, repo_path: str) -> bool:
        branch = await self.get_current_branch(repo_path)
        if not branch:
            return False
        try:
            output = await self._run(repo_path, "cherry", "-v", f"{self.remote_name}/{branch}")
        except GitOperationError as e:
            # Missing upstream branch counts as unpushed
            logger.debug(f"Unpushed check failed for {repo_path}: {e}")
            return True
        return bool(output.strip())

    async def pull(self, repo_path: str) -> None:
        await self._run(repo_path, "pull", timeout=self.network_timeout)
        logger.info(f"Pulled latest changes into {repo_path}")


def directory_name(repo_path: str) -> str:
    """Fallback repository name when no remote is available."""
    return os.path.basename(os.path.normpath(repo_path)) or repo_path


__all__ = [
    'DEFAULT_TIMEOUT', 'NETWORK_TIMEOUT', 'parse_repo_name', 'GitCollaborator',
    'GitPythonClient', 'directory_name'
]
