"""
Commit processing pipeline.

Every detected HEAD commit goes through one state machine:

    DETECTED -> EXCLUDED                  branch is excluded
             -> SKIPPED_IN_FLIGHT         same hash already being processed
             -> SKIPPED_DUPLICATE_MEMORY  hash equals the last processed commit
             -> SKIPPED_DUPLICATE_LOG     hash already present in the log
             -> SKIPPED_AUTHOR            author not in the allow list
             -> PROCESSED                 appended, persisted, cache cleared, published
             -> FAILED                    fetch or append failed, nothing advanced

Skips are ordinary outcomes, logged at info level and never published as
errors. Failures are returned to the caller and published on the event bus.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Set

from pydantic import BaseModel

from shared.cache import TTLCache
from shared.errors import ErrorType, TrackerError, classify_error
from shared.events import (
    CacheInvalidated, CommitDetected, CommitFailed, CommitProcessed, ErrorOccurred,
    EventBus, EventMetadata, EventSource, PushRequested
)
from shared.git_client import GitCollaborator, directory_name
from shared.log_store import CommitLogStore
from shared.models import Commit, TrackerConfig
from shared.state import EngineState

logger = logging.getLogger(__name__)

UNKNOWN_BRANCH = "unknown"


class ProcessingStatus(str, Enum):
    """Terminal states of one pass through the pipeline."""
    PROCESSED = "processed"
    EXCLUDED = "excluded"
    SKIPPED_IN_FLIGHT = "skipped-in-flight"
    SKIPPED_DUPLICATE_MEMORY = "skipped-duplicate-memory"
    SKIPPED_DUPLICATE_LOG = "skipped-duplicate-log"
    SKIPPED_AUTHOR = "skipped-author"
    FAILED = "failed"


SKIP_STATUSES = {
    ProcessingStatus.EXCLUDED,
    ProcessingStatus.SKIPPED_IN_FLIGHT,
    ProcessingStatus.SKIPPED_DUPLICATE_MEMORY,
    ProcessingStatus.SKIPPED_DUPLICATE_LOG,
    ProcessingStatus.SKIPPED_AUTHOR,
}


class ProcessingOutcome(BaseModel):
    """Result of processing one commit."""

    status: ProcessingStatus
    repo_path: str
    commit_hash: str
    branch: Optional[str] = None
    commit: Optional[Commit] = None
    log_path: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None

    @property
    def is_skip(self) -> bool:
        return self.status in SKIP_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == ProcessingStatus.PROCESSED


def author_allowed(author: str, allowed_authors) -> bool:
    """Match the full ``Name <email>`` string, the name, or the email."""
    if not allowed_authors:
        return True
    name, _, email = author.partition("<")
    candidates = {author.strip(), name.strip(), email.rstrip(">").strip().lower()}
    for allowed in allowed_authors:
        allowed = allowed.strip()
        if allowed in candidates or allowed.lower() in candidates:
            return True
    return False


def processing_timestamp() -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class CommitPipeline:
    """Deduplicates, enriches and appends detected commits."""

    def __init__(
        self,
        config: TrackerConfig,
        git_client: GitCollaborator,
        state: EngineState,
        cache: TTLCache,
        bus: EventBus,
        clock: Optional[Callable[[], str]] = None
    ):
        self.git_client = git_client
        self.state = state
        self.cache = cache
        self.bus = bus
        self._clock = clock or processing_timestamp
        self._repo_locks: Dict[str, asyncio.Lock] = {}
        self._in_flight: Set[str] = set()
        self.configure(config)

    def configure(self, config: TrackerConfig) -> None:
        """Swap the tracking configuration used by later passes."""
        self.config = config
        self.log_store = CommitLogStore(config.tracking_file_path)

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    def _lock_for(self, repo_path: str) -> asyncio.Lock:
        lock = self._repo_locks.get(repo_path)
        if lock is None:
            lock = asyncio.Lock()
            self._repo_locks[repo_path] = lock
        return lock

    def forget_repository(self, repo_path: str) -> None:
        lock = self._repo_locks.get(repo_path)
        if lock is not None and not lock.locked():
            del self._repo_locks[repo_path]

    def _skip(self, status: ProcessingStatus, repo_path: str, commit_hash: str,
              branch: Optional[str], reason: str) -> ProcessingOutcome:
        logger.info(f"Skipping commit {commit_hash[:7]} in {repo_path}: {reason}")
        return ProcessingOutcome(status=status, repo_path=repo_path, commit_hash=commit_hash, branch=branch)

    async def process(
        self,
        repo_path: str,
        commit_hash: str,
        branch: Optional[str],
        force: bool = False
    ) -> ProcessingOutcome:
        """
        Run one commit through the pipeline.

        Args:
            repo_path: Absolute path of the working tree
            commit_hash: HEAD commit to record
            branch: Current branch, None when detached
            force: Bypass the branch exclusion and author filters;
                duplicate checks always apply

        Returns:
            ProcessingOutcome: Terminal state and, on success, the commit
        """
        branch_name = branch or UNKNOWN_BRANCH

        if not force and branch_name in self.config.excluded_branches:
            return self._skip(
                ProcessingStatus.EXCLUDED, repo_path, commit_hash, branch_name,
                f"branch {branch_name} is excluded"
            )

        self.bus.publish(CommitDetected(
            metadata=EventMetadata(source=EventSource.PIPELINE),
            repo_path=repo_path,
            commit_hash=commit_hash,
            branch=branch
        ))

        if commit_hash in self._in_flight:
            return self._skip(
                ProcessingStatus.SKIPPED_IN_FLIGHT, repo_path, commit_hash, branch_name,
                "already being processed"
            )

        async with self._lock_for(repo_path):
            if commit_hash in self._in_flight:
                return self._skip(
                    ProcessingStatus.SKIPPED_IN_FLIGHT, repo_path, commit_hash, branch_name,
                    "already being processed"
                )
            self._in_flight.add(commit_hash)
            try:
                return await self._process_locked(repo_path, commit_hash, branch_name, force)
            finally:
                self._in_flight.discard(commit_hash)

    async def _process_locked(
        self,
        repo_path: str,
        commit_hash: str,
        branch: str,
        force: bool
    ) -> ProcessingOutcome:
        if self.state.last_processed_commit == commit_hash:
            return self._skip(
                ProcessingStatus.SKIPPED_DUPLICATE_MEMORY, repo_path, commit_hash, branch,
                "same as last processed commit"
            )

        try:
            if self.log_store.contains(commit_hash):
                return self._skip(
                    ProcessingStatus.SKIPPED_DUPLICATE_LOG, repo_path, commit_hash, branch,
                    "already in tracking log"
                )
        except TrackerError as e:
            logger.error(f"Error checking tracking log: {e}")

        try:
            author = await self.git_client.get_commit_author_details(repo_path, commit_hash)
            if not force and not author_allowed(author, self.config.allowed_authors):
                return self._skip(
                    ProcessingStatus.SKIPPED_AUTHOR, repo_path, commit_hash, branch,
                    f"author {author} is not allowed"
                )

            message = await self.git_client.get_commit_message(repo_path, commit_hash)
            repo_name = await self.resolve_repo_name(repo_path)

            commit = Commit(
                hash=commit_hash,
                message=message,
                author=author,
                date=self._clock(),
                branch=branch,
                repo_name=repo_name,
                repo_path=repo_path
            )
            log_path = self.log_store.append(commit)
        except Exception as e:
            return self._fail(repo_path, commit_hash, branch, e)

        await self._advance(commit_hash)

        self.cache.invalidate()
        self.bus.publish(CacheInvalidated(metadata=EventMetadata(source=EventSource.CACHE)))

        logger.info(f"Logged commit {commit.short_hash} from {repo_name} on {branch}")
        self.bus.publish(CommitProcessed(
            metadata=EventMetadata(source=EventSource.PIPELINE),
            commit=commit,
            log_path=str(log_path)
        ))
        self.bus.publish(PushRequested(
            metadata=EventMetadata(source=EventSource.PIPELINE),
            log_file_path=self.config.log_file_path,
            tracking_file_path=self.config.tracking_file_path
        ))

        return ProcessingOutcome(
            status=ProcessingStatus.PROCESSED,
            repo_path=repo_path,
            commit_hash=commit_hash,
            branch=branch,
            commit=commit,
            log_path=str(log_path)
        )

    async def resolve_repo_name(self, repo_path: str) -> str:
        """Remote ``owner/repo``, or the directory name when that fails."""
        try:
            repo_name = await self.git_client.get_repo_name_from_remote(repo_path)
            if repo_name:
                return repo_name
        except Exception as e:
            logger.info(f"Using directory name as repo name for {repo_path}: {e}")
        return directory_name(repo_path)

    async def _advance(self, commit_hash: str) -> None:
        try:
            await self.state.advance(commit_hash)
        except Exception as e:
            # The record is already in the log, which stays authoritative for dedup
            self.state.last_processed_commit = commit_hash
            logger.error(f"Failed to persist last processed commit {commit_hash}: {e}")
            self.bus.publish(ErrorOccurred(
                metadata=EventMetadata(source=EventSource.PIPELINE),
                error_type=classify_error(e),
                operation="persisting last processed commit",
                message=str(e)
            ))

    def _fail(self, repo_path: str, commit_hash: str, branch: str, error: Exception) -> ProcessingOutcome:
        error_type = classify_error(error)
        if error_type == ErrorType.UNKNOWN and not isinstance(error, TrackerError):
            logger.exception(f"Unexpected error processing commit {commit_hash} in {repo_path}")
        else:
            logger.error(f"Error processing commit {commit_hash} in {repo_path}: {error}")

        self.bus.publish(CommitFailed(
            metadata=EventMetadata(source=EventSource.PIPELINE),
            repo_path=repo_path,
            commit_hash=commit_hash,
            error=str(error),
            error_type=error_type
        ))
        self.bus.publish(ErrorOccurred(
            metadata=EventMetadata(source=EventSource.PIPELINE),
            error_type=error_type,
            operation=f"processing commit {commit_hash}",
            message=str(error)
        ))
        return ProcessingOutcome(
            status=ProcessingStatus.FAILED,
            repo_path=repo_path,
            commit_hash=commit_hash,
            branch=branch,
            error=str(error),
            error_type=error_type
        )


__all__ = [
    'UNKNOWN_BRANCH', 'ProcessingStatus', 'SKIP_STATUSES', 'ProcessingOutcome',
    'author_allowed', 'processing_timestamp', 'CommitPipeline'
]
