"""
Commit Tracker Service.

This service watches Git working trees and records every new HEAD commit
exactly once in an append-only tracking log:
- Debounced change notifications plus a periodic poll per repository
- Deduplicating commit pipeline backed by the log file
- TTL-cached read views (history, statistics, unpushed state, status)
- Typed event bus with an optional Redis relay
- RESTful API for manual tracking and inspection
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import redis.asyncio as redis

from config.settings import Settings, get_settings, reload_settings
from shared.cache import CacheRegion, TTLCache, coerce_region
from shared.errors import (
    ConfigurationError, ErrorType, RepositoryError, TrackerError, classify_error
)
from shared.events import (
    CacheInvalidated, ConfigUpdated, ErrorOccurred, EventBus, EventMetadata, EventSource,
    PushRequested, RedisEventRelay, RepositoryStatusChanged, SetupRequested,
    TerminalOperationRequested, TrackingStarted, TrackingStopped, UnpushedCommitsChanged
)
from shared.git_client import GitCollaborator, GitPythonClient
from shared.log_store import validate_path
from shared.models import (
    CacheStatus, Commit, CommitStatistics, RepositoryStatus, RepositorySummary,
    TrackerConfig, UnpushedInfo
)
from shared.state import (
    EngineState, JsonFileStateStore, MemoryStateStore, RedisStateStore, StateStore
)
from services.commit_tracker.pipeline import CommitPipeline, ProcessingOutcome, ProcessingStatus
from services.commit_tracker.registry import RepositoryRegistry
from services.commit_tracker.watcher import (
    DEBOUNCE_DELAY, POLL_INTERVAL, GitWorkingTree, RepositoryWatcher, WorkingTree
)

logger = logging.getLogger(__name__)


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging from the monitoring settings."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.monitoring.log_level),
        format=settings.monitoring.log_format
    )


class CommitTrackerService:
    """Core commit tracking engine."""

    def __init__(
        self,
        config: TrackerConfig,
        git_client: GitCollaborator,
        state_store: StateStore,
        event_bus: Optional[EventBus] = None,
        cache: Optional[TTLCache] = None,
        clock: Optional[Callable[[], str]] = None,
        debounce_delay: float = DEBOUNCE_DELAY,
        poll_interval: float = POLL_INTERVAL,
        pull_on_start: bool = True,
        config_loader: Optional[Callable[[], TrackerConfig]] = None
    ):
        self.config = config
        self.git_client = git_client
        self.bus = event_bus or EventBus()
        self.cache = cache or TTLCache()
        self.state = EngineState(state_store)
        self.registry = RepositoryRegistry()
        self.pipeline = CommitPipeline(config, git_client, self.state, self.cache, self.bus, clock=clock)
        self.watcher = RepositoryWatcher(self.update_repository_status, debounce_delay, poll_interval)
        self.pull_on_start = pull_on_start
        self.relay: Optional[RedisEventRelay] = None
        self.active_repository: Optional[str] = None
        self.initialized = False
        self._config_loader = config_loader
        self._status_locks: Dict[str, asyncio.Lock] = {}
        self._retry_heads: Dict[str, str] = {}
        self._last_unpushed: Optional[bool] = None

    # Lifecycle

    async def initialize(self, trees: Iterable[WorkingTree] = ()) -> None:
        """Load state, validate configuration, then start watching ``trees``."""
        await self.state.load()
        self._ensure_configured()

        if self.pull_on_start:
            await self._pull_tracking_repository()

        self.watcher.start()
        for tree in trees:
            await self.open_repository(tree)

        self.initialized = True
        self.bus.publish(TrackingStarted(repository_count=len(self.registry)))
        logger.info(f"Commit tracking started for {len(self.registry)} repositories")

    def _ensure_configured(self) -> None:
        if not self.config.is_configured:
            self.bus.publish(SetupRequested(reason="Tracking log file path is not configured"))
            raise ConfigurationError(
                "Tracking log file path is not configured", operation="initializing tracker"
            )
        if not validate_path(self.config.tracking_file_path):
            raise ConfigurationError(
                f"Invalid tracking file path: {self.config.tracking_file_path}",
                operation="initializing tracker"
            )

    async def _pull_tracking_repository(self) -> None:
        try:
            await self.git_client.pull(self.config.log_file_path)
        except Exception as e:
            logger.error(f"Failed to pull tracking repository {self.config.log_file_path}: {e}")
            self._publish_error(e, "pulling tracking repository")
            self.bus.publish(TerminalOperationRequested(
                working_directory=self.config.log_file_path,
                operation="pull"
            ))

    async def dispose(self) -> None:
        """Stop watching everything and release resources."""
        await self.watcher.stop()
        self.registry.clear()
        self._status_locks.clear()
        self._retry_heads.clear()
        self.initialized = False
        self.bus.publish(TrackingStopped())
        await self.bus.drain()
        if self.relay:
            await self.relay.close()
            self.relay = None
        await self.state.store.close()
        logger.info("Commit tracking stopped")

    # Repositories

    async def open_repository(self, tree: WorkingTree) -> Optional[RepositoryStatus]:
        """Start tracking a working tree and process its current state."""
        if not self.watcher.watch(tree):
            logger.debug(f"Repository already tracked: {tree.path}")
            return self.registry.get(tree.path)
        if self.active_repository is None:
            self.active_repository = tree.path
        await self.update_repository_status(tree)
        return self.registry.get(tree.path)

    async def close_repository(self, repo_path: str) -> bool:
        watched = self.watcher.unwatch(repo_path)
        removed = self.registry.remove(repo_path) is not None
        self.cache.invalidate(CacheRegion.REPOSITORY_STATUS, key=repo_path)
        self.pipeline.forget_repository(repo_path)
        self._status_locks.pop(repo_path, None)
        self._retry_heads.pop(repo_path, None)
        if self.active_repository == repo_path:
            paths = self.registry.paths()
            self.active_repository = paths[0] if paths else None
        return watched or removed

    def _status_lock(self, repo_path: str) -> asyncio.Lock:
        lock = self._status_locks.get(repo_path)
        if lock is None:
            lock = asyncio.Lock()
            self._status_locks[repo_path] = lock
        return lock

    async def update_repository_status(self, tree: WorkingTree) -> Optional[ProcessingOutcome]:
        """
        Refresh one repository and pipeline its HEAD when it moved.

        Both the debounced listener and the poller land here; calls for the
        same repository run one at a time, so a HEAD seen by both paths is
        handed to the pipeline once.

        Returns:
            Optional[ProcessingOutcome]: Pipeline outcome, or None when HEAD
            did not change
        """
        async with self._status_lock(tree.path):
            if not self.watcher.is_watching(tree.path):
                return None

            try:
                state = await tree.read_state()
            except Exception as e:
                logger.error(f"Error reading repository state for {tree.path}: {e}")
                self._publish_error(e, f"reading repository state for {tree.path}", ErrorType.REPOSITORY)
                return None

            previous = self.registry.get(tree.path)
            if previous is not None:
                repo_name = previous.repo_name
            else:
                repo_name = await self.pipeline.resolve_repo_name(tree.path)

            status = RepositoryStatus(
                repo_path=tree.path,
                current_commit=state.head_commit,
                branch_name=state.branch,
                has_changes=state.has_changes,
                repo_name=repo_name
            )

            if status != previous:
                self.cache.invalidate(CacheRegion.REPOSITORY_STATUS, key=tree.path)
                self.registry.update(status)
                self.bus.publish(RepositoryStatusChanged(
                    metadata=EventMetadata(source=EventSource.WATCHER),
                    previous=previous,
                    current=status
                ))
            outcome = None
            head = state.head_commit
            head_moved = previous is None or previous.current_commit != head
            if head and (head_moved or self._retry_heads.get(tree.path) == head):
                outcome = await self.pipeline.process(tree.path, head, state.branch)
                if outcome.status == ProcessingStatus.FAILED:
                    self._retry_heads[tree.path] = head
                else:
                    self._retry_heads.pop(tree.path, None)

            # after the pipeline, which clears every region on append
            self._store(CacheRegion.REPOSITORY_STATUS, status, key=tree.path)
            return outcome

    def _active_tree(self) -> Optional[WorkingTree]:
        if self.active_repository:
            return self.watcher.get(self.active_repository)
        return None

    async def process_current_repository(self, tree: Optional[WorkingTree] = None) -> ProcessingOutcome:
        """Pipeline the current HEAD of a repository, changed or not."""
        tree = tree or self._active_tree()
        if tree is None:
            raise RepositoryError("No repository is being tracked", operation="processing current repository")

        state = await tree.read_state()
        if not state.head_commit:
            raise RepositoryError(f"Repository has no HEAD commit: {tree.path}", operation="processing current repository")
        return await self.pipeline.process(tree.path, state.head_commit, state.branch)

    async def process_commit_directly(
        self,
        repo_path: str,
        commit_hash: str,
        branch: Optional[str] = None
    ) -> ProcessingOutcome:
        """Log a given commit, ignoring branch and author filters."""
        if not commit_hash or not commit_hash.strip():
            raise RepositoryError("Commit hash is required", operation="processing commit directly")
        repo_path = str(Path(repo_path).expanduser().resolve())
        if branch is None:
            status = self.registry.get(repo_path)
            branch = status.branch_name if status else None
        return await self.pipeline.process(repo_path, commit_hash.strip(), branch, force=True)

    # Reads

    def _cached(self, region: CacheRegion, key: Optional[str] = None) -> Optional[Any]:
        try:
            return self.cache.get(region, key)
        except Exception as e:
            logger.debug(f"Cache read failed for {region.value}: {e}")
            return None

    def _store(self, region: CacheRegion, value: Any, key: Optional[str] = None) -> None:
        try:
            self.cache.set(region, value, key)
        except Exception as e:
            logger.debug(f"Cache write failed for {region.value}: {e}")

    async def get_repository_status(self, repo_path: str) -> Optional[RepositoryStatus]:
        cached = self._cached(CacheRegion.REPOSITORY_STATUS, repo_path)
        if cached is not None:
            return cached

        tree = self.watcher.get(repo_path)
        if tree is not None:
            await self.update_repository_status(tree)
        return self.registry.get(repo_path)

    async def get_commit_history(self, limit: Optional[int] = None) -> List[Commit]:
        """Logged commits, most recent first."""
        history = self._cached(CacheRegion.COMMIT_HISTORY)
        if history is None:
            history = await asyncio.to_thread(self.pipeline.log_store.read_all)
            self._store(CacheRegion.COMMIT_HISTORY, history)
        if limit is not None:
            return list(history[:limit])
        return list(history)

    async def get_statistics(self) -> CommitStatistics:
        statistics = self._cached(CacheRegion.STATISTICS)
        if statistics is None:
            statistics = CommitStatistics.from_commits(await self.get_commit_history())
            self._store(CacheRegion.STATISTICS, statistics)
        return statistics

    async def get_unpushed_info(self, force: bool = False) -> UnpushedInfo:
        """Whether the tracking repository has commits not yet pushed."""
        if not force:
            cached = self._cached(CacheRegion.UNPUSHED_COMMITS)
            if cached is not None:
                return cached

        self._ensure_configured()
        try:
            has_unpushed = await self.git_client.has_unpushed_commits(self.config.log_file_path)
        except Exception as e:
            logger.error(f"Error checking unpushed commits: {e}")
            self._publish_error(e, "checking unpushed commits")
            raise

        info = UnpushedInfo(
            has_unpushed=has_unpushed,
            log_file_path=self.config.log_file_path,
            checked_at=datetime.now(timezone.utc)
        )
        self._store(CacheRegion.UNPUSHED_COMMITS, info)

        if has_unpushed != self._last_unpushed:
            self._last_unpushed = has_unpushed
            self.bus.publish(UnpushedCommitsChanged(has_unpushed=has_unpushed))
        return info

    def get_repository_summary(self) -> RepositorySummary:
        return self.registry.summary(
            total_repositories=len(self.watcher.trees),
            active_path=self.active_repository
        )

    def get_cache_status(self) -> CacheStatus:
        return CacheStatus(
            last_processed_commit=self.state.last_processed_commit,
            repositories_tracked=len(self.registry),
            cache_created=self.state.cache_created,
            cache_last_updated=self.cache.last_updated,
            cache_sizes=self.cache.status()
        )

    # Commands

    def invalidate_cache(self, region: Optional[Union[CacheRegion, str]] = None) -> None:
        region = coerce_region(region) if region is not None else None
        self.cache.invalidate(region)
        self.bus.publish(CacheInvalidated(
            metadata=EventMetadata(source=EventSource.CACHE),
            region=region.value if region else None
        ))
        logger.info(f"Cache invalidated: {region.value if region else 'all regions'}")

    def update_configuration(self, config: TrackerConfig) -> None:
        """Swap in a new configuration and reload everything derived from it."""
        self.config = config
        self.pipeline.configure(config)
        self._last_unpushed = None
        self.invalidate_cache()
        self.bus.publish(ConfigUpdated(
            log_file_path=config.log_file_path,
            log_file=config.log_file,
            excluded_branches=list(config.excluded_branches)
        ))
        if not config.is_configured:
            self.bus.publish(SetupRequested(reason="Tracking log file path was cleared"))
        logger.info(f"Configuration updated, tracking file: {config.tracking_file_path or 'unset'}")

    def reload_configuration(self) -> TrackerConfig:
        """Re-read the settings and apply them when they changed."""
        if self._config_loader is None:
            raise ConfigurationError("No configuration source to reload from", operation="reloading configuration")
        config = self._config_loader()
        if config != self.config:
            self.update_configuration(config)
        return config

    def request_push(self) -> PushRequested:
        self._ensure_configured()
        event = PushRequested(
            log_file_path=self.config.log_file_path,
            tracking_file_path=self.config.tracking_file_path
        )
        self.bus.publish(event)
        return event

    def _publish_error(
        self,
        error: BaseException,
        operation: str,
        default_type: ErrorType = ErrorType.UNKNOWN
    ) -> None:
        error_type = classify_error(error)
        if error_type == ErrorType.UNKNOWN:
            error_type = default_type
        self.bus.publish(ErrorOccurred(error_type=error_type, operation=operation, message=str(error)))


def _state_store(settings: Settings, redis_client) -> StateStore:
    if settings.state.backend == "memory":
        return MemoryStateStore()
    if settings.state.backend == "redis":
        return RedisStateStore(redis_client, prefix=settings.redis.key_prefix)
    return JsonFileStateStore(settings.state.state_file)


def working_trees(settings: Optional[Settings] = None) -> List[GitWorkingTree]:
    settings = settings or get_settings()
    return [
        GitWorkingTree(path, watch_events=settings.watch.use_filesystem_events)
        for path in settings.watch.repositories
    ]


def build_service(settings: Optional[Settings] = None) -> CommitTrackerService:
    """Wire the engine from settings."""
    settings = settings or get_settings()

    redis_client = None
    if settings.state.backend == "redis" or settings.redis.relay_events:
        redis_client = redis.from_url(
            settings.redis.url,
            db=settings.redis.db,
            socket_connect_timeout=settings.redis.socket_connect_timeout,
            socket_timeout=settings.redis.socket_timeout
        )

    service = CommitTrackerService(
        config=settings.tracking.to_config(),
        git_client=GitPythonClient(
            timeout=settings.git.timeout,
            network_timeout=settings.git.network_timeout,
            remote_name=settings.git.remote_name
        ),
        state_store=_state_store(settings, redis_client),
        debounce_delay=settings.watch.debounce_ms / 1000,
        poll_interval=settings.watch.poll_interval,
        pull_on_start=settings.git.pull_on_start,
        config_loader=lambda: reload_settings().tracking.to_config()
    )

    if settings.redis.relay_events:
        service.relay = RedisEventRelay(redis_client, channel=settings.redis.channel)
        service.relay.attach(service.bus)

    return service


# HTTP surface

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build and start the engine for the lifetime of the app."""
    settings = get_settings()
    configure_logging(settings)
    service = build_service(settings)
    try:
        await service.initialize(working_trees(settings))
    except ConfigurationError as e:
        logger.error(f"Commit tracker is not configured: {e}")
    app.state.service = service
    yield
    await service.dispose()


app = FastAPI(
    title="Commit Tracker Service",
    description="Tracks Git commits into an append-only log",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


def get_service(request: Request) -> CommitTrackerService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Commit tracker is not running")
    return service


_STATUS_CODES = {
    ErrorType.CONFIGURATION: 503,
    ErrorType.REPOSITORY: 400,
    ErrorType.GIT_OPERATION: 502,
    ErrorType.FILESYSTEM: 500,
    ErrorType.UNKNOWN: 500,
}


def _http_error(error: TrackerError) -> HTTPException:
    return HTTPException(status_code=_STATUS_CODES[error.error_type], detail=str(error))


# Request/Response models
class TrackCommitRequest(BaseModel):
    """Request model for tracking a commit."""
    repository_path: str = Field(..., description="Path to Git repository")
    commit_hash: Optional[str] = Field(None, description="Specific commit hash to track")
    branch: Optional[str] = Field(None, description="Branch to record for the commit")

    model_config = {
        "json_schema_extra": {
            "example": {
                "repository_path": "/path/to/repo",
                "commit_hash": "abc123def456",
                "branch": "main"
            }
        }
    }


class RepositoriesResponse(BaseModel):
    """Response model for the tracked repositories."""
    summary: RepositorySummary
    repositories: List[RepositoryStatus]


@app.get("/health")
async def health_check(service: CommitTrackerService = Depends(get_service)):
    """Health check endpoint."""
    body = {
        "status": "healthy" if service.initialized else "unconfigured",
        "service": "commit_tracker",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "repositories": len(service.registry),
        "tracking_file": service.config.tracking_file_path or None,
    }
    if not service.initialized:
        return JSONResponse(status_code=503, content=body)
    return body


@app.get("/commits", response_model=List[Commit])
async def get_commits(
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Maximum number of commits to return"),
    service: CommitTrackerService = Depends(get_service)
):
    """Logged commits, most recent first."""
    try:
        return await service.get_commit_history(limit)
    except TrackerError as e:
        raise _http_error(e)


@app.get("/statistics", response_model=CommitStatistics)
async def get_statistics(service: CommitTrackerService = Depends(get_service)):
    try:
        return await service.get_statistics()
    except TrackerError as e:
        raise _http_error(e)


@app.get("/unpushed", response_model=UnpushedInfo)
async def get_unpushed(
    force: bool = Query(False, description="Bypass the cache"),
    service: CommitTrackerService = Depends(get_service)
):
    try:
        return await service.get_unpushed_info(force=force)
    except TrackerError as e:
        raise _http_error(e)


@app.get("/repositories", response_model=RepositoriesResponse)
async def get_repositories(service: CommitTrackerService = Depends(get_service)):
    return RepositoriesResponse(
        summary=service.get_repository_summary(),
        repositories=service.registry.statuses()
    )


@app.get("/repositories/status", response_model=RepositoryStatus)
async def get_repository_status(
    path: str = Query(..., description="Absolute path of a tracked repository"),
    service: CommitTrackerService = Depends(get_service)
):
    status = await service.get_repository_status(path)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Repository not tracked: {path}")
    return status


@app.get("/cache", response_model=CacheStatus)
async def get_cache_status(service: CommitTrackerService = Depends(get_service)):
    return service.get_cache_status()


@app.delete("/cache")
async def invalidate_cache(
    region: Optional[str] = Query(None, description="Cache region; omit to clear all"),
    service: CommitTrackerService = Depends(get_service)
):
    try:
        service.invalidate_cache(region)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"invalidated": coerce_region(region).value if region else "all"}


@app.post("/track-commit", response_model=ProcessingOutcome)
async def track_commit(
    request: TrackCommitRequest,
    service: CommitTrackerService = Depends(get_service)
):
    """Track a specific commit or the current HEAD of a repository."""
    try:
        if request.commit_hash:
            outcome = await service.process_commit_directly(
                request.repository_path, request.commit_hash, request.branch
            )
        else:
            repo_path = str(Path(request.repository_path).expanduser().resolve())
            tree = service.watcher.get(repo_path) or GitWorkingTree(repo_path, watch_events=False)
            outcome = await service.process_current_repository(tree)
    except TrackerError as e:
        raise _http_error(e)

    if outcome.status == ProcessingStatus.FAILED:
        raise HTTPException(
            status_code=_STATUS_CODES[outcome.error_type or ErrorType.UNKNOWN],
            detail=outcome.error
        )
    return outcome


@app.post("/push")
async def request_push(service: CommitTrackerService = Depends(get_service)):
    try:
        event = service.request_push()
    except TrackerError as e:
        raise _http_error(e)
    return {
        "status": "requested",
        "log_file_path": event.log_file_path,
        "tracking_file_path": event.tracking_file_path,
    }
