"""
Change detection for watched repositories.

Two detection paths feed the engine:
- event driven: every working tree reports raw "state changed" notifications,
  coalesced per repository by a ``Debouncer``
- periodic poll: a ``PeriodicPoller`` re-examines every watched tree on a fixed
  interval, in case notifications are lost

Both call the same ``on_change(tree)`` coroutine, which the engine serialises
per repository.
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable

from git import Repo, InvalidGitRepositoryError, NoSuchPathError
from watchfiles import awatch

from shared.errors import RepositoryError
from shared.models import RepositoryState

logger = logging.getLogger(__name__)

DEBOUNCE_DELAY = 0.3
POLL_INTERVAL = 5.0

# Paths under .git whose change can mean a new commit or branch switch
_GIT_STATE_NAMES = {"HEAD", "ORIG_HEAD", "index", "packed-refs"}


class Disposable:
    """Runs a cleanup callable once."""

    def __init__(self, dispose_fn: Optional[Callable[[], Any]] = None):
        self._dispose_fn = dispose_fn
        self.disposed = False

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        if self._dispose_fn is not None:
            try:
                self._dispose_fn()
            except Exception as e:
                logger.error(f"Error disposing resource: {e}")


@runtime_checkable
class WorkingTree(Protocol):
    """A watched repository as seen by the engine."""

    path: str

    async def read_state(self) -> RepositoryState: ...

    def on_did_change(self, callback: Callable[[], Any]) -> Disposable: ...


class Debouncer:
    """Runs ``callback`` once a burst of calls has been quiet for ``delay`` seconds."""

    def __init__(self, callback: Callable[[], Awaitable[Any]], delay: float = DEBOUNCE_DELAY, name: str = ""):
        self.callback = callback
        self.delay = delay
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: set = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def __call__(self, *_args) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            self._loop = loop
            self._schedule()
        elif self._loop is not None and not self._loop.is_closed():
            # notification from a foreign thread
            self._loop.call_soon_threadsafe(self._schedule)
        else:
            logger.warning(f"Dropping change notification for {self.name or 'repository'}: no event loop")

    def _schedule(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        task = self._loop.create_task(self._run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self) -> None:
        try:
            await self.callback()
        except Exception as e:
            logger.error(f"Debounced handler failed for {self.name or 'repository'}: {e}")

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def wait(self) -> None:
        """Wait for handlers that already fired."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class PeriodicPoller:
    """Calls ``callback`` every ``interval`` seconds until stopped."""

    def __init__(self, callback: Callable[[], Awaitable[Any]], interval: float = POLL_INTERVAL):
        self.callback = callback
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(f"Polling repositories every {self.interval}s")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in repository poll: {e}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


def _is_git_state_change(_change, changed_path: str) -> bool:
    """watchfiles filter: HEAD, index and refs under .git, never lock files."""
    path = Path(changed_path)
    if path.suffix == ".lock":
        return False
    parts = path.parts
    if ".git" in parts:
        parts = parts[len(parts) - parts[::-1].index(".git"):]
    if not parts:
        return False
    if parts[-1] in _GIT_STATE_NAMES:
        return True
    return parts[0] == "refs" or parts[0] == "logs"


class GitWorkingTree:
    """A working tree read with GitPython and watched with watchfiles."""

    def __init__(self, path: str, watch_events: bool = True):
        self.path = str(Path(path).expanduser().resolve())
        self.watch_events = watch_events

    def __repr__(self) -> str:
        return f"GitWorkingTree({self.path!r})"

    @property
    def git_dir(self) -> Path:
        return Path(self.path) / ".git"

    def _read_state_sync(self) -> RepositoryState:
        repo = Repo(self.path)
        try:
            try:
                head_commit = repo.head.commit.hexsha
            except ValueError:
                # unborn branch
                head_commit = None
            branch = None if repo.head.is_detached else repo.active_branch.name
            return RepositoryState(
                head_commit=head_commit,
                branch=branch,
                has_changes=repo.is_dirty(untracked_files=True)
            )
        finally:
            repo.close()

    async def read_state(self) -> RepositoryState:
        try:
            return await asyncio.to_thread(self._read_state_sync)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise RepositoryError(f"Not a Git repository: {self.path}", operation="reading state") from e

    def on_did_change(self, callback: Callable[[], Any]) -> Disposable:
        if not self.watch_events or not self.git_dir.is_dir():
            logger.info(f"No change notifications for {self.path}; relying on polling")
            return Disposable()

        stop_event = asyncio.Event()
        task = asyncio.get_running_loop().create_task(self._watch(callback, stop_event))

        def dispose():
            stop_event.set()
            task.cancel()

        return Disposable(dispose)

    async def _watch(self, callback: Callable[[], Any], stop_event: asyncio.Event) -> None:
        try:
            async for changes in awatch(self.git_dir, watch_filter=_is_git_state_change, stop_event=stop_event):
                logger.debug(f"{len(changes)} git state change(s) in {self.path}")
                callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"File watcher stopped for {self.path}: {e}")


class RepositoryWatcher:
    """Owns the debounced listeners and the fallback poller."""

    def __init__(
        self,
        on_change: Callable[[WorkingTree], Awaitable[Any]],
        debounce_delay: float = DEBOUNCE_DELAY,
        poll_interval: float = POLL_INTERVAL
    ):
        self._on_change = on_change
        self.debounce_delay = debounce_delay
        self._trees: Dict[str, WorkingTree] = {}
        self._debouncers: Dict[str, Debouncer] = {}
        self._listeners: Dict[str, Disposable] = {}
        self._lock = threading.Lock()
        self._poller = PeriodicPoller(self.poll_once, poll_interval)

    @property
    def trees(self) -> List[WorkingTree]:
        return list(self._trees.values())

    @property
    def polling(self) -> bool:
        return self._poller.running

    def get(self, repo_path: str) -> Optional[WorkingTree]:
        return self._trees.get(repo_path)

    def is_watching(self, repo_path: str) -> bool:
        return repo_path in self._trees

    def watch(self, tree: WorkingTree) -> bool:
        """Register a debounced listener; False when already watched."""
        with self._lock:
            if tree.path in self._trees:
                return False
            debouncer = Debouncer(lambda: self._on_change(tree), self.debounce_delay, name=tree.path)
            try:
                listener = tree.on_did_change(debouncer)
            except Exception as e:
                logger.error(f"Failed to register change listener for {tree.path}: {e}")
                listener = Disposable()
            self._trees[tree.path] = tree
            self._debouncers[tree.path] = debouncer
            self._listeners[tree.path] = listener
        logger.info(f"Watching repository: {tree.path}")
        return True

    def unwatch(self, repo_path: str) -> bool:
        with self._lock:
            tree = self._trees.pop(repo_path, None)
            debouncer = self._debouncers.pop(repo_path, None)
            listener = self._listeners.pop(repo_path, None)
        if tree is None:
            return False
        if debouncer:
            debouncer.cancel()
        if listener:
            listener.dispose()
        logger.info(f"Stopped watching repository: {repo_path}")
        return True

    async def poll_once(self) -> None:
        trees = self.trees
        if not trees:
            return
        results = await asyncio.gather(
            *(self._on_change(tree) for tree in trees), return_exceptions=True
        )
        for tree, result in zip(trees, results):
            if isinstance(result, Exception):
                logger.error(f"Error monitoring repository {tree.path}: {result}")

    def start(self) -> None:
        self._poller.start()

    async def stop(self) -> None:
        """Stop polling, let handlers that already fired finish, then drop every tree."""
        await self._poller.stop()
        for debouncer in list(self._debouncers.values()):
            debouncer.cancel()
        await self.wait_idle()
        for repo_path in list(self._trees):
            self.unwatch(repo_path)

    async def wait_idle(self) -> None:
        """Wait for debounced handlers that already fired."""
        for debouncer in list(self._debouncers.values()):
            await debouncer.wait()


__all__ = [
    'DEBOUNCE_DELAY', 'POLL_INTERVAL', 'Disposable', 'WorkingTree', 'Debouncer',
    'PeriodicPoller', 'GitWorkingTree', 'RepositoryWatcher'
]
