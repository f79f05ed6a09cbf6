"""
Persisted engine state.

The engine keeps two scalars across restarts: the last processed commit hash
(the fast-path duplicate check) and the time the cache was first created.
They live behind a small key-value ``StateStore`` so the engine never touches
ambient global state; back-ends are in-memory, a JSON file, or Redis.
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from shared.errors import FilesystemError

logger = logging.getLogger(__name__)

LAST_PROCESSED_COMMIT = "lastProcessedCommit"
CACHE_CREATED = "cacheCreated"


class StateStore(ABC):
    """Abstract key-value store for persisted engine scalars."""

    @abstractmethod
    async def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Optional[str]) -> None:
        """Store a value; ``None`` removes the key."""
        pass

    async def close(self) -> None:
        pass


class MemoryStateStore(StateStore):
    """Process-local store, used in tests and when persistence is disabled."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.values: Dict[str, str] = dict(initial or {})

    async def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.values.get(key, default)

    async def set(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self.values.pop(key, None)
        else:
            self.values[key] = value


class JsonFileStateStore(StateStore):
    """Stores values in a small JSON document, replaced atomically on write."""

    def __init__(self, path: str):
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.is_file():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable state file {self.path}: {e}")
            return {}

    def _write(self, data: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".state-")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise FilesystemError(
                f"Failed to persist state to {self.path}: {e}",
                operation="persisting engine state"
            ) from e

    async def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        async with self._lock:
            value = self._read().get(key)
        return default if value is None else str(value)

    async def set(self, key: str, value: Optional[str]) -> None:
        async with self._lock:
            data = self._read()
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            self._write(data)


class RedisStateStore(StateStore):
    """Stores values as Redis strings under a common prefix."""

    def __init__(self, redis_client, prefix: str = "commit_tracker:"):
        self.redis_client = redis_client
        self.prefix = prefix

    async def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = await self.redis_client.get(f"{self.prefix}{key}")
        if value is None:
            return default
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    async def set(self, key: str, value: Optional[str]) -> None:
        if value is None:
            await self.redis_client.delete(f"{self.prefix}{key}")
        else:
            await self.redis_client.set(f"{self.prefix}{key}", value)

    async def close(self) -> None:
        await self.redis_client.aclose()


class EngineState:
    """The engine's persisted scalars, loaded at startup."""

    def __init__(self, store: StateStore):
        self.store = store
        self.last_processed_commit: Optional[str] = None
        self.cache_created: Optional[str] = None

    async def load(self) -> 'EngineState':
        self.last_processed_commit = await self.store.get(LAST_PROCESSED_COMMIT)
        self.cache_created = await self.store.get(CACHE_CREATED)
        if self.cache_created is None:
            self.cache_created = datetime.now(timezone.utc).isoformat()
            await self.store.set(CACHE_CREATED, self.cache_created)
        logger.info(f"Loaded engine state, last processed commit: {self.last_processed_commit or 'none'}")
        return self

    async def advance(self, commit_hash: str) -> None:
        """Record a commit as processed and persist it."""
        await self.store.set(LAST_PROCESSED_COMMIT, commit_hash)
        self.last_processed_commit = commit_hash

    async def reset(self) -> None:
        await self.store.set(LAST_PROCESSED_COMMIT, None)
        self.last_processed_commit = None


__all__ = [
    'LAST_PROCESSED_COMMIT', 'CACHE_CREATED', 'StateStore', 'MemoryStateStore',
    'JsonFileStateStore', 'RedisStateStore', 'EngineState'
]
