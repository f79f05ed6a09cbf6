"""
Data models for the commit tracker.

This module provides the pydantic models shared by the log store, the cache,
the processing pipeline and the service surface:
- Commit records as written to the append-only log
- Live repository state and per-repository status
- Tracker configuration
- Derived read views (statistics, unpushed state, summaries, cache status)
"""

import os
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


DEFAULT_LOG_FILE = "commit-tracker.log"


def normalize_message(message: str) -> str:
    """Collapse a commit message onto a single line."""
    lines = [line.strip() for line in message.splitlines()]
    return " ".join(line for line in lines if line)


class Commit(BaseModel):
    """A detected commit, written once to the tracking log and never mutated."""

    model_config = ConfigDict(frozen=True)

    hash: str = Field(..., min_length=1, description="Git commit hash")
    message: str = Field(..., min_length=1, description="Commit message")
    author: str = Field(..., min_length=1, description="Author as 'Name <email>'")
    date: str = Field(..., min_length=1, description="ISO-8601 timestamp")
    branch: str = Field(..., min_length=1, description="Branch name")
    repo_name: str = Field(..., min_length=1, description="owner/repo or directory name")
    repo_path: str = Field(..., min_length=1, description="Absolute repository path")

    @field_validator('hash', 'author', 'date', 'branch', 'repo_name', 'repo_path')
    @classmethod
    def validate_single_line(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('Commit fields cannot be empty')
        if '\n' in v or '\r' in v:
            raise ValueError('Commit fields must fit on one line')
        return v

    @field_validator('message')
    @classmethod
    def validate_message(cls, v):
        v = normalize_message(v)
        if not v:
            raise ValueError('Commit message cannot be empty')
        return v

    @property
    def short_hash(self) -> str:
        return self.hash[:7]


class RepositoryState(BaseModel):
    """Snapshot of a working tree as reported by its watcher."""

    head_commit: Optional[str] = None
    branch: Optional[str] = None
    has_changes: bool = False


class RepositoryStatus(BaseModel):
    """Tracked status of one watched repository, keyed by its path."""

    model_config = ConfigDict(frozen=True)

    repo_path: str
    current_commit: Optional[str] = None
    branch_name: Optional[str] = None
    has_changes: bool = False
    repo_name: str


class TrackerConfig(BaseModel):
    """The configuration surface the engine consumes."""

    log_file_path: str = Field(default="", description="Directory of the tracking repository")
    log_file: str = Field(default=DEFAULT_LOG_FILE, description="Log file name inside the tracking repository")
    excluded_branches: List[str] = Field(default_factory=list, description="Branches never logged")
    allowed_authors: List[str] = Field(
        default_factory=list,
        description="Authors whose commits are logged; empty means everyone"
    )

    @field_validator('log_file')
    @classmethod
    def validate_log_file(cls, v):
        if not v or not v.strip():
            return DEFAULT_LOG_FILE
        return v.strip()

    @computed_field
    @property
    def tracking_file_path(self) -> str:
        if not self.log_file_path:
            return ""
        return os.path.join(self.log_file_path, self.log_file)

    @property
    def is_configured(self) -> bool:
        return bool(self.log_file_path and self.log_file_path.strip())


class CommitStatistics(BaseModel):
    """Aggregate view derived purely from the tracking log."""

    total_commits: int = 0
    repositories: Dict[str, int] = Field(default_factory=dict)
    branches: Dict[str, int] = Field(default_factory=dict)
    authors: Dict[str, int] = Field(default_factory=dict)
    first_commit_date: Optional[str] = None
    last_commit_date: Optional[str] = None

    @classmethod
    def from_commits(cls, commits: List[Commit]) -> 'CommitStatistics':
        """Build statistics from commits in any order."""
        if not commits:
            return cls()

        repositories: Dict[str, int] = {}
        branches: Dict[str, int] = {}
        authors: Dict[str, int] = {}
        for commit in commits:
            repositories[commit.repo_name] = repositories.get(commit.repo_name, 0) + 1
            branches[commit.branch] = branches.get(commit.branch, 0) + 1
            authors[commit.author] = authors.get(commit.author, 0) + 1

        dates = sorted(commit.date for commit in commits)
        return cls(
            total_commits=len(commits),
            repositories=dict(sorted(repositories.items(), key=lambda x: x[1], reverse=True)),
            branches=dict(sorted(branches.items(), key=lambda x: x[1], reverse=True)),
            authors=dict(sorted(authors.items(), key=lambda x: x[1], reverse=True)),
            first_commit_date=dates[0],
            last_commit_date=dates[-1]
        )


class UnpushedInfo(BaseModel):
    """Whether the tracking repository has commits not yet pushed."""

    has_unpushed: bool
    log_file_path: str
    checked_at: datetime


class RepositorySummary(BaseModel):
    """Overview of the repositories currently tracked."""

    total_repositories: int = 0
    tracked_repositories: int = 0
    repositories_with_changes: int = 0
    active_repository: Optional[str] = None


class CacheStatus(BaseModel):
    """Diagnostic view of the engine state and cache occupancy."""

    last_processed_commit: Optional[str] = None
    repositories_tracked: int = 0
    cache_created: Optional[str] = None
    cache_last_updated: Optional[datetime] = None
    cache_sizes: Dict[str, int] = Field(default_factory=dict)


__all__ = [
    'DEFAULT_LOG_FILE', 'normalize_message', 'Commit', 'RepositoryState',
    'RepositoryStatus', 'TrackerConfig', 'CommitStatistics', 'UnpushedInfo',
    'RepositorySummary', 'CacheStatus'
]
