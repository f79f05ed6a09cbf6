"""
Append-only commit log.

The tracking log is plain UTF-8 text. Each record is seven labelled lines
followed by a blank line:

    Commit: <hash>
    Message: <text>
    Author: <name <email>>
    Date: <ISO-8601>
    Branch: <name>
    Repository: <owner/repo or dirname>
    Repository Path: <absolute path>

The file is only ever appended to. It is the single durable source of truth
for which commits have been processed.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from shared.errors import FilesystemError
from shared.models import Commit

logger = logging.getLogger(__name__)

RECORD_SEPARATOR = "\n\n"

# (label, field) in write order; parsing checks longer labels first
LOG_FIELDS = [
    ("Commit", "hash"),
    ("Message", "message"),
    ("Author", "author"),
    ("Date", "date"),
    ("Branch", "branch"),
    ("Repository", "repo_name"),
    ("Repository Path", "repo_path"),
]

_PARSE_ORDER = sorted(LOG_FIELDS, key=lambda item: len(item[0]), reverse=True)


def serialize_commit(commit: Commit) -> str:
    """Render a commit as one log record, trailing blank line included."""
    lines = [f"{label}: {getattr(commit, field)}" for label, field in LOG_FIELDS]
    return "\n".join(lines) + RECORD_SEPARATOR


def _match_label(line: str) -> Optional[tuple]:
    for label, field in _PARSE_ORDER:
        prefix = f"{label}:"
        if line.startswith(prefix):
            return field, line[len(prefix):].strip()
    return None


def parse_record(block: str) -> Optional[Commit]:
    """Parse one record; returns None for a malformed block."""
    values: Dict[str, str] = {}
    last_field = None

    for raw_line in block.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        matched = _match_label(line)
        if matched is None:
            # continuation of a multi-line message
            if last_field == "message":
                values["message"] = f"{values['message']}\n{line}"
            continue
        field, value = matched
        if field in values:
            return None
        values[field] = value
        last_field = field

    if len(values) != len(LOG_FIELDS) or not all(values.values()):
        return None

    try:
        return Commit(**values)
    except ValidationError:
        return None


def parse_log(content: str) -> List[Commit]:
    """Parse log content into commits in file order, skipping bad records."""
    commits = []
    for block in content.split(RECORD_SEPARATOR):
        if not block.strip():
            continue
        commit = parse_record(block)
        if commit is None:
            logger.debug(f"Skipping malformed log record: {block[:60]!r}")
            continue
        commits.append(commit)
    return commits


def validate_path(file_path: str) -> bool:
    """A tracking path must be absolute and free of parent references."""
    if not file_path or not os.path.isabs(file_path):
        return False
    return ".." not in Path(file_path).parts


class CommitLogStore:
    """Reads and appends records of a single tracking file."""

    def __init__(self, tracking_file_path: str):
        self.tracking_file_path = tracking_file_path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return Path(self.tracking_file_path)

    def exists(self) -> bool:
        return bool(self.tracking_file_path) and self.path.is_file()

    def append(self, commit: Commit) -> Path:
        """Append one record and return the file path."""
        if not validate_path(self.tracking_file_path):
            raise FilesystemError(
                f"Invalid tracking file path: {self.tracking_file_path!r}",
                operation="validating tracking file path"
            )

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(
                f"Failed to create directory {self.path.parent}: {e}",
                operation="creating tracking directory"
            ) from e

        record = serialize_commit(commit)
        try:
            with self._lock:
                with open(self.path, "a", encoding="utf-8", newline="\n") as f:
                    f.write(record)
                    f.flush()
                    os.fsync(f.fileno())
        except OSError as e:
            raise FilesystemError(
                f"Failed to write to {self.path}: {e}",
                operation="appending commit record"
            ) from e

        logger.debug(f"Appended commit {commit.hash} to {self.path}")
        return self.path

    def read_content(self) -> str:
        if not self.exists():
            return ""
        try:
            with self._lock:
                # undecodable bytes only spoil their own record
                return self.path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise FilesystemError(
                f"Failed to read {self.path}: {e}",
                operation="reading tracking log"
            ) from e

    def read_all(self, newest_first: bool = True) -> List[Commit]:
        """Return every well-formed record."""
        commits = parse_log(self.read_content())
        if newest_first:
            commits.reverse()
        return commits

    def contains(self, commit_hash: str) -> bool:
        """Authoritative duplicate check against the log contents."""
        if not commit_hash:
            return False
        needle = f"Commit: {commit_hash}\n"
        content = self.read_content()
        return content.startswith(needle) or f"\n{needle}" in content


__all__ = [
    'RECORD_SEPARATOR', 'LOG_FIELDS', 'serialize_commit', 'parse_record',
    'parse_log', 'validate_path', 'CommitLogStore'
]
