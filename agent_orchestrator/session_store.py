"""
Flat-file session record persistence.

This module handles:
- One key=value record per session under <data_dir>/sessions/
- Atomic create-if-absent reservation of session IDs
- Reads that tolerate the two historical layouts: flat files
  (<sessions>/<id>) and project subdirectories (<sessions>/<project>-sessions/<id>)
- Per-ID serialized read-modify-write updates (file locks)
- Archival of deleted records

Record format example:
    project=app
    status=working
    worktree=/home/me/.worktrees/app/app-3
    branch=feat/42
    pr=https://github.com/org/repo/pull/42
"""

from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

from filelock import FileLock, Timeout

from agent_orchestrator.errors import StaleRecord
from agent_orchestrator.utils.fs import (
    FileSystemError,
    copy_file,
    create_exclusive,
    ensure_dir,
    read_file,
    remove_file,
    safe_write,
)

if TYPE_CHECKING:
    from agent_orchestrator.logger import OrchestratorLogger

VALID_SESSION_ID = re.compile(r"^[a-zA-Z0-9_-]+$")

ARCHIVE_DIR = "archive"
LOCKS_DIR = ".locks"
PROJECT_DIR_SUFFIX = "-sessions"
LOCK_TIMEOUT_SECONDS = 30


def validate_session_id(session_id: str) -> None:
    """
    Reject IDs that are unsafe as file or tmux names.

    Raises:
        ValueError: If the ID contains anything but letters, digits, '_' or '-'.
    """
    if not VALID_SESSION_ID.match(session_id or ""):
        raise ValueError(f"Invalid session ID: {session_id!r}")


def parse_record(content: str) -> dict[str, str]:
    """
    Parse key=value lines into a dict.

    Lines starting with # are comments. Only the first '=' is a delimiter.
    Blank lines and lines without '=' or without a key are skipped.
    """
    result: dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        result[key] = value.strip()
    return result


def serialize_record(record: dict[str, str]) -> str:
    """Serialize a record back to key=value lines, omitting empty values."""
    lines = []
    for key, value in record.items():
        if value is None:
            continue
        value = str(value)
        if value == "":
            continue
        # Values are single-line by construction.
        value = value.replace("\r", " ").replace("\n", " ")
        lines.append(f"{key}={value}")
    return "\n".join(lines) + "\n"


class SessionStore:
    """
    Durable per-session records on flat storage.

    Only reserve() is atomic on its own. update() is a read-modify-write and
    is serialized per session ID through lock(), which callers also use when
    they need a read-compute-write sequence of their own.
    """

    def __init__(
        self,
        sessions_dir: Path | str,
        logger: Optional[OrchestratorLogger] = None,
    ) -> None:
        self._sessions_dir = Path(sessions_dir)
        self._logger = logger
        self._locks: dict[str, FileLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def sessions_dir(self) -> Path:
        return self._sessions_dir

    @property
    def archive_dir(self) -> Path:
        return self._sessions_dir / ARCHIVE_DIR

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _flat_path(self, session_id: str) -> Path:
        validate_session_id(session_id)
        return self._sessions_dir / session_id

    def _lock_path(self, session_id: str) -> Path:
        return self._sessions_dir / LOCKS_DIR / f"{session_id}.lock"

    def _resolve_path(self, session_id: str) -> Optional[Path]:
        """Find an existing record in the flat layout, then project subdirectories."""
        flat = self._flat_path(session_id)
        if flat.is_file():
            return flat

        if not self._sessions_dir.is_dir():
            return None
        for entry in sorted(self._sessions_dir.iterdir()):
            if not entry.name.endswith(PROJECT_DIR_SUFFIX) or not entry.is_dir():
                continue
            candidate = entry / session_id
            if candidate.is_file():
                return candidate
        return None

    # =========================================================================
    # Locking
    # =========================================================================

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        """
        Serialize read-modify-write sequences for one session ID.

        Re-entrant within a thread, exclusive across threads and processes.
        Once the outermost holder releases it and the record is gone, the
        lock and its lock file are dropped.

        Raises:
            FileSystemError: If the lock is not acquired within
                LOCK_TIMEOUT_SECONDS.
        """
        validate_session_id(session_id)
        with self._locks_guard:
            session_lock = self._locks.get(session_id)
            if session_lock is None:
                ensure_dir(self._sessions_dir / LOCKS_DIR)
                lock_path = self._lock_path(session_id)
                session_lock = FileLock(lock_path, timeout=LOCK_TIMEOUT_SECONDS)
                self._locks[session_id] = session_lock
        try:
            session_lock.acquire()
        except Timeout:
            raise FileSystemError(f"Timeout acquiring lock for session {session_id}")
        try:
            yield
        finally:
            session_lock.release()
            if not session_lock.is_locked:
                self._drop_lock_if_unused(session_id, session_lock)

    def _drop_lock_if_unused(self, session_id: str, session_lock: FileLock) -> None:
        with self._locks_guard:
            if self._locks.get(session_id) is not session_lock:
                return
            if self._resolve_path(session_id) is not None:
                return
            del self._locks[session_id]
            remove_file(self._lock_path(session_id))

    # =========================================================================
    # Record Operations
    # =========================================================================

    def reserve(self, session_id: str) -> bool:
        """
        Atomically create an empty record for session_id.

        Returns:
            True iff this caller created it; False if the ID already exists in
            either layout.
        """
        if self._resolve_path(session_id) is not None:
            return False
        created = create_exclusive(self._flat_path(session_id))
        self._log("session_reserved" if created else "session_reserve_conflict",
                  {"session_id": session_id}, level="debug")
        return created

    def release(self, session_id: str) -> None:
        """Drop a reservation without archiving it (spawn rollback)."""
        path = self._resolve_path(session_id)
        if path is not None:
            remove_file(path)
            self._log("session_released", {"session_id": session_id}, level="debug")

    def read(self, session_id: str) -> Optional[dict[str, str]]:
        """
        Read a record from either layout.

        Returns:
            The parsed record, or None if it does not exist or is unreadable
            (a StaleRecord is logged, never raised).
        """
        try:
            return self.read_strict(session_id)
        except StaleRecord as e:
            self._log("stale_record", {"session_id": session_id, "error": str(e)}, level="warn")
            return None

    def read_strict(self, session_id: str) -> Optional[dict[str, str]]:
        """
        Like read(), but raise StaleRecord for a corrupt record.

        Raises:
            StaleRecord: If the file exists but cannot be read or decoded.
        """
        path = self._resolve_path(session_id)
        if path is None:
            return None
        try:
            content = read_file(path)
        except FileSystemError as e:
            if not path.exists():
                return None
            raise StaleRecord(session_id, str(path), str(e))
        if "\x00" in content:
            raise StaleRecord(session_id, str(path), "record contains NUL bytes")
        return parse_record(content)

    def write(self, session_id: str, record: dict[str, str]) -> None:
        """
        Overwrite a record.

        Writes to the flat path unless the record already lives in a project
        subdirectory, in which case it is rewritten in place.
        """
        path = self._resolve_path(session_id) or self._flat_path(session_id)
        safe_write(path, serialize_record(record))

    def update(self, session_id: str, updates: dict[str, Optional[str]]) -> dict[str, str]:
        """
        Merge updates into a record; empty-string values remove the key.

        Serialized per ID through lock().

        Returns:
            The merged record as written.
        """
        with self.lock(session_id):
            record = self.read(session_id) or {}
            for key, value in updates.items():
                if value is None:
                    continue
                if value == "":
                    record.pop(key, None)
                else:
                    record[key] = str(value)
            self.write(session_id, record)
            return record

    def delete(self, session_id: str, archive: bool = True) -> None:
        """
        Remove a record, first copying it to archive/<id>_<timestamp>.

        Missing records are ignored.
        """
        with self.lock(session_id):
            path = self._resolve_path(session_id)
            if path is None:
                return
            if archive:
                timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
                copy_file(path, self.archive_dir / f"{session_id}_{timestamp}")
            remove_file(path)
        self._log("session_deleted", {"session_id": session_id, "archived": archive})

    def list(self) -> list[str]:
        """All session IDs across both layouts, deduplicated and sorted."""
        if not self._sessions_dir.is_dir():
            return []

        seen: set[str] = set()
        for entry in self._sessions_dir.iterdir():
            name = entry.name
            if name in (ARCHIVE_DIR, LOCKS_DIR) or name.startswith("."):
                continue
            if entry.is_file() and VALID_SESSION_ID.match(name):
                seen.add(name)
            elif entry.is_dir() and name.endswith(PROJECT_DIR_SUFFIX):
                for child in entry.iterdir():
                    if child.name == ARCHIVE_DIR or child.name.startswith("."):
                        continue
                    if child.is_file() and VALID_SESSION_ID.match(child.name):
                        seen.add(child.name)
        return sorted(seen)

    # =========================================================================
    # Archive
    # =========================================================================

    def list_archived(self, prefix: Optional[str] = None) -> list[str]:
        """Session IDs that have at least one archived record."""
        if not self.archive_dir.is_dir():
            return []
        ids = set()
        for entry in self.archive_dir.iterdir():
            session_id, sep, _ = entry.name.rpartition("_")
            if not sep or not VALID_SESSION_ID.match(session_id):
                continue
            if prefix and not session_id.startswith(prefix):
                continue
            ids.add(session_id)
        return sorted(ids)

    def read_archived(self, session_id: str) -> Optional[dict[str, str]]:
        """The newest archived record for session_id, if any."""
        validate_session_id(session_id)
        if not self.archive_dir.is_dir():
            return None
        candidates = sorted(
            p for p in self.archive_dir.glob(f"{session_id}_*")
            if p.name.rpartition("_")[0] == session_id
        )
        if not candidates:
            return None
        try:
            return parse_record(read_file(candidates[-1]))
        except FileSystemError:
            return None
