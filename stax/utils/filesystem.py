"""
Utilities for filesystem operations
"""

import os
import socket
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from stax.errors import BusyError, SnapshotIOError


def ensure_dir_exists(directory: Path) -> None:
    """
    Ensures that a directory exists, creating it if necessary

    Args:
        directory: Directory path
    """
    directory.mkdir(parents=True, exist_ok=True)


def remove_quietly(path: Optional[Path]) -> bool:
    """
    Removes a file if it exists

    Returns:
        bool: True if a file was removed
    """
    if path is None:
        return False
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False


def atomic_write_text(path: Path, content: str, mode: int = 0o644) -> None:
    """
    Writes a file through a temporary sibling and a rename
    """
    tmp = path.with_name(f".{path.name}.tmp-{os.getpid()}")
    try:
        with open(tmp, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except OSError:
        remove_quietly(tmp)
        raise


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProjectLock:
    """
    Advisory per-project lock file.

    The file holds the owner's pid, hostname and creation time. A lock
    older than STALE_LOCK_MINUTES, or one left by a dead process on this
    host, may be broken. Re-entrant within one thread; other threads of the
    same process wait for the holder before touching the file.
    """

    STALE_LOCK_MINUTES = 30

    _held: Dict[str, int] = {}
    _thread_locks: Dict[str, threading.RLock] = {}
    _held_guard = threading.Lock()

    def __init__(self, directory: Path, project_id: str, operation: str = "pull"):
        self.path = Path(directory) / f".{project_id}.lock"
        self.operation = operation
        self.stale_threshold = timedelta(minutes=self.STALE_LOCK_MINUTES)
        self._acquired = False

    def __enter__(self) -> "ProjectLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def read_owner(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            return {}
        return data if isinstance(data, dict) else {}

    def _is_stale(self, owner: Dict[str, Any]) -> bool:
        created = owner.get("created_at")
        if isinstance(created, str):
            try:
                created = datetime.fromisoformat(created)
            except ValueError:
                created = None
        if isinstance(created, datetime):
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            if datetime.now(timezone.utc) - created > self.stale_threshold:
                return True
        elif not owner:
            # Unreadable lock: fall back to the file's age
            try:
                age = datetime.now().timestamp() - self.path.stat().st_mtime
            except FileNotFoundError:
                return True
            return age > self.stale_threshold.total_seconds()

        pid = owner.get("pid")
        if owner.get("hostname") == socket.gethostname() and isinstance(pid, int):
            return not _pid_alive(pid)
        return False

    def acquire(self) -> None:
        """
        Takes the lock

        Raises:
            BusyError: If a live process holds the lock
            SnapshotIOError: If the lock file cannot be written
        """
        key = str(self.path)
        with self._held_guard:
            thread_lock = self._thread_locks.setdefault(key, threading.RLock())
        thread_lock.acquire()

        # Only the owning thread gets past the RLock, so a count means re-entry
        with self._held_guard:
            if self._held.get(key):
                self._held[key] += 1
                self._acquired = True
                return

        try:
            self._acquire_file()
        except BaseException:
            thread_lock.release()
            raise
        with self._held_guard:
            self._held[key] = 1
        self._acquired = True

    def _acquire_file(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        record = {
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "operation": self.operation,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self.read_owner()
                if self._is_stale(owner):
                    print(f"⚠️ Breaking stale lock {self.path} (PID {owner.get('pid', '?')})")
                    remove_quietly(self.path)
                    continue
                raise BusyError(str(self.path), owner.get("pid"))
            except OSError as e:
                raise SnapshotIOError(f"Cannot create lock file {self.path}: {e}", str(self.path)) from e

            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(record, f, default_flow_style=False)
            return

        raise BusyError(str(self.path), self.read_owner().get("pid"))

    def release(self) -> None:
        if not self._acquired:
            return
        key = str(self.path)
        with self._held_guard:
            count = self._held.get(key, 0) - 1
            if count > 0:
                self._held[key] = count
            else:
                self._held.pop(key, None)
            thread_lock = self._thread_locks[key]
        try:
            if count <= 0:
                owner = self.read_owner()
                if owner.get("pid") in (None, os.getpid()):
                    remove_quietly(self.path)
        finally:
            self._acquired = False
            thread_lock.release()
