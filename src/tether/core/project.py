"""Project bookkeeping for tether.

Records every project path tether has injected hooks into, and which task
last ran there, so startup recovery knows where to look for orphaned hooks.

Index stored at {data_dir}/projects.json
Schema:
{
  "version": 1,
  "projects": {"/abs/project/path": {"tasks": ["task-1", ...]}}
}
"""

import fcntl
import hashlib
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO

import orjson

PROJECT_INDEX_VERSION = 1

# In-process locks per lock file; flock alone does not order threads that
# share one open file description.
_thread_locks: dict[str, threading.Lock] = {}
_thread_locks_guard = threading.Lock()


def get_project_identifier(path: Path) -> str:
    """Get a unique identifier for a project path.

    Returns:
        A string like "dirname-hash" where hash is the first 8 chars of the
        sha256 of the resolved path.
    """
    resolved = Path(path).resolve()
    path_hash = hashlib.sha256(str(resolved).encode()).hexdigest()[:8]
    return f"{resolved.name}-{path_hash}"


@contextmanager
def path_lock(lock_dir: Path, path: Path) -> Iterator[None]:
    """Hold an exclusive lock for a path across threads and processes.

    The lock file lives in lock_dir, never next to the locked path, so user
    projects are not littered with lock files.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_path = lock_dir / f"{get_project_identifier(path)}.lock"

    key = str(lock_path)
    with _thread_locks_guard:
        thread_lock = _thread_locks.setdefault(key, threading.Lock())

    with thread_lock:
        with open(lock_path, "w") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)


class HostLock:
    """Marks a data directory as served by a running tether host.

    Every running host holds the lock shared for its lifetime. Crash
    recovery needs it exclusively, so it never runs while another host may
    still own live sessions and their hooks.
    """

    def __init__(self, lock_dir: Path) -> None:
        self.path = Path(lock_dir) / "host.lock"
        self._file: IO[str] | None = None

    def _open(self) -> IO[str]:
        if self._file is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, "w")
        return self._file

    def try_exclusive(self) -> bool:
        """Take the lock exclusively without waiting.

        Returns:
            False if another host holds it.
        """
        try:
            fcntl.flock(self._open(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    def share(self) -> None:
        """Hold the lock shared, downgrading an exclusive hold."""
        fcntl.flock(self._open(), fcntl.LOCK_SH)

    def release(self) -> None:
        if self._file is None:
            return
        fcntl.flock(self._file, fcntl.LOCK_UN)
        self._file.close()
        self._file = None


def _empty_index() -> dict:
    return {"version": PROJECT_INDEX_VERSION, "projects": {}}


class ProjectIndex:
    """Persistent set of project paths touched by tether."""

    def __init__(self, data_dir: Path) -> None:
        self._path = data_dir / "projects.json"
        self._lock_dir = data_dir / "locks"

    @property
    def path(self) -> Path:
        return self._path

    def _load_unlocked(self) -> dict:
        try:
            if not self._path.exists():
                return _empty_index()
            content = self._path.read_bytes()
            if not content:
                return _empty_index()
            index = orjson.loads(content)
        except (orjson.JSONDecodeError, OSError):
            return _empty_index()
        if not isinstance(index, dict) or index.get("version") != PROJECT_INDEX_VERSION:
            return _empty_index()
        return index

    def _save_unlocked(self, index: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_bytes(orjson.dumps(index, option=orjson.OPT_INDENT_2))

    def add(self, project_path: Path, task_id: str) -> None:
        """Record that task_id ran in project_path."""
        key = str(Path(project_path).resolve())
        with path_lock(self._lock_dir, self._path):
            index = self._load_unlocked()
            entry = index["projects"].setdefault(key, {"tasks": []})
            if task_id not in entry["tasks"]:
                entry["tasks"].append(task_id)
            self._save_unlocked(index)

    def list_projects(self) -> list[Path]:
        """All recorded project paths, in insertion order."""
        return [Path(p) for p in self._load_unlocked()["projects"]]

    def owner_of(self, task_id: str) -> Path | None:
        """Project path a task last ran in, if recorded."""
        owner = None
        for project, entry in self._load_unlocked()["projects"].items():
            if task_id in entry.get("tasks", []):
                owner = Path(project)
        return owner
