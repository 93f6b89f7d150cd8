"""Startup crash recovery.

Runs once before the orchestrator accepts spawns and removes artifacts left
by sessions that ended without a clean shutdown:

- tether hooks still merged into project settings files
- progress logs older than orphan_progress_age_hours
- run directories under {data_dir}/qa older than orphan_run_age_days

Each sweep is independent. A failure on one item is logged and skipped;
it never aborts the rest of the sweep. Only entries that reference tether's
own directories are ever touched in user settings.
"""

import logging
import os
import shutil
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

import orjson

from tether.core.notify import Notification, NotificationSink
from tether.core.session import AgentSession
from tether.hooks.install import (
    contains_owned_hooks,
    get_settings_path,
    normalize_marker,
    parse_settings,
    strip_owned_hooks,
)

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR


class RecoveryItemError(Exception):
    """Raised when a single recovery item cannot be cleaned."""

    pass


@dataclass
class RecoveryResult:
    """Summary of a recovery run."""

    fixed: int = 0
    details: list[str] = field(default_factory=list)


def _same_path(a: Path, b: Path) -> bool:
    return os.path.normcase(Path(a).resolve()) == os.path.normcase(Path(b).resolve())


class CrashRecovery:
    """One-shot cleanup of orphaned session artifacts."""

    def __init__(
        self,
        data_dir: Path,
        list_project_paths: Callable[[], Iterable[Path]],
        list_active_sessions: Callable[[], Iterable[AgentSession]],
        owner_of: Callable[[str], Path | None] | None = None,
        progress_age_hours: float = 24.0,
        run_age_days: float = 7.0,
        sink: NotificationSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.progress_dir = self.data_dir / "progress"
        self.run_dir = self.data_dir / "qa"
        self._list_project_paths = list_project_paths
        self._list_active_sessions = list_active_sessions
        self._owner_of = owner_of
        self.progress_max_age = progress_age_hours * SECONDS_PER_HOUR
        self.run_max_age = run_age_days * SECONDS_PER_DAY
        self._sink = sink
        self._clock = clock

    @property
    def markers(self) -> list[str]:
        return [normalize_marker(self.progress_dir), normalize_marker(self.data_dir)]

    def _record(self, result: RecoveryResult, item: Path, detail: str) -> None:
        result.fixed += 1
        result.details.append(detail)
        if self._sink is not None:
            try:
                self._sink(Notification(str(item), "recovery", detail))
            except Exception:
                logger.exception("Notification sink failed for %s", item)

    # --- orphaned hooks ---

    def _recover_settings_file(self, project: Path, markers: list[str]) -> str | None:
        settings_path = get_settings_path(project)
        try:
            if not settings_path.exists():
                return None
            settings = parse_settings(settings_path.read_bytes())
            if settings is None:
                logger.info("Skipping malformed settings file %s", settings_path)
                return None
            if not contains_owned_hooks(settings, markers):
                return None

            cleaned, has_other_content = strip_owned_hooks(settings, markers)
            if has_other_content:
                settings_path.write_bytes(orjson.dumps(cleaned, option=orjson.OPT_INDENT_2))
                return f"Removed orphaned hooks from {settings_path}"
            settings_path.unlink()
            return f"Deleted orphaned hooks file {settings_path}"
        except OSError as e:
            raise RecoveryItemError(f"Failed to recover hooks in {settings_path}: {e}") from e

    def recover_orphaned_hooks(self, result: RecoveryResult) -> None:
        active_projects = [Path(s.project_path) for s in self._list_active_sessions()]
        markers = self.markers

        for project in self._list_project_paths():
            project = Path(project)
            if any(_same_path(project, active) for active in active_projects):
                continue
            try:
                detail = self._recover_settings_file(project, markers)
            except RecoveryItemError as e:
                logger.error("%s", e)
                continue
            if detail:
                self._record(result, get_settings_path(project), detail)

    # --- orphaned progress files ---

    def _is_progress_file_active(self, path: Path, sessions: list[AgentSession]) -> bool:
        task_id = path.stem
        if any(s.task_id == task_id for s in sessions):
            return True
        if self._owner_of is None:
            return False
        owner = self._owner_of(task_id)
        return owner is not None and any(
            _same_path(owner, Path(s.project_path)) for s in sessions
        )

    def recover_orphaned_progress_files(self, result: RecoveryResult) -> None:
        if not self.progress_dir.is_dir():
            return
        sessions = list(self._list_active_sessions())
        now = self._clock()

        try:
            entries = sorted(self.progress_dir.iterdir())
        except OSError as e:
            logger.error("Failed to read progress directory %s: %s", self.progress_dir, e)
            return

        for path in entries:
            if path.suffix not in (".jsonl", ".log"):
                continue
            try:
                if self._is_progress_file_active(path, sessions):
                    continue
                age = now - path.stat().st_mtime
                if age <= self.progress_max_age:
                    continue
                path.unlink()
            except OSError as e:
                logger.error("Failed to clean progress file %s: %s", path, e)
                continue
            self._record(
                result,
                path,
                f"Deleted orphaned progress file {path} (age: {round(age / SECONDS_PER_HOUR)}h)",
            )

    # --- orphaned run directories ---

    def recover_orphaned_run_dirs(self, result: RecoveryResult) -> None:
        if not self.run_dir.is_dir():
            return
        now = self._clock()

        try:
            entries = sorted(self.run_dir.iterdir())
        except OSError as e:
            logger.error("Failed to read run directory %s: %s", self.run_dir, e)
            return

        for path in entries:
            try:
                if not path.is_dir() or path.is_symlink():
                    continue
                age = now - path.stat().st_mtime
                if age <= self.run_max_age:
                    continue
                shutil.rmtree(path)
            except OSError as e:
                logger.error("Failed to clean run directory %s: %s", path, e)
                continue
            self._record(
                result,
                path,
                f"Deleted orphaned run directory {path} (age: {round(age / SECONDS_PER_DAY)}d)",
            )

    def recover(self) -> RecoveryResult:
        """Run all three sweeps.

        Returns:
            RecoveryResult with the number of fixed items and one detail per fix.
        """
        result = RecoveryResult()
        logger.info("Starting startup recovery scan")

        self.recover_orphaned_hooks(result)
        self.recover_orphaned_progress_files(result)
        self.recover_orphaned_run_dirs(result)

        if result.fixed:
            logger.info("Recovery complete: %d items fixed", result.fixed)
            for detail in result.details:
                logger.info("  - %s", detail)
        else:
            logger.info("No orphaned artifacts found")
        return result
