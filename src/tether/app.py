"""Host wiring for tether.

Tether constructs exactly one tailer, orchestrator, watchdog and crash
recovery for the process and starts them in the required order: recovery
runs to completion before the orchestrator accepts its first spawn.
"""

import logging
from collections.abc import Callable, Iterable
from pathlib import Path

from tether.core.config import Settings, load_settings
from tether.core.notify import NotificationSink
from tether.core.orchestrator import Orchestrator, SpawnError
from tether.core.progress import ProgressTailer
from tether.core.project import HostLock, ProjectIndex
from tether.core.recovery import CrashRecovery, RecoveryResult
from tether.core.session import AgentSession
from tether.core.watchdog import Watchdog

logger = logging.getLogger(__name__)

TaskStatusUpdater = Callable[[str, str], None]


class Tether:
    """Owns and starts the supervisor components."""

    def __init__(
        self,
        data_dir: Path,
        settings: Settings | None = None,
        extra_project_paths: Iterable[Path] = (),
        sink: NotificationSink | None = None,
        update_task_status: TaskStatusUpdater | None = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.settings = settings or load_settings(self.data_dir)
        self._extra_project_paths = [Path(p) for p in extra_project_paths]
        self._update_task_status = update_task_status

        self.project_index = ProjectIndex(self.data_dir)
        self.host_lock = HostLock(self.data_dir / "locks")
        self.tailer = ProgressTailer(self.data_dir / "progress")
        self.orchestrator = Orchestrator(
            self.data_dir,
            settings=self.settings,
            tailer=self.tailer,
            project_index=self.project_index,
        )
        self.watchdog = Watchdog(
            self.orchestrator,
            interval_seconds=self.settings.watchdog_interval_seconds,
            stale_after_seconds=self.settings.stale_after_seconds,
            miss_threshold=self.settings.stale_miss_threshold,
            sink=sink,
        )
        self.recovery = CrashRecovery(
            self.data_dir,
            list_project_paths=self.known_project_paths,
            list_active_sessions=self.orchestrator.list_active_sessions,
            owner_of=self.project_index.owner_of,
            progress_age_hours=self.settings.orphan_progress_age_hours,
            run_age_days=self.settings.orphan_run_age_days,
            sink=sink,
        )
        self.recovery_result: RecoveryResult | None = None

    def known_project_paths(self) -> list[Path]:
        paths = self.project_index.list_projects()
        for extra in self._extra_project_paths:
            if extra not in paths:
                paths.append(extra)
        return paths

    def start(self, watch: bool = True) -> RecoveryResult:
        """Recover, then start tailing and monitoring, then open for spawns.

        Recovery is skipped while another host is running on the same data
        directory; its sessions and hooks are still live.
        """
        if self.recovery_result is None:
            if self.host_lock.try_exclusive():
                self.recovery_result = self.recovery.recover()
            else:
                logger.warning(
                    "Another tether host is using %s; skipping crash recovery", self.data_dir
                )
                self.recovery_result = RecoveryResult()
        self.host_lock.share()
        if watch:
            self.tailer.start()
            self.watchdog.start()
        self.orchestrator.open()
        logger.info("Tether ready (data dir %s)", self.data_dir)
        return self.recovery_result

    def stop(self) -> None:
        """Kill live sessions and stop background threads."""
        self.watchdog.stop()
        self.orchestrator.dispose()
        self.tailer.stop()
        self.host_lock.release()

    def restart_task(self, task_id: str, project_path: Path) -> AgentSession:
        """Restart a task from its checkpoint, keeping the task store in step.

        The task status is rolled back if the spawn fails.
        """
        previous = self.orchestrator.get_session_by_task_id(task_id)
        phase = previous.phase if previous is not None else "executing"
        status = "planning" if phase == "planning" else "running"
        if self._update_task_status is not None:
            self._update_task_status(task_id, status)
        try:
            return self.orchestrator.restart_from_checkpoint(task_id, project_path)
        except SpawnError:
            if self._update_task_status is not None:
                self._update_task_status(task_id, "error")
            raise
