"""Agent orchestrator.

Spawns, kills and restarts agent processes. Owns the session registry and
wires hook injection and progress tailing for every session.

State transitions for a task are serialized by a per-task lock. A session
belongs to exactly one task, so this also serializes work per session id,
and a kill racing a restart for the same task cannot interleave.
"""

import logging
import re
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import orjson

from tether.core.config import Settings
from tether.core.process import AgentProcess, build_environment
from tether.core.progress import ProgressEvent, ProgressTailer, read_progress
from tether.core.project import ProjectIndex
from tether.core.registry import RegistryError, SessionRegistry
from tether.core.session import VALID_PHASES, AgentSession
from tether.hooks.install import (
    HookWriteError,
    progress_file_for,
    remove_task_hooks,
    restore_settings,
    write_hooks_config,
)

logger = logging.getLogger(__name__)

TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")

DEFAULT_RESUME_COMMAND = "Continue working on this task"


class SpawnError(Exception):
    """Raised when an agent session could not be started."""

    pass


@dataclass
class SessionEvent:
    """Lifecycle notification for a session.

    Attributes:
        type: "spawned", "completed", "error" or "killed"
        session: Snapshot of the session at the time of the event
        timestamp: When the event was emitted
        exit_code: Process exit code for completed/error events
        error: Error description for error events
    """

    type: str
    session: AgentSession
    timestamp: datetime
    exit_code: int | None = None
    error: str | None = None


SessionEventHandler = Callable[[SessionEvent], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_allowed_workdir(cwd: Path, project_path: Path) -> bool:
    """Whether cwd lies under the project or the user's home directory."""
    return cwd.is_relative_to(project_path) or cwd.is_relative_to(Path.home().resolve())


def compose_resume_prompt(command: str, events: list[ProgressEvent]) -> str:
    """Build a prompt that resumes a task from its recorded progress."""
    if not events:
        return command
    lines = [
        "/resume-feature",
        f"Original task: {command}",
        "Progress so far (JSONL):",
    ]
    for event in events:
        lines.append(orjson.dumps(event.data).decode())
    lines.append("Resume from where the previous agent stopped.")
    return "\n".join(lines)


class Orchestrator:
    """Headless agent lifecycle manager."""

    def __init__(
        self,
        data_dir: Path,
        settings: Settings | None = None,
        tailer: ProgressTailer | None = None,
        project_index: ProjectIndex | None = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.settings = settings or Settings()
        self.progress_dir = self.data_dir / "progress"
        self.lock_dir = self.data_dir / "locks"
        self.tailer = tailer
        self.project_index = project_index or ProjectIndex(self.data_dir)
        self.registry = SessionRegistry(max_live=self.settings.max_concurrent_sessions)

        self._accepting = False
        self._handlers: list[SessionEventHandler] = []
        self._handlers_lock = threading.Lock()

        self._task_locks: dict[str, threading.Lock] = {}
        self._task_locks_guard = threading.Lock()

        # project path -> (baseline settings bytes, session ids holding hooks)
        self._project_hooks: dict[Path, tuple[bytes | None, set[str]]] = {}
        self._project_locks: dict[Path, threading.Lock] = {}
        self._project_locks_guard = threading.Lock()

        self._processes: dict[str, AgentProcess] = {}
        self._unsubscribe: Callable[[], None] | None = None
        if tailer is not None:
            self._unsubscribe = tailer.subscribe(self._on_progress)

    # --- wiring ---

    def open(self) -> None:
        """Start accepting spawns (call after crash recovery)."""
        self._accepting = True

    @property
    def accepting(self) -> bool:
        return self._accepting

    def on_session_event(self, handler: SessionEventHandler) -> None:
        with self._handlers_lock:
            self._handlers.append(handler)

    def _emit(self, event_type: str, session: AgentSession, **kwargs) -> None:
        event = SessionEvent(
            type=event_type, session=session.snapshot(), timestamp=_now(), **kwargs
        )
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Session event handler failed for %s", session.id)

    def _task_lock(self, task_id: str) -> threading.Lock:
        with self._task_locks_guard:
            return self._task_locks.setdefault(task_id, threading.Lock())

    def _project_lock(self, project_path: Path) -> threading.Lock:
        with self._project_locks_guard:
            return self._project_locks.setdefault(project_path, threading.Lock())

    def _on_progress(self, event: ProgressEvent) -> None:
        self.registry.touch(event.task_id, _now())

    # --- hooks ---

    def _inject_hooks(self, session: AgentSession) -> None:
        project = Path(session.project_path).resolve()
        with self._project_lock(project):
            try:
                result = write_hooks_config(
                    session.task_id, project, self.progress_dir, self.lock_dir
                )
            except HookWriteError as e:
                logger.warning(
                    "Session %s runs without progress telemetry: %s", session.id, e
                )
                return

            session.settings_path = result.settings_path
            session.original_settings = result.original_content
            baseline, holders = self._project_hooks.get(
                project, (result.original_content, set())
            )
            holders.add(session.id)
            self._project_hooks[project] = (baseline, holders)

    def _release_hooks(self, session: AgentSession) -> None:
        """Undo a session's hook injection.

        The last session in a project restores the bytes captured before the
        first injection there; earlier ones only strip their own entries.
        """
        if session.settings_path is None:
            return
        project = Path(session.project_path).resolve()
        with self._project_lock(project):
            baseline, holders = self._project_hooks.get(project, (None, set()))
            if session.id not in holders:
                return
            holders.discard(session.id)
            try:
                if holders:
                    remove_task_hooks(
                        session.settings_path, session.progress_file, self.lock_dir
                    )
                else:
                    del self._project_hooks[project]
                    restore_settings(session.settings_path, baseline, self.lock_dir)
            except OSError as e:
                logger.warning(
                    "Failed to restore hook settings %s: %s", session.settings_path, e
                )

    # --- operations ---

    def spawn(
        self,
        task_id: str,
        project_path: Path,
        prompt: str,
        phase: str = "executing",
        sub_project_path: str | None = None,
        env: dict[str, str] | None = None,
        base_command: str | None = None,
    ) -> AgentSession:
        """Launch an agent for a task.

        Returns as soon as the process has started. Crashes after that point
        are reported through session events and the watchdog, never here.
        base_command records the task prompt when prompt wraps it for a resume.

        Raises:
            SpawnError: If the session could not be started.
        """
        if not self._accepting:
            raise SpawnError("Orchestrator is not accepting spawns yet")
        if not TASK_ID_PATTERN.match(task_id):
            raise SpawnError(f"Invalid task id: {task_id!r}")
        if phase not in VALID_PHASES:
            raise SpawnError(f"Invalid phase: {phase}")

        project_path = Path(project_path).resolve()
        cwd = (project_path / sub_project_path).resolve() if sub_project_path else project_path
        if not cwd.is_dir():
            raise SpawnError(f"Working directory does not exist: {cwd}")
        if self.settings.workdir_restricted and not _is_allowed_workdir(cwd, project_path):
            raise SpawnError(f"Working directory is outside allowed paths: {cwd}")

        with self._task_lock(task_id):
            return self._spawn_locked(
                task_id, project_path, cwd, prompt, phase, sub_project_path, env, base_command
            )

    def _spawn_locked(
        self,
        task_id: str,
        project_path: Path,
        cwd: Path,
        prompt: str,
        phase: str,
        sub_project_path: str | None,
        env: dict[str, str] | None,
        base_command: str | None,
    ) -> AgentSession:
        session_id = f"agent-{task_id}-{uuid.uuid4().hex[:8]}"
        progress_file = progress_file_for(self.progress_dir, task_id)
        now = _now()
        session = AgentSession(
            id=session_id,
            task_id=task_id,
            project_path=project_path,
            sub_project_path=sub_project_path,
            command=prompt,
            base_command=base_command,
            phase=phase,
            progress_file=progress_file,
            log_file=self.progress_dir / f"{task_id}.log",
            spawned_at=now,
            last_heartbeat_at=now,
        )

        try:
            self.registry.register(session)
        except RegistryError as e:
            raise SpawnError(str(e)) from e

        # A fresh session starts with an empty progress log
        try:
            self.progress_dir.mkdir(parents=True, exist_ok=True)
            progress_file.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not reset progress file %s: %s", progress_file, e)
        if self.tailer is not None:
            self.tailer.reset(task_id)
            self.tailer.bind(task_id, session_id)

        self._inject_hooks(session)
        try:
            self.project_index.add(project_path, task_id)
        except OSError as e:
            logger.warning("Could not record project %s: %s", project_path, e)

        agent_env = build_environment(
            self.settings.nested_session_env,
            {**(env or {}), "TETHER_TASK_ID": task_id, "TETHER_SESSION_ID": session_id},
            mode=self.settings.env_mode,
            blocklist=self.settings.env_blocklist,
            always_pass=self.settings.env_always_pass,
        )
        argv = [*self.settings.agent_command, "-p", prompt]

        try:
            process = AgentProcess.launch(
                argv,
                cwd=cwd,
                env=agent_env,
                log_file=session.log_file,
                on_exit=lambda code: self._handle_exit(session_id, code),
            )
        except OSError as e:
            session.status = "error"
            session.end_reason = "launch_failed"
            session.ended_at = _now()
            self._finish(session)
            self.registry.evict(session_id)
            raise SpawnError(f"Failed to launch agent for task {task_id}: {e}") from e

        session.process = process.popen
        session.pid = process.pid
        session.status = "active"
        self._processes[session_id] = process
        logger.info("Spawned %s (pid %s) for task %s", session_id, process.pid, task_id)
        self._emit("spawned", session)
        return session.snapshot()

    def _finish(self, session: AgentSession) -> None:
        """Release per-session resources once the session is terminal."""
        self._release_hooks(session)
        if self.tailer is not None:
            self.tailer.unbind(session.task_id, session.id)
        self._processes.pop(session.id, None)

    def _handle_exit(self, session_id: str, exit_code: int) -> None:
        session = self.registry.get(session_id)
        if session is None:
            return
        with self._task_lock(session.task_id):
            session.exit_code = exit_code
            if not session.is_live:
                # Killed earlier; the kill already released everything.
                return
            status = "completed" if exit_code == 0 else "error"
            session.status = status
            session.end_reason = "exited" if exit_code == 0 else "crashed"
            session.ended_at = _now()
            self._finish(session)

        logger.info("Session %s exited with code %s", session_id, exit_code)
        if status == "completed":
            self._emit("completed", session, exit_code=exit_code)
        else:
            self._emit(
                "error",
                session,
                exit_code=exit_code,
                error=f"Agent exited with code {exit_code}",
            )

    def kill(self, session_id: str) -> None:
        """Terminate a session. Unknown or finished sessions are a no-op."""
        session = self.registry.get(session_id)
        if session is None:
            return
        with self._task_lock(session.task_id):
            if not session.is_live:
                return
            session.status = "error"
            session.end_reason = "killed"
            session.ended_at = _now()
            process = self._processes.get(session_id)
            if process is not None:
                process.terminate(self.settings.kill_grace_seconds)
            self._finish(session)
            self.registry.evict(session_id)

        logger.info("Killed session %s", session_id)
        self._emit("killed", session)

    def restart_from_checkpoint(self, task_id: str, project_path: Path) -> AgentSession:
        """Replace a task's session with one resuming from recorded progress.

        A missing progress file simply means a fresh start.
        """
        previous = self.registry.find_by_task(task_id)
        if previous is not None and previous.is_live:
            self.kill(previous.id)

        events = read_progress(progress_file_for(self.progress_dir, task_id))
        command = previous.base_command if previous is not None else DEFAULT_RESUME_COMMAND
        phase = previous.phase if previous is not None else "executing"
        sub_project_path = previous.sub_project_path if previous is not None else None

        return self.spawn(
            task_id,
            project_path,
            compose_resume_prompt(command, events),
            phase=phase,
            sub_project_path=sub_project_path,
            base_command=command,
        )

    # --- queries ---

    def get_session(self, session_id: str) -> AgentSession | None:
        return self.registry.get_snapshot(session_id)

    def get_session_by_task_id(self, task_id: str) -> AgentSession | None:
        session = self.registry.find_by_task(task_id)
        return session.snapshot() if session else None

    def list_active_sessions(self) -> list[AgentSession]:
        return self.registry.list_live()

    def is_process_alive(self, session_id: str) -> bool:
        process = self._processes.get(session_id)
        return process is not None and process.is_alive()

    def prune(self) -> list[str]:
        """Evict terminal sessions past the retention window."""
        retention = timedelta(seconds=self.settings.session_retention_seconds)
        return self.registry.prune(_now(), retention)

    def wait(self, session_id: str, timeout: float | None = None) -> bool:
        """Block until a session's process has exited and been handled."""
        process = self._processes.get(session_id)
        if process is None:
            return True
        return process.wait(timeout)

    def dispose(self) -> None:
        """Kill every live session and stop listening to progress."""
        self._accepting = False
        for session in self.registry.list_live():
            self.kill(session.id)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
