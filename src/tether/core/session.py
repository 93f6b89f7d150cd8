"""AgentSession dataclass for tether."""

import copy
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

VALID_PHASES = {"planning", "executing"}
VALID_STATUSES = {"spawning", "active", "completed", "error"}
LIVE_STATUSES = {"spawning", "active"}
TERMINAL_STATUSES = {"completed", "error"}
VALID_HEALTH = {"ok", "warned", "stale", "dead"}

# Forward-only ordering; both terminal statuses share the last rank.
_STATUS_RANK = {"spawning": 0, "active": 1, "completed": 2, "error": 2}


@dataclass
class AgentSession:
    """Represents one spawned agent process tied to a task.

    Attributes:
        id: Unique, immutable session id (e.g., "agent-task-1-3f9a0c2d")
        task_id: Task the session works on
        project_path: Project root the hooks are injected into
        sub_project_path: Optional path relative to project_path used as cwd
        command: Prompt text the agent was launched with
        base_command: Task prompt before any resume wrapping (defaults to command)
        phase: "planning" or "executing"
        status: One of "spawning", "active", "completed", "error"
        progress_file: JSONL file the hooks append to
        spawned_at: Timestamp when the session was created
        last_heartbeat_at: Latest of spawn time and last progress event
        log_file: File capturing the agent's stdout and stderr
        pid: OS process id once launched (0 before)
        exit_code: Process exit code once it ended
        settings_path: Hook settings file, None if injection failed
        original_settings: Pre-merge bytes of settings_path (None if absent)
        ended_at: When the session became terminal
        end_reason: "exited", "crashed", "killed" or "launch_failed"
        health: Watchdog watch state ("ok", "warned", "stale", "dead")
        process: Live process handle, not part of snapshots' equality
    """

    id: str
    task_id: str
    project_path: Path
    command: str
    phase: str
    progress_file: Path
    spawned_at: datetime
    last_heartbeat_at: datetime
    sub_project_path: str | None = None
    base_command: str | None = None
    status: str = "spawning"
    log_file: Path | None = None
    pid: int = 0
    exit_code: int | None = None
    settings_path: Path | None = None
    original_settings: bytes | None = None
    ended_at: datetime | None = None
    end_reason: str | None = None
    health: str = "ok"
    process: subprocess.Popen | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Validate phase and status."""
        if self.base_command is None:
            self.base_command = self.command
        if self.phase not in VALID_PHASES:
            raise ValueError(
                f"Invalid phase: {self.phase}. Must be one of {VALID_PHASES}"
            )
        if self.status not in VALID_STATUSES:
            raise ValueError(
                f"Invalid status: {self.status}. Must be one of {VALID_STATUSES}"
            )

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def cwd(self) -> Path:
        if self.sub_project_path:
            return Path(self.project_path) / self.sub_project_path
        return Path(self.project_path)

    def can_transition(self, status: str) -> bool:
        """Whether moving to status keeps transitions monotonic forward."""
        if status not in VALID_STATUSES or self.is_terminal:
            return False
        return _STATUS_RANK[status] > _STATUS_RANK[self.status]

    def snapshot(self) -> "AgentSession":
        """Shallow copy safe to hand to callers."""
        return copy.copy(self)
