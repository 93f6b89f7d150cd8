"""In-memory session registry.

The registry is the single source of truth for session status and phase.
Only the orchestrator mutates status; the watchdog marks health through
set_health(). Readers always receive snapshots.
"""

import threading
from datetime import datetime, timedelta

from tether.core.session import VALID_HEALTH, AgentSession


class RegistryError(Exception):
    """Raised when a session cannot be registered."""

    pass


class SessionRegistry:
    """Sessions keyed by session id, indexed by task id."""

    def __init__(self, max_live: int = 0) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[str, AgentSession] = {}
        self._max_live = max_live

    def register(self, session: AgentSession) -> None:
        """Add a session. Live sessions are held to task uniqueness and the cap.

        Raises:
            RegistryError: If the id is taken, or a live session's task already
                has a live session, or the cap is reached.
        """
        with self._lock:
            if session.id in self._sessions:
                raise RegistryError(f"Session {session.id} already registered")
            if not session.is_live:
                self._sessions[session.id] = session
                return
            live = [s for s in self._sessions.values() if s.is_live]
            for existing in live:
                if existing.task_id == session.task_id:
                    raise RegistryError(
                        f"Task {session.task_id} already has a live session ({existing.id})"
                    )
            if self._max_live > 0 and len(live) >= self._max_live:
                raise RegistryError(
                    f"Maximum of {self._max_live} concurrent sessions reached"
                )
            self._sessions[session.id] = session

    def get(self, session_id: str) -> AgentSession | None:
        """Live record for internal mutation (orchestrator only)."""
        with self._lock:
            return self._sessions.get(session_id)

    def get_snapshot(self, session_id: str) -> AgentSession | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.snapshot() if session else None

    def find_by_task(self, task_id: str) -> AgentSession | None:
        """Live session for a task, else the most recently spawned retained one."""
        with self._lock:
            candidates = [s for s in self._sessions.values() if s.task_id == task_id]
            for session in candidates:
                if session.is_live:
                    return session
            if not candidates:
                return None
            return max(candidates, key=lambda s: s.spawned_at)

    def list_live(self) -> list[AgentSession]:
        """Snapshots of sessions in spawning or active status, oldest first."""
        with self._lock:
            live = [s.snapshot() for s in self._sessions.values() if s.is_live]
        return sorted(live, key=lambda s: s.spawned_at)

    def list_all(self) -> list[AgentSession]:
        with self._lock:
            return [s.snapshot() for s in self._sessions.values()]

    def set_health(self, session_id: str, health: str) -> None:
        """Record the watchdog's watch state on a session, if still present."""
        if health not in VALID_HEALTH:
            raise ValueError(f"Invalid health: {health}. Must be one of {VALID_HEALTH}")
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.health = health

    def touch(self, task_id: str, when: datetime) -> None:
        """Advance the heartbeat of the task's live session."""
        with self._lock:
            for session in self._sessions.values():
                if session.task_id == task_id and session.is_live:
                    if when > session.last_heartbeat_at:
                        session.last_heartbeat_at = when

    def evict(self, session_id: str) -> AgentSession | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def prune(self, now: datetime, retention: timedelta) -> list[str]:
        """Evict terminal sessions that ended more than retention ago.

        Returns:
            Evicted session ids.
        """
        with self._lock:
            expired = [
                s.id
                for s in self._sessions.values()
                if s.is_terminal and s.ended_at is not None and now - s.ended_at > retention
            ]
            for session_id in expired:
                del self._sessions[session_id]
        return expired
