"""Agent watchdog.

Periodically scans live sessions for dead processes and stale progress.
Alerts are advisory: the watchdog never kills or restarts anything.

Staleness uses a consecutive-miss counter. A tick whose heartbeat age is
beyond stale_after is a miss; the first miss only marks the session
"warned", and reaching miss_threshold marks it "stale" and raises one alert.
A fresh heartbeat ends the episode, so a later stall alerts again.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from tether.core.notify import Notification, NotificationSink
from tether.core.orchestrator import Orchestrator, SessionEvent
from tether.core.session import AgentSession

logger = logging.getLogger(__name__)

CONTEXT_OVERFLOW_EXIT_CODE = 2


@dataclass
class WatchdogAlert:
    """A health problem found for a session.

    Attributes:
        kind: "stale", "dead" or "overflow"
        session_id: Affected session
        task_id: Task of the affected session
        message: Human-readable description
        suggested_action: "restart_checkpoint" or "mark_error"
        timestamp: When the alert was raised
    """

    kind: str
    session_id: str
    task_id: str
    message: str
    suggested_action: str
    timestamp: datetime


@dataclass
class WatchdogReport:
    """Result of checking one session."""

    session_id: str
    task_id: str
    pid: int
    is_alive: bool
    heartbeat_age: timedelta
    health: str
    alerts: list[WatchdogAlert] = field(default_factory=list)


@dataclass
class _WatchState:
    misses: int = 0
    health: str = "ok"
    dead_alerted: bool = False


AlertHandler = Callable[[WatchdogAlert], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Watchdog:
    """Health monitor for live agent sessions."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        interval_seconds: float = 30.0,
        stale_after_seconds: float = 900.0,
        miss_threshold: int = 2,
        sink: NotificationSink | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.miss_threshold = max(1, miss_threshold)
        self._sink = sink
        self._clock = clock
        self._handlers: list[AlertHandler] = []
        self._states: dict[str, _WatchState] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        orchestrator.on_session_event(self._on_session_event)

    def on_alert(self, handler: AlertHandler) -> None:
        self._handlers.append(handler)

    def _emit(self, alert: WatchdogAlert) -> None:
        logger.warning("Watchdog %s alert for %s: %s", alert.kind, alert.session_id, alert.message)
        for handler in list(self._handlers):
            try:
                handler(alert)
            except Exception:
                logger.exception("Alert handler failed for %s", alert.session_id)
        if self._sink is not None:
            try:
                self._sink(Notification(alert.session_id, alert.kind, alert.message))
            except Exception:
                logger.exception("Notification sink failed for %s", alert.session_id)

    def _alert(self, kind: str, session: AgentSession, message: str, action: str) -> WatchdogAlert:
        return WatchdogAlert(
            kind=kind,
            session_id=session.id,
            task_id=session.task_id,
            message=message,
            suggested_action=action,
            timestamp=self._clock(),
        )

    def _on_session_event(self, event: SessionEvent) -> None:
        session = event.session
        if event.type in ("completed", "killed", "error"):
            with self._lock:
                self._states.pop(session.id, None)
        if event.type == "error" and event.exit_code == CONTEXT_OVERFLOW_EXIT_CODE:
            self._emit(
                self._alert(
                    "overflow",
                    session,
                    "Agent hit context overflow (exit code 2); restart from checkpoint",
                    "restart_checkpoint",
                )
            )

    def _process_gone(self, session: AgentSession) -> bool:
        if session.status != "active":
            return False
        if self.orchestrator.is_process_alive(session.id):
            return False
        # A reaped process is normally finished by its exit handler at once;
        # this catches sessions whose exit handling has not run or is stuck.
        current = self.orchestrator.get_session(session.id)
        return current is not None and current.is_live

    def _check_session(self, session: AgentSession, now: datetime) -> WatchdogReport:
        state = self._states.setdefault(session.id, _WatchState())
        age = now - session.last_heartbeat_at
        alerts: list[WatchdogAlert] = []

        if self._process_gone(session):
            state.health = "dead"
            if not state.dead_alerted:
                state.dead_alerted = True
                alerts.append(
                    self._alert(
                        "dead",
                        session,
                        f"Agent process (PID {session.pid}) is no longer running",
                        "restart_checkpoint",
                    )
                )
            alive = False
        else:
            alive = True
            if age > self.stale_after:
                state.misses += 1
                if state.misses >= self.miss_threshold:
                    if state.health != "stale":
                        minutes = round(age.total_seconds() / 60)
                        alerts.append(
                            self._alert(
                                "stale",
                                session,
                                f"Agent stalled (no activity for {minutes} min)",
                                "restart_checkpoint",
                            )
                        )
                    state.health = "stale"
                else:
                    state.health = "warned"
            else:
                state.misses = 0
                state.health = "ok"

        self.orchestrator.registry.set_health(session.id, state.health)
        return WatchdogReport(
            session_id=session.id,
            task_id=session.task_id,
            pid=session.pid,
            is_alive=alive,
            heartbeat_age=age,
            health=state.health,
            alerts=alerts,
        )

    def check_now(self) -> list[WatchdogReport]:
        """Run one scan over all live sessions."""
        self.orchestrator.prune()
        now = self._clock()
        sessions = self.orchestrator.list_active_sessions()
        with self._lock:
            live_ids = {s.id for s in sessions}
            for gone in set(self._states) - live_ids:
                del self._states[gone]
            reports = [self._check_session(s, now) for s in sessions]
        for report in reports:
            for alert in report.alerts:
                self._emit(alert)
        return reports

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="tether-watchdog", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join()
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.check_now()
            except Exception:
                logger.exception("Watchdog check failed")
