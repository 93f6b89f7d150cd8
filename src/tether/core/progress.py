"""Progress log tailing.

Hooks append one JSON object per line to {data_dir}/progress/{task_id}.jsonl.
The tailer tracks a byte offset per file and republishes every newly
completed line as a ProgressEvent. A trailing line without its newline is
left for the next pass, so subscribers never see a partial write.

Files already on disk when the tailer first looks are seeded at their last
complete line and their history is never replayed. Files created later, or
reset for a new session, are read from the start.

Delivery is live telemetry: at-most-once, nothing is buffered for
subscribers that are not registered yet.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import orjson
from watchfiles import watch

logger = logging.getLogger(__name__)

EVENT_TYPES = {
    "tool_use",
    "agent_stopped",
    "heartbeat",
    "phase_change",
    "plan_ready",
    "error",
}

DEBOUNCE_MS = 100
RESCAN_TIMEOUT_MS = 1000


@dataclass(frozen=True)
class ProgressEvent:
    """One parsed progress line.

    Attributes:
        type: Event type (tool_use, agent_stopped, ...)
        task_id: Task the progress file belongs to
        timestamp: ISO timestamp written by the hook
        tool: Tool name for tool_use events
        reason: Stop reason for agent_stopped events
        session_id: Session bound to the task when the line was read
        data: The full decoded line
    """

    type: str
    task_id: str
    timestamp: str = ""
    tool: str | None = None
    reason: str | None = None
    session_id: str | None = None
    data: dict = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict:
        result = dict(self.data)
        result["task_id"] = self.task_id
        if self.session_id:
            result["session_id"] = self.session_id
        return result


ProgressCallback = Callable[[ProgressEvent], None]


def parse_line(task_id: str, line: bytes, session_id: str | None = None) -> ProgressEvent | None:
    """Decode one progress line, returning None for blank or invalid lines."""
    line = line.strip()
    if not line:
        return None
    try:
        entry = orjson.loads(line)
    except orjson.JSONDecodeError:
        logger.warning("Malformed progress line for task %s", task_id)
        return None
    if not isinstance(entry, dict) or entry.get("type") not in EVENT_TYPES:
        logger.warning("Unknown progress entry for task %s: %r", task_id, entry)
        return None
    return ProgressEvent(
        type=entry["type"],
        task_id=task_id,
        timestamp=str(entry.get("timestamp", "")),
        tool=entry.get("tool"),
        reason=entry.get("reason"),
        session_id=session_id,
        data=entry,
    )


def read_progress(progress_file: Path) -> list[ProgressEvent]:
    """Parse every complete line of a progress file.

    Returns an empty list if the file does not exist.
    """
    try:
        content = progress_file.read_bytes()
    except FileNotFoundError:
        return []
    end = content.rfind(b"\n")
    if end < 0:
        return []
    task_id = progress_file.stem
    events = []
    for line in content[: end + 1].splitlines():
        event = parse_line(task_id, line)
        if event is not None:
            events.append(event)
    return events


def _jsonl_filter(change, path: str) -> bool:
    return path.endswith(".jsonl")


@dataclass
class _Subscription:
    callback: ProgressCallback
    task_id: str | None
    session_id: str | None

    def matches(self, event: ProgressEvent) -> bool:
        if self.task_id is not None and event.task_id != self.task_id:
            return False
        if self.session_id is not None and event.session_id != self.session_id:
            return False
        return True


class ProgressTailer:
    """Watches a progress directory and publishes parsed events."""

    def __init__(self, progress_dir: Path) -> None:
        self.progress_dir = Path(progress_dir)
        self._offsets: dict[Path, int] = {}
        self._seeded = False
        self._bindings: dict[str, str] = {}
        self._subscriptions: dict[int, _Subscription] = {}
        self._next_token = 0
        self._lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # --- subscriptions ---

    def subscribe(
        self,
        callback: ProgressCallback,
        task_id: str | None = None,
        session_id: str | None = None,
    ) -> Callable[[], None]:
        """Register a callback, optionally filtered by task or session.

        Returns:
            A function that removes the subscription.
        """
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(callback, task_id, session_id)

        def unsubscribe() -> None:
            with self._lock:
                self._subscriptions.pop(token, None)

        return unsubscribe

    def bind(self, task_id: str, session_id: str) -> None:
        """Attribute lines of task_id's file to session_id."""
        with self._lock:
            self._bindings[task_id] = session_id

    def unbind(self, task_id: str, session_id: str) -> None:
        with self._lock:
            if self._bindings.get(task_id) == session_id:
                del self._bindings[task_id]

    def reset(self, task_id: str) -> None:
        """Read a task's file from the start on the next pass (it is being recreated)."""
        with self._scan_lock:
            self._offsets[self.progress_dir / f"{task_id}.jsonl"] = 0

    def _publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            if not subscription.matches(event):
                continue
            try:
                subscription.callback(event)
            except Exception:
                logger.exception("Progress subscriber failed for task %s", event.task_id)

    # --- reading ---

    def _read_new_lines(self, path: Path) -> list[bytes]:
        size = path.stat().st_size
        offset = self._offsets.get(path, 0)
        if size < offset:
            logger.debug("Progress file %s was truncated, rereading", path)
            offset = 0
        if size == offset:
            self._offsets[path] = offset
            return []

        with path.open("rb") as f:
            f.seek(offset)
            data = f.read(size - offset)

        end = data.rfind(b"\n")
        if end < 0:
            self._offsets[path] = offset
            return []
        self._offsets[path] = offset + end + 1
        return data[: end + 1].splitlines()

    def _seed_unlocked(self) -> None:
        if self._seeded:
            return
        self._seeded = True
        if not self.progress_dir.is_dir():
            return
        for path in self.progress_dir.glob("*.jsonl"):
            if path in self._offsets:
                continue
            try:
                content = path.read_bytes()
            except OSError:
                continue
            self._offsets[path] = content.rfind(b"\n") + 1

    def seed(self) -> None:
        """Skip everything already written; only later appends are published."""
        with self._scan_lock:
            self._seed_unlocked()

    def scan(self) -> int:
        """Read all progress files once and publish complete new lines.

        The first pass seeds files that already exist instead of replaying them.

        Returns:
            Number of events published.
        """
        published = 0
        with self._scan_lock:
            self._seed_unlocked()
            if not self.progress_dir.is_dir():
                self._offsets.clear()
                return 0

            present = set()
            for path in sorted(self.progress_dir.glob("*.jsonl")):
                present.add(path)
                task_id = path.stem
                try:
                    lines = self._read_new_lines(path)
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.warning("Cannot read progress file %s: %s", path, e)
                    continue

                with self._lock:
                    session_id = self._bindings.get(task_id)
                for line in lines:
                    event = parse_line(task_id, line, session_id)
                    if event is not None:
                        self._publish(event)
                        published += 1

            for gone in set(self._offsets) - present:
                del self._offsets[gone]

        return published

    # --- background loop ---

    def start(self) -> None:
        if self._thread is not None:
            return
        self.progress_dir.mkdir(parents=True, exist_ok=True)
        self.seed()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="tether-progress-tailer", daemon=True
        )
        self._thread.start()
        logger.info("Watching %s", self.progress_dir)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=RESCAN_TIMEOUT_MS / 1000 * 2)
        self._thread = None
        logger.info("Stopped watching %s", self.progress_dir)

    def _run(self) -> None:
        self.scan()
        try:
            # yield_on_timeout gives a periodic rescan even if an event is missed
            for _changes in watch(
                self.progress_dir,
                watch_filter=_jsonl_filter,
                debounce=DEBOUNCE_MS,
                stop_event=self._stop_event,
                rust_timeout=RESCAN_TIMEOUT_MS,
                yield_on_timeout=True,
                recursive=False,
            ):
                self.scan()
        except OSError as e:
            logger.warning("File watching failed (%s); polling %s instead", e, self.progress_dir)
            while not self._stop_event.wait(RESCAN_TIMEOUT_MS / 1000):
                self.scan()
