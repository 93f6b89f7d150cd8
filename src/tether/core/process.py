"""Agent process handles.

Wraps a child process in a cancellable handle with an exit notification:
a waiter thread blocks on the process and calls on_exit exactly once with
the exit code. Agents run in their own process group so terminate() also
reaches anything they spawned.
"""

import fnmatch
import logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path

import orjson

logger = logging.getLogger(__name__)

SECURITY_CONTEXT_ENV = "SECURITY_CONTEXT"


def _matches_any(key: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(key, pattern) for pattern in patterns)


def scrub_environment(
    source: Mapping[str, str],
    mode: str = "unrestricted",
    blocklist: Iterable[str] = (),
    always_pass: Iterable[str] = (),
) -> dict[str, str]:
    """Filter an environment for an agent and describe the filtering.

    In sandboxed mode a variable matching a blocklist pattern is dropped
    unless it also matches an always_pass pattern. Unrestricted mode keeps
    everything. Either way SECURITY_CONTEXT is set to a JSON object naming
    the mode and the patterns that were withheld.
    """
    blocklist = list(blocklist)
    always_pass = list(always_pass)
    sandboxed = mode == "sandboxed"
    if sandboxed:
        env = {
            key: value
            for key, value in source.items()
            if _matches_any(key, always_pass) or not _matches_any(key, blocklist)
        }
    else:
        env = dict(source)
    env[SECURITY_CONTEXT_ENV] = orjson.dumps(
        {"mode": mode, "blockedPatterns": blocklist if sandboxed else []}
    ).decode()
    return env


def build_environment(
    strip: Iterable[str],
    additional: Mapping[str, str] | None = None,
    mode: str = "unrestricted",
    blocklist: Iterable[str] = (),
    always_pass: Iterable[str] = (),
) -> dict[str, str]:
    """Scrub os.environ, drop nested-session markers, then apply additions."""
    env = scrub_environment(os.environ, mode, blocklist, always_pass)
    for key in strip:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


class AgentProcess:
    """A launched agent process."""

    def __init__(
        self,
        popen: subprocess.Popen,
        log_handle,
        on_exit: Callable[[int], None] | None = None,
    ) -> None:
        self._popen = popen
        self._log_handle = log_handle
        self._on_exit = on_exit
        self._kill_timer: threading.Timer | None = None
        self._waiter = threading.Thread(
            target=self._wait, name=f"tether-wait-{popen.pid}", daemon=True
        )

    @classmethod
    def launch(
        cls,
        argv: list[str],
        cwd: Path,
        env: Mapping[str, str],
        log_file: Path,
        on_exit: Callable[[int], None] | None = None,
    ) -> "AgentProcess":
        """Start argv and begin watching for its exit.

        Raises:
            OSError: If the process could not be started.
        """
        log_file.parent.mkdir(parents=True, exist_ok=True)
        log_handle = log_file.open("ab")
        try:
            popen = subprocess.Popen(
                argv,
                cwd=cwd,
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError:
            log_handle.close()
            raise

        process = cls(popen, log_handle, on_exit)
        process._waiter.start()
        return process

    @property
    def popen(self) -> subprocess.Popen:
        return self._popen

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def returncode(self) -> int | None:
        return self._popen.returncode

    def is_alive(self) -> bool:
        """Whether the process still exists.

        poll() cannot be used: it returns None while the waiter thread is
        blocked in wait(). Signal 0 checks existence without touching it.
        """
        if self._popen.returncode is not None:
            return False
        try:
            os.kill(self._popen.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _signal(self, sig: int) -> bool:
        """Signal the process group; False if it is already gone."""
        if not self.is_alive():
            return False
        try:
            os.killpg(self._popen.pid, sig)
        except (ProcessLookupError, PermissionError):
            return False
        return True

    def terminate(self, grace_seconds: float) -> None:
        """SIGTERM now, SIGKILL after grace_seconds if still running.

        Signaling a process that already exited is not an error.
        """
        if not self._signal(signal.SIGTERM):
            return
        if grace_seconds <= 0:
            self._signal(signal.SIGKILL)
            return
        self._kill_timer = threading.Timer(grace_seconds, self._signal, args=(signal.SIGKILL,))
        self._kill_timer.daemon = True
        self._kill_timer.start()

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the exit notification to finish; True if it did."""
        self._waiter.join(timeout)
        return not self._waiter.is_alive()

    def _wait(self) -> None:
        returncode = self._popen.wait()
        if self._kill_timer is not None:
            self._kill_timer.cancel()
        try:
            self._log_handle.close()
        except OSError as e:
            logger.warning("Failed to close agent log for pid %s: %s", self._popen.pid, e)
        if self._on_exit is None:
            return
        try:
            self._on_exit(returncode)
        except Exception:
            logger.exception("Exit handler failed for pid %s", self._popen.pid)
