"""Hook handler for agent progress tracking.

This module provides the `tether-hook` CLI command that the agent runtime
runs for each injected hook. Each invocation appends exactly one JSON line
to the progress file named on the command line.

Entry point defined in pyproject.toml:
    tether-hook = "tether.hooks.handler:main"
"""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import click
import orjson


def read_stdin_json() -> dict:
    """Read and parse the hook payload from stdin."""
    try:
        data = sys.stdin.read()
        if not data:
            return {}
        payload = orjson.loads(data)
    except (orjson.JSONDecodeError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def append_event(progress_file: Path, entry: dict) -> None:
    """Append one event line in a single write so lines never interleave."""
    progress_file.parent.mkdir(parents=True, exist_ok=True)
    line = orjson.dumps(entry) + b"\n"
    with progress_file.open("ab") as f:
        f.write(line)


def _append_or_fail(progress_file: Path, entry: dict) -> None:
    try:
        append_event(progress_file, entry)
    except OSError as e:
        click.echo(f"tether-hook: cannot write {progress_file}: {e}", err=True)
        raise SystemExit(1)


@click.group()
def main() -> None:
    """Hook handler for agent progress tracking."""
    pass


@main.command("tool-use")
@click.argument("progress_file", type=click.Path(path_type=Path))
def tool_use(progress_file: Path) -> None:
    """Handle PostToolUse hook - record which tool ran."""
    data = read_stdin_json()
    tool = data.get("tool_name") or os.environ.get("CLAUDE_TOOL_USE_NAME") or "unknown"
    _append_or_fail(
        progress_file,
        {"type": "tool_use", "tool": tool, "timestamp": utc_timestamp()},
    )


@main.command()
@click.argument("progress_file", type=click.Path(path_type=Path))
def stop(progress_file: Path) -> None:
    """Handle Stop hook - record that the agent stopped."""
    data = read_stdin_json()
    reason = (
        data.get("reason")
        or data.get("stop_reason")
        or os.environ.get("CLAUDE_STOP_REASON")
        or "unknown"
    )
    _append_or_fail(
        progress_file,
        {"type": "agent_stopped", "reason": reason, "timestamp": utc_timestamp()},
    )


if __name__ == "__main__":
    main()
