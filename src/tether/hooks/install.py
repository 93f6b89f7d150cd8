"""Progress hook injection for agent sessions.

Each session gets two hooks merged into its project's
.claude/settings.local.json:

- PostToolUse: appends a tool_use line to the task's progress file
- Stop: appends an agent_stopped line to the task's progress file

The hooks run `tether-hook` through the current interpreter. Every command
embeds the progress file path, which is how tether recognizes its own
entries when cleaning up.
"""

import re
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path

import orjson

from tether.core.project import path_lock

SETTINGS_DIR = ".claude"
SETTINGS_FILE = "settings.local.json"

HANDLER_MODULE = "tether.hooks.handler"

POST_TOOL_USE_TIMEOUT = 5
STOP_TIMEOUT = 10


class HookWriteError(Exception):
    """Raised when hook settings cannot be read or written."""

    pass


@dataclass
class HookWriteResult:
    """Outcome of merging hooks into a project's settings file.

    Attributes:
        settings_path: The settings file that was written
        original_content: Exact bytes before the merge, None if the file did not exist
    """

    settings_path: Path
    original_content: bytes | None


def get_settings_path(project_path: Path) -> Path:
    """Get the path to a project's local agent settings file."""
    return Path(project_path) / SETTINGS_DIR / SETTINGS_FILE


def progress_file_for(progress_dir: Path, task_id: str) -> Path:
    """Progress file path for a task (deterministic)."""
    return Path(progress_dir) / f"{task_id}.jsonl"


def normalize_marker(path: Path | str) -> str:
    """Normalize a path for substring matching inside hook commands."""
    return str(path).replace("\\", "/")


def hook_command(action: str, progress_file: Path) -> str:
    """Build the shell command a hook runs for an action."""
    python_exec = shlex.quote(sys.executable)
    target = shlex.quote(normalize_marker(progress_file))
    return f"{python_exec} -m {HANDLER_MODULE} {action} {target}"


def generate_hooks_config(task_id: str, progress_dir: Path) -> dict:
    """Build the hooks section for a task.

    The result is deterministic for a given task_id, progress_dir and
    interpreter.
    """
    progress_file = progress_file_for(progress_dir, task_id)
    return {
        "hooks": {
            "PostToolUse": [
                {
                    "matcher": "*",
                    "hooks": [
                        {
                            "type": "command",
                            "command": hook_command("tool-use", progress_file),
                            "timeout": POST_TOOL_USE_TIMEOUT,
                        }
                    ],
                }
            ],
            "Stop": [
                {
                    "matcher": "*",
                    "hooks": [
                        {
                            "type": "command",
                            "command": hook_command("stop", progress_file),
                            "timeout": STOP_TIMEOUT,
                        }
                    ],
                }
            ],
        }
    }


def parse_settings(content: bytes) -> dict | None:
    """Parse settings bytes, returning None when malformed or not an object."""
    if not content.strip():
        return {}
    try:
        settings = orjson.loads(content)
    except orjson.JSONDecodeError:
        return None
    return settings if isinstance(settings, dict) else None


def merge_hooks(settings: dict, config: dict) -> dict:
    """Merge generated hooks into settings without dropping anything.

    Unrelated keys and hooks for other events or purposes are kept. An entry
    identical to one already present is not added twice.
    """
    merged = dict(settings)
    existing = merged.get("hooks")
    hooks = dict(existing) if isinstance(existing, dict) else {}

    for event, entries in config["hooks"].items():
        current = hooks.get(event)
        current = list(current) if isinstance(current, list) else []
        for entry in entries:
            if entry not in current:
                current.append(entry)
        hooks[event] = current

    merged["hooks"] = hooks
    return merged


def write_hooks_config(
    task_id: str,
    project_path: Path,
    progress_dir: Path,
    lock_dir: Path | None = None,
) -> HookWriteResult:
    """Merge a task's progress hooks into the project's settings file.

    Malformed settings are not discarded: their raw bytes are returned as
    original_content so they can be restored, and the merge starts from an
    empty object.

    Raises:
        HookWriteError: If the settings file cannot be read or written.
    """
    settings_path = get_settings_path(project_path)
    if lock_dir is None:
        lock_dir = Path(progress_dir).parent / "locks"
    config = generate_hooks_config(task_id, progress_dir)

    try:
        Path(progress_dir).mkdir(parents=True, exist_ok=True)
        with path_lock(lock_dir, settings_path):
            settings_path.parent.mkdir(parents=True, exist_ok=True)

            original_content: bytes | None = None
            settings: dict = {}
            if settings_path.exists():
                original_content = settings_path.read_bytes()
                settings = parse_settings(original_content) or {}

            merged = merge_hooks(settings, config)
            settings_path.write_bytes(orjson.dumps(merged, option=orjson.OPT_INDENT_2))
    except OSError as e:
        raise HookWriteError(f"Failed to write hooks to {settings_path}: {e}") from e

    return HookWriteResult(settings_path=settings_path, original_content=original_content)


def entry_commands(entry: object) -> list[str]:
    """Commands referenced by a hook entry.

    Handles the nested matcher form ({"hooks": [{"command": ...}]}) as well
    as flat entries ({"command": ...}).
    """
    if not isinstance(entry, dict):
        return []
    commands = []
    command = entry.get("command")
    if isinstance(command, str):
        commands.append(command)
    inner = entry.get("hooks")
    if isinstance(inner, list):
        for hook in inner:
            if isinstance(hook, dict) and isinstance(hook.get("command"), str):
                commands.append(hook["command"])
    return commands


def is_owned_command(command: str, markers: list[str]) -> bool:
    """Whether a hook command is a tether handler writing under one of markers.

    A marker only matches as a whole path: it must be followed by a path
    separator, a quote, whitespace or the end of the command, so
    `/data` does not claim `/data-backup/notify.sh`.
    """
    normalized = normalize_marker(command)
    if f"-m {HANDLER_MODULE} " not in normalized:
        return False
    for marker in markers:
        if not marker:
            continue
        pattern = re.escape(marker.rstrip("/")) + r"(?=[/'\"\s]|$)"
        if re.search(pattern, normalized):
            return True
    return False


def contains_owned_hooks(settings: dict, markers: list[str]) -> bool:
    hooks = settings.get("hooks")
    if not isinstance(hooks, dict):
        return False
    for entries in hooks.values():
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if any(is_owned_command(c, markers) for c in entry_commands(entry)):
                return True
    return False


def strip_owned_hooks(settings: dict, markers: list[str]) -> tuple[dict, bool]:
    """Remove hook entries owned by tether.

    Returns:
        Tuple of (cleaned settings, whether anything besides tether hooks remains).
    """
    cleaned = dict(settings)
    hooks = settings.get("hooks")
    if not isinstance(hooks, dict):
        return cleaned, bool(cleaned)

    remaining: dict = {}
    for event, entries in hooks.items():
        if not isinstance(entries, list):
            remaining[event] = entries
            continue
        kept = [
            entry
            for entry in entries
            if not any(is_owned_command(c, markers) for c in entry_commands(entry))
        ]
        if kept:
            remaining[event] = kept

    if remaining:
        cleaned["hooks"] = remaining
    else:
        cleaned.pop("hooks", None)

    return cleaned, bool(cleaned)


def restore_settings(
    settings_path: Path, original_content: bytes | None, lock_dir: Path
) -> None:
    """Put a settings file back to its pre-injection bytes.

    A file that did not exist before injection is removed.
    """
    with path_lock(lock_dir, settings_path):
        if original_content is None:
            settings_path.unlink(missing_ok=True)
        else:
            settings_path.write_bytes(original_content)


def remove_task_hooks(settings_path: Path, progress_file: Path, lock_dir: Path) -> bool:
    """Strip only the hooks that write to progress_file.

    Used when other sessions still need their hooks in the same project.
    A file left with nothing else in it is deleted; malformed files are
    left untouched.

    Returns:
        True if the file was changed.
    """
    markers = [normalize_marker(progress_file)]
    with path_lock(lock_dir, settings_path):
        if not settings_path.exists():
            return False
        settings = parse_settings(settings_path.read_bytes())
        if settings is None or not contains_owned_hooks(settings, markers):
            return False

        cleaned, has_other_content = strip_owned_hooks(settings, markers)
        if has_other_content:
            settings_path.write_bytes(orjson.dumps(cleaned, option=orjson.OPT_INDENT_2))
        else:
            settings_path.unlink()
        return True
