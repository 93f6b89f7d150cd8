"""Tether configuration management.

Handles {data_dir}/config.json for tunable thresholds. Every key is optional;
missing keys fall back to the defaults in Settings.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import orjson

DATA_DIR_ENV = "TETHER_DATA_DIR"

# Environment markers the agent CLI uses to detect that it is running inside
# one of its own sessions. Spawned agents must not inherit them.
NESTED_SESSION_ENV = ("CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT")

ENV_MODES = ("sandboxed", "unrestricted")

# Credentials agents never inherit in sandboxed mode (fnmatch patterns).
DEFAULT_ENV_BLOCKLIST = (
    "*_TOKEN",
    "*_SECRET",
    "*_SECRET_*",
    "*_PASSWORD",
    "*_API_KEY",
    "AWS_*",
    "DATABASE_URL",
)

# Variables passed through even when a blocklist pattern matches them.
DEFAULT_ENV_ALWAYS_PASS = (
    "PATH",
    "HOME",
    "USER",
    "SHELL",
    "TERM",
    "LANG",
    "LC_*",
    "TMPDIR",
    "ANTHROPIC_*",
)


@dataclass
class Settings:
    """Resolved configuration values.

    Attributes:
        agent_command: argv prefix for the agent binary; the prompt is passed as "-p PROMPT"
        max_concurrent_sessions: cap on live sessions (<= 0 disables the cap)
        kill_grace_seconds: delay between SIGTERM and SIGKILL on kill
        session_retention_seconds: how long terminal sessions stay queryable
        watchdog_interval_seconds: watchdog polling interval
        stale_after_seconds: heartbeat age that counts as a missed tick
        stale_miss_threshold: consecutive missed ticks before a stale alert
        orphan_progress_age_hours: age cutoff for orphaned progress files
        orphan_run_age_days: age cutoff for orphaned run directories
        nested_session_env: env vars stripped from spawned agents
        workdir_restricted: agents may only run under the project or the home directory
        env_mode: "sandboxed" drops env vars matching env_blocklist, "unrestricted" passes all
        env_blocklist: glob patterns of env vars withheld from agents
        env_always_pass: glob patterns of env vars passed even when blocklisted
    """

    agent_command: list[str] = field(default_factory=lambda: ["claude"])
    max_concurrent_sessions: int = 4
    kill_grace_seconds: float = 5.0
    session_retention_seconds: float = 300.0
    watchdog_interval_seconds: float = 30.0
    stale_after_seconds: float = 900.0
    stale_miss_threshold: int = 2
    orphan_progress_age_hours: float = 24.0
    orphan_run_age_days: float = 7.0
    nested_session_env: list[str] = field(
        default_factory=lambda: list(NESTED_SESSION_ENV)
    )
    workdir_restricted: bool = True
    env_mode: str = "sandboxed"
    env_blocklist: list[str] = field(default_factory=lambda: list(DEFAULT_ENV_BLOCKLIST))
    env_always_pass: list[str] = field(
        default_factory=lambda: list(DEFAULT_ENV_ALWAYS_PASS)
    )

    def __post_init__(self) -> None:
        if self.env_mode not in ENV_MODES:
            raise ValueError(f"Invalid env_mode: {self.env_mode}. Must be one of {ENV_MODES}")


SETTING_NAMES = tuple(f.name for f in fields(Settings))


def get_data_dir() -> Path:
    """Get tether's data directory ($TETHER_DATA_DIR or ~/.tether)."""
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".tether"


def get_config_path(data_dir: Path) -> Path:
    """Get the path to tether's config file."""
    return data_dir / "config.json"


def read_config(data_dir: Path) -> dict:
    """Read tether config, returning empty dict if not found."""
    config_path = get_config_path(data_dir)
    if not config_path.exists():
        return {}
    try:
        content = config_path.read_bytes()
        config = orjson.loads(content) if content else {}
    except (orjson.JSONDecodeError, OSError):
        return {}
    return config if isinstance(config, dict) else {}


def write_config(data_dir: Path, config: dict) -> None:
    """Write tether config."""
    config_path = get_config_path(data_dir)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_bytes(orjson.dumps(config, option=orjson.OPT_INDENT_2))


def load_settings(data_dir: Path) -> Settings:
    """Build Settings from config.json, ignoring unknown keys."""
    config = read_config(data_dir)
    values = {k: v for k, v in config.items() if k in SETTING_NAMES}
    return Settings(**values)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Not a boolean: {value}")


def set_setting(data_dir: Path, key: str, value: str) -> object:
    """Persist a single setting, coercing the string value to the default's type.

    Returns:
        The coerced value that was written.

    Raises:
        KeyError: If key is not a known setting.
        ValueError: If value cannot be coerced.
    """
    if key not in SETTING_NAMES:
        raise KeyError(key)

    default = getattr(Settings(), key)
    coerced: object
    if isinstance(default, list):
        coerced = value.split()
    elif isinstance(default, bool):
        coerced = _parse_bool(value)
    elif isinstance(default, int):
        coerced = int(value)
    elif isinstance(default, str):
        coerced = value
    else:
        coerced = float(value)
    Settings(**{key: coerced})

    config = read_config(data_dir)
    config[key] = coerced
    write_config(data_dir, config)
    return coerced
