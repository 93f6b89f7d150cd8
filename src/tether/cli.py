"""CLI entry point for tether.

Usage:
    tether run "prompt" --task-id T1        # Spawn an agent and stream its progress
    tether restart T1                       # Resume a task from its progress log
    tether tail [--task-id T1]              # Stream progress events only
    tether recover [--project PATH ...]     # Clean up after crashed sessions
    tether config [KEY [VALUE]]             # Show or change settings
"""

import logging
import time
from dataclasses import asdict
from pathlib import Path

import click
import orjson

from tether.app import Tether
from tether.core.config import DATA_DIR_ENV, get_data_dir, load_settings, set_setting
from tether.core.notify import Notification
from tether.core.orchestrator import SpawnError
from tether.core.progress import ProgressEvent, ProgressTailer
from tether.core.session import AgentSession
from tether.core.watchdog import WatchdogAlert


def configure_logging(verbose: bool) -> None:
    """Configure root logging for the CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _echo_event(event: ProgressEvent) -> None:
    click.echo(orjson.dumps(event.to_dict()).decode())


def _echo_alert(alert: WatchdogAlert) -> None:
    click.echo(f"[watchdog] {alert.kind}: {alert.message}", err=True)


def _echo_notification(notification: Notification) -> None:
    click.echo(f"[{notification.kind}] {notification.message}", err=True)


def _supervise(app: Tether, session: AgentSession) -> None:
    """Stream a session's progress until its process exits, then exit with its code."""
    click.echo(f"Spawned {session.id} (pid {session.pid})", err=True)
    try:
        while not app.orchestrator.wait(session.id, timeout=0.5):
            pass
    except KeyboardInterrupt:
        click.echo(f"Killing {session.id}...", err=True)
        app.orchestrator.kill(session.id)
    finally:
        app.tailer.scan()
        final = app.orchestrator.get_session(session.id)
        app.stop()

    exit_code = final.exit_code if final is not None else None
    if exit_code:
        raise SystemExit(exit_code)


def _build_app(ctx: click.Context) -> Tether:
    data_dir: Path = ctx.obj["data_dir"]
    return Tether(data_dir, sink=_echo_notification)


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar=DATA_DIR_ENV,
    default=None,
    help="Data directory (default: ~/.tether)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(package_name="tether")
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None, verbose: bool) -> None:
    """Tether - supervise headless coding agents.

    Spawns agents with progress hooks, streams their progress, watches
    their health and cleans up after crashed sessions.
    """
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir or get_data_dir()


@main.command()
@click.argument("prompt")
@click.option("--task-id", required=True, help="Task the session works on")
@click.option(
    "--project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Project root (default: current directory)",
)
@click.option("--sub-project", default=None, help="Working directory relative to the project")
@click.option(
    "--phase",
    type=click.Choice(["planning", "executing"]),
    default="executing",
    show_default=True,
)
@click.pass_context
def run(
    ctx: click.Context,
    prompt: str,
    task_id: str,
    project: Path,
    sub_project: str | None,
    phase: str,
) -> None:
    """Spawn an agent and stream its progress.

    Progress events are printed to stdout as JSON lines. Ctrl-C kills the
    agent. The exit code is the agent's exit code.

    Examples:

        tether run "Add input validation to the signup form" --task-id signup-1

        tether run "/plan-feature dark mode" --task-id dark-mode --phase planning
    """
    app = _build_app(ctx)
    app.start()
    app.tailer.subscribe(_echo_event, task_id=task_id)
    app.watchdog.on_alert(_echo_alert)

    try:
        session = app.orchestrator.spawn(
            task_id, project, prompt, phase=phase, sub_project_path=sub_project
        )
    except SpawnError as e:
        app.stop()
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    _supervise(app, session)


@main.command()
@click.argument("task_id")
@click.option(
    "--project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Project root (default: current directory)",
)
@click.pass_context
def restart(ctx: click.Context, task_id: str, project: Path) -> None:
    """Restart a task from its recorded progress.

    The new agent receives the progress log of the previous run in its
    prompt. Without a progress log the task starts fresh.

    Examples:

        tether restart signup-1
    """
    app = _build_app(ctx)
    app.start()
    app.tailer.subscribe(_echo_event, task_id=task_id)
    app.watchdog.on_alert(_echo_alert)

    try:
        session = app.restart_task(task_id, project)
    except SpawnError as e:
        app.stop()
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    _supervise(app, session)


@main.command()
@click.option("--task-id", default=None, help="Only show events for this task")
@click.pass_context
def tail(ctx: click.Context, task_id: str | None) -> None:
    """Stream progress events as JSON lines until interrupted."""
    tailer = ProgressTailer(ctx.obj["data_dir"] / "progress")
    tailer.subscribe(_echo_event, task_id=task_id)
    tailer.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        tailer.stop()


@main.command()
@click.option(
    "--project",
    "projects",
    multiple=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Extra project path to check for orphaned hooks (repeatable)",
)
@click.pass_context
def recover(ctx: click.Context, projects: tuple[Path, ...]) -> None:
    """Clean up hooks, progress logs and run directories left by crashes.

    Projects tether has spawned agents in are always checked.
    """
    data_dir: Path = ctx.obj["data_dir"]
    app = Tether(data_dir, extra_project_paths=projects)
    try:
        if not app.host_lock.try_exclusive():
            click.echo(f"Error: another tether host is running on {data_dir}", err=True)
            raise SystemExit(1)
        result = app.recovery.recover()
    finally:
        app.host_lock.release()

    for detail in result.details:
        click.echo(detail)
    click.echo(f"Fixed {result.fixed} item(s).")


@main.command()
@click.argument("key", required=False)
@click.argument("value", required=False)
@click.pass_context
def config(ctx: click.Context, key: str | None, value: str | None) -> None:
    """Show or change settings.

    Examples:

        tether config

        tether config max_concurrent_sessions

        tether config stale_after_seconds 600
    """
    data_dir: Path = ctx.obj["data_dir"]
    settings = asdict(load_settings(data_dir))

    if key is None:
        click.echo(orjson.dumps(settings, option=orjson.OPT_INDENT_2).decode())
        return

    if key not in settings:
        click.echo(f"Error: unknown setting '{key}'", err=True)
        raise SystemExit(1)

    if value is None:
        click.echo(orjson.dumps(settings[key]).decode())
        return

    try:
        coerced = set_setting(data_dir, key, value)
    except ValueError:
        click.echo(f"Error: invalid value for {key}: {value}", err=True)
        raise SystemExit(1)
    click.echo(f"{key} = {orjson.dumps(coerced).decode()}")
