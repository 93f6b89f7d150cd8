"""Tests for the agent orchestrator."""

import json
import threading
from concurrent.futures import ThreadPoolExecutor

import orjson
import pytest

from conftest import EXIT_CODE, agent_settings
from tether.core.orchestrator import (
    DEFAULT_RESUME_COMMAND,
    Orchestrator,
    SpawnError,
    compose_resume_prompt,
)
from tether.core.progress import ProgressTailer, parse_line, read_progress
from tether.hooks.handler import append_event
from tether.hooks.install import get_settings_path


def _record_events(orchestrator: Orchestrator) -> list:
    events = []
    orchestrator.on_session_event(events.append)
    return events


def _hook_commands(project) -> list[str]:
    settings = orjson.loads(get_settings_path(project).read_bytes())
    return [
        hook["command"]
        for entries in settings["hooks"].values()
        for entry in entries
        for hook in entry["hooks"]
    ]


def test_spawn_returns_active_session(make_orchestrator, project):
    """Test spawn launches the agent and registers an active session."""
    orchestrator = make_orchestrator()

    session = orchestrator.spawn("task-1", project, "Build the thing")

    assert session.id.startswith("agent-task-1-")
    assert session.status == "active"
    assert session.pid > 0
    assert session.phase == "executing"
    assert session.command == "Build the thing"
    assert orchestrator.is_process_alive(session.id)
    assert [s.id for s in orchestrator.list_active_sessions()] == [session.id]


def test_spawn_planning_phase_visible_by_task(make_orchestrator, project):
    """Test the phase given at spawn is reported for the task."""
    orchestrator = make_orchestrator()

    orchestrator.spawn("task-1", project, "Plan it", phase="planning")

    assert orchestrator.get_session_by_task_id("task-1").phase == "planning"


def test_spawn_injects_hooks(make_orchestrator, project, data_dir):
    """Test the project's settings file gets the task's hooks."""
    orchestrator = make_orchestrator()

    session = orchestrator.spawn("task-1", project, "Go")

    assert session.settings_path == get_settings_path(project)
    commands = _hook_commands(project)
    assert len(commands) == 2
    assert all(str(data_dir / "progress" / "task-1.jsonl") in c for c in commands)


def test_spawn_before_open_rejected(data_dir, project):
    """Test spawns are refused until the orchestrator is opened."""
    orchestrator = Orchestrator(data_dir)

    with pytest.raises(SpawnError, match="not accepting"):
        orchestrator.spawn("task-1", project, "Go")


@pytest.mark.parametrize("task_id", ["", "has space", "../escape", "semi;colon"])
def test_spawn_invalid_task_id(make_orchestrator, project, task_id):
    """Test task ids outside [A-Za-z0-9_.-] are rejected."""
    orchestrator = make_orchestrator()

    with pytest.raises(SpawnError, match="Invalid task id"):
        orchestrator.spawn(task_id, project, "Go")


def test_spawn_invalid_phase(make_orchestrator, project):
    """Test an unknown phase is rejected."""
    orchestrator = make_orchestrator()

    with pytest.raises(SpawnError, match="Invalid phase"):
        orchestrator.spawn("task-1", project, "Go", phase="reviewing")


def test_spawn_missing_sub_project(make_orchestrator, project):
    """Test a missing working directory is rejected before anything is written."""
    orchestrator = make_orchestrator()

    with pytest.raises(SpawnError, match="does not exist"):
        orchestrator.spawn("task-1", project, "Go", sub_project_path="missing")

    assert not get_settings_path(project).exists()


def test_spawn_sub_project_escaping_project_rejected(make_orchestrator, project, monkeypatch):
    """Test a sub-project path leading outside the project and home is refused."""
    monkeypatch.setenv("HOME", str(project))
    orchestrator = make_orchestrator()

    with pytest.raises(SpawnError, match="outside allowed paths"):
        orchestrator.spawn("task-1", project, "Go", sub_project_path="../..")

    assert not get_settings_path(project).exists()
    assert orchestrator.list_active_sessions() == []


def test_spawn_unrestricted_workdir(make_orchestrator, project, tmp_path, monkeypatch):
    """Test the working directory restriction can be switched off."""
    monkeypatch.setenv("HOME", str(project))
    (tmp_path / "shared").mkdir()
    orchestrator = make_orchestrator(workdir_restricted=False)

    session = orchestrator.spawn("task-1", project, "Go", sub_project_path="../shared")

    assert session.cwd.resolve() == (tmp_path / "shared").resolve()


def test_spawn_environment_is_sandboxed(make_orchestrator, project, tmp_path, monkeypatch):
    """Test blocklisted credentials are withheld from the agent."""
    out = tmp_path / "env.json"
    code = "import json, os; json.dump(dict(os.environ), open(os.environ['OUT'], 'w'))"
    monkeypatch.setenv("DEPLOY_TOKEN", "secret")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    orchestrator = make_orchestrator(code)

    session = orchestrator.spawn("task-1", project, "Go", env={"OUT": str(out)})
    orchestrator.wait(session.id, timeout=10)

    recorded = json.loads(out.read_text())
    assert "DEPLOY_TOKEN" not in recorded
    assert recorded["ANTHROPIC_API_KEY"] == "sk-test"
    assert json.loads(recorded["SECURITY_CONTEXT"])["mode"] == "sandboxed"


def test_spawn_duplicate_task_rejected(make_orchestrator, project):
    """Test a task can only have one live session."""
    orchestrator = make_orchestrator()
    orchestrator.spawn("task-1", project, "Go")

    with pytest.raises(SpawnError, match="already has a live session"):
        orchestrator.spawn("task-1", project, "Go again")

    assert len(orchestrator.list_active_sessions()) == 1


def test_concurrent_spawns_same_task(make_orchestrator, project):
    """Test racing spawns for one task leave at most one live session."""
    orchestrator = make_orchestrator()
    barrier = threading.Barrier(4)

    def attempt(i):
        barrier.wait()
        try:
            return orchestrator.spawn("task-1", project, f"attempt {i}")
        except SpawnError:
            return None

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(attempt, range(4)))

    assert len([r for r in results if r is not None]) == 1
    live = [s for s in orchestrator.list_active_sessions() if s.task_id == "task-1"]
    assert len(live) == 1


def test_max_concurrent_sessions(make_orchestrator, project):
    """Test the live-session cap rejects extra spawns."""
    orchestrator = make_orchestrator(max_concurrent_sessions=1)
    orchestrator.spawn("task-1", project, "Go")

    with pytest.raises(SpawnError, match="Maximum of 1"):
        orchestrator.spawn("task-2", project, "Go")


def test_launch_failure(data_dir, project):
    """Test a missing agent binary fails the spawn and undoes hooks."""
    settings = agent_settings()
    settings.agent_command = [str(project / "no-such-agent")]
    orchestrator = Orchestrator(data_dir, settings=settings)
    orchestrator.open()

    with pytest.raises(SpawnError, match="Failed to launch"):
        orchestrator.spawn("task-1", project, "Go")

    assert orchestrator.list_active_sessions() == []
    assert orchestrator.get_session_by_task_id("task-1") is None
    assert not get_settings_path(project).exists()


def test_kill_is_idempotent(make_orchestrator, project):
    """Test kill ends the session once and tolerates repeats."""
    orchestrator = make_orchestrator()
    events = _record_events(orchestrator)
    session = orchestrator.spawn("task-1", project, "Go")
    popen = orchestrator.registry.get(session.id).process

    orchestrator.kill(session.id)
    orchestrator.kill(session.id)
    orchestrator.kill("agent-unknown-00000000")

    assert popen.wait(timeout=10) is not None
    assert orchestrator.list_active_sessions() == []
    assert [e.type for e in events] == ["spawned", "killed"]
    assert events[-1].session.status == "error"
    assert events[-1].session.end_reason == "killed"


def test_kill_restores_settings(make_orchestrator, project):
    """Test killing the only session restores the settings file bytes."""
    settings_path = get_settings_path(project)
    settings_path.parent.mkdir()
    original = b'{"permissions": {"allow": ["Bash"]}}'
    settings_path.write_bytes(original)
    orchestrator = make_orchestrator()

    session = orchestrator.spawn("task-1", project, "Go")
    assert settings_path.read_bytes() != original
    orchestrator.kill(session.id)

    assert settings_path.read_bytes() == original


def test_two_sessions_share_project(make_orchestrator, project):
    """Test hooks of a live session survive another session ending."""
    orchestrator = make_orchestrator()
    first = orchestrator.spawn("task-1", project, "Go")
    second = orchestrator.spawn("task-2", project, "Go")
    assert len(_hook_commands(project)) == 4

    orchestrator.kill(first.id)
    remaining = _hook_commands(project)
    assert len(remaining) == 2
    assert all("task-2.jsonl" in c for c in remaining)

    orchestrator.kill(second.id)
    assert not get_settings_path(project).exists()


def test_natural_exit_completed(make_orchestrator, project):
    """Test exit code 0 marks the session completed."""
    orchestrator = make_orchestrator(EXIT_CODE.format(code=0))
    events = _record_events(orchestrator)

    session = orchestrator.spawn("task-1", project, "Go")
    assert orchestrator.wait(session.id, timeout=10)

    finished = orchestrator.get_session(session.id)
    assert finished.status == "completed"
    assert finished.exit_code == 0
    assert finished.end_reason == "exited"
    assert finished.ended_at is not None
    assert [e.type for e in events] == ["spawned", "completed"]
    assert orchestrator.get_session_by_task_id("task-1").id == session.id
    assert not get_settings_path(project).exists()


def test_natural_exit_nonzero_is_error(make_orchestrator, project):
    """Test a nonzero exit marks the session error."""
    orchestrator = make_orchestrator(EXIT_CODE.format(code=3))
    events = _record_events(orchestrator)

    session = orchestrator.spawn("task-1", project, "Go")
    orchestrator.wait(session.id, timeout=10)

    finished = orchestrator.get_session(session.id)
    assert finished.status == "error"
    assert finished.exit_code == 3
    assert finished.end_reason == "crashed"
    assert events[-1].type == "error"
    assert events[-1].exit_code == 3


def test_prune_evicts_old_sessions(make_orchestrator, project):
    """Test terminal sessions are dropped after the retention window."""
    orchestrator = make_orchestrator(EXIT_CODE.format(code=0), session_retention_seconds=0)
    session = orchestrator.spawn("task-1", project, "Go")
    orchestrator.wait(session.id, timeout=10)

    assert orchestrator.prune() == [session.id]
    assert orchestrator.get_session(session.id) is None


def test_spawn_environment(make_orchestrator, project, tmp_path, monkeypatch):
    """Test agents run in cwd without nested-session markers."""
    out = tmp_path / "env.json"
    code = (
        "import json, os; "
        "json.dump({'cwd': os.getcwd(), 'env': dict(os.environ)}, "
        "open(os.environ['OUT'], 'w'))"
    )
    (project / "web").mkdir()
    monkeypatch.setenv("CLAUDECODE", "1")
    orchestrator = make_orchestrator(code)

    session = orchestrator.spawn(
        "task-1", project, "Go", sub_project_path="web", env={"OUT": str(out)}
    )
    orchestrator.wait(session.id, timeout=10)

    recorded = json.loads(out.read_text())
    assert recorded["cwd"] == str((project / "web").resolve())
    assert "CLAUDECODE" not in recorded["env"]
    assert recorded["env"]["TETHER_TASK_ID"] == "task-1"
    assert recorded["env"]["TETHER_SESSION_ID"] == session.id


def test_agent_receives_prompt(make_orchestrator, project, tmp_path):
    """Test the prompt is passed as -p PROMPT."""
    out = tmp_path / "argv.json"
    code = f"import json, sys; json.dump(sys.argv[1:], open({str(out)!r}, 'w'))"
    orchestrator = make_orchestrator(code)

    session = orchestrator.spawn("task-1", project, "Fix the login bug")
    orchestrator.wait(session.id, timeout=10)

    assert json.loads(out.read_text()) == ["-p", "Fix the login bug"]


def test_spawn_resets_progress_file(make_orchestrator, project, data_dir):
    """Test a fresh spawn starts with an empty progress log."""
    progress_file = data_dir / "progress" / "task-1.jsonl"
    append_event(progress_file, {"type": "tool_use", "tool": "Read"})
    orchestrator = make_orchestrator()

    orchestrator.spawn("task-1", project, "Go")

    assert read_progress(progress_file) == []


def test_compose_resume_prompt():
    """Test the resume prompt embeds the task and its progress lines."""
    content = (
        b'{"type": "tool_use", "tool": "Read"}\n'
        b'{"type": "agent_stopped", "reason": "x"}\n'
    )
    events = [parse_line("t", line) for line in content.splitlines()]

    prompt = compose_resume_prompt("Build auth", events)

    lines = prompt.splitlines()
    assert lines[0] == "/resume-feature"
    assert "Original task: Build auth" in lines
    assert "Progress so far (JSONL):" in lines
    assert orjson.loads(lines[3]) == {"type": "tool_use", "tool": "Read"}
    assert orjson.loads(lines[4]) == {"type": "agent_stopped", "reason": "x"}


def test_compose_resume_prompt_without_progress():
    """Test no progress means the original command unchanged."""
    assert compose_resume_prompt("Build auth", []) == "Build auth"


def test_restart_from_checkpoint(make_orchestrator, project, data_dir):
    """Test restart kills the old session and resumes with its progress."""
    orchestrator = make_orchestrator()
    events = _record_events(orchestrator)
    old = orchestrator.spawn("task-1", project, "Build auth", phase="planning")
    append_event(old.progress_file, {"type": "tool_use", "tool": "Read"})
    append_event(old.progress_file, {"type": "tool_use", "tool": "Edit"})

    new = orchestrator.restart_from_checkpoint("task-1", project)

    assert new.id != old.id
    assert new.phase == "planning"
    assert new.command.startswith("/resume-feature")
    assert "Original task: Build auth" in new.command
    assert '"tool":"Edit"' in new.command
    assert [e.type for e in events] == ["spawned", "killed", "spawned"]
    assert [s.id for s in orchestrator.list_active_sessions()] == [new.id]


def test_repeated_restart_keeps_original_task(make_orchestrator, project):
    """Test a second restart resumes the task prompt, not the first resume prompt."""
    orchestrator = make_orchestrator()
    old = orchestrator.spawn("task-1", project, "Build auth")
    append_event(old.progress_file, {"type": "tool_use", "tool": "Read"})
    first = orchestrator.restart_from_checkpoint("task-1", project)
    append_event(first.progress_file, {"type": "tool_use", "tool": "Edit"})

    second = orchestrator.restart_from_checkpoint("task-1", project)

    lines = second.command.splitlines()
    assert lines.count("/resume-feature") == 1
    assert [line for line in lines if line.startswith("Original task:")] == [
        "Original task: Build auth"
    ]
    assert second.base_command == "Build auth"


def test_restart_without_history(make_orchestrator, project):
    """Test restarting an unknown task starts fresh with the default command."""
    orchestrator = make_orchestrator()

    session = orchestrator.restart_from_checkpoint("task-9", project)

    assert session.command == DEFAULT_RESUME_COMMAND
    assert session.phase == "executing"


def test_progress_reaches_task_subscriber(make_orchestrator, project, data_dir):
    """Test a planning session's hook lines reach a task subscriber in order."""
    tailer = ProgressTailer(data_dir / "progress")
    orchestrator = make_orchestrator(tailer=tailer)
    received = []
    tailer.subscribe(received.append, task_id="task-1")

    session = orchestrator.spawn("task-1", project, "Plan auth", phase="planning")
    append_event(session.progress_file, {"type": "tool_use", "tool": "Read"})
    append_event(session.progress_file, {"type": "tool_use", "tool": "Grep"})
    append_event(session.progress_file, {"type": "agent_stopped", "reason": "end_turn"})
    tailer.scan()

    assert [e.type for e in received] == ["tool_use", "tool_use", "agent_stopped"]
    assert [e.tool for e in received[:2]] == ["Read", "Grep"]
    assert all(e.session_id == session.id for e in received)
    current = orchestrator.get_session(session.id)
    assert current.phase == "planning"
    assert current.last_heartbeat_at >= session.spawned_at


def test_dispose_kills_everything(data_dir, project):
    """Test dispose kills live sessions and refuses new spawns."""
    orchestrator = Orchestrator(data_dir, settings=agent_settings())
    orchestrator.open()
    orchestrator.spawn("task-1", project, "Go")
    orchestrator.spawn("task-2", project, "Go")

    orchestrator.dispose()

    assert orchestrator.list_active_sessions() == []
    assert not orchestrator.accepting
    with pytest.raises(SpawnError):
        orchestrator.spawn("task-3", project, "Go")

