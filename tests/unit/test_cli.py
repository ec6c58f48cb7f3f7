import asyncio
import json

from typer.testing import CliRunner

import stepwright.persistence as persistence
from stepwright.cli import app
from stepwright.persistence import InMemoryStepRecordStore


def _setup_store() -> InMemoryStepRecordStore:
    store = InMemoryStepRecordStore()
    persistence._store_instance = store
    return store


def _write_config(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("STEPWRIGHT_STORE_URL", raising=False)
    config_path = tmp_path / "stepwright.yaml"
    config_path.write_text(
        f"""
workflow:
  cwd: {tmp_path}
store:
  backend: inmemory
"""
    )
    monkeypatch.setenv("STEPWRIGHT_CONFIG", str(config_path))


def _write_template(tmp_path):
    path = tmp_path / "demo.yaml"
    path.write_text("name: demo\nsteps:\n  - agent_id: build\n    prompt: Build\n")
    return path


def test_status_lists_records():
    store = _setup_store()
    asyncio.run(store.write_workflow({"active_template": "demo", "not_completed_steps": [1]}))
    asyncio.run(store.write(0, {"session_id": "s-0", "completed_at": "2024-01-01T00:00:00Z"}))
    asyncio.run(
        store.write(
            1,
            {
                "session_id": "s-1",
                "queue_cursor": 1,
                "chained_prompts": [
                    {"name": "p1", "content": "a"},
                    {"name": "p2", "content": "b"},
                ],
            },
        )
    )

    runner = CliRunner()
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    output = result.stdout
    assert "Template: demo" in output
    assert "Not completed: 1" in output
    assert "step 0: completed session=s-0" in output
    assert "step 1: in progress session=s-1 chain=1/2" in output


def test_status_without_state():
    _setup_store()
    result = CliRunner().invoke(app, ["status"])
    assert result.exit_code == 0
    assert "No workflow state found" in result.stdout


def test_records_show_and_missing():
    store = _setup_store()
    asyncio.run(
        store.write(
            0,
            {
                "session_id": "s-0",
                "chained_prompts": [{"name": "p1", "content": "a"}, {"name": "p2", "content": "b"}],
                "completed_chains": [0],
                "queue_cursor": 1,
            },
        )
    )

    runner = CliRunner()
    result = runner.invoke(app, ["records", "show", "0"])
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    assert "Session: s-0" in result.stdout
    assert "Chain cursor: 1/2" in result.stdout
    assert "[x] p1" in result.stdout
    assert "[ ] p2" in result.stdout

    missing = runner.invoke(app, ["records", "show", "7"])
    assert missing.exit_code == 1
    assert "Step record not found" in missing.stdout


def test_reset_clears_records():
    store = _setup_store()
    asyncio.run(store.write(0, {"session_id": "s-0"}))

    result = CliRunner().invoke(app, ["reset"])
    assert result.exit_code == 0
    assert "Step records cleared" in result.stdout
    assert asyncio.run(store.list_records()) == []


def test_directive_write(tmp_path, monkeypatch):
    _write_config(tmp_path, monkeypatch)

    runner = CliRunner()
    result = runner.invoke(
        app, ["directive", "write", "loop", "--target", "1", "--reason", "again"]
    )
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    written = json.loads((tmp_path / ".stepwright" / "memory" / "directive.json").read_text())
    assert written == {"action": "loop", "reason": "again", "target_index": 1}

    bad = runner.invoke(app, ["directive", "write", "loop", "--target", "reviewer"])
    assert bad.exit_code == 1
    assert "Loop target must be a step index" in bad.stdout


def test_run_completes_workflow_from_stdin(tmp_path, monkeypatch):
    persistence._store_instance = None
    _write_config(tmp_path, monkeypatch)
    template = _write_template(tmp_path)

    runner = CliRunner()
    result = runner.invoke(
        app,
        ["run", str(template), "--executor", "tests.fixtures.agents:build_executor"],
        input="\n",
    )
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    assert "Running workflow: demo (1 steps)" in result.stdout
    assert "Workflow demo: completed" in result.stdout

    status = runner.invoke(app, ["status"])
    assert "step 0: completed session=cli-session-0" in status.stdout
    persistence._store_instance = None


def test_run_stops_at_end_of_input(tmp_path, monkeypatch):
    persistence._store_instance = None
    _write_config(tmp_path, monkeypatch)
    template = _write_template(tmp_path)

    result = CliRunner().invoke(
        app,
        ["run", str(template), "--executor", "tests.fixtures.agents:build_executor"],
        input="",
    )
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    assert "Workflow demo: stopped" in result.stdout
    persistence._store_instance = None


def test_run_reports_bad_executor(tmp_path, monkeypatch):
    _write_config(tmp_path, monkeypatch)
    template = _write_template(tmp_path)

    result = CliRunner().invoke(
        app, ["run", str(template), "--executor", "no_such_module:factory"]
    )
    assert result.exit_code == 1
    assert "Cannot import no_such_module" in result.stdout
