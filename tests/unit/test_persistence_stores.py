from datetime import datetime, timezone

import pytest

import stepwright.persistence as persistence
from stepwright.config import StepwrightConfig, StoreConfig, WorkflowSettings
from stepwright.errors import PersistenceError
from stepwright.persistence import (
    InMemoryStepRecordStore,
    JsonFileStepRecordStore,
    SQLiteStepRecordStore,
    get_store,
)


def make_store(kind, tmp_path):
    if kind == "memory":
        return InMemoryStepRecordStore()
    if kind == "json":
        return JsonFileStepRecordStore(tmp_path / "template.json")
    return SQLiteStepRecordStore(tmp_path / "state.db")


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["memory", "json", "sqlite"])
async def test_store_merges_patches(kind, tmp_path):
    store = make_store(kind, tmp_path)
    started = datetime(2024, 1, 1, tzinfo=timezone.utc)

    await store.write(1, {"session_id": "s-1", "started_at": started})
    await store.write(
        1,
        {
            "queue_cursor": 1,
            "chained_prompts": [{"name": "p1", "content": "a"}],
            "completed_chains": [0],
        },
    )
    await store.write(0, {"log_handle_id": "log-0"})

    record = await store.read(1)
    assert record.session_id == "s-1"
    assert record.started_at == started
    assert record.queue_cursor == 1
    assert record.chained_prompts[0].content == "a"
    assert record.completed_chains == [0]
    assert await store.read(5) is None
    assert [r.step_index for r in await store.list_records()] == [0, 1]


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["memory", "json", "sqlite"])
async def test_store_workflow_record_and_clear(kind, tmp_path):
    store = make_store(kind, tmp_path)

    await store.write_workflow({"active_template": "demo", "not_completed_steps": [2]})
    await store.write_workflow(
        {"controller_config": {"agent_id": "controller", "session_id": "c-1"}}
    )
    workflow = await store.read_workflow()
    assert workflow.active_template == "demo"
    assert workflow.not_completed_steps == [2]
    assert workflow.controller_config.session_id == "c-1"
    assert workflow.last_updated is not None

    await store.write(0, {"session_id": "s"})
    await store.clear()
    assert await store.list_records() == []
    assert (await store.read_workflow()).active_template is None


@pytest.mark.asyncio
async def test_json_store_survives_restart(tmp_path):
    path = tmp_path / "nested" / "template.json"
    await JsonFileStepRecordStore(path).write(0, {"session_id": "s-0"})

    reopened = JsonFileStepRecordStore(path)
    assert (await reopened.read(0)).session_id == "s-0"
    assert not path.with_suffix(".json.tmp").exists()


@pytest.mark.asyncio
async def test_json_store_treats_corrupt_file_as_empty(tmp_path):
    path = tmp_path / "template.json"
    path.write_text("{not json")
    store = JsonFileStepRecordStore(path)

    assert await store.list_records() == []
    assert (await store.read_workflow()).resume_from_last_step is True


@pytest.mark.asyncio
async def test_json_store_write_failure_raises_persistence_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    store = JsonFileStepRecordStore(blocker / "template.json")

    with pytest.raises(PersistenceError):
        await store.write(0, {"session_id": "s"})


@pytest.mark.asyncio
async def test_sqlite_store_survives_restart(tmp_path):
    db_path = tmp_path / "state.db"
    store = SQLiteStepRecordStore(db_path)
    await store.write(3, {"session_id": "s-3", "completed_at": datetime.now(timezone.utc)})
    store.close()

    reopened = SQLiteStepRecordStore(db_path)
    record = await reopened.read(3)
    assert record.session_id == "s-3"
    assert record.completed_at is not None
    reopened.close()


def test_get_store_selects_backend_from_url(tmp_path, monkeypatch):
    monkeypatch.delenv("STEPWRIGHT_STORE_URL", raising=False)
    persistence._store_instance = None

    assert isinstance(get_store("memory://"), InMemoryStepRecordStore)
    json_store = get_store(f"json://{tmp_path / 't.json'}")
    assert isinstance(json_store, JsonFileStepRecordStore)
    # cached for later lookups without arguments
    assert get_store() is json_store

    with pytest.raises(ValueError):
        get_store("redis://localhost")
    persistence._store_instance = None


def test_get_store_uses_config_and_env(tmp_path, monkeypatch):
    monkeypatch.delenv("STEPWRIGHT_STORE_URL", raising=False)
    persistence._store_instance = None
    config = StepwrightConfig(
        workflow=WorkflowSettings(cwd=str(tmp_path)), store=StoreConfig(backend="sqlite")
    )

    store = get_store(config=config)
    assert isinstance(store, SQLiteStepRecordStore)
    assert store.db_path == str(tmp_path / ".stepwright" / "state.db")
    store.close()

    monkeypatch.setenv("STEPWRIGHT_STORE_URL", "memory://")
    assert isinstance(get_store(config=config), InMemoryStepRecordStore)
    persistence._store_instance = None
