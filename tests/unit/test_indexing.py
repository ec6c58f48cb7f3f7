import pytest

from stepwright.contracts import QueuedPrompt
from stepwright.errors import PersistenceError
from stepwright.events import RecordingEventEmitter
from stepwright.indexing import StepIndexManager, StepLifecyclePhase
from stepwright.persistence import InMemoryStepRecordStore


def prompts(*contents: str) -> list[QueuedPrompt]:
    return [QueuedPrompt(name=f"p{n}", content=c) for n, c in enumerate(contents)]


@pytest.mark.asyncio
async def test_queue_advances_and_persists_cursor():
    store = InMemoryStepRecordStore()
    index = StepIndexManager(store)
    await index.init_queue(0, prompts("a", "b"))

    assert index.peek_current().content == "a"
    assert index.is_queued_prompt("a")
    assert not index.is_queued_prompt("b")

    consumed = await index.advance()
    assert consumed.content == "a"
    assert index.cursor == 1
    assert (await store.read(0)).queue_cursor == 1

    await index.advance()
    assert index.is_exhausted()
    assert await index.advance() is None
    assert index.cursor == 2


@pytest.mark.asyncio
async def test_init_queue_rejects_out_of_range_cursor():
    index = StepIndexManager(InMemoryStepRecordStore())
    with pytest.raises(ValueError):
        await index.init_queue(0, prompts("a"), cursor=2)


@pytest.mark.asyncio
async def test_init_queue_stores_chain_for_restart():
    store = InMemoryStepRecordStore()
    index = StepIndexManager(store)
    await index.init_queue(3, prompts("a", "b"), cursor=1)

    record = await store.read(3)
    assert [p.content for p in record.chained_prompts] == ["a", "b"]
    assert record.queue_cursor == 1
    assert index.queue_state.cursor == 1
    assert not index.queue_state.exhausted


@pytest.mark.asyncio
async def test_reset_drops_working_queue_only():
    store = InMemoryStepRecordStore()
    index = StepIndexManager(store)
    await index.init_queue(0, prompts("a", "b"))
    await index.advance()

    index.reset()

    assert index.is_exhausted()
    assert index.queue_step is None
    assert (await store.read(0)).queue_cursor == 1


@pytest.mark.asyncio
async def test_step_lifecycle_phases():
    store = InMemoryStepRecordStore()
    index = StepIndexManager(store)
    assert index.get_step_phase(0) is StepLifecyclePhase.NOT_STARTED

    await index.step_started(0)
    assert index.get_step_phase(0) is StepLifecyclePhase.STARTED
    assert index.workflow.not_completed_steps == [0]

    await index.step_session_initialized(0, "s-1", "log-1")
    assert index.get_step_phase(0) is StepLifecyclePhase.SESSION_INITIALIZED

    await index.chain_completed(0, 0)
    assert index.get_step_phase(0) is StepLifecyclePhase.CHAIN_IN_PROGRESS
    assert index.get_record(0).completed_at is None

    await index.step_completed(0)
    assert index.get_step_phase(0) is StepLifecyclePhase.COMPLETED
    assert index.is_step_completed(0)
    assert index.get_completed_steps() == [0]
    assert index.workflow.not_completed_steps == []

    workflow = await store.read_workflow()
    assert workflow.not_completed_steps == []
    assert workflow.last_updated is not None


@pytest.mark.asyncio
async def test_update_step_session_writes_only_changes():
    class CountingStore(InMemoryStepRecordStore):
        def __init__(self):
            super().__init__()
            self.writes = 0

        async def write(self, step_index, patch):
            self.writes += 1
            return await super().write(step_index, patch)

    store = CountingStore()
    index = StepIndexManager(store)
    await index.step_session_initialized(1, "s-1", "log-1")
    writes = store.writes

    await index.update_step_session(1, "s-1", "log-1")
    assert store.writes == writes

    await index.update_step_session(1, "s-2")
    assert store.writes == writes + 1
    assert index.get_record(1).session_id == "s-2"
    assert index.get_record(1).log_handle_id == "log-1"


@pytest.mark.asyncio
async def test_load_mirrors_store_contents():
    store = InMemoryStepRecordStore()
    await store.write(2, {"session_id": "s-2"})
    await store.write_workflow({"autonomous_mode": True})

    index = StepIndexManager(store)
    await index.load()

    assert index.get_record(2).session_id == "s-2"
    assert index.workflow.autonomous_mode is True


@pytest.mark.asyncio
async def test_failed_writes_keep_in_memory_state_and_report():
    class BrokenStore(InMemoryStepRecordStore):
        async def write(self, step_index, patch):
            raise PersistenceError("read-only filesystem", step_index=step_index)

    emitter = RecordingEventEmitter()
    index = StepIndexManager(BrokenStore(), write_retries=0, emitter=emitter)

    await index.step_session_initialized(0, "s-1")

    assert index.get_record(0).session_id == "s-1"
    assert emitter.names() == ["persistence_error"]
    assert emitter.events[0][1]["step_index"] == 0


@pytest.mark.asyncio
async def test_clear_forgets_everything():
    store = InMemoryStepRecordStore()
    index = StepIndexManager(store)
    await index.step_started(0)
    await index.set_autonomous_mode(True)

    await index.clear()

    assert index.records() == []
    assert index.workflow.autonomous_mode is False
    assert await store.list_records() == []
