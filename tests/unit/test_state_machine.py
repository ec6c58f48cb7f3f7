import pytest

from stepwright.state import EventType, MachineEvent, MachineState, StepStateMachine


class FakeQueue:
    def __init__(self, exhausted: bool = True):
        self.exhausted = exhausted

    def is_exhausted(self) -> bool:
        return self.exhausted


def started(total=3, **kwargs) -> StepStateMachine:
    machine = StepStateMachine(total, **kwargs)
    machine.send(MachineEvent.start())
    return machine


def test_start_runs_first_step_or_completes_when_nothing_left():
    machine = started()
    assert machine.state is MachineState.RUNNING
    assert machine.current_step_index == 0

    done = StepStateMachine(2, start_index=2)
    assert done.send(MachineEvent.start()) is MachineState.COMPLETED


def test_step_complete_awaits_input_in_manual_mode():
    machine = started()
    machine.send(MachineEvent.step_complete("out", "log-1"))

    assert machine.state is MachineState.AWAITING
    assert machine.context.current_output == "out"
    assert machine.context.current_log_handle_id == "log-1"


def test_step_complete_delegates_in_auto_mode_with_controller():
    machine = started(auto_mode=True, has_controller=True)
    assert machine.send(MachineEvent.step_complete("out")) is MachineState.DELEGATED


def test_pending_chain_or_pause_keeps_step_awaiting():
    queue = FakeQueue(exhausted=False)
    machine = started(queue=queue, auto_mode=True, has_controller=True)
    assert machine.send(MachineEvent.step_complete("out")) is MachineState.AWAITING

    paused = started(auto_mode=True, has_controller=True)
    paused.send(MachineEvent.of(EventType.PAUSE))
    assert paused.send(MachineEvent.step_complete("out")) is MachineState.AWAITING


def test_empty_input_advances_and_last_step_completes():
    machine = started(total=2)
    machine.send(MachineEvent.step_complete("out"))
    machine.send(MachineEvent.input_received(""))
    assert machine.state is MachineState.RUNNING
    assert machine.current_step_index == 1

    machine.send(MachineEvent.step_complete("out"))
    assert machine.send(MachineEvent.input_received("")) is MachineState.COMPLETED


def test_text_input_continues_same_step():
    machine = started()
    machine.send(MachineEvent.step_complete("out"))
    machine.send(MachineEvent.input_received("more please"))

    assert machine.state is MachineState.RUNNING
    assert machine.current_step_index == 0


def test_empty_input_with_pending_chain_stays_on_step():
    queue = FakeQueue(exhausted=False)
    machine = started(queue=queue)
    machine.send(MachineEvent.step_complete("out"))
    machine.send(MachineEvent.input_received(""))

    assert machine.state is MachineState.RUNNING
    assert machine.current_step_index == 0


def test_skip_moves_to_next_step_from_any_active_state():
    machine = started()
    machine.send(MachineEvent.of(EventType.SKIP))
    assert machine.current_step_index == 1

    machine.send(MachineEvent.step_complete("out"))
    machine.send(MachineEvent.of(EventType.SKIP))
    assert machine.state is MachineState.RUNNING
    assert machine.current_step_index == 2


def test_step_error_and_stop_are_final():
    machine = started()
    machine.send(MachineEvent.step_error("boom"))
    assert machine.state is MachineState.ERROR
    assert machine.context.last_error == "boom"

    # ignored once final
    assert machine.send(MachineEvent.start()) is MachineState.ERROR

    stopped = started()
    stopped.send(MachineEvent.stop("operator"))
    assert stopped.state is MachineState.STOPPED
    assert stopped.context.stop_reason == "operator"


def test_pause_from_delegated_returns_to_awaiting_and_disables_auto():
    machine = started(auto_mode=True, has_controller=True)
    machine.send(MachineEvent.step_complete("out"))
    machine.send(MachineEvent.of(EventType.PAUSE))

    assert machine.state is MachineState.AWAITING
    assert machine.context.paused
    assert not machine.context.auto_mode

    machine.send(MachineEvent.of(EventType.RESUME))
    assert not machine.context.paused
    assert machine.state is MachineState.AWAITING


def test_loop_clamps_target_index():
    machine = started(total=3, start_index=2)
    machine.send(MachineEvent.loop(-4))
    assert machine.current_step_index == 0

    machine.send(MachineEvent.loop(10))
    assert machine.current_step_index == 2


def test_unknown_transition_is_ignored():
    machine = started()
    assert machine.send(MachineEvent.input_received("text")) is MachineState.RUNNING


def test_listeners_see_transitions_until_unsubscribed():
    machine = StepStateMachine(2)
    seen = []
    unsubscribe = machine.subscribe(lambda prev, new, event: seen.append((prev, new)))

    machine.send(MachineEvent.start())
    unsubscribe()
    machine.send(MachineEvent.stop())

    assert seen == [(MachineState.IDLE, MachineState.RUNNING)]


def test_start_index_only_changes_before_start():
    machine = StepStateMachine(3)
    machine.set_start_index(2)
    machine.send(MachineEvent.start())
    assert machine.current_step_index == 2

    with pytest.raises(RuntimeError):
        machine.set_start_index(0)
