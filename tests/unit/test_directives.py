import json

import pytest

from stepwright.contracts import LoopBehavior, StepDefinition
from stepwright.directives import (
    DirectiveAction,
    DirectiveArtifact,
    DirectiveEvaluator,
    DirectiveReader,
    loop_key,
)


@pytest.fixture
def directive_path(tmp_path):
    return tmp_path / "memory" / "directive.json"


@pytest.fixture
def evaluator(directive_path):
    return DirectiveEvaluator(DirectiveReader(directive_path))


def write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


def loop_step(index=3, **behavior) -> StepDefinition:
    return StepDefinition(
        index=index, agent_id="review", behavior=LoopBehavior(**behavior)
    )


@pytest.mark.asyncio
async def test_missing_artifact_advances(evaluator):
    directive = await evaluator.evaluate(StepDefinition(index=0, agent_id="build"))
    assert directive.is_advance


@pytest.mark.asyncio
async def test_malformed_artifact_advances_and_is_reset(evaluator, directive_path):
    directive_path.parent.mkdir(parents=True)
    directive_path.write_text("{oops")

    directive = await evaluator.evaluate(StepDefinition(index=0, agent_id="build"))

    assert directive.is_advance
    assert json.loads(directive_path.read_text()) == {"action": "continue"}


@pytest.mark.asyncio
async def test_artifact_is_consumed_after_evaluation(evaluator, directive_path):
    step = StepDefinition(index=0, agent_id="build")
    write(directive_path, {"action": "stop", "reason": "done"})

    first = await evaluator.evaluate(step)
    second = await evaluator.evaluate(step)

    assert first.action is DirectiveAction.STOP
    assert first.reason == "done"
    assert second.is_advance


@pytest.mark.asyncio
async def test_prepare_resets_stale_decision(evaluator, directive_path):
    write(directive_path, {"action": "error"})
    await evaluator.prepare()
    assert (await evaluator.reader.read()).action == "continue"


@pytest.mark.parametrize(
    "action, expected",
    [
        ("continue", DirectiveAction.ADVANCE),
        ("advance", DirectiveAction.ADVANCE),
        ("stop", DirectiveAction.STOP),
        ("error", DirectiveAction.ERROR),
        ("checkpoint", DirectiveAction.CHECKPOINT),
        ("pause", DirectiveAction.PAUSE),
        ("dance", DirectiveAction.ADVANCE),
    ],
)
def test_interpret_simple_actions(evaluator, action, expected):
    step = StepDefinition(index=0, agent_id="build")
    assert evaluator.interpret(step, DirectiveArtifact(action=action)).action is expected


def test_trigger_needs_target_agent(evaluator):
    step = StepDefinition(index=0, agent_id="build")

    assert evaluator.interpret(step, DirectiveArtifact(action="trigger")).is_advance
    directive = evaluator.interpret(
        step, DirectiveArtifact(action="trigger", target_agent_id="lint")
    )
    assert directive.action is DirectiveAction.TRIGGER
    assert directive.target_agent_id == "lint"


def test_loop_runs_at_most_max_iterations(evaluator):
    step = loop_step(index=3, steps=2, max_iterations=3)
    artifact = DirectiveArtifact(action="loop")

    targets = [evaluator.interpret(step, artifact) for _ in range(4)]

    assert [d.action for d in targets[:3]] == [DirectiveAction.LOOP] * 3
    assert all(d.target_index == 1 for d in targets[:3])
    assert targets[3].is_advance
    assert targets[3].reason == "loop limit reached (3)"
    assert evaluator.loop_counters[loop_key(step)] == 3
    assert evaluator.active_loop is None


def test_loop_with_explicit_target_and_single_iteration(evaluator):
    step = loop_step(index=4, steps=1)
    artifact = DirectiveArtifact(action="loop", target_index=2, max_iterations=1)

    first = evaluator.interpret(step, artifact)
    assert first.action is DirectiveAction.LOOP
    assert first.target_index == 2
    assert evaluator.active_loop.back_steps == 2

    second = evaluator.interpret(step, artifact)
    assert second.is_advance
    assert second.reason == "loop limit reached (1)"


def test_loop_without_target_or_behavior_advances(evaluator):
    step = StepDefinition(index=2, agent_id="review")
    assert evaluator.interpret(step, DirectiveArtifact(action="loop")).is_advance
    assert evaluator.loop_counters == {}


def test_loop_target_without_loop_behavior_is_ignored(evaluator):
    step = StepDefinition(index=5, agent_id="review")
    artifact = DirectiveArtifact(action="loop", target_index=2)

    directives = [evaluator.interpret(step, artifact) for _ in range(5)]

    assert all(d.is_advance for d in directives)
    assert evaluator.loop_counters == {}
    assert evaluator.active_loop is None


def test_artifact_cannot_raise_iteration_limit(evaluator):
    step = loop_step(index=2, steps=1, max_iterations=1)
    artifact = DirectiveArtifact(action="loop", max_iterations=10)

    directives = [evaluator.interpret(step, artifact) for _ in range(3)]

    assert [d.action for d in directives] == [
        DirectiveAction.LOOP,
        DirectiveAction.ADVANCE,
        DirectiveAction.ADVANCE,
    ]
    assert directives[1].reason == "loop limit reached (1)"


def test_artifact_may_lower_iteration_limit(evaluator):
    step = loop_step(index=2, steps=1, max_iterations=5)
    artifact = DirectiveArtifact(action="loop", max_iterations=2)

    directives = [evaluator.interpret(step, artifact) for _ in range(3)]

    assert [d.is_advance for d in directives] == [False, False, True]
    assert evaluator.loop_counters[loop_key(step)] == 2


def test_loop_target_after_source_step_is_rejected(evaluator):
    step = loop_step(index=2, steps=1, max_iterations=3)
    directive = evaluator.interpret(step, DirectiveArtifact(action="loop", target_index=4))

    assert directive.is_advance
    assert evaluator.loop_counters == {}


def test_loop_target_is_clamped_at_zero(evaluator):
    step = loop_step(index=1, steps=5)
    directive = evaluator.interpret(step, DirectiveArtifact(action="loop"))
    assert directive.target_index == 0


def test_should_skip_rules(evaluator):
    evaluator.interpret(
        loop_step(index=3, steps=3, skip=["setup"]), DirectiveArtifact(action="loop")
    )

    setup = StepDefinition(index=0, agent_id="setup")
    build = StepDefinition(index=1, agent_id="build")
    once = StepDefinition(index=2, agent_id="docs", execute_once=True)

    assert evaluator.should_skip(setup, completed=False)
    assert not evaluator.should_skip(build, completed=True)
    assert evaluator.should_skip(once, completed=True)
    assert not evaluator.should_skip(once, completed=False)


@pytest.mark.asyncio
async def test_reader_round_trip_omits_empty_fields(directive_path):
    reader = DirectiveReader(directive_path)
    await reader.write(DirectiveArtifact(action="loop", target_index=1))

    assert json.loads(directive_path.read_text()) == {"action": "loop", "target_index": 1}
    assert (await reader.read()).target_index == 1
