"""Maps directive artifacts to post-step actions."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from ..contracts import StepDefinition
from ..errors import DirectiveError
from .models import ActiveLoop, Directive, DirectiveAction, DirectiveArtifact
from .reader import DirectiveReader

logger = logging.getLogger(__name__)

_SIMPLE_ACTIONS = {
    "stop": DirectiveAction.STOP,
    "error": DirectiveAction.ERROR,
    "checkpoint": DirectiveAction.CHECKPOINT,
    "pause": DirectiveAction.PAUSE,
}


def loop_key(step: StepDefinition) -> str:
    return f"{step.agent_id}:{step.index}"


class DirectiveEvaluator:
    """Reads the directive artifact once per step completion.

    The evaluator only decides; the runner carries the decision out. Loop
    counters live for the whole run so a source step can rewind at most
    ``max_iterations`` times.
    """

    def __init__(self, reader: DirectiveReader) -> None:
        self.reader = reader
        self.loop_counters: Dict[str, int] = {}
        self.active_loop: Optional[ActiveLoop] = None

    async def prepare(self) -> None:
        """Clear any stale decision before a step runs."""
        await self.reader.reset()

    async def evaluate(self, step: StepDefinition) -> Directive:
        try:
            artifact = await self.reader.read()
        except DirectiveError as exc:
            logger.warning(f"Ignoring directive for step {step.index}: {exc}")
            await self.reader.reset()
            return self._advance(step)

        if artifact is None:
            return self._advance(step)

        # consumed: a continuation of the same step must not fire it again
        await self.reader.reset()
        return self.interpret(step, artifact)

    def interpret(self, step: StepDefinition, artifact: DirectiveArtifact) -> Directive:
        action = (artifact.action or "continue").strip().lower()
        if action in ("continue", "advance"):
            return self._advance(step)
        if action == "loop":
            return self.evaluate_loop(step, artifact)
        if action in _SIMPLE_ACTIONS:
            self._leave_loop(step)
            return Directive(action=_SIMPLE_ACTIONS[action], reason=artifact.reason)
        if action == "trigger":
            if not artifact.target_agent_id:
                logger.warning(f"Trigger directive on step {step.index} names no agent")
                return self._advance(step)
            return Directive(
                action=DirectiveAction.TRIGGER,
                reason=artifact.reason,
                target_agent_id=artifact.target_agent_id,
            )
        logger.warning(f"Unknown directive action '{artifact.action}' on step {step.index}")
        return self._advance(step)

    def evaluate_loop(self, step: StepDefinition, artifact: DirectiveArtifact) -> Directive:
        """Rewind within the bounds the template's loop behavior allows.

        The artifact may pick an earlier target or lower the iteration
        limit, never raise it.
        """
        behavior = step.loop_behavior
        if behavior is None:
            logger.warning(f"Loop directive on step {step.index} ignored: step has no loop behavior")
            return self._advance(step)

        if artifact.target_index is not None:
            if artifact.target_index > step.index:
                logger.warning(
                    f"Loop directive on step {step.index} targets later step {artifact.target_index}"
                )
                return self._advance(step)
            target = artifact.target_index
        else:
            target = max(step.index - behavior.steps, 0)
        back_steps = step.index - target

        max_iterations = behavior.max_iterations
        if artifact.max_iterations is not None:
            max_iterations = (
                artifact.max_iterations
                if max_iterations is None
                else min(max_iterations, artifact.max_iterations)
            )
        skip = artifact.skip if artifact.skip is not None else behavior.skip
        key = loop_key(step)
        iteration = self.loop_counters.get(key, 0)

        if max_iterations is not None and iteration + 1 > max_iterations:
            logger.info(f"Step {step.index}: loop limit reached ({max_iterations})")
            self._leave_loop(step)
            return Directive(reason=f"loop limit reached ({max_iterations})")

        self.loop_counters[key] = iteration + 1
        self.active_loop = ActiveLoop(
            source_step_index=step.index,
            back_steps=back_steps,
            iteration=iteration + 1,
            max_iterations=max_iterations,
            skip_list=list(skip),
            reason=artifact.reason,
        )
        logger.info(
            f"Step {step.index}: looping back to step {target} "
            f"(iteration {iteration + 1}/{max_iterations or 'unbounded'})"
        )
        return Directive(action=DirectiveAction.LOOP, target_index=target, reason=artifact.reason)

    def should_skip(self, step: StepDefinition, completed: bool) -> bool:
        """Return True when ``step`` is bypassed on replay."""
        if step.execute_once and completed:
            return True
        loop = self.active_loop
        if loop is None or step.index >= loop.source_step_index:
            return False
        return step.agent_id in loop.skip_list

    # ------------------------------------------------------------------
    def _advance(self, step: StepDefinition) -> Directive:
        self._leave_loop(step)
        return Directive()

    def _leave_loop(self, step: StepDefinition) -> None:
        if self.active_loop is not None and self.active_loop.source_step_index == step.index:
            self.active_loop = None
