"""Resolution of a step's interactive behavior."""

from __future__ import annotations

import logging

from pydantic import BaseModel

from .contracts import StepDefinition

logger = logging.getLogger(__name__)


class InteractiveBehavior(BaseModel):
    """How the runner treats a step once it produced output.

    Scenarios:
        1. interactive, auto, chain: controller drives the chain
        2. interactive, auto, no chain: controller reviews the step
        3. interactive, manual, chain: operator drives the chain
        4. interactive, manual, no chain: operator reviews the step
        5. non-interactive, auto, chain: every chained prompt is sent automatically
        6. non-interactive, auto, no chain: advance immediately
        7. non-interactive, manual, chain: forced interactive (as 3)
        8. non-interactive, manual, no chain: forced interactive (as 4)
    """

    scenario: int
    should_wait: bool
    run_autonomous_loop: bool = False
    was_forced: bool = False


def resolve_interactive_behavior(
    step: StepDefinition, auto_mode: bool, has_chained_prompts: bool
) -> InteractiveBehavior:
    interactive = step.interactive
    if interactive is None:
        interactive = has_chained_prompts

    if interactive:
        if auto_mode:
            return InteractiveBehavior(scenario=1 if has_chained_prompts else 2, should_wait=True)
        return InteractiveBehavior(scenario=3 if has_chained_prompts else 4, should_wait=True)

    if auto_mode:
        if has_chained_prompts:
            return InteractiveBehavior(scenario=5, should_wait=False, run_autonomous_loop=True)
        return InteractiveBehavior(scenario=6, should_wait=False)

    logger.debug(
        f"Step {step.index} is non-interactive in manual mode, waiting for the operator"
    )
    return InteractiveBehavior(
        scenario=7 if has_chained_prompts else 8, should_wait=True, was_forced=True
    )
