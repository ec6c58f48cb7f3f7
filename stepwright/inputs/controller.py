"""Autonomous input provider backed by a controller agent."""

from __future__ import annotations

import logging
import re
from typing import Awaitable, Callable, Optional

from ..contracts import ControllerAgent, ControllerReply
from ..errors import CancellationError, StepExecutionError
from ..persistence import ControllerConfig
from .base import Advance, InputContext, InputProvider, InputResult, ResumeWith, Skip, Stop
from .user import UserInputProvider

logger = logging.getLogger(__name__)

ACTION_PATTERN = re.compile(r"ACTION:\s*(NEXT|SKIP|STOP)\b", re.IGNORECASE)

SessionCallback = Callable[[ControllerConfig], Awaitable[None]]


def build_controller_prompt(context: InputContext) -> str:
    """Describe the finished step to the controller agent."""
    lines = [
        f"Step {context.step_index + 1} ({context.agent_id}) finished with output:",
        "",
        context.output or "(no output)",
        "",
    ]
    if context.queued_prompt is not None:
        lines.append(
            f"Next queued prompt '{context.queued_prompt.label or context.queued_prompt.name}':"
        )
        lines.append(context.queued_prompt.content)
        lines.append("")
    lines.append(
        "Reply with ACTION: NEXT to continue, ACTION: SKIP to skip the step, "
        "ACTION: STOP to stop the workflow, or write the next instruction for the agent."
    )
    return "\n".join(lines)


def parse_controller_reply(output: str, context: InputContext) -> InputResult:
    """Map a controller reply to an input decision."""
    match = ACTION_PATTERN.search(output or "")
    if match:
        action = match.group(1).upper()
        if action == "SKIP":
            return Skip()
        if action == "STOP":
            return Stop()
        if context.queued_prompt is not None:
            return ResumeWith(text=context.queued_prompt.content)
        return Advance()

    text = ACTION_PATTERN.sub("", output or "").strip()
    if not text:
        return Advance()
    return ResumeWith(text=text)


class ControllerInputProvider(InputProvider):
    """Asks the controller agent what the waiting step should do next.

    Without a configured controller the provider defers to the operator.
    """

    name = "controller"

    def __init__(
        self,
        agent: Optional[ControllerAgent],
        config: Optional[ControllerConfig],
        fallback: UserInputProvider,
        on_session_change: Optional[SessionCallback] = None,
    ) -> None:
        super().__init__()
        self._agent = agent
        self._config = config
        self._fallback = fallback
        self._on_session_change = on_session_change

    @property
    def configured(self) -> bool:
        return self._agent is not None and self._config is not None

    @property
    def config(self) -> Optional[ControllerConfig]:
        return self._config

    def use_config(self, config: ControllerConfig) -> None:
        """Continue an existing controller session."""
        self._config = config

    def abort(self, switch_to: Optional[str] = None) -> None:
        if self._token is None and self._fallback.busy:
            self._fallback.abort(switch_to)
            return
        super().abort(switch_to)

    async def get_input(self, context: InputContext) -> InputResult:
        if not self.configured:
            logger.warning("No controller configured, waiting for operator input instead")
            return await self._fallback.get_input(context)

        self._begin(context.token)
        prompt = build_controller_prompt(context)
        try:
            reply = await context.token.run(
                self._agent.run(prompt, context.token, session_id=self._config.session_id)
            )
        except CancellationError:
            logger.info(f"Controller call for step {context.step_index} cancelled")
            return self._cancelled_result()
        except Exception as exc:
            raise StepExecutionError(
                context.step_index, f"controller agent failed: {exc}"
            ) from exc
        finally:
            self._end()

        await self._remember_session(reply)
        result = parse_controller_reply(reply.output, context)
        logger.info(f"Controller decided {result.kind} for step {context.step_index}")
        return result

    async def _remember_session(self, reply: ControllerReply) -> None:
        changed = (
            reply.session_id and reply.session_id != self._config.session_id
        ) or (reply.log_handle_id and reply.log_handle_id != self._config.log_handle_id)
        if not changed:
            return
        self._config = self._config.model_copy(
            update={
                "session_id": reply.session_id or self._config.session_id,
                "log_handle_id": reply.log_handle_id or self._config.log_handle_id,
            }
        )
        if self._on_session_change is not None:
            await self._on_session_change(self._config)
