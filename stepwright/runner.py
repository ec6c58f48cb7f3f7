"""Workflow runner: drives steps through the state machine."""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from .cancellation import CancellationToken
from .config import StepwrightConfig, load_config
from .contracts import (
    AgentExecutor,
    CheckpointBehavior,
    ControllerAgent,
    ExecutionResult,
    StepDefinition,
)
from .directives import Directive, DirectiveAction, DirectiveEvaluator, DirectiveReader
from .errors import CancellationError, StepExecutionError
from .events import WorkflowEventEmitter, notify
from .indexing import StepIndexManager
from .inputs import (
    Advance,
    ControllerInputProvider,
    InputContext,
    InputResult,
    ResumeWith,
    Skip,
    Stop,
    SwitchMode,
    UserInputProvider,
)
from .interactive import resolve_interactive_behavior
from .mode import WorkflowMode
from .persistence import ControllerConfig, StepRecordStore, get_store
from .recovery import (
    ResumeDecision,
    ResumeInfo,
    StepRecoveryAction,
    get_resume_info,
    plan_step_recovery,
)
from .session import StepSession
from .signals import SignalManager, StepContext
from .state import EventType, MachineEvent, MachineState, StepStateMachine
from .templates import WorkflowTemplate

logger = logging.getLogger(__name__)


class WorkflowResult(BaseModel):
    """Terminal outcome of a workflow run."""

    status: MachineState
    step_index: int
    reason: Optional[str] = None
    completed_steps: List[int] = Field(default_factory=list)


class WorkflowRunner:
    """Runs a workflow template to completion, stop or failure.

    The runner owns the state machine and hands narrow views of it to the
    index manager, the mode switch and the signal manager. It suspends only
    while the agent executor runs, while an input provider waits and while
    records are written; each of those calls gets a fresh cancellation
    token that signal handlers can reach through the step context.
    """

    def __init__(
        self,
        template: WorkflowTemplate,
        executor: AgentExecutor,
        *,
        store: Optional[StepRecordStore] = None,
        config: Optional[StepwrightConfig] = None,
        controller_agent: Optional[ControllerAgent] = None,
        controller_config: Optional[ControllerConfig] = None,
        user: Optional[UserInputProvider] = None,
        emitter: Optional[WorkflowEventEmitter] = None,
        auto_mode: Optional[bool] = None,
    ) -> None:
        self.config = config or load_config()
        self.template = template
        self.steps = template.steps
        self._executor = executor
        self._emitter = emitter
        self._auto_mode = auto_mode

        self.index = StepIndexManager(
            store or get_store(config=self.config),
            write_retries=self.config.store.write_retries,
            retry_base=self.config.store.retry_base,
            emitter=emitter,
        )
        self.machine = StepStateMachine(len(self.steps), queue=self.index)
        self.user = user or UserInputProvider()
        if controller_agent is not None and controller_config is None:
            controller_config = ControllerConfig(agent_id="controller")
        self.controller = ControllerInputProvider(
            controller_agent,
            controller_config,
            self.user,
            on_session_change=self.index.save_controller_config,
        )
        self.mode = WorkflowMode(self.machine, self.user, self.controller, emitter)
        self.signals = SignalManager(self.machine, self.index, self.mode, emitter)
        self.directives = DirectiveEvaluator(DirectiveReader(self.config.directive_path()))
        self.resume_info: Optional[ResumeInfo] = None
        self._session: Optional[StepSession] = None
        self._recover_first_step = False

    # ------------------------------------------------------------------
    # Public API
    def submit(self, text: str) -> None:
        """Queue operator input for the next wait."""
        self.user.submit(text)

    async def run(self, fresh: bool = False) -> WorkflowResult:
        await self._setup(fresh)
        self.machine.send(MachineEvent.start())
        notify(self._emitter, "status", status=self.machine.state.value)

        while not self.machine.is_final:
            state = self.machine.state
            if state is MachineState.RUNNING:
                await self._run_step()
            elif state in (MachineState.AWAITING, MachineState.DELEGATED):
                await self._handle_waiting()
            else:
                raise RuntimeError(f"Runner cannot make progress from state {state.value}")

        return self._finish()

    # ------------------------------------------------------------------
    # Startup
    async def _setup(self, fresh: bool) -> None:
        await self.index.load()
        settings = self.config.workflow
        workflow = self.index.workflow.model_copy(
            update={
                "resume_from_last_step": settings.resume_from_last_step and not fresh
            }
        )
        info = get_resume_info(workflow, self.index.records())
        if info.decision is ResumeDecision.START_FRESH and (
            self.index.records() or workflow.not_completed_steps
        ):
            logger.info("Starting fresh: clearing previous step records")
            persisted_controller = self.index.workflow.controller_config
            await self.index.clear()
            if persisted_controller is not None:
                await self.index.save_controller_config(persisted_controller)

        await self.index.set_active_template(self.template.name)
        await self.index.set_resume_from_last_step(settings.resume_from_last_step)
        self._restore_controller_session()

        auto = self._auto_mode
        if auto is None:
            auto = settings.autonomous_mode or self.index.workflow.autonomous_mode
        if auto and self.mode.set_auto_mode(True):
            await self.index.set_autonomous_mode(True)
        else:
            await self.index.set_autonomous_mode(False)

        self.resume_info = info
        self._recover_first_step = info.decision is not ResumeDecision.START_FRESH
        self.machine.set_start_index(info.start_index)
        logger.info(
            f"Workflow '{self.template.name}': {info.decision.value} at step "
            f"{info.start_index + 1}/{len(self.steps)}"
        )
        notify(
            self._emitter,
            "resumed",
            decision=info.decision.value,
            step_index=info.start_index,
        )

    def _restore_controller_session(self) -> None:
        current = self.controller.config
        persisted = self.index.workflow.controller_config
        if current is None or persisted is None:
            return
        if persisted.agent_id == current.agent_id and current.session_id is None:
            logger.debug(f"Continuing controller session {persisted.session_id}")
            self.controller.use_config(persisted)

    # ------------------------------------------------------------------
    # Running a step
    async def _run_step(self) -> None:
        step_index = self.machine.current_step_index
        step = self.steps[step_index]

        if self.directives.should_skip(step, self.index.is_step_completed(step_index)):
            logger.info(f"Skipping step {step_index} ({step.display_name}) on replay")
            notify(self._emitter, "step_skipped", step_index=step_index, replay=True)
            self.index.reset()
            self.machine.send(MachineEvent.of(EventType.SKIP))
            return

        recovery = StepRecoveryAction.FRESH
        record = self.index.get_record(step_index)
        if self._recover_first_step:
            self._recover_first_step = False
            recovery = plan_step_recovery(record, step)

        self.signals.set_step_context(
            StepContext(step_index=step_index, agent_id=step.agent_id)
        )

        if recovery is StepRecoveryAction.RESTORE_AWAITING:
            await self._restore_awaiting(step)
            return

        if recovery is StepRecoveryAction.CONTINUE_SESSION:
            logger.info(f"Continuing interrupted session {record.session_id} of step {step_index}")
            session = StepSession(step_index, record.session_id, record.log_handle_id)
            prompt = self.config.workflow.continue_prompt
        else:
            await self.directives.prepare()
            await self.index.step_started(step_index)
            session = StepSession(step_index)
            prompt = step.prompt

        self._session = session
        self.signals.set_session(session.session_id)
        notify(
            self._emitter,
            "step_started",
            step_index=step_index,
            agent_id=step.agent_id,
            recovery=recovery.value,
        )

        result = await self._execute(step, prompt, session)
        if result is None:
            return
        if recovery is StepRecoveryAction.FRESH:
            await self.index.step_session_initialized(
                step_index, result.session_id, result.log_handle_id
            )
        else:
            await self.index.update_step_session(
                step_index, result.session_id, result.log_handle_id
            )
        if self._on_step(step_index):
            await self._after_execution(step, result)

    async def _restore_awaiting(self, step: StepDefinition) -> None:
        """Rebuild the awaiting state of a step that already produced output."""
        record = self.index.get_record(step.index)
        prompts = record.chained_prompts or list(step.chained_prompts)
        cursor = min(record.queue_cursor, len(prompts))
        await self.index.init_queue(step.index, prompts, cursor)

        self._session = StepSession(
            step.index, record.session_id, record.log_handle_id, has_completed_once=True
        )
        self._session.mark_awaiting()
        self.signals.set_session(record.session_id)
        logger.info(
            f"Restored step {step.index} from session {record.session_id} "
            f"at chain position {cursor}/{len(prompts)} without re-running the agent"
        )
        notify(
            self._emitter,
            "step_restored",
            step_index=step.index,
            session_id=record.session_id,
            log_handle_id=record.log_handle_id,
            cursor=cursor,
        )
        self.machine.send(MachineEvent.step_complete("", record.log_handle_id))

    async def _execute(
        self, step: StepDefinition, prompt: str, session: StepSession
    ) -> Optional[ExecutionResult]:
        """Call the executor; returns None when the call did not complete normally."""
        token = CancellationToken()
        self.signals.set_token(token)
        session.mark_running()
        try:
            result = await token.run(
                self._executor.execute(step, prompt, token, session_id=session.session_id)
            )
        except CancellationError as exc:
            if token.cancelled:
                logger.info(f"Step {step.index} call cancelled by {token.reason} signal")
            else:
                self._fail(step, f"agent call cancelled unexpectedly: {exc}")
            return None
        except StepExecutionError as exc:
            self._fail(step, exc.message)
            return None
        except Exception as exc:
            logger.exception(f"Agent executor raised for step {step.index}")
            self._fail(step, str(exc) or exc.__class__.__name__)
            return None
        finally:
            self.signals.set_token(None)

        if not self._on_step(step.index):
            return None
        session.update(result.session_id, result.log_handle_id)
        self.signals.set_session(session.session_id)
        return result

    def _fail(self, step: StepDefinition, reason: str) -> None:
        logger.error(f"Step {step.index} ({step.display_name}) failed: {reason}")
        notify(self._emitter, "step_failed", step_index=step.index, reason=reason)
        self.machine.send(MachineEvent.step_error(reason))

    def _on_step(self, step_index: int) -> bool:
        """True while the machine is still running ``step_index``."""
        return self._still_in(step_index, MachineState.RUNNING)

    def _still_in(self, step_index: int, state: MachineState) -> bool:
        return self.machine.state is state and self.machine.current_step_index == step_index

    async def _after_execution(self, step: StepDefinition, result: ExecutionResult) -> None:
        session = self._session
        first_run = session is None or not session.has_completed_once

        directive = await self.directives.evaluate(step)
        if not self._on_step(step.index):
            return
        if (
            directive.is_advance
            and first_run
            and isinstance(step.behavior, CheckpointBehavior)
        ):
            directive = Directive(action=DirectiveAction.CHECKPOINT, reason="review required")
        if not directive.is_advance and await self._apply_directive(step, directive, result):
            return

        if session is not None and first_run:
            prompts = list(step.chained_prompts)
            prompts.extend(p for p in result.chained_prompts if p not in prompts)
            if prompts:
                await self.index.init_queue(step.index, prompts, 0)
        if not self._on_step(step.index):
            return
        if session is not None:
            session.mark_awaiting()
        self.machine.send(MachineEvent.step_complete(result.output, result.log_handle_id))

    # ------------------------------------------------------------------
    # Directives
    async def _apply_directive(
        self, step: StepDefinition, directive: Directive, result: ExecutionResult
    ) -> bool:
        """Carry out ``directive``. Returns True when the step is finished with."""
        action = directive.action
        logger.info(f"Step {step.index} directive: {action.value} ({directive.reason or 'no reason'})")

        if action is DirectiveAction.ERROR:
            reason = directive.reason or "agent reported an error"
            notify(self._emitter, "step_failed", step_index=step.index, reason=reason)
            self.machine.send(MachineEvent.step_error(reason))
            return True
        if action is DirectiveAction.STOP:
            self.machine.send(MachineEvent.stop(directive.reason or "stop directive"))
            return True
        if action is DirectiveAction.TRIGGER:
            await self._run_trigger(step, directive)
            return not self._on_step(step.index)
        if action is DirectiveAction.CHECKPOINT:
            return not await self._checkpoint(step, directive, result)
        if action is DirectiveAction.PAUSE:
            self.mode.pause()
            notify(self._emitter, "paused", step_index=step.index, reason=directive.reason)
            return False
        if action is DirectiveAction.LOOP:
            await self._loop_to(step, directive)
            return True
        return False

    async def _run_trigger(self, step: StepDefinition, directive: Directive) -> None:
        agent_id = directive.target_agent_id
        template_step = self.template.find_agent(agent_id)
        prompt = template_step.prompt if template_step else (directive.reason or "")
        auxiliary = StepDefinition(
            index=step.index,
            agent_id=agent_id,
            agent_name=template_step.agent_name if template_step else agent_id,
            prompt=prompt,
            engine=template_step.engine if template_step else None,
            model=template_step.model if template_step else None,
        )
        notify(self._emitter, "trigger", step_index=step.index, agent_id=agent_id)

        token = CancellationToken()
        self.signals.set_token(token)
        try:
            await token.run(self._executor.execute(auxiliary, prompt, token))
        except CancellationError:
            logger.info(f"Triggered agent {agent_id} cancelled")
        except Exception:
            # the main sequence goes on without the auxiliary agent
            logger.exception(f"Triggered agent {agent_id} failed")
        finally:
            self.signals.set_token(None)

    async def _checkpoint(
        self, step: StepDefinition, directive: Directive, result: ExecutionResult
    ) -> bool:
        """Wait for the operator to review; returns True to continue."""
        logger.info(f"Checkpoint on step {step.index}: {directive.reason or 'review required'}")
        notify(self._emitter, "checkpoint", step_index=step.index, reason=directive.reason)

        token = CancellationToken()
        self.signals.set_token(token)
        try:
            decision = await self.user.get_input(
                InputContext(
                    step_index=step.index,
                    agent_id=step.agent_id,
                    output=result.output,
                    token=token,
                )
            )
        finally:
            self.signals.set_token(None)

        if not self._on_step(step.index):
            return False
        if isinstance(decision, Stop):
            self.machine.send(MachineEvent.stop(directive.reason or "checkpoint rejected"))
            return False
        if isinstance(decision, Skip):
            await self._skip_step(step.index)
            return False
        if isinstance(decision, ResumeWith):
            logger.info(f"Checkpoint on step {step.index}: sending operator feedback to the agent")
            await self._continue_step(step, decision.text)
            return False
        return True

    async def _loop_to(self, step: StepDefinition, directive: Directive) -> None:
        await self.index.step_completed(step.index)
        self.index.reset()
        if self._session is not None:
            self._session.mark_completed()
        self._session = None
        notify(
            self._emitter,
            "loop",
            step_index=step.index,
            target_index=directive.target_index,
            reason=directive.reason,
        )
        self.machine.send(MachineEvent.loop(directive.target_index, directive.reason))

    # ------------------------------------------------------------------
    # Waiting for input
    async def _handle_waiting(self) -> None:
        state = self.machine.state
        step_index = self.machine.current_step_index
        step = self.steps[step_index]

        if state is MachineState.DELEGATED and not self.mode.auto_mode:
            self.machine.send(MachineEvent.of(EventType.AWAIT))
            return

        behavior = resolve_interactive_behavior(
            step, self.mode.auto_mode, not self.index.is_exhausted()
        )
        queued = self.index.peek_current()

        if not behavior.should_wait:
            if behavior.run_autonomous_loop and queued is not None:
                result: InputResult = ResumeWith(text=queued.content)
            else:
                result = Advance()
        else:
            provider = self.mode.active_provider
            token = CancellationToken()
            self.signals.set_token(token)
            context = InputContext(
                step_index=step_index,
                agent_id=step.agent_id,
                output=self.machine.context.current_output,
                queued_prompt=queued,
                queue_exhausted=self.index.is_exhausted(),
                token=token,
            )
            try:
                result = await provider.get_input(context)
            except StepExecutionError as exc:
                logger.error(f"{exc}; handing control back to the operator")
                notify(self._emitter, "controller_failed", step_index=step_index, error=exc.message)
                self.mode.disable_auto_mode()
                await self.index.set_autonomous_mode(False)
                if self.machine.state is MachineState.DELEGATED:
                    self.machine.send(MachineEvent.of(EventType.AWAIT))
                return
            finally:
                self.signals.set_token(None)

            if not self._still_in(step_index, state):
                # a signal already moved the machine
                return
            if provider is not self.user and self.mode.paused:
                logger.info(
                    f"Step {step_index}: paused during the controller call, waiting for the operator"
                )
                return

        await self._dispatch_input(step, result)

    async def _dispatch_input(self, step: StepDefinition, result: InputResult) -> None:
        if isinstance(result, SwitchMode):
            logger.info(f"Input source switched to {result.target} mode, waiting again")
            return
        if isinstance(result, Stop):
            self.machine.send(MachineEvent.stop("stopped at input"))
            return
        if isinstance(result, Skip):
            await self._skip_step(step.index)
            return
        if isinstance(result, Advance):
            await self._advance_step(step)
            return
        await self._resume_with_input(step, result.text)

    async def _advance_step(self, step: StepDefinition) -> None:
        state = self.machine.state
        await self.index.step_completed(step.index)
        if not self._still_in(step.index, state):
            return
        self.index.reset()
        if self._session is not None:
            self._session.mark_completed()
        self._session = None
        self.mode.resume()
        logger.info(f"Step {step.index} ({step.display_name}) completed")
        notify(self._emitter, "step_completed", step_index=step.index)
        self.machine.send(MachineEvent.input_received(""))

    async def _skip_step(self, step_index: int) -> None:
        self.index.reset()
        self._session = None
        logger.info(f"Step {step_index} skipped")
        notify(self._emitter, "step_skipped", step_index=step_index)
        self.machine.send(MachineEvent.of(EventType.SKIP))
        await self.index.step_completed(step_index)

    async def _resume_with_input(self, step: StepDefinition, text: str) -> None:
        state = self.machine.state
        if self.index.is_queued_prompt(text):
            chain_index = self.index.cursor
            await self.index.advance()
            if not self._still_in(step.index, state):
                return
            await self.index.chain_completed(step.index, chain_index)
            logger.debug(f"Step {step.index}: chained prompt {chain_index + 1} acknowledged")
        if not self._still_in(step.index, state):
            # skipped or stopped while the chain position was saved
            return

        self.mode.resume()
        self.machine.send(MachineEvent.input_received(text))
        if not self._on_step(step.index):
            return
        await self._continue_step(step, text)

    async def _continue_step(self, step: StepDefinition, text: str) -> None:
        """Send ``text`` to the agent within the step's existing session."""
        session = self._session
        if session is None or session.step_index != step.index:
            record = self.index.get_record(step.index)
            session = StepSession(
                step.index,
                record.session_id if record else None,
                record.log_handle_id if record else None,
                has_completed_once=True,
            )
            self._session = session

        result = await self._execute(step, text, session)
        if result is None:
            return
        await self.index.update_step_session(step.index, result.session_id, result.log_handle_id)
        if self._on_step(step.index):
            await self._after_execution(step, result)

    # ------------------------------------------------------------------
    def _finish(self) -> WorkflowResult:
        state = self.machine.state
        ctx = self.machine.context
        reason = None
        if state is MachineState.ERROR:
            reason = ctx.last_error
        elif state is MachineState.STOPPED:
            reason = ctx.stop_reason
        self.signals.set_step_context(None)
        logger.info(f"Workflow '{self.template.name}' finished: {state.value}")
        notify(self._emitter, "workflow_finished", status=state.value, reason=reason)
        return WorkflowResult(
            status=state,
            step_index=ctx.current_step_index,
            reason=reason,
            completed_steps=self.index.get_completed_steps(),
        )
