"""Command line interface for running stepwright workflows."""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from importlib import import_module
from pathlib import Path
from typing import Any, Optional

import typer

from stepwright.config import StepwrightConfig, load_config
from stepwright.directives import DirectiveArtifact, DirectiveReader
from stepwright.errors import ConfigurationError
from stepwright.events import LoggingEventEmitter
from stepwright.persistence import get_store
from stepwright.runner import WorkflowRunner
from stepwright.templates import load_template

app = typer.Typer(help="CLI for stepwright workflows")

# Command groups
records_app = typer.Typer(help="Commands for inspecting step records")
directive_app = typer.Typer(help="Commands for the directive artifact")

app.add_typer(records_app, name="records")
app.add_typer(directive_app, name="directive")


@app.callback()
def main() -> None:
    """stepwright CLI entry point."""
    pass


def _configure_logging(config: StepwrightConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_object(target: str) -> Any:
    """Import ``module:attribute`` and return the attribute."""
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"Expected 'module:factory', got '{target}'")
    try:
        module = import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import {module_name}: {exc}") from exc
    try:
        return getattr(module, attribute)
    except AttributeError as exc:
        raise ConfigurationError(f"{module_name} has no attribute {attribute}") from exc


async def _dispatch_operator_line(runner: WorkflowRunner, line: Optional[str]) -> None:
    if line is None:
        runner.user.stop()
        return
    command = line.strip()
    if command == "/skip":
        await runner.signals.skip()
    elif command == "/stop":
        if not await runner.signals.stop("stopped by operator"):
            runner.user.stop()
    elif command == "/pause":
        await runner.signals.pause()
    elif command in ("/auto", "/manual"):
        await runner.signals.change_mode(command[1:])
    elif command == "/play":
        runner.user.play_queued()
    else:
        runner.user.submit(line.rstrip("\n"))


def _start_stdin_reader(runner: WorkflowRunner, loop: asyncio.AbstractEventLoop) -> None:
    """Feed stdin lines to the runner from a daemon thread.

    End of input stops the workflow at its next wait.
    """

    def read_lines() -> None:
        try:
            for line in iter(sys.stdin.readline, ""):
                asyncio.run_coroutine_threadsafe(
                    _dispatch_operator_line(runner, line), loop
                )
            asyncio.run_coroutine_threadsafe(_dispatch_operator_line(runner, None), loop)
        except RuntimeError:
            # the event loop closed once the workflow finished
            return

    threading.Thread(target=read_lines, name="stepwright-stdin", daemon=True).start()


async def _run_workflow(runner: WorkflowRunner, fresh: bool):
    _start_stdin_reader(runner, asyncio.get_running_loop())
    return await runner.run(fresh=fresh)


@app.command("run")
def run_workflow(
    template: Path,
    executor: str = typer.Option(..., help="Agent executor factory as module:factory"),
    controller: Optional[str] = typer.Option(
        None, help="Controller agent factory as module:factory"
    ),
    auto: Optional[bool] = typer.Option(
        None, "--auto/--manual", help="Start in autonomous or manual mode"
    ),
    fresh: bool = typer.Option(False, help="Ignore saved progress and start over"),
) -> None:
    """
    Run a workflow template.

    Operator input is read from stdin while a step waits. A blank line
    finishes the step, any other text continues the step's session. The
    commands /play, /skip, /stop, /pause, /auto and /manual control the run.

    Example:
        stepwright run workflow.yaml --executor my_agents:build_executor
        stepwright run workflow.yaml --executor my_agents:build_executor --controller my_agents:build_controller --auto
    """
    config = load_config()
    _configure_logging(config)
    try:
        workflow = load_template(template)
        executor_obj = _load_object(executor)()
        controller_obj = _load_object(controller)() if controller else None
    except ConfigurationError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    runner = WorkflowRunner(
        workflow,
        executor_obj,
        store=get_store(config=config),
        config=config,
        controller_agent=controller_obj,
        emitter=LoggingEventEmitter(logging.DEBUG),
        auto_mode=auto,
    )
    typer.echo(f"Running workflow: {workflow.name} ({len(workflow.steps)} steps)")
    result = asyncio.run(_run_workflow(runner, fresh))

    message = f"Workflow {workflow.name}: {result.status.value}"
    if result.reason:
        message += f" ({result.reason})"
    color = typer.colors.RED if result.status.value == "error" else None
    typer.secho(message, fg=color)
    if result.status.value == "error":
        raise typer.Exit(code=1)


@app.command("status")
def status() -> None:
    """Show the workflow record and one line per step record."""
    store = get_store()
    workflow = asyncio.run(store.read_workflow())
    records = asyncio.run(store.list_records())
    if workflow.active_template is None and not records:
        typer.echo("No workflow state found")
        return
    typer.echo(
        f"Template: {workflow.active_template or '-'}  "
        f"mode: {'auto' if workflow.autonomous_mode else 'manual'}  "
        f"resume: {workflow.resume_from_last_step}"
    )
    if workflow.not_completed_steps:
        typer.echo(f"Not completed: {', '.join(str(i) for i in workflow.not_completed_steps)}")
    for record in records:
        state = "completed" if record.completed_at else "in progress"
        typer.echo(
            f"- step {record.step_index}: {state}"
            + (f" session={record.session_id}" if record.session_id else "")
            + (
                f" chain={record.queue_cursor}/{len(record.chained_prompts)}"
                if record.chained_prompts
                else ""
            )
        )


@records_app.command("show")
def records_show(index: int) -> None:
    """Show one step record in detail."""
    record = asyncio.run(get_store().read(index))
    if record is None:
        typer.echo("Step record not found")
        raise typer.Exit(code=1)
    typer.echo(f"Step {record.step_index}")
    typer.echo(f"Session: {record.session_id or '-'}")
    typer.echo(f"Log handle: {record.log_handle_id or '-'}")
    typer.echo(f"Started: {record.started_at or '-'}")
    typer.echo(f"Completed: {record.completed_at or '-'}")
    if record.chained_prompts:
        typer.echo(f"Chain cursor: {record.queue_cursor}/{len(record.chained_prompts)}")
        for position, prompt in enumerate(record.chained_prompts):
            marker = "x" if position in record.completed_chains else " "
            typer.echo(f"  [{marker}] {prompt.label or prompt.name}")


@app.command("reset")
def reset() -> None:
    """Clear all step records so the next run starts fresh."""
    asyncio.run(get_store().clear())
    typer.echo("Step records cleared")


@directive_app.command("write")
def directive_write(
    action: str,
    reason: Optional[str] = typer.Option(None, help="Why the action was chosen"),
    target: Optional[str] = typer.Option(
        None, help="Agent id for trigger, step index for loop"
    ),
) -> None:
    """Write the directive artifact read after the current step."""
    artifact = DirectiveArtifact(action=action, reason=reason)
    if target is not None:
        if action == "loop":
            if not target.isdigit():
                typer.secho("Loop target must be a step index", fg=typer.colors.RED)
                raise typer.Exit(code=1)
            artifact.target_index = int(target)
        else:
            artifact.target_agent_id = target
    reader = DirectiveReader(load_config().directive_path())
    asyncio.run(reader.write(artifact))
    typer.echo(f"Directive '{action}' written to {reader.path}")
