"""stepwright: resumable step-by-step workflows for AI coding agents."""

from .cancellation import CancellationToken
from .config import StepwrightConfig, load_config
from .contracts import (
    AgentExecutor,
    ControllerAgent,
    ControllerReply,
    ExecutionResult,
    QueuedPrompt,
    StepDefinition,
)
from .errors import (
    CancellationError,
    ConfigurationError,
    DirectiveError,
    PersistenceError,
    StepExecutionError,
    StepwrightError,
)
from .persistence import get_store
from .runner import WorkflowResult, WorkflowRunner
from .state import MachineState, StepStateMachine
from .templates import WorkflowTemplate, load_template

__version__ = "0.1.0"
__all__ = [
    "AgentExecutor",
    "CancellationError",
    "CancellationToken",
    "ConfigurationError",
    "ControllerAgent",
    "ControllerReply",
    "DirectiveError",
    "ExecutionResult",
    "MachineState",
    "PersistenceError",
    "QueuedPrompt",
    "StepDefinition",
    "StepExecutionError",
    "StepStateMachine",
    "StepwrightConfig",
    "StepwrightError",
    "WorkflowResult",
    "WorkflowRunner",
    "WorkflowTemplate",
    "get_store",
    "load_config",
    "load_template",
]
