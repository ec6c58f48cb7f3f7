"""Input providers for waiting steps."""

from .base import (
    Advance,
    InputContext,
    InputProvider,
    InputResult,
    ResumeWith,
    Skip,
    Stop,
    SwitchMode,
)
from .controller import ControllerInputProvider, parse_controller_reply
from .user import UserInputProvider

__all__ = [
    "Advance",
    "ControllerInputProvider",
    "InputContext",
    "InputProvider",
    "InputResult",
    "ResumeWith",
    "Skip",
    "Stop",
    "SwitchMode",
    "UserInputProvider",
    "parse_controller_reply",
]
