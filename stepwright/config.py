from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

DEFAULT_CONFIG_FILE = "stepwright.yaml"
DEFAULT_CONTINUE_PROMPT = "Continue from where you left off."


class WorkflowSettings(BaseModel):
    """Execution settings for a workflow run."""

    cwd: str = "."
    resume_from_last_step: bool = True
    autonomous_mode: bool = False
    continue_prompt: str = DEFAULT_CONTINUE_PROMPT


class StoreConfig(BaseModel):
    """Step record store settings."""

    backend: Literal["inmemory", "json", "sqlite"] = "json"
    path: Optional[str] = None
    write_retries: int = 2
    retry_base: float = 1.5


class DirectiveConfig(BaseModel):
    """Location of the directive artifact written by agents."""

    path: str = ".stepwright/memory/directive.json"


class LoggingConfig(BaseModel):
    level: str = "INFO"


class StepwrightConfig(BaseModel):
    """Top-level configuration model."""

    workflow: WorkflowSettings = WorkflowSettings()
    store: StoreConfig = StoreConfig()
    directives: DirectiveConfig = DirectiveConfig()
    logging: LoggingConfig = LoggingConfig()

    def resolve_path(self, value: str) -> Path:
        """Resolve ``value`` against the workflow working directory."""
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        return Path(self.workflow.cwd) / path

    def store_path(self) -> Path:
        if self.store.path:
            return self.resolve_path(self.store.path)
        name = "state.db" if self.store.backend == "sqlite" else "template.json"
        return self.resolve_path(f".stepwright/{name}")

    def directive_path(self) -> Path:
        return self.resolve_path(self.directives.path)


def load_config(path: Optional[str] = None) -> StepwrightConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWRIGHT_CONFIG env
            variable or 'stepwright.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWRIGHT_CONFIG", DEFAULT_CONFIG_FILE)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwrightConfig(**data)
    else:
        config = StepwrightConfig()

    env_level = os.getenv("STEPWRIGHT_LOG_LEVEL")
    if env_level:
        config.logging.level = env_level.upper()
    return config
