"""Workflow template loading."""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .contracts import StepDefinition
from .errors import ConfigurationError


class WorkflowTemplate(BaseModel):
    """An ordered list of steps to run."""

    name: str
    steps: List[StepDefinition] = Field(default_factory=list)

    def find_agent(self, agent_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.agent_id == agent_id:
                return step
        return None


def _normalize_chain(entries: List[Any], step_position: int) -> List[dict]:
    chain = []
    for n, entry in enumerate(entries or []):
        if isinstance(entry, str):
            chain.append({"name": f"step{step_position}-prompt{n + 1}", "content": entry})
        else:
            chain.append(entry)
    return chain


def template_from_dict(data: dict, default_name: str = "workflow") -> WorkflowTemplate:
    """Build a template, assigning step indices in declaration order."""
    steps = []
    for position, raw in enumerate(data.get("steps") or []):
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Step {position} must be a mapping")
        step = dict(raw)
        step["index"] = position
        step["chained_prompts"] = _normalize_chain(step.get("chained_prompts", []), position)
        steps.append(step)
    try:
        return WorkflowTemplate(name=data.get("name") or default_name, steps=steps)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid workflow template: {exc}") from exc


def load_template(path: str | Path) -> WorkflowTemplate:
    """Load a workflow template from a YAML file."""
    template_path = Path(path)
    try:
        with open(template_path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigurationError(f"Cannot read template {template_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {template_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Template {template_path} must be a mapping")
    return template_from_dict(data, default_name=template_path.stem)
