"""Post-step directive policy."""

from .evaluator import DirectiveEvaluator, loop_key
from .models import ActiveLoop, Directive, DirectiveAction, DirectiveArtifact
from .reader import DirectiveReader

__all__ = [
    "ActiveLoop",
    "Directive",
    "DirectiveAction",
    "DirectiveArtifact",
    "DirectiveEvaluator",
    "DirectiveReader",
    "loop_key",
]
