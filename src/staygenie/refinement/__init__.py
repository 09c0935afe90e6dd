"""Search refinement: a model-backed strategy with a deterministic rule-based fallback."""

from .engine import RefinementEngine, resolve_refinement
from .model import ModelRefiner, ModelReply, ModelUnavailable, build_context_line
from .rules import RULES, fallback_refinement

__all__ = [
    "ModelRefiner",
    "ModelReply",
    "ModelUnavailable",
    "RULES",
    "RefinementEngine",
    "build_context_line",
    "fallback_refinement",
    "resolve_refinement",
]
