"""
actions/ — Canonical action vocabulary, normalization and execution.

Public API:
    from tabpilot.actions import ActionNormalizer, ActionExecutor, CanonicalAction
"""

from tabpilot.actions.executor import ActionExecutor
from tabpilot.actions.normalizer import ActionNormalizer, normalize
from tabpilot.actions.types import (
    NAVIGATION_ACTIONS,
    SURFACE_ACTIONS,
    ActionName,
    ActionResult,
    CanonicalAction,
)

__all__ = [
    "ActionExecutor",
    "ActionNormalizer",
    "normalize",
    "NAVIGATION_ACTIONS",
    "SURFACE_ACTIONS",
    "ActionName",
    "ActionResult",
    "CanonicalAction",
]
